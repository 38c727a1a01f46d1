from ..schema_sql import READING_KEY

SAAS_SCHEMA_SQL = '''
CREATE TABLE IF NOT EXISTS organizations (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    plan TEXT NOT NULL DEFAULT 'starter' CHECK (plan IN ('starter','pro')),
    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active','suspended','cancelled')),
    billing_email TEXT,
    trial_ends_at TEXT,
    settings TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    email TEXT NOT NULL,
    name TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    password_salt TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('owner','admin','supervisor','operator','viewer')),
    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active','invited','suspended')),
    plant_id INTEGER,
    last_login_at TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (organization_id, email),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS invitations (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    email TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('admin','supervisor','operator','viewer')),
    plant_id INTEGER,
    token TEXT NOT NULL UNIQUE,
    invited_by INTEGER NOT NULL,
    expires_at TEXT NOT NULL,
    accepted_at TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
    FOREIGN KEY (invited_by) REFERENCES users(id)
);

CREATE TABLE IF NOT EXISTS api_keys (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    key_hash TEXT NOT NULL UNIQUE,
    key_prefix TEXT NOT NULL,
    scopes TEXT NOT NULL DEFAULT '[]',
    last_used_at TEXT,
    expires_at TEXT,
    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active','revoked')),
    created_by INTEGER,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
    FOREIGN KEY (created_by) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS webhooks (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    url TEXT NOT NULL,
    events TEXT NOT NULL DEFAULT '[]',
    secret TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active','paused','failed')),
    failure_count INTEGER NOT NULL DEFAULT 0,
    last_triggered_at TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS webhook_logs (
    id INTEGER PRIMARY KEY,
    webhook_id INTEGER NOT NULL,
    event TEXT NOT NULL,
    payload TEXT NOT NULL,
    response_status INTEGER,
    response_body TEXT,
    duration_ms INTEGER,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (webhook_id) REFERENCES webhooks(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_webhook_logs ON webhook_logs(webhook_id, id);

CREATE TABLE IF NOT EXISTS audit_logs (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    user_id INTEGER,
    action TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT,
    old_value TEXT,
    new_value TEXT,
    ip_address TEXT,
    user_agent TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_audit_org ON audit_logs(organization_id, created_at);

CREATE TABLE IF NOT EXISTS plants (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    location TEXT,
    latitude REAL,
    longitude REAL,
    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active','inactive','maintenance')),
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (organization_id, name),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS environmental_data (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    plant_id INTEGER NOT NULL,
    parameter_type TEXT NOT NULL CHECK (parameter_type IN ('DQO','pH','SS')),
    value REAL NOT NULL CHECK (value >= 0),
    measurement_date TEXT NOT NULL,
    unit TEXT NOT NULL DEFAULT '',
    stream TEXT NOT NULL DEFAULT 'effluent' CHECK (stream IN ('influent','effluent')),
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_saas_env ON environmental_data(organization_id, plant_id, measurement_date);

CREATE TABLE IF NOT EXISTS maintenance_tasks (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    plant_id INTEGER NOT NULL,
    task_type TEXT NOT NULL DEFAULT 'general' CHECK (task_type IN ('preventive','corrective','general')),
    description TEXT NOT NULL,
    scheduled_date TEXT NOT NULL,
    completed_date TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','completed','overdue')),
    notes TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS maintenance_emergencies (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    plant_id INTEGER NOT NULL,
    reason TEXT NOT NULL,
    severity TEXT NOT NULL DEFAULT 'medium' CHECK (severity IN ('low','medium','high')),
    solved INTEGER NOT NULL DEFAULT 0 CHECK (solved IN (0,1)),
    resolve_time_hours REAL CHECK (resolve_time_hours IS NULL OR resolve_time_hours >= 0),
    observations TEXT,
    reported_at TEXT NOT NULL DEFAULT (datetime('now')),
    resolved_at TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS tickets (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    ticket_number TEXT NOT NULL,
    plant_id INTEGER,
    subject TEXT NOT NULL,
    description TEXT NOT NULL,
    category TEXT NOT NULL DEFAULT 'otro' CHECK (category IN ('mantenimiento','repuestos','insumos','consulta','emergencia','otro')),
    priority TEXT NOT NULL DEFAULT 'medium' CHECK (priority IN ('low','medium','high','urgent')),
    status TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open','in_progress','waiting','resolved','closed')),
    requester_name TEXT,
    requester_email TEXT,
    assigned_to TEXT,
    resolution_notes TEXT,
    resolved_at TEXT,
    created_by INTEGER,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (organization_id, ticket_number),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS ticket_comments (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    ticket_id INTEGER NOT NULL,
    author_name TEXT NOT NULL,
    author_email TEXT,
    comment TEXT NOT NULL,
    is_internal INTEGER NOT NULL DEFAULT 0 CHECK (is_internal IN (0,1)),
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
    FOREIGN KEY (ticket_id) REFERENCES tickets(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS opex_costs (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    plant_id INTEGER NOT NULL,
    year INTEGER NOT NULL CHECK (year BETWEEN 2000 AND 2100),
    month INTEGER NOT NULL CHECK (month BETWEEN 1 AND 12),
    category TEXT NOT NULL CHECK (category IN (
        'chemicals','electricity','maintenance','labor','supplies','sludge','testing','other'
    )),
    description TEXT,
    amount REAL NOT NULL CHECK (amount >= 0),
    currency TEXT NOT NULL DEFAULT 'USD',
    volume_m3 REAL CHECK (volume_m3 IS NULL OR volume_m3 >= 0),
    cost_per_m3 REAL CHECK (cost_per_m3 IS NULL OR cost_per_m3 >= 0),
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_saas_opex ON opex_costs(organization_id, year, month);

CREATE TABLE IF NOT EXISTS documents (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    plant_id INTEGER,
    file_name TEXT NOT NULL,
    file_path TEXT NOT NULL,
    file_size INTEGER,
    mime_type TEXT,
    category TEXT NOT NULL DEFAULT 'otros',
    description TEXT,
    uploaded_by INTEGER,
    uploaded_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE SET NULL,
    FOREIGN KEY (uploaded_by) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS equipment (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    plant_id INTEGER NOT NULL,
    item_code TEXT NOT NULL,
    description TEXT NOT NULL,
    reference TEXT,
    location TEXT,
    quantity INTEGER NOT NULL DEFAULT 1 CHECK (quantity >= 0),
    category TEXT NOT NULL DEFAULT 'otros' CHECK (category IN (
        'difusores','ductos','cuadro_electrico','lamelas','motores','sensores','tanques','valvulas','otros'
    )),
    daily_check TEXT,
    monthly_check TEXT,
    quarterly_check TEXT,
    biannual_check TEXT,
    annual_check TEXT,
    time_based_reference TEXT,
    spare_parts TEXT,
    extras TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (plant_id, item_code),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS equipment_maintenance_log (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    equipment_id INTEGER NOT NULL,
    maintenance_type TEXT NOT NULL CHECK (maintenance_type IN ('preventivo','correctivo')),
    operation TEXT,
    maintenance_date TEXT NOT NULL,
    description_averia TEXT,
    description_realizado TEXT,
    next_maintenance_date TEXT,
    operator_name TEXT,
    responsible_name TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
    FOREIGN KEY (equipment_id) REFERENCES equipment(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS daily_checklists (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    plant_id INTEGER NOT NULL,
    check_date TEXT NOT NULL,
    operator_name TEXT NOT NULL,
    completed_at TEXT,
    notes TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (plant_id, check_date),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS daily_checklist_items (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    checklist_id INTEGER NOT NULL,
    item_description TEXT NOT NULL,
    category TEXT NOT NULL DEFAULT 'general',
    is_checked INTEGER NOT NULL DEFAULT 0 CHECK (is_checked IN (0,1)),
    checked_at TEXT,
    is_red_flag INTEGER NOT NULL DEFAULT 0 CHECK (is_red_flag IN (0,1)),
    red_flag_comment TEXT,
    observation TEXT,
    numeric_value REAL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
    FOREIGN KEY (checklist_id) REFERENCES daily_checklists(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY,
    organization_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'info' CHECK (type IN ('info','success','warning','critical')),
    link TEXT,
    read_at TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, read_at);
'''

SAAS_UNIQUE_INDEXES = [
    ("environmental_data", "ux_saas_env_reading", READING_KEY),
]

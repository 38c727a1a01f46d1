SCHEMA_SQL = '''
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    password_salt TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('admin','standard')),
    plant_id INTEGER,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS plants (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    location TEXT,
    latitude REAL,
    longitude REAL,
    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active','inactive','maintenance')),
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS environmental_data (
    id INTEGER PRIMARY KEY,
    plant_id INTEGER NOT NULL,
    parameter_type TEXT NOT NULL CHECK (parameter_type IN ('DQO','pH','SS')),
    value REAL NOT NULL CHECK (value >= 0),
    measurement_date TEXT NOT NULL,
    unit TEXT NOT NULL DEFAULT '',
    stream TEXT NOT NULL DEFAULT 'effluent' CHECK (stream IN ('influent','effluent')),
    source TEXT NOT NULL DEFAULT 'manual',
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_env_plant_date ON environmental_data(plant_id, measurement_date);
CREATE INDEX IF NOT EXISTS idx_env_keys ON environmental_data(plant_id, parameter_type, stream, measurement_date);

CREATE TABLE IF NOT EXISTS maintenance_tasks (
    id INTEGER PRIMARY KEY,
    plant_id INTEGER NOT NULL,
    task_type TEXT NOT NULL DEFAULT 'general' CHECK (task_type IN ('preventive','corrective','general')),
    description TEXT NOT NULL,
    scheduled_date TEXT NOT NULL,
    completed_date TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','completed','overdue')),
    periodicity TEXT NOT NULL DEFAULT 'annual' CHECK (periodicity IN ('daily','monthly','quarterly','annual')),
    vendor_name TEXT,
    estimated_cost REAL CHECK (estimated_cost IS NULL OR estimated_cost >= 0),
    notes TEXT,
    completed_by TEXT,
    reminder_date TEXT,
    reminder_sent INTEGER NOT NULL DEFAULT 0 CHECK (reminder_sent IN (0,1)),
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_tasks_plant ON maintenance_tasks(plant_id, scheduled_date);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON maintenance_tasks(status);

CREATE TABLE IF NOT EXISTS maintenance_emergencies (
    id INTEGER PRIMARY KEY,
    plant_id INTEGER NOT NULL,
    reason TEXT NOT NULL,
    solved INTEGER NOT NULL DEFAULT 0 CHECK (solved IN (0,1)),
    resolve_time_hours REAL CHECK (resolve_time_hours IS NULL OR resolve_time_hours >= 0),
    reported_at TEXT NOT NULL DEFAULT (datetime('now')),
    resolved_at TEXT,
    severity TEXT NOT NULL DEFAULT 'medium' CHECK (severity IN ('low','medium','high')),
    observations TEXT,
    operator_id INTEGER,
    operator_name TEXT,
    location_description TEXT,
    photo_path TEXT,
    source TEXT NOT NULL DEFAULT 'admin' CHECK (source IN ('admin','mobile')),
    email_sent INTEGER NOT NULL DEFAULT 0 CHECK (email_sent IN (0,1)),
    acknowledged_at TEXT,
    acknowledged_by TEXT,
    resolved_by TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_emergencies_plant ON maintenance_emergencies(plant_id, reported_at);

CREATE TABLE IF NOT EXISTS emergency_tasks (
    id INTEGER PRIMARY KEY,
    emergency_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    assigned_to_email TEXT,
    assigned_to_name TEXT,
    priority TEXT NOT NULL DEFAULT 'medium' CHECK (priority IN ('low','medium','high','urgent')),
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','in_progress','completed','cancelled')),
    due_date TEXT,
    reminder_date TEXT,
    reminder_sent INTEGER NOT NULL DEFAULT 0 CHECK (reminder_sent IN (0,1)),
    email_sent_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    completed_by TEXT,
    notes TEXT,
    created_by TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (emergency_id) REFERENCES maintenance_emergencies(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS emergency_task_comments (
    id INTEGER PRIMARY KEY,
    task_id INTEGER NOT NULL,
    author_name TEXT NOT NULL,
    author_email TEXT,
    comment TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (task_id) REFERENCES emergency_tasks(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS documents (
    id INTEGER PRIMARY KEY,
    plant_id INTEGER NOT NULL,
    file_name TEXT NOT NULL,
    file_path TEXT NOT NULL,
    file_size INTEGER,
    mime_type TEXT,
    category TEXT,
    description TEXT,
    uploaded_by TEXT,
    uploaded_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS opex_costs (
    id INTEGER PRIMARY KEY,
    plant_id INTEGER NOT NULL,
    period_date TEXT NOT NULL,
    volume_m3 REAL NOT NULL DEFAULT 0 CHECK (volume_m3 >= 0),
    cost_agua REAL NOT NULL DEFAULT 0,
    cost_personal REAL NOT NULL DEFAULT 0,
    cost_mantenimiento REAL NOT NULL DEFAULT 0,
    cost_energia REAL NOT NULL DEFAULT 0,
    cost_floculante REAL NOT NULL DEFAULT 0,
    cost_coagulante REAL NOT NULL DEFAULT 0,
    cost_estabilizador_ph REAL NOT NULL DEFAULT 0,
    cost_dap REAL NOT NULL DEFAULT 0,
    cost_urea REAL NOT NULL DEFAULT 0,
    cost_melaza REAL NOT NULL DEFAULT 0,
    notes TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE,
    UNIQUE(plant_id, period_date)
);

CREATE TABLE IF NOT EXISTS equipment (
    id INTEGER PRIMARY KEY,
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
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS equipment_maintenance_log (
    id INTEGER PRIMARY KEY,
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
    FOREIGN KEY (equipment_id) REFERENCES equipment(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS equipment_scheduled_maintenance (
    id INTEGER PRIMARY KEY,
    equipment_id INTEGER NOT NULL,
    frequency TEXT NOT NULL CHECK (frequency IN ('diario','mensual','trimestral','semestral','anual')),
    scheduled_date TEXT NOT NULL,
    completed_date TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','completed','overdue')),
    description TEXT,
    notes TEXT,
    completed_by TEXT,
    year INTEGER NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (equipment_id) REFERENCES equipment(id) ON DELETE CASCADE,
    UNIQUE(equipment_id, frequency, scheduled_date)
);

CREATE TABLE IF NOT EXISTS tickets (
    id INTEGER PRIMARY KEY,
    ticket_number TEXT NOT NULL UNIQUE,
    plant_id INTEGER,
    subject TEXT NOT NULL,
    description TEXT NOT NULL,
    category TEXT NOT NULL DEFAULT 'otro' CHECK (category IN ('mantenimiento','repuestos','insumos','consulta','emergencia','otro')),
    priority TEXT NOT NULL DEFAULT 'medium' CHECK (priority IN ('low','medium','high','urgent')),
    status TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open','in_progress','waiting','resolved','closed')),
    requester_name TEXT NOT NULL,
    requester_email TEXT,
    requester_phone TEXT,
    assigned_to TEXT,
    sent_via_email INTEGER NOT NULL DEFAULT 0,
    sent_via_whatsapp INTEGER NOT NULL DEFAULT 0,
    email_sent_at TEXT,
    whatsapp_sent_at TEXT,
    resolved_at TEXT,
    resolution_notes TEXT,
    created_by INTEGER,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS ticket_comments (
    id INTEGER PRIMARY KEY,
    ticket_id INTEGER NOT NULL,
    author_name TEXT NOT NULL,
    author_email TEXT,
    comment TEXT NOT NULL,
    is_internal INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (ticket_id) REFERENCES tickets(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS checklist_templates (
    id INTEGER PRIMARY KEY,
    plant_id INTEGER NOT NULL,
    template_name TEXT NOT NULL,
    template_code TEXT NOT NULL,
    description TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE,
    UNIQUE(plant_id, template_code)
);

CREATE TABLE IF NOT EXISTS checklist_template_items (
    id INTEGER PRIMARY KEY,
    template_id INTEGER NOT NULL,
    section TEXT NOT NULL,
    element TEXT NOT NULL,
    activity TEXT NOT NULL,
    requires_value INTEGER NOT NULL DEFAULT 0,
    value_unit TEXT,
    display_order INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (template_id) REFERENCES checklist_templates(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS daily_checklists (
    id INTEGER PRIMARY KEY,
    plant_id INTEGER NOT NULL,
    template_id INTEGER,
    check_date TEXT NOT NULL,
    operator_name TEXT NOT NULL,
    completed_at TEXT,
    notes TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE,
    FOREIGN KEY (template_id) REFERENCES checklist_templates(id) ON DELETE SET NULL,
    UNIQUE(plant_id, check_date)
);

CREATE TABLE IF NOT EXISTS daily_checklist_items (
    id INTEGER PRIMARY KEY,
    checklist_id INTEGER NOT NULL,
    template_item_id INTEGER,
    item_description TEXT NOT NULL,
    category TEXT NOT NULL DEFAULT 'general',
    section TEXT,
    unit TEXT,
    is_checked INTEGER NOT NULL DEFAULT 0,
    is_red_flag INTEGER NOT NULL DEFAULT 0,
    red_flag_comment TEXT,
    observation TEXT,
    numeric_value REAL,
    photo_path TEXT,
    checked_at TEXT,
    FOREIGN KEY (checklist_id) REFERENCES daily_checklists(id) ON DELETE CASCADE,
    FOREIGN KEY (template_item_id) REFERENCES checklist_template_items(id) ON DELETE SET NULL
);
CREATE INDEX IF NOT EXISTS idx_checklist_items ON daily_checklist_items(checklist_id);

CREATE TABLE IF NOT EXISTS red_flag_history (
    id INTEGER PRIMARY KEY,
    checklist_item_id INTEGER,
    checklist_id INTEGER,
    plant_id INTEGER NOT NULL,
    section TEXT,
    operator_name TEXT,
    element TEXT,
    activity TEXT,
    comment TEXT,
    photo_path TEXT,
    flagged_by TEXT,
    flagged_at TEXT NOT NULL DEFAULT (datetime('now')),
    resolved_at TEXT,
    resolved_by TEXT,
    resolution_notes TEXT,
    FOREIGN KEY (checklist_item_id) REFERENCES daily_checklist_items(id) ON DELETE SET NULL,
    FOREIGN KEY (checklist_id) REFERENCES daily_checklists(id) ON DELETE CASCADE,
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS supervisor_reports (
    id INTEGER PRIMARY KEY,
    checklist_id INTEGER NOT NULL UNIQUE,
    plant_id INTEGER NOT NULL,
    report_date TEXT NOT NULL,
    operator_name TEXT,
    total_items INTEGER NOT NULL DEFAULT 0,
    checked_items INTEGER NOT NULL DEFAULT 0,
    red_flag_count INTEGER NOT NULL DEFAULT 0,
    notes TEXT,
    sent_at TEXT NOT NULL DEFAULT (datetime('now')),
    read_at TEXT,
    read_by TEXT,
    FOREIGN KEY (checklist_id) REFERENCES daily_checklists(id) ON DELETE CASCADE,
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS notification_settings (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL UNIQUE,
    email TEXT,
    maintenance_reminders INTEGER NOT NULL DEFAULT 1,
    parameter_alerts INTEGER NOT NULL DEFAULT 1,
    emergency_alerts INTEGER NOT NULL DEFAULT 1,
    reminder_days INTEGER NOT NULL DEFAULT 45 CHECK (reminder_days BETWEEN 1 AND 365),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS user_dashboard_widgets (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL,
    widget_type TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    is_visible INTEGER NOT NULL DEFAULT 1,
    config TEXT,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    UNIQUE(user_id, widget_type)
);

CREATE TABLE IF NOT EXISTS data_ledger (
    id INTEGER PRIMARY KEY,
    ts TEXT NOT NULL DEFAULT (datetime('now')),
    table_name TEXT NOT NULL,
    action TEXT NOT NULL,
    row_id INTEGER,
    actor_user_id INTEGER,
    actor_email TEXT,
    details TEXT
);
CREATE INDEX IF NOT EXISTS idx_ledger_table ON data_ledger(table_name, row_id);
'''

# Columns added after the first release; applied with ALTER TABLE on startup.
MIGRATIONS = {
    "environmental_data": {"source": "TEXT NOT NULL DEFAULT 'manual'"},
    "documents": {"file_size": "INTEGER", "mime_type": "TEXT"},
    "data_ledger": {"actor_user_id": "INTEGER", "actor_email": "TEXT"},
}

# one reading per plant, parameter, day and stream
READING_KEY = "plant_id, parameter_type, substr(measurement_date,1,10), stream"
UNIQUE_INDEXES = [
    ("environmental_data", "ux_env_reading", READING_KEY),
]

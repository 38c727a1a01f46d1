import logging
import math
import random
from datetime import date, timedelta

logger = logging.getLogger(__name__)

PLANTS = [
    ("LA LUZ", "La Libertad", -2.234, -80.901),
    ("TAURA", "Taura", -2.393, -79.760),
    ("SANTA MONICA", "Santa Elena", -2.226, -80.855),
    ("SAN DIEGO", "San Diego", -1.956, -79.827),
    ("CHANDUY", "Chanduy", -2.439, -80.629),
    ("TEXTILES", "Guayaquil", -2.189, -79.889),
    ("TPI", "Guayaquil", -2.195, -79.892),
    ("TROPACK BIOSEM 1", "Durán", -2.167, -79.838),
    ("TROPACK BIOSEM 2", "Durán", -2.169, -79.840),
    ("TROPACK INDUSTRIAL", "Durán", -2.171, -79.842),
    ("TROPACK TILAPIA", "Durán", -2.173, -79.844),
]

# (influent, effluent) per parameter
DOMESTIC_BASE = {"DQO": (850, 110), "pH": (7.1, 7.3), "SS": (420, 70)}
INDUSTRIAL_BASE = {"DQO": (2500, 180), "pH": (7.0, 7.0), "SS": (600, 90)}
INDUSTRIAL_PLANTS = {"TEXTILES", "TPI", "TROPACK INDUSTRIAL"}

DEMO_EMERGENCIES = [
    ("LA LUZ", "Falla en bomba de recirculación", "high", 0, None),
    ("TAURA", "Olor anormal en reactor biológico", "medium", 1, 6.5),
    ("TEXTILES", "Espuma excesiva en clarificador", "low", 1, 2.0),
]


def _months_back(n: int):
    today = date.today()
    y, m = today.year, today.month
    out = []
    for _ in range(n):
        out.append(date(y, m, 15))
        m -= 1
        if m == 0:
            y, m = y - 1, 12
    return list(reversed(out))


def seed_demo_data(cur) -> bool:
    """Load reference plants and a year of readings into an empty database."""
    n = cur.execute("SELECT COUNT(*) AS n FROM plants").fetchone()["n"]
    if n:
        return False

    rng = random.Random(2025)
    plant_ids = {}
    for name, location, lat, lon in PLANTS:
        cur.execute(
            "INSERT INTO plants(name, location, latitude, longitude, status) VALUES (?,?,?,?, 'active')",
            (name, location, lat, lon),
        )
        plant_ids[name] = cur.lastrowid

    rows = []
    for name, plant_id in plant_ids.items():
        base = INDUSTRIAL_BASE if name in INDUSTRIAL_PLANTS else DOMESTIC_BASE
        for i, day in enumerate(_months_back(12)):
            season = math.sin(i / 12 * 2 * math.pi)
            for parameter, (inf, eff) in base.items():
                for stream, value in (("influent", inf), ("effluent", eff)):
                    if parameter == "pH":
                        v = round(value + 0.2 * season + rng.uniform(-0.2, 0.2), 2)
                        unit = ""
                    else:
                        v = round(value * (1 + 0.1 * season + rng.uniform(-0.08, 0.08)), 1)
                        unit = "mg/L"
                    rows.append((plant_id, parameter, max(v, 0), f"{day.isoformat()}T12:00:00.000Z", unit, stream))
    cur.executemany(
        """
        INSERT INTO environmental_data(plant_id, parameter_type, value, measurement_date, unit, stream, source)
        VALUES (?,?,?,?,?,?, 'seed')
        """,
        rows,
    )

    for plant, reason, severity, solved, hours in DEMO_EMERGENCIES:
        reported = (date.today() - timedelta(days=rng.randint(1, 20))).isoformat() + "T09:00:00"
        cur.execute(
            """
            INSERT INTO maintenance_emergencies(plant_id, reason, severity, solved, resolve_time_hours, reported_at, resolved_at)
            VALUES (?,?,?,?,?,?,?)
            """,
            (plant_ids[plant], reason, severity, solved, hours, reported, reported if solved else None),
        )
    logger.info("Demo data seeded: %s plants, %s readings", len(plant_ids), len(rows))
    return True

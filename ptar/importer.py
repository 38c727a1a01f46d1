import io
import logging
import re
import sqlite3
from typing import Any, Dict, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)

ENV_EXPECTED_COLS = ["planta", "fecha", "parametro", "valor", "tipo"]

STREAM_ALIASES = {
    "entrada": "influent",
    "afluente": "influent",
    "influent": "influent",
    "salida": "effluent",
    "efluente": "effluent",
    "effluent": "effluent",
}

OPEX_COST_COLUMNS = {
    "volume_m3": ["volumen_m3", "volume_m3", "volumen"],
    "cost_agua": ["agua", "cost_agua", "water"],
    "cost_personal": ["personal", "cost_personal", "staff"],
    "cost_mantenimiento": ["mantenimiento", "cost_mantenimiento", "maintenance"],
    "cost_energia": ["energia", "cost_energia", "energy"],
    "cost_floculante": ["floculante", "cost_floculante"],
    "cost_coagulante": ["coagulante", "cost_coagulante"],
    "cost_estabilizador_ph": ["estabilizador_ph", "cost_estabilizador_ph", "ph_stabilizer"],
    "cost_dap": ["dap", "cost_dap"],
    "cost_urea": ["urea", "cost_urea"],
    "cost_melaza": ["melaza", "cost_melaza", "molasses"],
}

ENV_TEMPLATE_CSV = (
    "planta,fecha,parametro,valor,tipo\n"
    "TEXTILES,15/12/2025,DQO,2500,entrada\n"
    "TEXTILES,15/12/2025,DQO,180,salida\n"
    "TEXTILES,15/12/2025,pH,7.0,entrada\n"
    "TEXTILES,15/12/2025,SS,90,salida\n"
)

OPEX_TEMPLATE_HEADERS = [
    "planta", "periodo", "volumen_m3", "agua", "personal", "mantenimiento", "energia",
    "floculante", "coagulante", "estabilizador_ph", "dap", "urea", "melaza", "notas",
]
OPEX_TEMPLATE_ROWS = [
    ["La Luz", "2025-01", "1500", "120.50", "850.00", "200.00", "450.00", "50.00", "45.00", "30.00", "25.00", "20.00", "15.00", "Ejemplo enero"],
    ["La Luz", "2025-02", "1600", "125.00", "870.00", "180.00", "480.00", "55.00", "48.00", "32.00", "28.00", "22.00", "18.00", "Ejemplo febrero"],
]


def strip_or_none(x):
    if x is None or pd.isna(x):
        return None
    s = str(x).strip().replace("\t", "")
    return s if s != "" else None


def to_float_or_none(x):
    s = strip_or_none(x)
    if s is None:
        return None
    try:
        return float(s.replace(",", "."))
    except ValueError:
        return None


def opex_csv_template() -> str:
    lines = [",".join(OPEX_TEMPLATE_HEADERS)] + [",".join(r) for r in OPEX_TEMPLATE_ROWS]
    return "\ufeff" + "\n".join(lines)


def read_csv_bytes(content: bytes) -> pd.DataFrame:
    """Everything as text; BOM and surrounding spaces in headers removed."""
    try:
        df = pd.read_csv(
            io.BytesIO(content),
            dtype=str,
            keep_default_na=False,
            skipinitialspace=True,
            encoding="utf-8-sig",
        )
    except pd.errors.EmptyDataError:
        raise ValueError("El archivo CSV está vacío o no tiene datos")
    except pd.errors.ParserError as e:
        raise ValueError(f"CSV mal formado: {e}")
    df.columns = [str(c).strip().lower().replace(" ", "_") for c in df.columns]
    return df


def plant_lookup(cur) -> Dict[str, int]:
    mapping = {}
    for r in cur.execute("SELECT id, name FROM plants").fetchall():
        mapping[r["name"].strip().lower()] = r["id"]
    return mapping


def resolve_plant(mapping: Dict[str, int], name: Optional[str]) -> Optional[int]:
    if not name:
        return None
    key = name.strip().lower()
    if key in mapping:
        return mapping[key]
    partial = [pid for pname, pid in mapping.items() if key in pname]
    return partial[0] if len(partial) == 1 else None


def calendar_date(text: str) -> Optional[str]:
    """`text` when it is a YYYY-MM-DD naming a real day (so no 2025-02-31), else None."""
    if not re.match(r"^\d{4}-\d{2}-\d{2}$", text):
        return None
    parsed = pd.to_datetime(text, format="%Y-%m-%d", errors="coerce")
    return None if pd.isna(parsed) else text


def normalize_measurement_date(raw: str) -> Optional[str]:
    raw = raw.strip()
    m = re.match(r"^(\d{1,2})/(\d{1,2})/(\d{4})$", raw)
    if m:
        day, month, year = m.groups()
        raw = f"{year}-{int(month):02d}-{int(day):02d}"
    if calendar_date(raw):
        return f"{raw}T12:00:00.000Z"
    if re.match(r"^\d{4}-\d{2}-\d{2}T", raw) and calendar_date(raw[:10]):
        return raw
    return None


def normalize_parameter(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    p = raw.strip().upper()
    if p == "PH":
        return "pH"
    return p if p in ("DQO", "SS") else None


def find_environmental(cur, plant_id: int, parameter: str, measurement_date: str, stream: str):
    return cur.execute(
        """
        SELECT id FROM environmental_data
        WHERE plant_id=? AND parameter_type=? AND substr(measurement_date,1,10)=substr(?,1,10) AND stream=?
        """,
        (plant_id, parameter, measurement_date, stream),
    ).fetchone()


def import_environmental_csv(con: sqlite3.Connection, content: bytes) -> Dict[str, Any]:
    """Bulk load DQO/pH/SS readings. Existing (plant, parameter, day, stream) rows are updated."""
    df = read_csv_bytes(content)
    missing = [c for c in ENV_EXPECTED_COLS if c not in df.columns]
    if missing:
        raise ValueError(f"Faltan columnas requeridas: {', '.join(missing)}")
    if df.empty:
        raise ValueError("El archivo CSV está vacío o no tiene datos")

    cur = con.cursor()
    plants = plant_lookup(cur)
    inserted = updated = 0
    errors: List[str] = []

    for idx, row in df.iterrows():
        line = idx + 2
        plant_name = strip_or_none(row["planta"])
        if not plant_name:
            errors.append(f"Línea {line}: Falta nombre de planta")
            continue
        plant_id = resolve_plant(plants, plant_name)
        if plant_id is None:
            errors.append(f"Línea {line}: Planta \"{plant_name}\" no encontrada")
            continue
        parameter = normalize_parameter(strip_or_none(row["parametro"]))
        if parameter is None:
            errors.append(f"Línea {line}: Parámetro \"{row['parametro']}\" no válido (usar DQO, pH o SS)")
            continue
        value = to_float_or_none(row["valor"])
        if value is None or value < 0:
            errors.append(f"Línea {line}: Valor \"{row['valor']}\" no es un número válido")
            continue
        stream = STREAM_ALIASES.get((strip_or_none(row["tipo"]) or "").lower())
        if stream is None:
            errors.append(f"Línea {line}: Tipo \"{row['tipo']}\" no válido (usar entrada/salida o influent/effluent)")
            continue
        measurement_date = normalize_measurement_date(strip_or_none(row["fecha"]) or "")
        if measurement_date is None:
            errors.append(f"Línea {line}: Fecha \"{row['fecha']}\" no válida (usar DD/MM/AAAA o AAAA-MM-DD)")
            continue
        unit = "" if parameter == "pH" else "mg/L"

        try:
            existing = find_environmental(cur, plant_id, parameter, measurement_date, stream)
            if existing:
                cur.execute("UPDATE environmental_data SET value=?, unit=? WHERE id=?", (value, unit, existing["id"]))
                updated += 1
            else:
                cur.execute(
                    """
                    INSERT INTO environmental_data(plant_id, parameter_type, value, measurement_date, unit, stream, source)
                    VALUES (?,?,?,?,?,?, 'csv')
                    """,
                    (plant_id, parameter, value, measurement_date, unit, stream),
                )
                inserted += 1
        except sqlite3.Error as e:
            errors.append(f"Línea {line}: Error al guardar - {e}")

    logger.info("Environmental CSV processed: %s inserted, %s updated, %s errors", inserted, updated, len(errors))
    return {
        "message": f"Procesado: {inserted} registros insertados, {updated} actualizados",
        "inserted": inserted,
        "updated": updated,
        "errors": errors,
    }


def _first(row: pd.Series, names: List[str]) -> Optional[str]:
    for n in names:
        if n in row.index:
            v = strip_or_none(row[n])
            if v is not None:
                return v
    return None


def import_opex_csv(con: sqlite3.Connection, content: bytes) -> Dict[str, Any]:
    """Monthly OPEX rows keyed by plant and period. Re-uploading a period overwrites it."""
    df = read_csv_bytes(content)
    if df.empty:
        raise ValueError("El archivo CSV está vacío o no tiene datos")

    cur = con.cursor()
    plants = plant_lookup(cur)
    inserted = updated = 0
    errors: List[str] = []

    for idx, row in df.iterrows():
        line = idx + 2
        plant_name = _first(row, ["planta", "plant", "plant_name"])
        plant_id = resolve_plant(plants, plant_name)
        if plant_id is None:
            errors.append(f"Fila {line}: Planta desconocida \"{plant_name or ''}\"")
            continue
        period = _first(row, ["periodo", "period", "period_date", "fecha"])
        if not period:
            errors.append(f"Fila {line}: Falta el periodo")
            continue
        if len(period) == 7:
            period = period + "-01"
        if not calendar_date(period):
            errors.append(f"Fila {line}: Periodo \"{period}\" no válido (usar AAAA-MM)")
            continue

        values: Dict[str, Any] = {}
        bad = None
        for field, aliases in OPEX_COST_COLUMNS.items():
            raw = _first(row, aliases)
            v = to_float_or_none(raw) if raw is not None else 0.0
            if v is None or v < 0:
                bad = f"Fila {line}: Valor \"{raw}\" no válido para {aliases[0]}"
                break
            values[field] = v
        if bad:
            errors.append(bad)
            continue
        values["notes"] = _first(row, ["notas", "notes"])

        try:
            existing = cur.execute(
                "SELECT id FROM opex_costs WHERE plant_id=? AND period_date=?", (plant_id, period)
            ).fetchone()
            if existing:
                sets = ", ".join(f"{k}=:{k}" for k in values)
                cur.execute(
                    f"UPDATE opex_costs SET {sets}, updated_at=datetime('now') WHERE id=:id",
                    {**values, "id": existing["id"]},
                )
                updated += 1
            else:
                data = {"plant_id": plant_id, "period_date": period, **values}
                cols = ",".join(data.keys())
                vals = ":" + ",:".join(data.keys())
                cur.execute(f"INSERT INTO opex_costs({cols}) VALUES ({vals})", data)
                inserted += 1
        except sqlite3.Error as e:
            errors.append(f"Fila {line}: {e}")

    logger.info("OPEX CSV processed: %s inserted, %s updated, %s errors", inserted, updated, len(errors))
    return {
        "message": f"Procesados: {inserted} insertados, {updated} actualizados",
        "inserted": inserted,
        "updated": updated,
        "errors": errors,
    }

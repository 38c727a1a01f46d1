"""Keyword heuristics over the numeric values operators type into checklists."""
from typing import Any, Dict, List, Optional

import pandas as pd

CATEGORIES = ["energy", "chemicals", "pressure", "flow", "level", "runtime", "other"]

_ENERGY_WORDS = ("kwh", "kw/h", "kw", "energía", "energia", "eléctric", "electrica", "voltaje", "amperaje", "corriente")
_ENERGY_UNITS = {"kwh", "kw", "w", "v", "a", "amp"}
_CHEMICAL_WORDS = (
    "cloro", "químic", "quimic", "dosificación", "dosificacion", "hipoclorito", "coagulante",
    "floculante", "polímero", "polimero", "sulfato", "cal", "reactivo",
)
_CHEMICAL_UNITS = {"l/h", "ml/min", "kg/día", "kg", "l", "ml", "gal", "ppm"}
_PRESSURE_UNITS = {"psi", "bar", "kpa", "mbar"}
_RUNTIME_UNITS = {"h", "hrs", "horas", "min"}

_EQUIPMENT = [
    (("bomba",), "Bomba"),
    (("soplador", "blower"), "Soplador"),
    (("reactor",), "Reactor"),
    (("clarificador",), "Clarificador"),
    (("filtro",), "Filtro"),
    (("tanque",), "Tanque"),
    (("motor",), "Motor"),
    (("compresor",), "Compresor"),
]


def _has(text: str, words) -> bool:
    return any(w in text for w in words)


def classify_category(description: str, unit: Optional[str]) -> str:
    d = (description or "").lower()
    u = (unit or "").lower()
    if _has(d, _ENERGY_WORDS) or ("consumo" in d and "kwh" in u) or u in _ENERGY_UNITS:
        return "energy"
    if _has(d, _CHEMICAL_WORDS) or u in _CHEMICAL_UNITS:
        return "chemicals"
    if _has(d, ("presión", "presion")) or u in _PRESSURE_UNITS:
        return "pressure"
    if _has(d, ("caudal", "flujo")) or _has(u, ("m³", "l/s", "gpm")):
        return "flow"
    if _has(d, ("nivel", "altura")):
        return "level"
    if _has(d, ("hora", "tiempo", "operación")) or u in _RUNTIME_UNITS:
        return "runtime"
    return "other"


def equipment_type(description: str) -> str:
    d = (description or "").lower()
    for words, label in _EQUIPMENT:
        if _has(d, words):
            return label
    return "General"


def is_water_quality(description: str) -> bool:
    """pH, DQO, SS and friends belong to the lab analytics, not to operations."""
    d = (description or "").lower()
    return (
        _has(d, ("ph", "dqo", "demanda química", "sólidos suspendidos", "solidos suspendidos",
                 "turbidez", "oxígeno disuelto", "oxigeno disuelto"))
        or ("ss" in d and "agua" in d)
        or ("temperatura" in d and "agua" in d)
    )


def infer_parameter(description: str, unit: Optional[str]) -> str:
    d = (description or "").lower()
    u = (unit or "").lower()
    if "ph" in d or "ph" in u:
        return "pH"
    if _has(d, ("dqo", "demanda química")):
        return "DQO"
    if _has(d, ("sólidos", "ss")):
        return "SS"
    if "temperatura" in d or u == "°c":
        return "Temperatura"
    if _has(d, ("oxígeno", "od")):
        return "Oxígeno Disuelto"
    if "caudal" in d or "m³" in u:
        return "Caudal"
    if "presión" in d or u == "bar":
        return "Presión"
    if "nivel" in d and u == "%":
        return "Nivel"
    if "lodo" in d:
        return "Lodos"
    if _has(d, ("kwh", "eléctrico")):
        return "Consumo Eléctrico"
    return "Otro"


def infer_stream(description: str) -> Optional[str]:
    d = (description or "").lower()
    if _has(d, ("entrada", "afluente", "influente")):
        return "influent"
    if _has(d, ("salida", "efluente")):
        return "effluent"
    return None


def analytics_parameter(description: str) -> Optional[str]:
    d = (description or "").lower()
    if "ph" in d:
        return "pH"
    if "dqo" in d:
        return "DQO"
    if _has(d, ("sólidos", "ss")):
        return "SS"
    return None


def fetch_numeric_items(cur, since: Optional[str] = None, plant_id: Optional[int] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    q = """
        SELECT dci.id, dci.checklist_id, dci.item_description,
               COALESCE(dci.category, 'general') AS category,
               dci.numeric_value, dci.unit, dci.observation, dci.checked_at,
               dc.check_date, dc.plant_id, dc.operator_name, p.name AS plant_name
        FROM daily_checklist_items dci
        JOIN daily_checklists dc ON dci.checklist_id = dc.id
        JOIN plants p ON dc.plant_id = p.id
        WHERE dci.numeric_value IS NOT NULL
    """
    params: Dict[str, Any] = {}
    if since:
        q += " AND dc.check_date >= :since"
        params["since"] = since
    if plant_id:
        q += " AND dc.plant_id = :pid"
        params["pid"] = plant_id
    q += " ORDER BY dc.check_date DESC, dci.checked_at DESC"
    if limit:
        q += " LIMIT :limit"
        params["limit"] = limit
    return [dict(r) for r in cur.execute(q, params).fetchall()]


def _daily_chart(df: pd.DataFrame, key: str) -> List[Dict[str, Any]]:
    if df.empty:
        return []
    pivot = df.pivot_table(index="check_date", columns=key, values="numeric_value", aggfunc="mean").sort_index()
    out = []
    for day, row in pivot.iterrows():
        point = {"date": day}
        point.update({k: float(v) for k, v in row.items() if pd.notna(v)})
        out.append(point)
    return out


def operational_report(rows: List[Dict[str, Any]], category: Optional[str] = None) -> Dict[str, Any]:
    """Stats, 2-sigma anomalies and deviations for the non water-quality readings."""
    measurements = []
    for r in rows:
        if is_water_quality(r["item_description"]):
            continue
        measurements.append({
            **r,
            "measurement_category": classify_category(r["item_description"], r.get("unit")),
            "equipment_type": equipment_type(r["item_description"]),
        })

    df = pd.DataFrame(measurements, columns=[
        "id", "item_description", "numeric_value", "unit", "check_date", "plant_id",
        "measurement_category", "equipment_type",
    ])

    stats: Dict[str, Any] = {}
    for cat, cat_df in df.groupby("measurement_category"):
        metrics = {}
        for desc, g in cat_df.groupby("item_description"):
            values = g["numeric_value"].astype(float)
            avg = values.mean()
            std = values.std(ddof=0)
            metrics[desc] = {
                "count": int(len(values)),
                "avg": float(avg),
                "min": float(values.min()),
                "max": float(values.max()),
                "stdDev": float(std),
                "unit": g["unit"].iloc[0],
                "equipment": g["equipment_type"].iloc[0],
                "anomalies": int(((values - avg).abs() > 2 * std).sum()),
            }
        stats[cat] = {
            "totalMeasurements": int(len(cat_df)),
            "uniqueMetrics": len(metrics),
            "metrics": metrics,
        }

    deviations = []
    for m in measurements:
        similar = [
            o["numeric_value"] for o in measurements
            if o["item_description"] == m["item_description"] and o["plant_id"] == m["plant_id"] and o["id"] != m["id"]
        ]
        if len(similar) < 3:
            continue
        s = pd.Series(similar, dtype=float)
        avg, std = s.mean(), s.std(ddof=0)
        diff = abs(m["numeric_value"] - avg)
        if std > 0 and diff > 2 * std:
            deviations.append({
                **m,
                "expected_avg": float(avg),
                "expected_stdDev": float(std),
                "deviation_percent": round((m["numeric_value"] - avg) / avg * 100, 1) if avg else None,
                "severity": "critical" if diff > 3 * std else "warning",
            })

    by_category = {c: [m for m in measurements if m["measurement_category"] == c] for c in CATEGORIES}
    filtered = measurements if not category or category == "all" else by_category.get(category, [])
    return {
        "measurements": filtered,
        "totalCount": len(filtered),
        "categories": [c for c in CATEGORIES if by_category[c]],
        "byCategory": by_category,
        "stats": stats,
        "deviations": deviations[:20],
        "chartData": _daily_chart(df, "measurement_category"),
        "summary": {
            "totalMeasurements": len(measurements),
            "totalDeviations": len(deviations),
            "criticalDeviations": sum(1 for d in deviations if d["severity"] == "critical"),
            "categoryCounts": {c: len(by_category[c]) for c in CATEGORIES},
        },
    }


def parameter_report(rows: List[Dict[str, Any]], parameter: Optional[str] = None) -> Dict[str, Any]:
    measurements = [
        {**r, "parameter_type": infer_parameter(r["item_description"], r.get("unit")), "stream": infer_stream(r["item_description"])}
        for r in rows
    ]
    if parameter:
        p = parameter.lower()
        measurements = [m for m in measurements if p in m["parameter_type"].lower() or m["parameter_type"].lower() in p]

    by_parameter: Dict[str, List[Dict[str, Any]]] = {}
    for m in measurements:
        by_parameter.setdefault(m["parameter_type"], []).append(m)

    df = pd.DataFrame(measurements, columns=["parameter_type", "numeric_value", "check_date", "unit"])
    stats = {}
    for ptype, g in df.groupby("parameter_type"):
        values = g["numeric_value"].astype(float)
        stats[ptype] = {
            "count": int(len(values)),
            "avg": float(values.mean()),
            "min": float(values.min()),
            "max": float(values.max()),
            "unit": g["unit"].iloc[0] or "",
        }
    return {
        "measurements": measurements,
        "byParameter": by_parameter,
        "stats": stats,
        "chartData": _daily_chart(df, "parameter_type"),
        "parameterTypes": list(by_parameter.keys()),
    }


def to_analytics(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    out = []
    for r in sorted(rows, key=lambda x: (x["check_date"], x["plant_name"])):
        ptype = analytics_parameter(r["item_description"])
        if ptype is None:
            continue
        out.append({
            "plant_id": r["plant_id"],
            "plant_name": r["plant_name"],
            "parameter_type": ptype,
            "measurement_date": r["check_date"],
            "value": r["numeric_value"],
            "unit": r.get("unit") or ("pH" if ptype == "pH" else "mg/L"),
            "stream": infer_stream(r["item_description"]),
            "source": "checklist_mobile",
        })
    return out

from datetime import datetime

import pytest

from ptar import measurements
from ptar.importer import normalize_measurement_date, normalize_parameter
from ptar.notifications import evaluate_reading
from ptar.scheduler import cron_matches
from ptar.template_sync import group_items, parse_csv_content


@pytest.mark.parametrize(
    "description, unit, expected",
    [
        ("Consumo energía soplador", "kWh", "energy"),
        ("Dosificación de cloro", "L/h", "chemicals"),
        ("Presión de descarga", "psi", "pressure"),
        ("Caudal de entrada", "m³/h", "flow"),
        ("Nivel del tanque", "%", "level"),
        ("Horas de operación", "h", "runtime"),
        ("Observación", None, "other"),
    ],
)
def test_classify_category(description, unit, expected):
    assert measurements.classify_category(description, unit) == expected


def test_equipment_type():
    assert measurements.equipment_type("Bomba sumergible 2") == "Bomba"
    assert measurements.equipment_type("Blower principal") == "Soplador"
    assert measurements.equipment_type("Rejilla") == "General"


def test_water_quality_and_parameters():
    assert measurements.is_water_quality("pH de salida")
    assert measurements.is_water_quality("Temperatura del agua")
    assert not measurements.is_water_quality("Presión bomba")

    assert measurements.infer_parameter("DQO entrada", "mg/L") == "DQO"
    assert measurements.infer_parameter("Sólidos suspendidos", "mg/L") == "SS"
    assert measurements.infer_parameter("Temperatura reactor", "°C") == "Temperatura"
    assert measurements.infer_parameter("Lectura tablero", "V") == "Otro"

    assert measurements.infer_stream("DQO entrada") == "influent"
    assert measurements.infer_stream("pH efluente") == "effluent"
    assert measurements.infer_stream("pH reactor") is None

    assert measurements.analytics_parameter("Presión") is None


def test_to_analytics_skips_operational_values():
    rows = [
        {"plant_id": 1, "plant_name": "LA LUZ", "check_date": "2026-01-02", "item_description": "DQO salida", "numeric_value": 90.0, "unit": None},
        {"plant_id": 1, "plant_name": "LA LUZ", "check_date": "2026-01-01", "item_description": "Presión bomba", "numeric_value": 2.0, "unit": "bar"},
    ]
    out = measurements.to_analytics(rows)
    assert out == [{
        "plant_id": 1,
        "plant_name": "LA LUZ",
        "parameter_type": "DQO",
        "measurement_date": "2026-01-02",
        "value": 90.0,
        "unit": "mg/L",
        "stream": "effluent",
        "source": "checklist_mobile",
    }]


def test_evaluate_reading_levels():
    assert evaluate_reading("DQO", 150) is None
    assert evaluate_reading("DQO", 210)["alert_type"] == "warning"
    assert evaluate_reading("DQO", 230)["alert_type"] == "critical"
    assert evaluate_reading("pH", 5.5)["alert_type"] == "warning"
    assert evaluate_reading("pH", 5.0)["alert_type"] == "critical"
    assert evaluate_reading("pH", 9.0)["threshold_max"] == 8.0
    assert evaluate_reading("Temperatura", 99) is None


def test_cron_matches():
    assert cron_matches("0 */4 * * *", datetime(2026, 1, 1, 8, 0))
    assert not cron_matches("0 */4 * * *", datetime(2026, 1, 1, 9, 0))
    assert not cron_matches("0 8 * * *", datetime(2026, 1, 1, 8, 1))
    assert cron_matches("*/15,7 * * * *", datetime(2026, 1, 1, 3, 7))
    assert cron_matches("*/15,7 * * * *", datetime(2026, 1, 1, 3, 45))


def test_csv_value_normalizers():
    assert normalize_measurement_date("5/3/2026") == "2026-03-05T12:00:00.000Z"
    assert normalize_measurement_date("2026-03-05") == "2026-03-05T12:00:00.000Z"
    assert normalize_measurement_date("05-03-2026") is None
    assert normalize_measurement_date("2025-02-31") is None
    assert normalize_measurement_date("31/2/2025") is None
    assert normalize_measurement_date("2025-13-01T08:00:00Z") is None
    assert normalize_measurement_date("29/2/2024") == "2024-02-29T12:00:00.000Z"
    assert normalize_parameter(" ph ") == "pH"
    assert normalize_parameter("dqo") == "DQO"
    assert normalize_parameter("DBO") is None


def test_parse_workbook_rows():
    content = (
        "TITULO,,\n"
        "SUBTITULO,,\n"
        "CLARIFICADOR,,\n"
        "Vertedero,SI,NO\n"
        ",Limpiar vertedero,Nivel de lodos (cm)\n"
        ",Temperatura 30 °C,ok\n"
        ",Abrir compuerta,\n"
    )
    items = parse_csv_content(content)
    assert [i["activity"] for i in items] == ["Limpiar vertedero", "Nivel de lodos", "Temperatura 30 °C", "Abrir compuerta"]
    assert all(i["section"] == "CLARIFICADOR" and i["element"] == "Vertedero" for i in items)
    # hints are plain substrings, so any "l" marks a value field
    assert [i["requires_value"] for i in items] == [True, True, True, False]
    assert [i["value_unit"] for i in items] == [None, "cm", None, None]
    assert group_items(items) == {
        "CLARIFICADOR": {"Vertedero": ["Limpiar vertedero", "Nivel de lodos", "Temperatura 30 °C", "Abrir compuerta"]}
    }


def test_parse_empty_content():
    assert parse_csv_content("") == []


def test_value_hints_match_inside_words():
    items = parse_csv_content("T,,\nS,,\nTANQUE,,\nTanque 1,SI,NO\n,Revisar nivel del tanque,Medir caudal\n")
    assert [(i["activity"], i["requires_value"]) for i in items] == [
        ("Revisar nivel del tanque", True),
        ("Medir caudal", True),
    ]

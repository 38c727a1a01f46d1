"""Checklist templates imported from the operators' Excel workbooks.

Workbooks are converted to CSV with the LibreOffice command line and then
parsed row by row into section / element / activity items.
"""
import io
import logging
import re
import subprocess
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List

import pandas as pd

from .config import settings

logger = logging.getLogger(__name__)

CONVERSION_ERROR = "Error al convertir archivo Excel. Asegúrese de que LibreOffice esté instalado."
EXCEL_EXTENSIONS = {".xls", ".xlsx", ".xlsb", ".xlsm", ".ods", ".csv"}

UNIT_SUFFIX_RE = re.compile(r"\(([^()]*)\)\s*$")
VALUE_HINT_RE = re.compile(r"\d|kg|m³|ph|mg|l|ppm|°c|bar", re.IGNORECASE)


def convert_excel_to_csv(path: Path) -> str:
    """Return the first sheet of `path` as CSV text. CSV files are read as-is."""
    path = Path(path)
    if path.suffix.lower() == ".csv":
        return path.read_text(encoding="utf-8", errors="replace")

    cmd = [settings.libreoffice_bin, "--headless", "--convert-to", "csv", "--outdir", str(path.parent), str(path)]
    try:
        subprocess.run(
            cmd,
            check=True,
            capture_output=True,
            timeout=settings.libreoffice_timeout_seconds,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.error("LibreOffice conversion failed for %s: %s", path.name, e)
        raise ValueError(CONVERSION_ERROR)

    csv_path = path.with_suffix(".csv")
    if not csv_path.exists():
        logger.error("LibreOffice produced no CSV for %s", path.name)
        raise ValueError(CONVERSION_ERROR)
    try:
        return csv_path.read_text(encoding="utf-8", errors="replace")
    finally:
        csv_path.unlink(missing_ok=True)


def _rows(csv_content: str) -> List[List[str]]:
    lines = [line for line in csv_content.splitlines() if line.strip()]
    if not lines:
        return []
    width = max(line.count(",") for line in lines) + 1
    df = pd.read_csv(
        io.StringIO("\n".join(lines)),
        header=None,
        names=list(range(width)),
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
        engine="python",
    )
    return [[str(c).strip() for c in row] for row in df.itertuples(index=False, name=None)]


def _is_header_cell(cell: str) -> bool:
    low = cell.lower()
    return "check" in low or "elemento" in low


def _activity(section: str, element: str, text: str) -> Dict[str, Any]:
    m = UNIT_SUFFIX_RE.search(text)
    if m:
        return {
            "section": section,
            "element": element or "General",
            "activity": text[: m.start()].strip(),
            "requires_value": True,
            "value_unit": m.group(1).strip() or None,
        }
    return {
        "section": section,
        "element": element or "General",
        "activity": text.strip(),
        "requires_value": bool(VALUE_HINT_RE.search(text)),
        "value_unit": None,
    }


def parse_csv_content(csv_content: str) -> List[Dict[str, Any]]:
    """Turn the workbook layout into template items.

    The first two rows are titles. A row holding only its first cell opens a
    section; a first-column label without long text beside it opens an
    element; every other cell longer than three characters is an activity.
    """
    items: List[Dict[str, Any]] = []
    section = "General"
    element = "General"

    for i, cols in enumerate(_rows(csv_content)):
        if i < 2 or all(not c or _is_header_cell(c) for c in cols):
            continue
        first = cols[0]
        second = cols[1] if len(cols) > 1 else ""
        third = cols[2] if len(cols) > 2 else ""

        if first and not second and not third:
            section = first
            continue

        if first and len(first) > 2:
            has_activities = any(c and len(c) > 5 for c in cols[1:])
            if not has_activities and len(first) < 100:
                element = first
                continue

        for cell in cols:
            if cell and len(cell) > 3 and not _is_header_cell(cell):
                items.append(_activity(section, element, cell))
    return items


def group_items(items: List[Dict[str, Any]]) -> Dict[str, Dict[str, List[str]]]:
    grouped: Dict[str, Dict[str, List[str]]] = OrderedDict()
    for item in items:
        grouped.setdefault(item["section"], OrderedDict()).setdefault(item["element"], []).append(item["activity"])
    return grouped


def unique_in_order(values) -> List[str]:
    return list(OrderedDict.fromkeys(values))

from __future__ import annotations

import math
from typing import Any, Dict, List

from .measure import MeasurementResult

COLUMNS = ["Dev Server Ready", "First Paint", "App Loaded", "Reload after change"]


def format_ms(value: float) -> str:
    """Whole milliseconds, rounded half-up, with thousands separators: 1,200 ms."""
    return f"{math.floor(value + 0.5):,} ms"


def simple_table(rows: List[Dict[str, Any]], columns: List[str]) -> str:
    header = "| " + " | ".join(columns) + " |\n"
    divider = "|" + "|".join([" --- " for _ in columns]) + "|\n"
    body = ""
    for row in rows:
        body += "| " + " | ".join(str(row.get(col, "")) for col in columns) + " |\n"
    return header + divider + body


def format_results(result: MeasurementResult) -> str:
    row = {
        "Dev Server Ready": format_ms(result.at_server_up - result.at_start),
        "First Paint": format_ms(result.at_first_paint - result.at_start),
        "App Loaded": format_ms(result.at_app_load - result.at_start),
    }
    columns = COLUMNS[:3]
    if result.reload_measured:
        row["Reload after change"] = format_ms(result.at_reload_complete - result.at_file_changed)
        columns = COLUMNS
    return simple_table([row], columns)


def render_summary(result: MeasurementResult) -> str:
    return (
        "\nMeasurement completed successfully!\n\n"
        "# Performance Results\n\n"
        f"{format_results(result)}\n"
    )

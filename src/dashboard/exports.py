from __future__ import annotations

import io
import logging
import time
from datetime import datetime, timezone
from typing import Any

import pandas as pd
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from vinhistory.data_models import Report
from vinhistory.instant_reports import accident_lines, ownership_lines, service_lines

logger = logging.getLogger(__name__)

CSV_FIELDS: tuple[tuple[str, str], ...] = (
    ("VIN", "vin"),
    ("Year", "year"),
    ("Make", "make"),
    ("Model", "model"),
    ("Trim", "trim"),
    ("Mileage", "mileage"),
    ("Price", "price"),
    ("Color", "color"),
    ("Engine Type", "engine_type"),
    ("Transmission", "transmission"),
    ("Accident Count", "accident_count"),
    ("Owner Count", "owner_count"),
    ("Service Record Count", "service_record_count"),
)


def _cell(val: Any) -> str:
    return "" if val is None else str(val)


def report_csv(report: Report) -> str:
    rows = [(label, _cell(getattr(report, attr))) for label, attr in CSV_FIELDS]
    frame = pd.DataFrame(rows, columns=["Field", "Value"])
    return frame.to_csv(index=False, lineterminator="\n")


def reports_csv(reports: list[Report]) -> str:
    """One row per report, one column per exported field."""
    frame = pd.DataFrame(
        [{label: _cell(getattr(r, attr)) for label, attr in CSV_FIELDS} for r in reports],
        columns=[label for label, _ in CSV_FIELDS],
    )
    return frame.to_csv(index=False, lineterminator="\n")


def csv_filename(vin: str) -> str:
    return f"carfax_{vin}_{int(time.time() * 1000)}.csv"


def pdf_filename(vin: str) -> str:
    return f"carfax-report-{vin}.pdf"


def report_pdf(report: Report, generated_at: datetime | None = None) -> bytes:
    generated_at = generated_at or datetime.now(timezone.utc)
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=letter)
    width, height = letter
    margin = 40
    y = height - margin

    def draw(text: str, size: int = 12, bold: bool = False, color: tuple[float, float, float] = (0, 0, 0)) -> None:
        nonlocal y
        if y < margin + size:
            c.showPage()
            y = height - margin
        c.setFillColorRGB(*color)
        c.setFont("Helvetica-Bold" if bold else "Helvetica", size)
        c.drawString(margin, y, text)
        y -= size + 4

    def section(title: str) -> None:
        nonlocal y
        y -= 10
        draw(title, 14, bold=True)
        y -= 5

    draw("CARFAX VEHICLE HISTORY REPORT", 16, bold=True, color=(37 / 255, 99 / 255, 235 / 255))
    y -= 10
    draw(f"VIN: {report.vin}", bold=True)

    section("VEHICLE INFORMATION")
    draw(f"Year: {_cell(report.year)} | Make: {_cell(report.make)} | Model: {_cell(report.model)}")
    draw(f"Trim: {_cell(report.trim)} | Color: {_cell(report.color)}")
    draw(f"Engine: {_cell(report.engine_type)}")
    draw(f"Transmission: {_cell(report.transmission)}")
    if report.mileage is not None:
        draw(f"Mileage: {report.mileage:,} miles")
    if report.price is not None:
        draw(f"Estimated Value: ${report.price:,}")

    section("VEHICLE STATUS")
    draw(f"Title Status: {report.title_info.get('status', 'Unknown')}")
    draw(f"Owners: {report.owner_count}")
    draw(f"Accidents: {report.accident_count}")

    section("SERVICE HISTORY")
    for line in service_lines(report):
        draw(line)

    section("ACCIDENT HISTORY")
    if report.accident_history:
        for line in accident_lines(report):
            draw(line)
    else:
        draw("No accidents reported", color=(34 / 255, 197 / 255, 94 / 255))

    section("OWNERSHIP HISTORY")
    for line in ownership_lines(report):
        draw(line)

    c.setFillColorRGB(128 / 255, 128 / 255, 128 / 255)
    c.setFont("Helvetica", 10)
    c.drawString(margin, 44, f"Report Generated: {generated_at.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}")
    c.drawString(margin, 30, "Vehicle history report export")

    c.showPage()
    c.save()
    pdf = buffer.getvalue()
    logger.debug("Rendered PDF for %s (%d bytes)", report.vin, len(pdf))
    return pdf

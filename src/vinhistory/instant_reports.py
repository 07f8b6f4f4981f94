from __future__ import annotations

from datetime import datetime, timezone

from vinhistory.data_models import Report


_INSTANT_REPORTS: dict[str, Report] = {
    "SBM26ACA7MW815131": Report(
        vin="SBM26ACA7MW815131",
        year=2022,
        make="BMW",
        model="3 Series",
        trim="330i",
        color="Alpine White",
        engine_type="2.0L Turbocharged 4-Cylinder",
        transmission="Automatic 8-Speed",
        mileage=28450,
        price=35900,
        accident_count=0,
        owner_count=1,
        service_record_count=3,
        accident_history=[],
        service_history=[
            {"date": "2024-01-15", "type": "Oil Change", "mileage": 25000},
            {"date": "2023-08-20", "type": "Tire Rotation", "mileage": 20000},
            {"date": "2023-03-10", "type": "Air Filter Replacement", "mileage": 15000},
        ],
        ownership_history=[
            {"period": "2022-Present", "type": "Personal", "location": "California"},
        ],
        title_info={"status": "Clean", "type": "Sedan"},
        additional_data={
            "fuelType": "Gasoline",
            "driveType": "RWD",
            "bodyType": "Sedan",
            "doors": 4,
            "mpg": "26 city / 35 highway",
        },
    ),
    "3KPF24AD6KE105424": Report(
        vin="3KPF24AD6KE105424",
        year=2014,
        make="Hyundai",
        model="Santa Fe",
        trim="GLS",
        color="Silver",
        engine_type="2.0L 4-Cylinder",
        transmission="Automatic",
        mileage=145230,
        price=12995,
        accident_count=1,
        owner_count=2,
        service_record_count=8,
        accident_history=[
            {
                "date": "2019-03-15",
                "type": "Minor Accident",
                "severity": "Minor",
                "description": "Side impact, minor damage to door",
            },
        ],
        service_history=[
            {"date": "2023-01-10", "type": "Oil Change", "mileage": 140000},
            {"date": "2022-06-15", "type": "Tire Rotation", "mileage": 135000},
            {"date": "2022-01-20", "type": "Brake Service", "mileage": 130000},
        ],
        ownership_history=[
            {"period": "2014-2018", "type": "Personal", "location": "California"},
            {"period": "2018-Present", "type": "Personal", "location": "Texas"},
        ],
        title_info={"status": "Clean", "type": "SUV"},
        additional_data={"fuelType": "Gasoline", "driveType": "AWD", "bodyType": "SUV", "doors": 4},
    ),
    "2T1BURHE6KC161298": Report(
        vin="2T1BURHE6KC161298",
        year=2019,
        make="Toyota",
        model="Corolla",
        trim="LE",
        color="Black",
        engine_type="1.8L 4-Cylinder",
        transmission="Automatic CVT",
        mileage=67890,
        price=18500,
        accident_count=0,
        owner_count=1,
        service_record_count=5,
        accident_history=[],
        service_history=[
            {"date": "2023-11-05", "type": "Oil Change", "mileage": 65000},
            {"date": "2023-05-20", "type": "Tire Rotation", "mileage": 60000},
        ],
        ownership_history=[
            {"period": "2019-Present", "type": "Personal", "location": "Florida"},
        ],
        title_info={"status": "Clean", "type": "Sedan"},
        additional_data={"fuelType": "Gasoline", "driveType": "FWD", "bodyType": "Sedan", "doors": 4},
    ),
}

_RULE = "─" * 59
_DOUBLE_RULE = "═" * 59


def known_instant_vins() -> list[str]:
    return sorted(_INSTANT_REPORTS)


def get_instant_report(vin: str) -> Report | None:
    return _INSTANT_REPORTS.get(vin.upper())


def _miles(val: int | None) -> str:
    return f"{val:,}" if val is not None else "n/a"


def service_lines(report: Report) -> list[str]:
    return [
        f"• {s.get('date', '')}: {s.get('type', '')} ({_miles(s.get('mileage'))} miles)"
        for s in report.service_history
    ]


def accident_lines(report: Report) -> list[str]:
    if not report.accident_history:
        return ["No accidents reported"]
    return [
        f"• {a.get('date', '')}: {a.get('type', '')} - {a.get('description') or 'No details'}"
        for a in report.accident_history
    ]


def ownership_lines(report: Report) -> list[str]:
    return [
        f"{o.get('period', '')}: {o.get('type', '')} - {o.get('location', '')}"
        for o in report.ownership_history
    ]


def format_report_text(report: Report, generated_at: datetime | None = None) -> str:
    generated_at = generated_at or datetime.now(timezone.utc)
    price = f"${report.price:,}" if report.price is not None else "n/a"
    lines = [
        "CARFAX VEHICLE HISTORY REPORT",
        _DOUBLE_RULE,
        "",
        f"VIN: {report.vin}",
        "",
        "VEHICLE INFORMATION",
        _RULE,
        f"Year:           {report.year or ''}",
        f"Make:           {report.make or ''}",
        f"Model:          {report.model or ''}",
        f"Trim:           {report.trim or ''}",
        f"Color:          {report.color or ''}",
        f"Engine:         {report.engine_type or ''}",
        f"Transmission:   {report.transmission or ''}",
        f"Mileage:        {_miles(report.mileage)} miles",
        f"Estimated Value: {price}",
        "",
        "VEHICLE STATUS",
        _RULE,
        f"Title Status:   {report.title_info.get('status', 'Unknown')}",
        f"Owners:         {report.owner_count}",
        f"Accidents:      {report.accident_count}",
        "",
        "SERVICE HISTORY",
        _RULE,
        *service_lines(report),
        "",
        "ACCIDENT HISTORY",
        _RULE,
        *accident_lines(report),
        "",
        "OWNERSHIP HISTORY",
        _RULE,
        *ownership_lines(report),
        "",
        _DOUBLE_RULE,
        f"Report Generated: {generated_at.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}",
        "This is an instant Carfax report generated for demonstration purposes.",
    ]
    return "\n".join(lines) + "\n"

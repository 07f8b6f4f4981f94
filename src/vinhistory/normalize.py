"""Validated parsing of remote payloads into typed domain values.

The scraping actor has shipped more than one output shape over time, and the
workflow-engine webhook sends histories as JSON strings. Everything funnels
through here so that both completion paths produce identical reports.
"""

from __future__ import annotations

import json
import math
from datetime import datetime
from typing import Any

from vinhistory.data_models import Report, ResultItem, Run
from vinhistory.errors import RemotePayloadError

_RUN_STATUS_MAP = {
    "READY": "ready",
    "RUNNING": "running",
    "TIMING-OUT": "running",
    "TIMING_OUT": "running",
    "ABORTING": "running",
    "SUCCEEDED": "succeeded",
    "FAILED": "failed",
    "TIMED-OUT": "timed_out",
    "TIMED_OUT": "timed_out",
    "ABORTED": "aborted",
}

_ADDITIONAL_KEYS = ("bodyType", "fuelType", "driveType", "doors", "mpg", "mileageHistory")

# report counters and figures are stored in 32-bit integer columns
_INT_MAX = 2**31 - 1


def unwrap_envelope(payload: Any) -> Any:
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


def parse_run(payload: Any) -> Run:
    data = unwrap_envelope(payload)
    if not isinstance(data, dict):
        raise RemotePayloadError("Run payload is not an object")
    run_id = data.get("id")
    if not run_id:
        raise RemotePayloadError("Run payload has no id")
    raw_status = str(data.get("status") or "").upper()
    status = _RUN_STATUS_MAP.get(raw_status)
    if status is None:
        raise RemotePayloadError(f"Unknown run status: {data.get('status')!r}")
    stats = data.get("stats") or {}
    return Run(
        id=str(run_id),
        status=status,
        started_at=_parse_datetime(data.get("startedAt")),
        finished_at=_parse_datetime(data.get("finishedAt")),
        input_count=_safe_int(stats.get("inputCount")) or 0,
        output_count=_safe_int(stats.get("outputCount")) or 0,
        default_dataset_id=data.get("defaultDatasetId"),
    )


def parse_result_items(payload: Any) -> list[ResultItem]:
    data = unwrap_envelope(payload)
    if isinstance(data, dict) and "items" in data:
        data = data["items"]
    if data is None:
        return []
    if not isinstance(data, list):
        raise RemotePayloadError("Dataset payload is not a list")

    items: list[ResultItem] = []
    for raw in data:
        if not isinstance(raw, dict):
            raise RemotePayloadError("Dataset item is not an object")
        if "success" in raw:
            body = raw.get("data")
            items.append(ResultItem(
                vin=str(raw.get("vin") or ""),
                success=bool(raw.get("success")),
                data=body if isinstance(body, dict) else None,
                error=raw.get("error"),
                timestamp=_parse_datetime(raw.get("timestamp")),
            ))
        else:
            # bare report object, as emitted by the older actor
            items.append(ResultItem(
                vin=str(raw.get("vin") or ""),
                success=True,
                data=raw,
                timestamp=_parse_datetime(raw.get("scrapedAt")),
            ))
    return items


def parse_report(vin: str, payload: Any) -> Report:
    """Build a Report for ``vin`` from a loosely-typed scrape payload.

    Unknown keys are ignored, missing descriptors become None, counts become 0
    and history collections become empty lists. The submission VIN always
    wins over whatever VIN the payload claims.
    """
    if not isinstance(payload, dict):
        raise RemotePayloadError("Report payload is not an object")

    accident_history = _history(_first(payload, "accidentHistory", "accidents"))
    service_history = _history(_first(payload, "serviceHistory", "serviceRecords"))
    ownership_history = _history(payload.get("ownershipHistory"))

    accident_count = _safe_int(payload.get("accidentCount"))
    if accident_count is None:
        accident_count = _safe_int(payload.get("accidents"))
    if accident_count is None:
        accident_count = len(accident_history)
    owner_count = _safe_int(_first(payload, "ownerCount", "owners"))
    service_count = _safe_int(payload.get("serviceRecordCount"))
    if service_count is None:
        service_count = len(service_history)

    title_info = _blob(payload.get("titleInfo"))
    if not title_info and payload.get("titleStatus"):
        title_info = {"status": payload["titleStatus"]}

    additional = _blob(payload.get("additionalData"))
    for key in _ADDITIONAL_KEYS:
        if key in payload and key not in additional:
            additional[key] = payload[key]

    return Report(
        vin=vin,
        year=_safe_int(payload.get("year")),
        make=_safe_str(payload.get("make")),
        model=_safe_str(payload.get("model")),
        trim=_safe_str(payload.get("trim")),
        color=_safe_str(payload.get("color")),
        engine_type=_safe_str(_first(payload, "engineType", "engine")),
        transmission=_safe_str(payload.get("transmission")),
        mileage=_safe_int(payload.get("mileage")),
        price=_safe_int(payload.get("price")),
        accident_count=accident_count or 0,
        owner_count=owner_count or 0,
        service_record_count=service_count,
        accident_history=accident_history,
        service_history=service_history,
        ownership_history=ownership_history,
        title_info=title_info,
        additional_data=additional,
    )


def _first(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def _decode_json(val: Any) -> Any:
    if isinstance(val, str):
        try:
            return json.loads(val)
        except ValueError:
            return None
    return val


def _history(val: Any) -> list[dict[str, Any]]:
    decoded = _decode_json(val)
    if not isinstance(decoded, list):
        return []
    return [entry for entry in decoded if isinstance(entry, dict)]


def _blob(val: Any) -> dict[str, Any]:
    decoded = _decode_json(val)
    return dict(decoded) if isinstance(decoded, dict) else {}


def _safe_int(val: Any) -> int | None:
    if val is None or isinstance(val, bool):
        return None
    try:
        num = float(val)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(num) or abs(num) > _INT_MAX:
        return None
    return int(num)


def _safe_str(val: Any) -> str | None:
    if val is None:
        return None
    text = str(val).strip()
    return text or None


def _parse_datetime(val: Any) -> datetime | None:
    if not val or not isinstance(val, str):
        return None
    try:
        return datetime.fromisoformat(val.replace("Z", "+00:00"))
    except ValueError:
        return None

from datetime import datetime, timedelta, timezone

import pytest

from conftest import BAD_DSN
from dashboard.storage import PostgresStore, report_from_row
from vinhistory.data_models import Report

VIN = "3KPF24AD6KE105424"


@pytest.mark.asyncio
async def test_connect_falls_back_to_memory():
    store = PostgresStore(BAD_DSN)
    await store.connect()
    assert store.engine is None
    assert await store.ping() is False
    sub = await store.create_submission(1, VIN)
    assert (await store.get_submission(sub["id"]))["status"] == "pending"
    await store.close()


@pytest.mark.asyncio
async def test_guarded_transition(store):
    sub = await store.create_submission(1, VIN)

    assert await store.transition_submission(sub["id"], "processing", ("pending",)) is True
    assert await store.transition_submission(sub["id"], "processing", ("pending",)) is False
    assert await store.transition_submission(sub["id"], "failed", ("processing",), error_message="boom") is True
    assert await store.transition_submission(sub["id"], "completed", ("processing",)) is False
    assert await store.transition_submission("missing", "failed", ("pending",)) is False

    row = await store.get_submission(sub["id"])
    assert row["status"] == "failed"
    assert row["error_message"] == "boom"
    assert row["completed_at"] is not None


@pytest.mark.asyncio
async def test_complete_submission_writes_report_only_when_applied(store):
    sub = await store.create_submission(1, VIN)
    report = Report(vin=VIN, make="Hyundai", accident_count=1)

    assert await store.complete_submission(sub["id"], report, from_statuses=("processing",)) is False
    assert await store.get_report_by_submission(sub["id"]) is None

    assert await store.complete_submission(sub["id"], report, from_statuses=("pending", "processing")) is True
    assert await store.complete_submission(sub["id"], report, from_statuses=("pending", "processing")) is False
    assert len(store._mem_reports) == 1
    assert (await store.get_submission(sub["id"]))["status"] == "completed"


@pytest.mark.asyncio
async def test_report_lookup_by_vin_returns_latest(store):
    first = await store.create_submission(1, VIN)
    second = await store.create_submission(1, VIN)
    await store.create_report(first["id"], Report(vin=VIN, mileage=1000))
    await store.create_report(second["id"], Report(vin=VIN, mileage=2000))
    store._mem_reports[0]["scraped_at"] -= timedelta(minutes=5)

    latest = await store.get_report_by_vin(VIN)
    assert latest["mileage"] == 2000
    assert latest["submission_id"] == second["id"]
    assert await store.get_report_by_vin("2T1BURHE6KC161298") is None


@pytest.mark.asyncio
async def test_report_lookup_by_vin_scoped_to_user(store):
    mine = await store.create_submission(1, VIN)
    theirs = await store.create_submission(2, VIN)
    await store.create_report(mine["id"], Report(vin=VIN, mileage=1000))
    await store.create_report(theirs["id"], Report(vin=VIN, mileage=2000))
    store._mem_reports[0]["scraped_at"] -= timedelta(minutes=5)

    assert (await store.get_report_by_vin(VIN))["submission_id"] == theirs["id"]
    assert (await store.get_report_by_vin(VIN, user_id=1))["submission_id"] == mine["id"]
    assert await store.get_report_by_vin(VIN, user_id=3) is None


@pytest.mark.asyncio
async def test_reports_scoped_by_user(store):
    mine = await store.create_submission(1, VIN)
    theirs = await store.create_submission(2, VIN)
    await store.create_report(mine["id"], Report(vin=VIN))
    await store.create_report(theirs["id"], Report(vin=VIN))

    rows = await store.list_reports_by_user(1)
    assert [r["submission_id"] for r in rows] == [mine["id"]]


@pytest.mark.asyncio
async def test_pending_queue_oldest_first_with_limit(store):
    ids = [(await store.create_submission(1, VIN))["id"] for _ in range(3)]
    for offset, sid in enumerate(ids):
        store._mem_submissions[sid]["submitted_at"] = datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=offset)
    await store.update_submission_status(ids[0], "processing")

    pending = await store.list_pending_submissions(limit=1)
    assert [p["id"] for p in pending] == [ids[1]]


@pytest.mark.asyncio
async def test_report_row_round_trip(store):
    sub = await store.create_submission(1, VIN)
    original = Report(
        vin=VIN,
        year=2014,
        make="Hyundai",
        accident_count=1,
        accident_history=[{"date": "2019-03-15"}],
        title_info={"status": "Clean"},
    )
    await store.create_report(sub["id"], original)
    restored = report_from_row(await store.get_report_by_submission(sub["id"]))
    assert restored == original


@pytest.mark.asyncio
async def test_admin_settings(store):
    assert await store.get_setting("maintenance_mode") is None
    await store.set_setting("maintenance_mode", "on")
    await store.set_setting("maintenance_mode", "off")
    await store.set_setting("apify_actor", "user~carfax")
    assert await store.get_setting("maintenance_mode") == "off"
    assert [s["setting_key"] for s in await store.list_settings()] == ["apify_actor", "maintenance_mode"]

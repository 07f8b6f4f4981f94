import io

import pandas as pd
from fastapi.testclient import TestClient

from conftest import BAD_DSN, FakeApify
from dashboard.api import create_app

VIN = "3KPF24AD6KE105424"
USER = {"X-User-Id": "7"}
OTHER_USER = {"X-User-Id": "8"}


def _items(accident_count: int = 1) -> list[dict]:
    return [{"vin": VIN, "success": True, "data": {"make": "Hyundai", "model": "Santa Fe", "accidentCount": accident_count}}]


def _make_app(monkeypatch, fake: FakeApify | None = None, **env):
    monkeypatch.setenv("POSTGRES_DSN", BAD_DSN)
    monkeypatch.setenv("AUTO_PROCESS_SUBMISSIONS", "true" if fake else "false")
    monkeypatch.setenv("RATE_LIMIT_RPM", "0")
    monkeypatch.setenv("LOG_FORMAT", "text")
    monkeypatch.setenv("API_KEYS", "")
    monkeypatch.setenv("PENDING_DRAIN_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("APIFY_API_KEY", "")
    monkeypatch.setenv("APIFY_ACTOR_ID", "")
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    app = create_app()
    if fake is not None:
        app.state.orchestrator.run_client = fake.client()
    return app


def test_health_and_readiness_in_fallback(monkeypatch):
    app = _make_app(monkeypatch)
    with TestClient(app) as client:
        assert client.get("/health").json() == {"status": "ok"}
        resp = client.get("/ready")
        assert resp.status_code == 503
        assert resp.json()["detail"]["checks"]["postgres"] is False


def test_submit_vin_end_to_end(monkeypatch):
    fake = FakeApify(statuses=["RUNNING", "SUCCEEDED"], items=_items(accident_count=2))
    app = _make_app(monkeypatch, fake)
    with TestClient(app) as client:
        resp = client.post("/submissions", json={"vin": " 3kpf24ad6ke105424 "}, headers=USER)
        assert resp.status_code == 201
        submission_id = resp.json()["submission_id"]

        sub = client.get(f"/submissions/{submission_id}", headers=USER).json()
        assert sub["vin"] == VIN
        assert sub["status"] == "completed"
        assert sub["completed_at"] is not None

        report = client.get(f"/submissions/{submission_id}/report", headers=USER).json()
        assert report["accident_count"] == 2
        assert report["make"] == "Hyundai"

        listed = client.get("/reports", headers=USER).json()
        assert listed["count"] == 1
        by_vin = client.get(f"/reports/by-vin/{VIN.lower()}", headers=USER)
        assert by_vin.status_code == 200

        metrics = client.get("/metrics/prometheus")
        assert "vinhistory_submissions_completed 1" in metrics.text


def test_invalid_vin_rejected_at_intake(monkeypatch):
    app = _make_app(monkeypatch)
    with TestClient(app) as client:
        resp = client.post("/submissions", json={"vin": "TOOSHORT"}, headers=USER)
        assert resp.status_code == 422
        assert resp.json() == {"detail": "InvalidVin"}
        assert client.get("/submissions", headers=USER).json()["count"] == 0


def test_user_header_required(monkeypatch):
    app = _make_app(monkeypatch)
    with TestClient(app) as client:
        assert client.post("/submissions", json={"vin": VIN}).status_code == 422
        assert client.get("/submissions", headers={"X-User-Id": "0"}).status_code == 422


def test_bulk_submission(monkeypatch):
    app = _make_app(monkeypatch)
    with TestClient(app) as client:
        resp = client.post("/submissions/bulk", json={"vins": [VIN, "2T1BURHE6KC161298"]}, headers=USER)
        assert resp.status_code == 201
        assert len(resp.json()["submission_ids"]) == 2

        resp = client.post("/submissions/bulk", json={"vins": [VIN, "BAD"]}, headers=USER)
        assert resp.status_code == 422
        assert resp.json()["detail"]["vins"] == ["BAD"]

        body = client.get("/submissions", headers=USER).json()
        assert body["count"] == 2
        assert {s["status"] for s in body["submissions"]} == {"pending"}


def test_submissions_are_scoped_to_owner(monkeypatch):
    app = _make_app(monkeypatch)
    with TestClient(app) as client:
        submission_id = client.post("/submissions", json={"vin": VIN}, headers=USER).json()["submission_id"]
        assert client.get(f"/submissions/{submission_id}", headers=OTHER_USER).status_code == 404
        assert client.get(f"/submissions/{submission_id}/report", headers=USER).status_code == 404
        assert client.get("/submissions/does-not-exist", headers=USER).status_code == 404
        assert client.get("/submissions", headers=OTHER_USER).json()["count"] == 0


def test_manual_process_trigger(monkeypatch):
    app = _make_app(monkeypatch)
    fake = FakeApify(items=_items())
    with TestClient(app) as client:
        app.state.orchestrator.run_client = fake.client()
        submission_id = client.post("/submissions", json={"vin": VIN}, headers=USER).json()["submission_id"]
        assert client.get(f"/submissions/{submission_id}", headers=USER).json()["status"] == "pending"

        resp = client.post(f"/submissions/{submission_id}/process", headers=USER)
        assert resp.status_code == 202
        assert resp.json()["scheduled"] is True
        assert client.get(f"/submissions/{submission_id}", headers=USER).json()["status"] == "completed"

        again = client.post(f"/submissions/{submission_id}/process", headers=USER).json()
        assert again == {"scheduled": False, "status": "completed"}


def test_failed_run_surfaces_error_message(monkeypatch):
    fake = FakeApify(statuses=["FAILED"])
    app = _make_app(monkeypatch, fake)
    with TestClient(app) as client:
        submission_id = client.post("/submissions", json={"vin": VIN}, headers=USER).json()["submission_id"]
        sub = client.get(f"/submissions/{submission_id}", headers=USER).json()
        assert sub["status"] == "failed"
        assert sub["error_message"] == "Apify run failed with status: failed"
        assert fake.dataset_calls == []


def test_report_by_vin_survives_later_scrape_by_other_user(monkeypatch):
    fake = FakeApify(items=_items(accident_count=1))
    app = _make_app(monkeypatch, fake)
    with TestClient(app) as client:
        mine = client.post("/submissions", json={"vin": VIN}, headers=USER).json()["submission_id"]
        client.post("/submissions", json={"vin": VIN}, headers=OTHER_USER)

        assert client.get("/reports", headers=USER).json()["count"] == 1
        resp = client.get(f"/reports/by-vin/{VIN}", headers=USER)
        assert resp.status_code == 200
        assert resp.json()["submission_id"] == mine
        assert client.get(f"/reports/by-vin/{VIN}", headers={"X-User-Id": "9"}).status_code == 404


def test_exports(monkeypatch):
    fake = FakeApify(items=_items(accident_count=1))
    app = _make_app(monkeypatch, fake)
    with TestClient(app) as client:
        submission_id = client.post("/submissions", json={"vin": VIN}, headers=USER).json()["submission_id"]

        as_json = client.get(f"/submissions/{submission_id}/export.json", headers=USER).json()
        assert as_json["vin"] == VIN

        resp = client.get(f"/submissions/{submission_id}/export.csv", headers=USER)
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert f'filename="carfax_{VIN}_' in resp.headers["content-disposition"]
        frame = pd.read_csv(io.StringIO(resp.text), dtype=str, keep_default_na=False)
        assert dict(zip(frame["Field"], frame["Value"]))["Accident Count"] == "1"

        resp = client.get(f"/submissions/{submission_id}/export.pdf", headers=USER)
        assert resp.headers["content-type"] == "application/pdf"
        assert resp.content.startswith(b"%PDF")
        assert f"carfax-report-{VIN}.pdf" in resp.headers["content-disposition"]

        bulk = client.get("/reports/export.csv", headers=USER)
        assert bulk.status_code == 200
        assert VIN in bulk.text

        assert client.get(f"/submissions/{submission_id}/export.csv", headers=OTHER_USER).status_code == 404


def test_credentials_routes(monkeypatch):
    app = _make_app(monkeypatch)
    with TestClient(app) as client:
        assert client.get("/credentials", headers=USER).status_code == 404

        resp = client.put("/credentials", json={"username": "dealer@example.com", "password": "hunter2"}, headers=USER)
        assert resp.status_code == 200

        body = client.get("/credentials", headers=USER).json()
        assert body == {"username": "dealer@example.com", "has_valid_session": False}
        assert "hunter2" not in client.get("/credentials", headers=USER).text

        resp = client.post("/credentials/session-cookie", json={"userId": 7, "cookie": "sid=abc"})
        assert resp.status_code == 200
        assert client.get("/credentials/session", headers=USER).json() == {"has_valid_session": True}

        resp = client.post(
            "/credentials/session-cookie",
            json={"userId": 7, "cookie": "sid=old", "expiresAt": "2020-01-01T00:00:00Z"},
        )
        assert resp.status_code == 200
        assert client.get("/credentials/session", headers=USER).json() == {"has_valid_session": False}

        resp = client.post("/credentials/session-cookie", json={"userId": 99, "cookie": "sid"})
        assert resp.status_code == 404


def test_webhook_updates_submission(monkeypatch):
    app = _make_app(monkeypatch)
    with TestClient(app) as client:
        submission_id = client.post("/submissions", json={"vin": VIN}, headers=USER).json()["submission_id"]

        resp = client.post("/webhooks/submission-status", json={"submissionId": submission_id, "status": "completed"})
        assert resp.status_code == 422

        resp = client.post("/webhooks/submission-status", json={
            "submissionId": submission_id,
            "status": "completed",
            "reportData": {"make": "Hyundai", "accidentHistory": "[{\"date\": \"2019-03-15\"}]"},
        })
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "applied": True}

        resp = client.post("/webhooks/submission-status", json={
            "submissionId": submission_id, "status": "failed", "errorMessage": "late",
        })
        assert resp.json()["applied"] is False

        sub = client.get(f"/submissions/{submission_id}", headers=USER).json()
        assert sub["status"] == "completed"
        report = client.get(f"/submissions/{submission_id}/report", headers=USER).json()
        assert report["accident_count"] == 1

        resp = client.post("/webhooks/submission-status", json={"submissionId": "missing", "status": "failed"})
        assert resp.status_code == 404


def test_webhook_non_finite_numbers_default_to_none(monkeypatch):
    app = _make_app(monkeypatch)
    with TestClient(app) as client:
        submission_id = client.post("/submissions", json={"vin": VIN}, headers=USER).json()["submission_id"]
        body = (
            '{"submissionId": "%s", "status": "completed",'
            ' "reportData": {"make": "Hyundai", "mileage": Infinity, "price": "1e999", "accidentCount": -Infinity}}'
        ) % submission_id
        resp = client.post(
            "/webhooks/submission-status", content=body, headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 200
        assert resp.json()["applied"] is True

        report = client.get(f"/submissions/{submission_id}/report", headers=USER).json()
        assert report["make"] == "Hyundai"
        assert report["mileage"] is None
        assert report["price"] is None
        assert report["accident_count"] == 0


def test_guarded_routes_require_api_key(monkeypatch):
    app = _make_app(monkeypatch, API_KEYS="secret-key")
    with TestClient(app) as client:
        assert client.get("/admin/pending").status_code == 401
        assert client.post("/webhooks/submission-status", json={"submissionId": "x", "status": "failed"}).status_code == 401
        assert client.get("/admin/pending", headers={"X-API-Key": "wrong"}).status_code == 401
        assert client.get("/admin/pending", headers={"X-API-Key": "secret-key"}).status_code == 200


def test_admin_routes(monkeypatch):
    app = _make_app(monkeypatch)
    with TestClient(app) as client:
        client.post("/submissions", json={"vin": VIN}, headers=USER)
        pending = client.get("/admin/pending").json()
        assert pending["count"] == 1

        assert client.put("/admin/settings/maintenance_mode", json={"value": "on"}).status_code == 200
        settings = client.get("/admin/settings").json()["settings"]
        assert [(s["setting_key"], s["setting_value"]) for s in settings] == [("maintenance_mode", "on")]

        drained = client.post("/admin/pending/drain").json()
        assert drained["picked"] == 1
        assert drained["failed"] == 1
        assert client.get("/admin/pending").json()["count"] == 0


def test_apify_check_reports_missing_configuration(monkeypatch):
    app = _make_app(monkeypatch, APIFY_API_KEY="", APIFY_ACTOR_ID="")
    with TestClient(app) as client:
        body = client.get("/apify/check").json()
        assert body["configured"] is False
        assert body["api_key"] == "not set"
        assert "APIFY_API_KEY" in body["error"]


def test_instant_reports(monkeypatch):
    app = _make_app(monkeypatch)
    with TestClient(app) as client:
        body = client.get("/instant/sbm26aca7mw815131").json()
        assert body["report"]["make"] == "BMW"
        assert body["report"]["accident_count"] == 0

        text = client.get(f"/instant/{VIN}/text")
        assert text.headers["content-type"].startswith("text/plain")
        assert "Santa Fe" in text.text

        pdf = client.get(f"/instant/{VIN}/pdf")
        assert pdf.content.startswith(b"%PDF")

        assert client.get("/instant/1HGCM82633A123456").status_code == 404
        assert client.get("/instant/TOOSHORT").json() == {"detail": "InvalidVin"}


def test_correlation_id_echoed(monkeypatch):
    app = _make_app(monkeypatch)
    with TestClient(app) as client:
        resp = client.get("/health", headers={"X-Correlation-ID": "trace-123"})
        assert resp.headers["X-Correlation-ID"] == "trace-123"
        assert len(client.get("/health").headers["X-Correlation-ID"]) == 12


def test_rate_limit_returns_429(monkeypatch):
    app = _make_app(monkeypatch, RATE_LIMIT_RPM="2")
    with TestClient(app) as client:
        codes = [client.get("/health").status_code for _ in range(3)]
        assert codes == [200, 200, 429]

from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator

from dashboard.apify import ApifyRunClient
from dashboard.auth import APIKeyAuth, RateLimiter, current_user_id
from dashboard.credentials import CredentialService
from dashboard.exports import csv_filename, pdf_filename, report_csv, report_pdf, reports_csv
from dashboard.logging_config import bind_correlation_id, configure_logging
from dashboard.orchestration import ProxySettings, SubmissionOrchestrator
from dashboard.scheduler import build_pending_drain_scheduler
from dashboard.settings import ServiceSettings
from dashboard.storage import PostgresStore, report_from_row
from dashboard.vault import CredentialVault
from vinhistory.config import PollingConfig
from vinhistory.errors import (
    ConfigurationError,
    DatabaseUnavailable,
    DecryptionFailure,
    InvalidVin,
    MalformedCiphertext,
    RemotePayloadError,
    RemoteUnavailable,
)
from vinhistory.instant_reports import format_report_text, get_instant_report
from vinhistory.vin import validate_vin

logger = logging.getLogger(__name__)


# ── Request / Response Models ───────────────────────────────────────

class SubmissionRequest(BaseModel):
    vin: str


class BulkSubmissionRequest(BaseModel):
    vins: list[str] = Field(min_length=1, max_length=100)


class SubmissionCreated(BaseModel):
    submission_id: str
    status: str


class BulkSubmissionCreated(BaseModel):
    submission_ids: list[str]


class CredentialsRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class SessionCookieRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int = Field(alias="userId", gt=0)
    cookie: str = Field(min_length=1)
    expires_at: datetime | None = Field(default=None, alias="expiresAt")


class WebhookRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    submission_id: str = Field(alias="submissionId")
    status: Literal["pending", "processing", "completed", "failed"]
    error_message: str | None = Field(default=None, alias="errorMessage")
    report_data: dict[str, Any] | None = Field(default=None, alias="reportData")

    @model_validator(mode="after")
    def _completed_needs_report(self) -> "WebhookRequest":
        if self.status == "completed" and self.report_data is None:
            raise ValueError("reportData is required when status is completed")
        return self


class SettingRequest(BaseModel):
    value: str


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


# ── Metrics ─────────────────────────────────────────────────────────

_prom_counters: dict[str, int] = defaultdict(int)


def _prometheus_text(orchestrator_counters: dict[str, int]) -> str:
    lines: list[str] = []
    merged = dict(_prom_counters)
    for k, v in orchestrator_counters.items():
        merged[f"submissions_{k}"] = v
    for k, v in sorted(merged.items()):
        safe = k.replace(".", "_").replace("-", "_")
        lines.append(f"# TYPE vinhistory_{safe} counter")
        lines.append(f"vinhistory_{safe} {v}")
    return "\n".join(lines) + "\n"


def _serialize(row: dict[str, Any]) -> dict[str, Any]:
    entry = dict(row)
    for k, v in entry.items():
        if hasattr(v, "isoformat"):
            entry[k] = v.isoformat()
    return entry


def _attachment(content: str | bytes, media_type: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ── App Factory ─────────────────────────────────────────────────────

def create_app() -> FastAPI:
    settings = ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    polling = PollingConfig(
        max_attempts=settings.apify_poll_max_attempts,
        interval_ms=settings.apify_poll_interval_ms,
    )
    store = PostgresStore(dsn=settings.postgres_dsn)
    vault = CredentialVault(settings.encryption_key)
    credentials = CredentialService(store=store, vault=vault)
    run_client = ApifyRunClient(
        api_key=settings.apify_api_key,
        actor_id=settings.apify_actor_id,
        base_url=settings.apify_base_url,
        timeout_seconds=settings.apify_request_timeout_seconds,
        polling=polling,
    )
    orchestrator = SubmissionOrchestrator(
        store=store,
        run_client=run_client,
        credentials=credentials,
        proxy=ProxySettings(
            url=settings.proxy_url,
            username=settings.proxy_username,
            password=settings.proxy_password,
        ),
    )

    api_keys = [k.strip() for k in settings.api_keys.split(",") if k.strip()] if settings.api_keys else []
    auth = APIKeyAuth(allowed_keys=api_keys or None)
    limiter = RateLimiter(requests_per_minute=settings.rate_limit_rpm)

    async def _drain_pending() -> None:
        summary = await orchestrator.process_pending(limit=settings.pending_drain_batch_size)
        if summary["picked"]:
            logger.info("Drained pending submissions", extra={"extra_data": summary})

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await store.connect()
        if not run_client.configured:
            logger.warning("Apify is not configured; submissions will fail until APIFY_API_KEY and APIFY_ACTOR_ID are set")
        scheduler = None
        if settings.pending_drain_interval_seconds > 0:
            scheduler = build_pending_drain_scheduler(settings.pending_drain_interval_seconds, _drain_pending)
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            await store.close()

    app = FastAPI(title="VIN History Dashboard API", version="0.3.0", lifespan=lifespan)
    app.state.store = store
    app.state.orchestrator = orchestrator

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        with bind_correlation_id(request.headers.get("X-Correlation-ID")) as cid:
            response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next: Any) -> Response:
        return await limiter.middleware(request, call_next)

    @app.exception_handler(DatabaseUnavailable)
    async def database_unavailable_handler(_: Request, exc: DatabaseUnavailable) -> JSONResponse:
        logger.error("Database unavailable: %s", exc)
        return JSONResponse(status_code=503, content={"detail": "Database unavailable"})

    @app.exception_handler(MalformedCiphertext)
    @app.exception_handler(DecryptionFailure)
    async def vault_error_handler(_: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=500, content={"detail": "Stored credentials could not be decrypted"})

    async def _owned_submission(submission_id: str, user_id: int) -> dict[str, Any]:
        submission = await store.get_submission(submission_id)
        if submission is None or submission["user_id"] != user_id:
            raise HTTPException(status_code=404, detail="Submission not found")
        return submission

    async def _owned_report(submission_id: str, user_id: int) -> dict[str, Any]:
        await _owned_submission(submission_id, user_id)
        report = await store.get_report_by_submission(submission_id)
        if report is None:
            raise HTTPException(status_code=404, detail="Report not found")
        return report

    # ── Submissions ─────────────────────────────────────────────────

    @app.post("/submissions", response_model=SubmissionCreated, status_code=201)
    async def submit_vin(
        payload: SubmissionRequest,
        background: BackgroundTasks,
        user_id: int = Depends(current_user_id),
    ) -> SubmissionCreated:
        try:
            vin = validate_vin(payload.vin)
        except InvalidVin:
            raise HTTPException(status_code=422, detail="InvalidVin")
        submission = await store.create_submission(user_id, vin)
        _prom_counters["submissions_received"] += 1
        if settings.auto_process_submissions:
            background.add_task(orchestrator.process_submission, submission["id"])
        return SubmissionCreated(submission_id=submission["id"], status=submission["status"])

    @app.post("/submissions/bulk", response_model=BulkSubmissionCreated, status_code=201)
    async def submit_bulk(
        payload: BulkSubmissionRequest,
        background: BackgroundTasks,
        user_id: int = Depends(current_user_id),
    ) -> BulkSubmissionCreated:
        valid: list[str] = []
        invalid: list[str] = []
        for raw in payload.vins:
            try:
                valid.append(validate_vin(raw))
            except InvalidVin:
                invalid.append(raw)
        if invalid:
            raise HTTPException(status_code=422, detail={"error": "InvalidVin", "vins": invalid})

        ids: list[str] = []
        for vin in valid:
            submission = await store.create_submission(user_id, vin)
            ids.append(submission["id"])
            if settings.auto_process_submissions:
                background.add_task(orchestrator.process_submission, submission["id"])
        _prom_counters["submissions_received"] += len(ids)
        return BulkSubmissionCreated(submission_ids=ids)

    @app.get("/submissions")
    async def list_submissions(user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        rows = await store.list_submissions_by_user(user_id)
        return {"count": len(rows), "submissions": [_serialize(r) for r in rows]}

    @app.get("/submissions/{submission_id}")
    async def get_submission(submission_id: str, user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        return _serialize(await _owned_submission(submission_id, user_id))

    @app.post("/submissions/{submission_id}/process", status_code=202)
    async def process_submission(
        submission_id: str,
        background: BackgroundTasks,
        user_id: int = Depends(current_user_id),
    ) -> dict[str, Any]:
        submission = await _owned_submission(submission_id, user_id)
        if submission["status"] != "pending":
            return {"scheduled": False, "status": submission["status"]}
        background.add_task(orchestrator.process_submission, submission_id)
        return {"scheduled": True, "status": submission["status"]}

    # ── Reports ─────────────────────────────────────────────────────

    @app.get("/submissions/{submission_id}/report")
    async def get_submission_report(submission_id: str, user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        return _serialize(await _owned_report(submission_id, user_id))

    @app.get("/reports")
    async def list_reports(user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        rows = await store.list_reports_by_user(user_id)
        return {"count": len(rows), "reports": [_serialize(r) for r in rows]}

    @app.get("/reports/by-vin/{vin}")
    async def get_report_by_vin(vin: str, user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        report = await store.get_report_by_vin(vin.strip().upper(), user_id=user_id)
        if report is None:
            raise HTTPException(status_code=404, detail="Report not found")
        return _serialize(report)

    @app.get("/reports/export.csv")
    async def export_all_reports_csv(user_id: int = Depends(current_user_id)) -> Response:
        rows = await store.list_reports_by_user(user_id)
        content = reports_csv([report_from_row(r) for r in rows])
        filename = f"carfax_reports_{int(datetime.now(timezone.utc).timestamp() * 1000)}.csv"
        return _attachment(content, "text/csv", filename)

    @app.get("/submissions/{submission_id}/export.json")
    async def export_json(submission_id: str, user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        return _serialize(await _owned_report(submission_id, user_id))

    @app.get("/submissions/{submission_id}/export.csv")
    async def export_csv(submission_id: str, user_id: int = Depends(current_user_id)) -> Response:
        report = report_from_row(await _owned_report(submission_id, user_id))
        return _attachment(report_csv(report), "text/csv", csv_filename(report.vin))

    @app.get("/submissions/{submission_id}/export.pdf")
    async def export_pdf(submission_id: str, user_id: int = Depends(current_user_id)) -> Response:
        report = report_from_row(await _owned_report(submission_id, user_id))
        return _attachment(report_pdf(report), "application/pdf", pdf_filename(report.vin))

    # ── Scraper credentials ─────────────────────────────────────────

    @app.put("/credentials")
    async def store_credentials(req: CredentialsRequest, user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        await credentials.store_credentials(user_id, req.username, req.password)
        return {"success": True}

    @app.get("/credentials")
    async def get_credentials(user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        username = await credentials.get_username(user_id)
        if username is None:
            raise HTTPException(status_code=404, detail="No credentials stored")
        cookie = await credentials.get_valid_session_cookie(user_id)
        return {"username": username, "has_valid_session": cookie is not None}

    @app.get("/credentials/session")
    async def get_session(user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        cookie = await credentials.get_valid_session_cookie(user_id)
        return {"has_valid_session": cookie is not None}

    @app.post("/credentials/session-cookie")
    async def update_session_cookie(req: SessionCookieRequest, _: str | None = Depends(auth)) -> dict[str, Any]:
        expires_at = req.expires_at or datetime.now(timezone.utc) + timedelta(hours=settings.session_cookie_ttl_hours)
        updated = await credentials.update_session_cookie(req.user_id, req.cookie, expires_at)
        if not updated:
            raise HTTPException(status_code=404, detail="No credentials stored for user")
        return {"success": True}

    # ── Workflow-engine webhook ─────────────────────────────────────

    @app.post("/webhooks/submission-status")
    async def webhook_submission_status(req: WebhookRequest, _: str | None = Depends(auth)) -> dict[str, Any]:
        try:
            applied = await orchestrator.apply_webhook(
                req.submission_id, req.status, req.error_message, req.report_data,
            )
        except (ValueError, RemotePayloadError) as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        if applied is None:
            raise HTTPException(status_code=404, detail="Submission not found")
        _prom_counters["webhook_updates"] += 1
        return {"success": True, "applied": applied}

    # ── Admin ───────────────────────────────────────────────────────

    @app.get("/admin/pending")
    async def admin_pending(limit: int = 100, _: str | None = Depends(auth)) -> dict[str, Any]:
        rows = await store.list_pending_submissions(limit=min(limit, 500))
        return {"count": len(rows), "submissions": [_serialize(r) for r in rows]}

    @app.post("/admin/pending/drain")
    async def admin_drain(limit: int = 10, _: str | None = Depends(auth)) -> dict[str, int]:
        return await orchestrator.process_pending(limit=min(limit, 100))

    @app.get("/admin/settings")
    async def admin_settings(_: str | None = Depends(auth)) -> dict[str, Any]:
        rows = await store.list_settings()
        return {"settings": [_serialize(r) for r in rows]}

    @app.put("/admin/settings/{key}")
    async def admin_update_setting(key: str, req: SettingRequest, _: str | None = Depends(auth)) -> dict[str, Any]:
        await store.set_setting(key, req.value)
        return {"success": True}

    @app.get("/apify/check")
    async def apify_check(_: str | None = Depends(auth)) -> dict[str, Any]:
        result: dict[str, Any] = {
            "actor_id": "***" if settings.apify_actor_id else "not set",
            "api_key": "***" if settings.apify_api_key else "not set",
        }
        try:
            account = await run_client.get_account_info()
        except (ConfigurationError, RemoteUnavailable, RemotePayloadError) as exc:
            result.update({"configured": False, "error": str(exc)})
            return result
        result.update({"configured": run_client.configured, "user_id": account.get("id")})
        return result

    # ── Instant demo reports ────────────────────────────────────────

    def _instant(vin: str):
        try:
            normalized = validate_vin(vin)
        except InvalidVin:
            raise HTTPException(status_code=422, detail="InvalidVin")
        report = get_instant_report(normalized)
        if report is None:
            raise HTTPException(status_code=404, detail="No instant report for this VIN")
        return report

    @app.get("/instant/{vin}")
    async def instant_report(vin: str) -> dict[str, Any]:
        report = _instant(vin)
        return {"success": True, "report": report.to_dict(), "generated_at": datetime.now(timezone.utc).isoformat()}

    @app.get("/instant/{vin}/text")
    async def instant_report_text(vin: str) -> Response:
        return Response(content=format_report_text(_instant(vin)), media_type="text/plain; charset=utf-8")

    @app.get("/instant/{vin}/pdf")
    async def instant_report_pdf(vin: str) -> Response:
        report = _instant(vin)
        return _attachment(report_pdf(report), "application/pdf", pdf_filename(report.vin))

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {
            "postgres": await store.ping(),
            "apify_configured": run_client.configured,
        }
        if not checks["postgres"]:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    @app.get("/metrics/prometheus")
    async def get_prometheus_metrics() -> Response:
        return Response(content=_prometheus_text(orchestrator.counters), media_type="text/plain; charset=utf-8")

    return app


app = create_app()

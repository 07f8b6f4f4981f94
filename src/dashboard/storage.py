from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, MetaData, String, Table, Text, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from vinhistory.data_models import SUBMISSION_TERMINAL, Report
from vinhistory.errors import DatabaseUnavailable


metadata = MetaData()

submissions_table = Table(
    "vin_submissions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("vin", String(17), nullable=False, index=True),
    Column("status", String(16), nullable=False, default="pending", index=True),
    Column("error_message", Text, nullable=True),
    Column("submitted_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True), nullable=True),
)

reports_table = Table(
    "vehicle_reports",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("submission_id", String(36), nullable=False, index=True),
    Column("vin", String(17), nullable=False, index=True),
    Column("year", Integer, nullable=True),
    Column("make", String(100), nullable=True),
    Column("model", String(100), nullable=True),
    Column("trim", String(100), nullable=True),
    Column("mileage", Integer, nullable=True),
    Column("price", Integer, nullable=True),
    Column("color", String(50), nullable=True),
    Column("engine_type", String(100), nullable=True),
    Column("transmission", String(50), nullable=True),
    Column("accident_count", Integer, nullable=False, default=0),
    Column("owner_count", Integer, nullable=False, default=0),
    Column("service_record_count", Integer, nullable=False, default=0),
    Column("accident_history", JSON, nullable=False, default=list),
    Column("service_history", JSON, nullable=False, default=list),
    Column("ownership_history", JSON, nullable=False, default=list),
    Column("title_info", JSON, nullable=False, default=dict),
    Column("additional_data", JSON, nullable=False, default=dict),
    Column("scraped_at", DateTime(timezone=True), nullable=False),
)

credential_records_table = Table(
    "credential_records",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", Integer, nullable=False, unique=True),
    Column("encrypted_username", Text, nullable=False),
    Column("encrypted_password", Text, nullable=False),
    Column("encrypted_session_cookie", Text, nullable=True),
    Column("last_login_at", DateTime(timezone=True), nullable=True),
    Column("expires_at", DateTime(timezone=True), nullable=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

admin_settings_table = Table(
    "admin_settings",
    metadata,
    Column("setting_key", String(100), primary_key=True),
    Column("setting_value", Text, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

_REPORT_FIELDS = (
    "year", "make", "model", "trim", "mileage", "price", "color", "engine_type", "transmission",
    "accident_count", "owner_count", "service_record_count",
    "accident_history", "service_history", "ownership_history", "title_info", "additional_data",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def _db_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (SQLAlchemyError, OSError) as exc:
        raise DatabaseUnavailable(f"Database unavailable while trying to {action}: {exc}") from exc


def report_from_row(row: dict[str, Any]) -> Report:
    return Report(vin=row["vin"], **{k: row.get(k) for k in _REPORT_FIELDS if row.get(k) is not None})


class PostgresStore:
    """Persistence gateway over SQLAlchemy Core with an in-memory fallback.

    When the database cannot be reached at ``connect()`` the store keeps rows in
    process memory with the same semantics, which is what the test-suite and
    local demos run against.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem_submissions: dict[str, dict[str, Any]] = {}
        self._mem_reports: list[dict[str, Any]] = []
        self._mem_credentials: dict[int, dict[str, Any]] = {}
        self._mem_settings: dict[str, dict[str, Any]] = {}

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception:
            self._fallback_mode = True
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None:
            return False
        if self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    # ── Submissions ─────────────────────────────────────────────────

    async def create_submission(self, user_id: int, vin: str, status: str = "pending") -> dict[str, Any]:
        row = {
            "id": str(uuid4()),
            "user_id": int(user_id),
            "vin": vin,
            "status": status,
            "error_message": None,
            "submitted_at": _now(),
            "completed_at": None,
        }
        if self.engine is None:
            self._mem_submissions[row["id"]] = row
            return dict(row)
        with _db_errors("create submission"):
            async with self.engine.begin() as conn:
                await conn.execute(insert(submissions_table).values(**row))
        return row

    async def get_submission(self, submission_id: str) -> dict[str, Any] | None:
        if self.engine is None:
            row = self._mem_submissions.get(submission_id)
            return dict(row) if row else None
        stmt = select(submissions_table).where(submissions_table.c.id == submission_id)
        with _db_errors("load submission"):
            async with self.engine.connect() as conn:
                row = (await conn.execute(stmt)).first()
        return dict(row._mapping) if row else None

    async def list_submissions_by_user(self, user_id: int) -> list[dict[str, Any]]:
        if self.engine is None:
            rows = [dict(r) for r in self._mem_submissions.values() if r["user_id"] == user_id]
            return sorted(rows, key=lambda r: r["submitted_at"], reverse=True)
        stmt = (
            select(submissions_table)
            .where(submissions_table.c.user_id == user_id)
            .order_by(submissions_table.c.submitted_at.desc())
        )
        with _db_errors("list submissions"):
            async with self.engine.connect() as conn:
                rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    async def list_pending_submissions(self, limit: int = 100) -> list[dict[str, Any]]:
        if self.engine is None:
            rows = [dict(r) for r in self._mem_submissions.values() if r["status"] == "pending"]
            return sorted(rows, key=lambda r: r["submitted_at"])[:limit]
        stmt = (
            select(submissions_table)
            .where(submissions_table.c.status == "pending")
            .order_by(submissions_table.c.submitted_at)
            .limit(limit)
        )
        with _db_errors("list pending submissions"):
            async with self.engine.connect() as conn:
                rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    @staticmethod
    def _status_values(status: str, error_message: str | None) -> dict[str, Any]:
        values: dict[str, Any] = {"status": status}
        if status in SUBMISSION_TERMINAL:
            values["completed_at"] = _now()
        if error_message:
            values["error_message"] = error_message
        return values

    async def update_submission_status(
        self, submission_id: str, status: str, error_message: str | None = None,
    ) -> None:
        values = self._status_values(status, error_message)
        if self.engine is None:
            row = self._mem_submissions.get(submission_id)
            if row is not None:
                row.update(values)
            return
        with _db_errors("update submission status"):
            async with self.engine.begin() as conn:
                await conn.execute(
                    update(submissions_table)
                    .where(submissions_table.c.id == submission_id)
                    .values(**values)
                )

    async def transition_submission(
        self,
        submission_id: str,
        to_status: str,
        from_statuses: Iterable[str],
        error_message: str | None = None,
    ) -> bool:
        """Move a submission to ``to_status`` only if it is currently in ``from_statuses``.

        Returns False when some other writer moved it first.
        """
        allowed = list(from_statuses)
        values = self._status_values(to_status, error_message)
        if self.engine is None:
            row = self._mem_submissions.get(submission_id)
            if row is None or row["status"] not in allowed:
                return False
            row.update(values)
            return True
        with _db_errors("transition submission"):
            async with self.engine.begin() as conn:
                result = await conn.execute(
                    update(submissions_table)
                    .where(submissions_table.c.id == submission_id)
                    .where(submissions_table.c.status.in_(allowed))
                    .values(**values)
                )
        return result.rowcount == 1

    async def complete_submission(
        self, submission_id: str, report: Report, from_statuses: Iterable[str],
    ) -> bool:
        """Guarded transition to ``completed`` plus report insert, atomically."""
        allowed = list(from_statuses)
        values = self._status_values("completed", None)
        report_row = self._report_row(submission_id, report)
        if self.engine is None:
            row = self._mem_submissions.get(submission_id)
            if row is None or row["status"] not in allowed:
                return False
            row.update(values)
            self._mem_reports.append(report_row)
            return True
        with _db_errors("complete submission"):
            async with self.engine.begin() as conn:
                result = await conn.execute(
                    update(submissions_table)
                    .where(submissions_table.c.id == submission_id)
                    .where(submissions_table.c.status.in_(allowed))
                    .values(**values)
                )
                if result.rowcount != 1:
                    return False
                await conn.execute(insert(reports_table).values(**report_row))
        return True

    # ── Reports ─────────────────────────────────────────────────────

    @staticmethod
    def _report_row(submission_id: str, report: Report) -> dict[str, Any]:
        row = report.to_dict()
        row.update({"id": str(uuid4()), "submission_id": submission_id, "scraped_at": _now()})
        return row

    async def create_report(self, submission_id: str, report: Report) -> str:
        row = self._report_row(submission_id, report)
        if self.engine is None:
            self._mem_reports.append(row)
            return row["id"]
        with _db_errors("create report"):
            async with self.engine.begin() as conn:
                await conn.execute(insert(reports_table).values(**row))
        return row["id"]

    async def get_report_by_submission(self, submission_id: str) -> dict[str, Any] | None:
        if self.engine is None:
            rows = [r for r in self._mem_reports if r["submission_id"] == submission_id]
            return dict(rows[-1]) if rows else None
        stmt = (
            select(reports_table)
            .where(reports_table.c.submission_id == submission_id)
            .order_by(reports_table.c.scraped_at.desc())
            .limit(1)
        )
        with _db_errors("load report"):
            async with self.engine.connect() as conn:
                row = (await conn.execute(stmt)).first()
        return dict(row._mapping) if row else None

    async def get_report_by_vin(self, vin: str, user_id: int | None = None) -> dict[str, Any] | None:
        """Latest report for ``vin``, restricted to ``user_id``'s submissions when given."""
        if self.engine is None:
            rows = [r for r in self._mem_reports if r["vin"] == vin]
            if user_id is not None:
                owned = {sid for sid, s in self._mem_submissions.items() if s["user_id"] == user_id}
                rows = [r for r in rows if r["submission_id"] in owned]
            return dict(max(rows, key=lambda r: r["scraped_at"])) if rows else None
        stmt = select(reports_table).where(reports_table.c.vin == vin)
        if user_id is not None:
            j = reports_table.join(submissions_table, reports_table.c.submission_id == submissions_table.c.id)
            stmt = stmt.select_from(j).where(submissions_table.c.user_id == user_id)
        stmt = (
            stmt
            .order_by(reports_table.c.scraped_at.desc())
            .limit(1)
        )
        with _db_errors("load report"):
            async with self.engine.connect() as conn:
                row = (await conn.execute(stmt)).first()
        return dict(row._mapping) if row else None

    async def list_reports_by_user(self, user_id: int) -> list[dict[str, Any]]:
        if self.engine is None:
            owned = {sid for sid, s in self._mem_submissions.items() if s["user_id"] == user_id}
            rows = [dict(r) for r in self._mem_reports if r["submission_id"] in owned]
            return sorted(rows, key=lambda r: r["scraped_at"], reverse=True)
        j = reports_table.join(submissions_table, reports_table.c.submission_id == submissions_table.c.id)
        stmt = (
            select(reports_table)
            .select_from(j)
            .where(submissions_table.c.user_id == user_id)
            .order_by(reports_table.c.scraped_at.desc())
        )
        with _db_errors("list reports"):
            async with self.engine.connect() as conn:
                rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    # ── Credential records ──────────────────────────────────────────

    async def get_credential_record(self, user_id: int) -> dict[str, Any] | None:
        if self.engine is None:
            row = self._mem_credentials.get(user_id)
            return dict(row) if row else None
        stmt = select(credential_records_table).where(credential_records_table.c.user_id == user_id)
        with _db_errors("load credential record"):
            async with self.engine.connect() as conn:
                row = (await conn.execute(stmt)).first()
        return dict(row._mapping) if row else None

    async def upsert_credential_record(
        self, user_id: int, *, encrypted_username: str, encrypted_password: str,
    ) -> None:
        now = _now()
        if self.engine is None:
            existing = self._mem_credentials.get(user_id)
            if existing is not None:
                existing.update({
                    "encrypted_username": encrypted_username,
                    "encrypted_password": encrypted_password,
                    "is_active": True,
                    "updated_at": now,
                })
                return
            self._mem_credentials[user_id] = {
                "id": str(uuid4()),
                "user_id": user_id,
                "encrypted_username": encrypted_username,
                "encrypted_password": encrypted_password,
                "encrypted_session_cookie": None,
                "last_login_at": None,
                "expires_at": None,
                "is_active": True,
                "created_at": now,
                "updated_at": now,
            }
            return
        with _db_errors("store credential record"):
            async with self.engine.begin() as conn:
                result = await conn.execute(
                    update(credential_records_table)
                    .where(credential_records_table.c.user_id == user_id)
                    .values(
                        encrypted_username=encrypted_username,
                        encrypted_password=encrypted_password,
                        is_active=True,
                        updated_at=now,
                    )
                )
                if result.rowcount == 0:
                    await conn.execute(insert(credential_records_table).values(
                        id=str(uuid4()),
                        user_id=user_id,
                        encrypted_username=encrypted_username,
                        encrypted_password=encrypted_password,
                        is_active=True,
                        created_at=now,
                        updated_at=now,
                    ))

    async def update_session_cookie(
        self, user_id: int, *, encrypted_cookie: str, expires_at: datetime,
    ) -> bool:
        now = _now()
        values = {
            "encrypted_session_cookie": encrypted_cookie,
            "expires_at": expires_at,
            "last_login_at": now,
            "updated_at": now,
        }
        if self.engine is None:
            row = self._mem_credentials.get(user_id)
            if row is None:
                return False
            row.update(values)
            return True
        with _db_errors("update session cookie"):
            async with self.engine.begin() as conn:
                result = await conn.execute(
                    update(credential_records_table)
                    .where(credential_records_table.c.user_id == user_id)
                    .values(**values)
                )
        return result.rowcount == 1

    # ── Admin settings ──────────────────────────────────────────────

    async def get_setting(self, key: str) -> str | None:
        if self.engine is None:
            row = self._mem_settings.get(key)
            return row["setting_value"] if row else None
        stmt = select(admin_settings_table.c.setting_value).where(admin_settings_table.c.setting_key == key)
        with _db_errors("load setting"):
            async with self.engine.connect() as conn:
                row = (await conn.execute(stmt)).first()
        return row.setting_value if row else None

    async def set_setting(self, key: str, value: str) -> None:
        row = {"setting_key": key, "setting_value": value, "updated_at": _now()}
        if self.engine is None:
            self._mem_settings[key] = row
            return
        with _db_errors("store setting"):
            async with self.engine.begin() as conn:
                result = await conn.execute(
                    update(admin_settings_table)
                    .where(admin_settings_table.c.setting_key == key)
                    .values(setting_value=value, updated_at=row["updated_at"])
                )
                if result.rowcount == 0:
                    await conn.execute(insert(admin_settings_table).values(**row))

    async def list_settings(self) -> list[dict[str, Any]]:
        if self.engine is None:
            return [dict(r) for r in sorted(self._mem_settings.values(), key=lambda r: r["setting_key"])]
        stmt = select(admin_settings_table).order_by(admin_settings_table.c.setting_key)
        with _db_errors("list settings"):
            async with self.engine.connect() as conn:
                rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

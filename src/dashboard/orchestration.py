from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from dashboard.apify import ApifyRunClient
from dashboard.credentials import CredentialService
from dashboard.logging_config import bind_correlation_id
from dashboard.storage import PostgresStore
from vinhistory.data_models import SUBMISSION_TERMINAL, Report, ResultItem, RunInput
from vinhistory.errors import HistoryError, NoResults
from vinhistory.normalize import parse_report
from vinhistory.vin import is_valid_vin

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("pending", "processing")


@dataclass(frozen=True)
class ProxySettings:
    url: str = ""
    username: str = ""
    password: str = ""


class SubmissionOrchestrator:
    """Drives one submission from ``pending`` to ``completed`` or ``failed``.

    Every status write is a guarded transition, so the direct polling path and
    the workflow-engine webhook can race on the same submission: whichever
    reaches a terminal state first wins and the other becomes a no-op.
    """

    def __init__(
        self,
        store: PostgresStore,
        run_client: ApifyRunClient,
        credentials: CredentialService | None = None,
        proxy: ProxySettings | None = None,
    ) -> None:
        self.store = store
        self.run_client = run_client
        self.credentials = credentials
        self.proxy = proxy or ProxySettings()
        self.counters: dict[str, int] = defaultdict(int)

    async def process_submission(self, submission_id: str) -> dict[str, Any] | None:
        with bind_correlation_id(submission_id[:12]):
            return await self._process(submission_id)

    async def _process(self, submission_id: str) -> dict[str, Any] | None:
        submission = await self.store.get_submission(submission_id)
        if submission is None:
            logger.warning("Submission %s not found", submission_id)
            return None
        if submission["status"] in SUBMISSION_TERMINAL:
            logger.info("Submission %s already %s; nothing to do", submission_id, submission["status"])
            return submission

        vin = submission["vin"]
        if not is_valid_vin(vin):
            await self._fail(submission_id, "InvalidVin", from_statuses=ACTIVE_STATUSES)
            return await self.store.get_submission(submission_id)

        claimed = await self.store.transition_submission(submission_id, "processing", ("pending",))
        if not claimed:
            logger.info("Submission %s is already being processed elsewhere", submission_id)
            return await self.store.get_submission(submission_id)

        self.counters["started"] += 1
        try:
            job_input = await self._build_input(submission)
            _, results = await self.run_client.run_and_wait(job_input)
            report = self._first_report(vin, results)
        except HistoryError as exc:
            await self._fail(submission_id, str(exc))
            return await self.store.get_submission(submission_id)
        except Exception as exc:
            logger.exception("Unexpected error while processing submission %s", submission_id)
            await self._fail(submission_id, f"Unexpected error: {exc}")
            return await self.store.get_submission(submission_id)

        try:
            completed = await self.store.complete_submission(submission_id, report, from_statuses=("processing",))
        except HistoryError as exc:
            logger.error("Storing report for submission %s failed: %s", submission_id, exc)
            await self._fail(submission_id, f"Could not store report: {exc}")
            return await self.store.get_submission(submission_id)

        if completed:
            self.counters["completed"] += 1
            logger.info(
                "Submission %s completed",
                submission_id,
                extra={"extra_data": {"vin": vin, "accident_count": report.accident_count}},
            )
        else:
            logger.warning("Submission %s reached a terminal state elsewhere; report discarded", submission_id)
        return await self.store.get_submission(submission_id)

    async def _build_input(self, submission: dict[str, Any]) -> RunInput:
        credentials = None
        cookie = None
        if self.credentials is not None:
            user_id = submission["user_id"]
            credentials = await self.credentials.get_credentials(user_id)
            cookie = await self.credentials.get_valid_session_cookie(user_id)
        return RunInput(
            vins=(submission["vin"],),
            credentials=credentials,
            session_cookie=cookie,
            proxy_url=self.proxy.url or None,
            proxy_username=self.proxy.username or None,
            proxy_password=self.proxy.password or None,
        )

    @staticmethod
    def _first_report(vin: str, results: list[ResultItem]) -> Report:
        if not results:
            raise NoResults()
        item = results[0]
        if not item.success:
            raise NoResults(f"Scrape failed for {vin}: {item.error or 'no error given'}")
        if item.data is None:
            raise NoResults()
        return parse_report(vin, item.data)

    async def _fail(
        self,
        submission_id: str,
        message: str,
        from_statuses: tuple[str, ...] = ("processing",),
    ) -> None:
        applied = await self.store.transition_submission(
            submission_id, "failed", from_statuses, error_message=message,
        )
        if applied:
            self.counters["failed"] += 1
            logger.warning("Submission %s failed: %s", submission_id, message)
        else:
            logger.info("Submission %s already terminal; failure %r not recorded", submission_id, message)

    async def apply_webhook(
        self,
        submission_id: str,
        status: str,
        error_message: str | None = None,
        report_data: dict[str, Any] | None = None,
    ) -> bool | None:
        """Fold a workflow-engine callback into the submission.

        Returns None for an unknown submission, otherwise whether the update
        was applied.
        """
        submission = await self.store.get_submission(submission_id)
        if submission is None:
            return None

        if status == "processing":
            return await self.store.transition_submission(submission_id, "processing", ("pending",))
        if status == "failed":
            message = error_message or "Workflow reported failure"
            applied = await self.store.transition_submission(
                submission_id, "failed", ACTIVE_STATUSES, error_message=message,
            )
            if applied:
                self.counters["failed"] += 1
            return applied
        if status == "completed":
            if report_data is None:
                raise ValueError("completed status requires report data")
            report = parse_report(submission["vin"], report_data)
            applied = await self.store.complete_submission(submission_id, report, from_statuses=ACTIVE_STATUSES)
            if applied:
                self.counters["completed"] += 1
            return applied
        # pending is only ever an initial state
        return False

    async def process_pending(self, limit: int = 10) -> dict[str, int]:
        pending = await self.store.list_pending_submissions(limit=limit)
        if not pending:
            return {"picked": 0, "completed": 0, "failed": 0, "errors": 0}

        outcomes = await asyncio.gather(
            *(self.process_submission(row["id"]) for row in pending),
            return_exceptions=True,
        )
        summary = {"picked": len(pending), "completed": 0, "failed": 0, "errors": 0}
        for row, outcome in zip(pending, outcomes):
            if isinstance(outcome, BaseException):
                summary["errors"] += 1
                logger.error("Processing submission %s raised: %s", row["id"], outcome)
            elif outcome is not None and outcome["status"] in ("completed", "failed"):
                summary[outcome["status"]] += 1
        return summary

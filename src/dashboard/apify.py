from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from vinhistory.config import PollingConfig
from vinhistory.data_models import ResultItem, Run, RunInput
from vinhistory.errors import ConfigurationError, PollTimeout, RemoteUnavailable, RunFailed
from vinhistory.normalize import parse_result_items, parse_run, unwrap_envelope

logger = logging.getLogger(__name__)


class ApifyRunClient:
    """Async client for one Apify actor: start a run, poll it, read its dataset.

    Start:   POST /acts/{actor_id}/runs
    Status:  GET  /runs/{run_id}
    Results: GET  /runs/{run_id}/dataset/items

    No call retries internally. Each call opens its own ``httpx.AsyncClient``
    so concurrent orchestrations never share connection state.
    """

    def __init__(
        self,
        api_key: str,
        actor_id: str,
        base_url: str = "https://api.apify.com/v2",
        timeout_seconds: float = 30.0,
        polling: PollingConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.actor_id = actor_id
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.polling = polling or PollingConfig()
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.actor_id)

    def _require_config(self, need_actor: bool = True) -> None:
        if not self.api_key:
            raise ConfigurationError("APIFY_API_KEY is not set")
        if need_actor and not self.actor_id:
            raise ConfigurationError("APIFY_ACTOR_ID is not set")

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"},
        )

    async def _request(self, method: str, path: str, action: str, timeout: float, **kwargs: Any) -> Any:
        try:
            async with self._client(timeout) as client:
                resp = await client.request(method, path, **kwargs)
                resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            raise RemoteUnavailable(
                f"Failed to {action}: {exc.response.status_code} {exc.response.reason_phrase}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise RemoteUnavailable(f"Failed to {action}: {exc}") from exc
        except ValueError as exc:
            raise RemoteUnavailable(f"Failed to {action}: response was not JSON") from exc

    async def start(self, job_input: RunInput) -> Run:
        self._require_config()
        payload = await self._request(
            "POST",
            f"/acts/{self.actor_id}/runs",
            "start Apify run",
            self.timeout_seconds,
            json={"input": job_input.to_payload()},
        )
        run = parse_run(payload)
        logger.info("Started Apify run %s for %d VIN(s)", run.id, len(job_input.vins))
        return run

    async def get_status(self, run_id: str) -> Run:
        self._require_config(need_actor=False)
        payload = await self._request(
            "GET", f"/runs/{run_id}", "get Apify run status", min(self.timeout_seconds, 10.0),
        )
        return parse_run(payload)

    async def fetch_results(self, run_id: str) -> list[ResultItem]:
        self._require_config(need_actor=False)
        payload = await self._request(
            "GET",
            f"/runs/{run_id}/dataset/items",
            "get Apify run results",
            self.timeout_seconds,
            params={"format": "json", "clean": "true"},
        )
        return parse_result_items(payload)

    async def poll_until_terminal(
        self,
        run_id: str,
        max_attempts: int | None = None,
        interval_ms: int | None = None,
    ) -> Run:
        """Check status every ``interval_ms`` until the run is terminal.

        Status checks are strictly sequential. The wait between them is an
        ``asyncio.sleep`` so other submissions keep moving. Raises PollTimeout
        after ``max_attempts`` non-terminal answers.
        """
        attempts_allowed = self.polling.max_attempts if max_attempts is None else max_attempts
        interval = self.polling.interval_ms if interval_ms is None else interval_ms

        for attempt in range(1, attempts_allowed + 1):
            run = await self.get_status(run_id)
            if run.is_terminal:
                logger.info("Apify run %s reached %s after %d status check(s)", run_id, run.status, attempt)
                return run
            if attempt < attempts_allowed:
                await asyncio.sleep(interval / 1000.0)

        raise PollTimeout(run_id, attempts_allowed)

    async def run_and_wait(self, job_input: RunInput) -> tuple[Run, list[ResultItem]]:
        run = await self.start(job_input)
        completed = await self.poll_until_terminal(run.id)
        if completed.status != "succeeded":
            raise RunFailed(completed.status)
        results = await self.fetch_results(run.id)
        logger.info("Retrieved %d result(s) from Apify run %s", len(results), run.id)
        return completed, results

    async def get_account_info(self) -> dict[str, Any]:
        self._require_config(need_actor=False)
        payload = await self._request("GET", "/users/me", "get Apify account info", 10.0)
        data = unwrap_envelope(payload)
        return data if isinstance(data, dict) else {}

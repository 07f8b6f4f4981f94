from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal


SubmissionStatus = Literal["pending", "processing", "completed", "failed"]
RunStatus = Literal["ready", "running", "succeeded", "failed", "timed_out", "aborted"]

SUBMISSION_TERMINAL: frozenset[str] = frozenset({"completed", "failed"})
RUN_TERMINAL: frozenset[str] = frozenset({"succeeded", "failed", "timed_out", "aborted"})


@dataclass(frozen=True)
class Run:
    id: str
    status: RunStatus
    started_at: datetime | None = None
    finished_at: datetime | None = None
    input_count: int = 0
    output_count: int = 0
    default_dataset_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in RUN_TERMINAL


@dataclass(frozen=True)
class ResultItem:
    vin: str
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class ScraperCredentials:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"ScraperCredentials(username={self.username!r}, password='***')"


@dataclass(frozen=True)
class RunInput:
    vins: tuple[str, ...]
    credentials: ScraperCredentials | None = None
    session_cookie: str | None = None
    proxy_url: str | None = None
    proxy_username: str | None = None
    proxy_password: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"vins": list(self.vins)}
        if self.credentials is not None:
            payload["carfaxUsername"] = self.credentials.username
            payload["carfaxPassword"] = self.credentials.password
        if self.session_cookie:
            payload["sessionCookie"] = self.session_cookie
        if self.proxy_url:
            payload["proxyUrl"] = self.proxy_url
        if self.proxy_username:
            payload["proxyUsername"] = self.proxy_username
        if self.proxy_password:
            payload["proxyPassword"] = self.proxy_password
        return payload


@dataclass(frozen=True)
class Report:
    vin: str
    year: int | None = None
    make: str | None = None
    model: str | None = None
    trim: str | None = None
    color: str | None = None
    engine_type: str | None = None
    transmission: str | None = None
    mileage: int | None = None
    price: int | None = None
    accident_count: int = 0
    owner_count: int = 0
    service_record_count: int = 0
    accident_history: list[dict[str, Any]] = field(default_factory=list)
    service_history: list[dict[str, Any]] = field(default_factory=list)
    ownership_history: list[dict[str, Any]] = field(default_factory=list)
    title_info: dict[str, Any] = field(default_factory=dict)
    additional_data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

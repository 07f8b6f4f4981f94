from __future__ import annotations


class HistoryError(Exception):
    """Base class for failures surfaced while turning a submission into a report."""


class ConfigurationError(HistoryError):
    pass


class RemoteUnavailable(HistoryError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemotePayloadError(HistoryError):
    """The remote API answered, but not with the envelope we expect."""


class PollTimeout(HistoryError):
    def __init__(self, run_id: str, attempts: int) -> None:
        super().__init__(f"Apify run {run_id} did not complete within {attempts} attempts")
        self.run_id = run_id
        self.attempts = attempts


class RunFailed(HistoryError):
    def __init__(self, status: str) -> None:
        super().__init__(f"Apify run failed with status: {status}")
        self.status = status


class NoResults(HistoryError):
    def __init__(self, message: str = "No data returned from run") -> None:
        super().__init__(message)


class MalformedCiphertext(HistoryError):
    pass


class DecryptionFailure(HistoryError):
    pass


class InvalidVin(HistoryError):
    def __init__(self, vin: str = "") -> None:
        super().__init__("InvalidVin")
        self.vin = vin


class DatabaseUnavailable(HistoryError):
    pass

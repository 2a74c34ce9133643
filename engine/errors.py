"""Exception types raised by the tempo/key resolution pipeline."""

from __future__ import annotations


class BpmError(Exception):
    pass


class ValidationError(BpmError):
    """Malformed input such as an unparseable track ID."""


class UpstreamLookupError(BpmError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AnalysisEngineError(BpmError):
    """Submission, poll or stream failure against the analysis engine."""


class MismatchReviewError(BpmError):
    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderError(BpmError):
    """A single preview provider failed; callers move on to the next provider."""


class MusoQuotaExceeded(ProviderError):
    pass

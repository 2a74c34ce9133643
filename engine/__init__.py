from .errors import (
    AnalysisEngineError,
    BpmError,
    MismatchReviewError,
    UpstreamLookupError,
    ValidationError,
)

__all__ = [
    "AnalysisEngineError",
    "BpmError",
    "MismatchReviewError",
    "UpstreamLookupError",
    "ValidationError",
]

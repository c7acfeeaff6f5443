"""
Structured errors for the retrieval pipeline.

Every failure carries the stage it happened in so callers can branch on
type and stage instead of matching message text.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Stage(str, Enum):
    """Pipeline stage an error originated from"""
    EMBED = "embed"
    PROVISION = "provision"
    DIMENSION = "dimension"
    SEARCH = "search"
    RERANK = "rerank"
    INFER = "infer"
    WEB_SEARCH = "web_search"
    EXTRACT = "extract"
    SUMMARIZE = "summarize"
    PERSIST = "persist"
    INGEST = "ingest"


class RetrievalError(Exception):
    """Base error for every pipeline failure."""

    def __init__(
        self,
        message: str,
        stage: Stage,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "stage": self.stage.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }

    def __str__(self) -> str:
        return f"[{self.stage.value}] {self.message}"


class ConfigurationError(RetrievalError):
    """Dimension mismatch, missing schema, or a missing credential."""
    pass


class ProvisioningError(RetrievalError):
    """Collection create or load failed."""
    pass


class UpstreamTimeout(RetrievalError):
    """An external call exceeded its deadline."""
    pass


class UpstreamMalformed(RetrievalError):
    """An external response could not be parsed, even after repair."""
    pass


class NoDataError(RetrievalError):
    """Nothing to work with: zero candidates or zero extracted text."""
    pass


class PartialExtractionFailure(RetrievalError):
    """Some pages failed to fetch or parse. Non-fatal."""
    pass

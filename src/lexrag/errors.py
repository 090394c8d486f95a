"""Error taxonomy for the lexrag query pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping


class PipelineErrorCode(str, Enum):
    """Codes attached to every error surfaced by the pipeline."""

    EMBEDDING_ERROR = "EMBEDDING_ERROR"
    RETRIEVAL_ERROR = "RETRIEVAL_ERROR"
    GENERATION_ERROR = "GENERATION_ERROR"
    NO_RESULTS = "NO_RESULTS"
    NOT_INITIALIZED = "NOT_INITIALIZED"
    INVALID_CONFIG = "INVALID_CONFIG"
    UNKNOWN = "UNKNOWN"


class PipelineError(RuntimeError):
    """Raised when any phase of the query pipeline fails."""

    def __init__(
        self,
        message: str,
        code: PipelineErrorCode = PipelineErrorCode.UNKNOWN,
        *,
        cause: BaseException | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = PipelineErrorCode(code)
        self.cause = cause
        self.metadata: dict[str, Any] = dict(metadata or {})
        if cause is not None:
            self.__cause__ = cause

    def __repr__(self) -> str:
        return f"PipelineError(code={self.code.value!r}, message={self.message!r})"

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        code: PipelineErrorCode = PipelineErrorCode.UNKNOWN,
        metadata: Mapping[str, Any] | None = None,
    ) -> "PipelineError":
        """Wrap ``exc`` unless it already belongs to the taxonomy."""

        if isinstance(exc, PipelineError):
            return exc
        message = str(exc) or exc.__class__.__name__
        return cls(message, code, cause=exc, metadata=metadata)

    def with_context(self, **metadata: Any) -> "PipelineError":
        """Attach metadata keys that are not already present and return ``self``."""

        for key, value in metadata.items():
            self.metadata.setdefault(key, value)
        return self

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code.value, "message": self.message}


__all__ = ["PipelineError", "PipelineErrorCode"]

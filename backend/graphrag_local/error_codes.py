from __future__ import annotations

import errno
from dataclasses import dataclass
from typing import Any, Literal

from .errors import (
    CorruptionError,
    NotFoundError,
    QuotaExceededError,
    QuerySuperseded,
    StorageExhausted,
    UnsupportedVersionError,
    ValidationError,
)

QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}

ErrorStage = Literal["ingest", "query", "save", "load", "settings", "completion", "unknown"]


@dataclass(frozen=True)
class CodedError:
    code: str
    stage: ErrorStage
    message: str
    detail: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error_code": self.code, "stage": self.stage, "message": self.message}
        if self.detail:
            out["detail"] = self.detail
        return out


def _name(e: BaseException) -> str:
    return type(e).__name__


def classify_error(*, e: BaseException, stage: ErrorStage) -> CodedError:
    msg = str(e) if str(e) else _name(e)

    # Input errors
    if isinstance(e, ValidationError):
        return CodedError(code="VALIDATION_FAILED", stage=stage, message=msg)
    if isinstance(e, NotFoundError):
        return CodedError(code="NOT_FOUND", stage=stage, message=msg)
    if isinstance(e, QuerySuperseded):
        return CodedError(code="QUERY_SUPERSEDED", stage=stage, message=msg)

    # Snapshot issues
    if isinstance(e, UnsupportedVersionError):
        return CodedError(
            code="SNAPSHOT_VERSION_UNSUPPORTED",
            stage=stage,
            message=msg,
            detail={"found": e.found, "supported": e.supported},
        )
    if isinstance(e, CorruptionError):
        return CodedError(code="SNAPSHOT_CORRUPT", stage=stage, message=msg)

    # Storage capacity issues
    if isinstance(e, StorageExhausted):
        return CodedError(code="STORAGE_EXHAUSTED", stage=stage, message=msg)
    if isinstance(e, QuotaExceededError):
        return CodedError(code="STORAGE_QUOTA_EXCEEDED", stage=stage, message=msg)
    if isinstance(e, OSError) and e.errno in QUOTA_ERRNOS:
        return CodedError(code="STORAGE_QUOTA_EXCEEDED", stage=stage, message=msg)
    if isinstance(e, OSError):
        return CodedError(code="STORAGE_IO_ERROR", stage=stage, message=msg, detail={"type": _name(e)})

    # HTTP client issues (Ollama)
    if "ConnectError" in _name(e) or "Connection refused" in msg:
        return CodedError(code="COMPLETION_OFFLINE", stage=stage, message=msg)
    if "Timeout" in _name(e):
        return CodedError(code="COMPLETION_TIMEOUT", stage=stage, message=msg)

    return CodedError(code="UNCLASSIFIED", stage=stage, message=msg, detail={"type": _name(e)})

"""Absorbs persistence and connectivity failures and turns them into status.

Input errors (validation, not found) propagate to the caller. Storage and
snapshot errors never escape: they are classified, counted, logged and
published on ``EngineStatus`` so the UI can show them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List

from .error_codes import CodedError, ErrorStage, classify_error
from .errors import CorruptionError, QuotaExceededError, StorageExhausted, UnsupportedVersionError
from .metrics import get_metrics, inc_error
from .persistence import PersistenceLayer, Snapshot

logger = logging.getLogger(__name__)


@dataclass
class EngineStatus:
    storage_exhausted: bool = False
    snapshot_locked: bool = False
    degraded_start: bool = False
    online: bool = False
    last_error: CodedError | None = None
    errors: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "storage_exhausted": self.storage_exhausted,
            "snapshot_locked": self.snapshot_locked,
            "degraded_start": self.degraded_start,
            "online": self.online,
            "last_error": self.last_error.as_dict() if self.last_error else None,
            "errors": dict(self.errors),
        }


class ResilienceSupervisor:
    def __init__(self, persistence: PersistenceLayer, status: EngineStatus | None = None) -> None:
        self.persistence = persistence
        self.status = status or EngineStatus()

    def record(self, e: BaseException, *, stage: ErrorStage) -> CodedError:
        coded = classify_error(e=e, stage=stage)
        inc_error(stage=coded.stage, code=coded.code)
        self.status.last_error = coded
        self.status.errors[coded.code] = self.status.errors.get(coded.code, 0) + 1
        logger.warning("error_absorbed", extra={"fields": coded.as_dict()})
        return coded

    async def save(
        self,
        build_snapshot: Callable[[], Snapshot],
        *,
        reclaim: Callable[[], Any] | None = None,
    ) -> bool:
        """Save a snapshot; True when it reached storage.

        On quota exhaustion ``reclaim`` frees space (cache eviction,
        compaction) and the save is retried once with a fresh snapshot.
        """

        if self.status.storage_exhausted:
            logger.info("save_skipped", extra={"fields": {"reason": "storage_exhausted"}})
            return False
        if self.status.snapshot_locked:
            logger.info("save_skipped", extra={"fields": {"reason": "snapshot_locked"}})
            return False
        try:
            await self.persistence.save(build_snapshot())
            return True
        except QuotaExceededError as e:
            self.record(e, stage="save")
            if reclaim is not None:
                reclaim()
        except OSError as e:
            self.record(e, stage="save")
            return False

        try:
            await self.persistence.save(build_snapshot())
            logger.info("save_recovered", extra={"fields": {"bytes": self.persistence.last_saved_bytes}})
            return True
        except (QuotaExceededError, OSError) as e:
            self.record(e, stage="save")
            self._exhaust(str(e))
            return False

    def _exhaust(self, reason: str) -> None:
        self.status.storage_exhausted = True
        get_metrics().storage_exhausted.set(1.0)
        self.record(StorageExhausted(f"Persistence disabled: {reason}"), stage="save")

    def resolve_storage(self) -> None:
        """Re-enable saves after exhaustion, or allow overwriting a rejected snapshot."""

        if not (self.status.storage_exhausted or self.status.snapshot_locked):
            return
        self.status.storage_exhausted = False
        self.status.snapshot_locked = False
        get_metrics().storage_exhausted.set(0.0)
        logger.info("storage_resolved")

    async def load(self) -> Snapshot | None:
        """Load the snapshot, or start empty and degraded when it is unusable."""

        for attempt in (1, 2):
            try:
                return await self.persistence.load()
            except UnsupportedVersionError as e:
                self.record(e, stage="load")
                # Saving now would replace a record written by a newer build.
                self.status.snapshot_locked = True
                break
            except (CorruptionError, OSError) as e:
                self.record(e, stage="load")
                if attempt == 2:
                    break
                logger.info("load_retry", extra={"fields": {"attempt": attempt + 1}})
        self.status.degraded_start = True
        logger.warning("degraded_start")
        return None


Listener = Callable[[bool], None]


class ConnectivityMonitor:
    """Observable online flag for the completion service.

    Retrieval does not depend on it; it only drives the UI and the
    completion endpoint.
    """

    def __init__(
        self,
        probe: Callable[[], Awaitable[bool]] | None = None,
        *,
        status: EngineStatus | None = None,
        online: bool = False,
    ) -> None:
        self._probe = probe
        self._status = status
        self._online = online
        self._listeners: List[Listener] = []
        self._publish()

    @property
    def online(self) -> bool:
        return self._online

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, value: bool) -> None:
        value = bool(value)
        if value == self._online:
            return
        self._online = value
        self._publish()
        logger.info("connectivity_changed", extra={"fields": {"online": value}})
        for listener in list(self._listeners):
            listener(value)

    async def probe(self) -> bool:
        if self._probe is None:
            return self._online
        self.set_online(await self._probe())
        return self._online

    def _publish(self) -> None:
        get_metrics().completion_online.set(1.0 if self._online else 0.0)
        if self._status is not None:
            self._status.online = self._online

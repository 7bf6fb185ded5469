"""Engine configuration and the strategy / performance mode controller.

Static knobs (chunk window, extraction thresholds, budgets) live in
``EngineConfig`` and are read once from the environment. The user-facing
choices (retrieval strategy, performance mode and the optional retrieval
stages) live in ``SettingsController`` and are read by the retrieval engine
at the start of every query.
"""

from __future__ import annotations

import enum
import json
import logging
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

if TYPE_CHECKING:
    from .persistence import KeyValueBackend

logger = logging.getLogger(__name__)

SETTINGS_KEY_V1 = "graphrag_config_v1"
SETTINGS_KEY_LEGACY = "graphrag_config"


class Strategy(str, enum.Enum):
    NAIVE = "naive"
    LOCAL = "local"
    GLOBAL = "global"
    HYBRID = "hybrid"


class PerformanceMode(str, enum.Enum):
    FAST = "fast"
    BALANCED = "balanced"
    THOROUGH = "thorough"


class RetrievalStage(str, enum.Enum):
    HYDE = "hyde"
    PAGERANK = "pagerank"
    RERANKING = "reranking"
    SYNTHESIS = "synthesis"


@dataclass(frozen=True)
class StageToggles:
    """Optional retrieval stages around the strategy ranking.

    With every stage off, results are exactly the strategy's ranking.
    """

    hyde: bool = False
    pagerank: bool = False
    reranking: bool = False
    synthesis: bool = False

    def enabled(self) -> list[str]:
        return [s.value for s in RetrievalStage if getattr(self, s.value)]


@dataclass(frozen=True)
class PerformanceProfile:
    """Breadth/depth knobs for one performance mode.

    Only search breadth changes between modes. Scoring formulas do not.
    """

    candidate_pool: int
    traversal_depth: int
    max_communities: int
    hybrid_local_weight: float
    hybrid_global_weight: float


PROFILES: dict[PerformanceMode, PerformanceProfile] = {
    PerformanceMode.FAST: PerformanceProfile(
        candidate_pool=20, traversal_depth=1, max_communities=1, hybrid_local_weight=0.7, hybrid_global_weight=0.3
    ),
    PerformanceMode.BALANCED: PerformanceProfile(
        candidate_pool=50, traversal_depth=1, max_communities=2, hybrid_local_weight=0.6, hybrid_global_weight=0.4
    ),
    PerformanceMode.THOROUGH: PerformanceProfile(
        candidate_pool=200, traversal_depth=2, max_communities=4, hybrid_local_weight=0.5, hybrid_global_weight=0.5
    ),
}


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class EngineConfig:
    chunk_window: int = 800
    chunk_overlap: int = 100
    max_document_bytes: int = 5 * 1024 * 1024
    top_k: int = 8
    local_boost: float = 0.25
    centrality_boost: float = 0.2
    coverage_boost: float = 0.15
    default_neighbor_depth: int = 2
    max_neighbor_depth: int = 4
    community_threshold: float = 1.0
    community_cache_size: int = 4
    repeat_threshold: int = 2
    yield_every: int = 64
    context_max_chars_per_chunk: int = 1200
    context_max_total_chars: int = 8000
    autosave: bool = True
    profiles: dict[PerformanceMode, PerformanceProfile] = field(default_factory=lambda: dict(PROFILES))

    def __post_init__(self) -> None:
        if self.chunk_window <= 0:
            raise ValidationError("chunk_window must be positive")
        if not 0 <= self.chunk_overlap < self.chunk_window:
            raise ValidationError("chunk_overlap must satisfy 0 <= overlap < window")
        if self.max_document_bytes <= 0:
            raise ValidationError("max_document_bytes must be positive")
        if self.top_k <= 0:
            raise ValidationError("top_k must be positive")
        if self.yield_every <= 0:
            raise ValidationError("yield_every must be positive")
        if self.centrality_boost < 0 or self.coverage_boost < 0:
            raise ValidationError("stage boosts must not be negative")

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            chunk_window=_env_int("GRAPHRAG_CHUNK_WINDOW", 800),
            chunk_overlap=_env_int("GRAPHRAG_CHUNK_OVERLAP", 100),
            max_document_bytes=_env_int("GRAPHRAG_MAX_DOCUMENT_BYTES", 5 * 1024 * 1024),
            top_k=_env_int("GRAPHRAG_TOP_K", 8),
            local_boost=_env_float("GRAPHRAG_LOCAL_BOOST", 0.25),
            centrality_boost=_env_float("GRAPHRAG_CENTRALITY_BOOST", 0.2),
            coverage_boost=_env_float("GRAPHRAG_COVERAGE_BOOST", 0.15),
            default_neighbor_depth=_env_int("GRAPHRAG_NEIGHBOR_DEPTH", 2),
            max_neighbor_depth=_env_int("GRAPHRAG_MAX_NEIGHBOR_DEPTH", 4),
            community_threshold=_env_float("GRAPHRAG_COMMUNITY_THRESHOLD", 1.0),
            community_cache_size=_env_int("GRAPHRAG_COMMUNITY_CACHE_SIZE", 4),
            repeat_threshold=_env_int("GRAPHRAG_REPEAT_THRESHOLD", 2),
            yield_every=_env_int("GRAPHRAG_YIELD_EVERY", 64),
            autosave=os.getenv("GRAPHRAG_AUTOSAVE", "1").strip() in {"1", "true", "True", "yes"},
        )

    def profile(self, mode: PerformanceMode) -> PerformanceProfile:
        return self.profiles[mode]


class SettingsModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    search_strategy: Strategy = Strategy.HYBRID
    performance_mode: PerformanceMode = PerformanceMode.BALANCED
    hyde_enabled: bool = False
    pagerank_enabled: bool = False
    reranking_enabled: bool = False
    synthesis_enabled: bool = True


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _default_settings() -> SettingsModel:
    return SettingsModel(
        search_strategy=Strategy(os.getenv("GRAPHRAG_STRATEGY", Strategy.HYBRID.value).strip().lower()),
        performance_mode=PerformanceMode(
            os.getenv("GRAPHRAG_PERFORMANCE_MODE", PerformanceMode.BALANCED.value).strip().lower()
        ),
        hyde_enabled=_env_flag("GRAPHRAG_HYDE", False),
        pagerank_enabled=_env_flag("GRAPHRAG_PAGERANK", False),
        reranking_enabled=_env_flag("GRAPHRAG_RERANKING", False),
        synthesis_enabled=_env_flag("GRAPHRAG_SYNTHESIS", True),
    )


class SettingsController:
    """Holds the user-selected strategy and performance mode.

    When a key-value backend is given the settings are persisted under
    ``graphrag_config_v1``; reads fall back to the legacy ``graphrag_config``
    key and then to defaults.
    """

    def __init__(self, backend: "KeyValueBackend | None" = None) -> None:
        self._backend = backend
        self._settings = self._load()

    def current_strategy(self) -> Strategy:
        return self._settings.search_strategy

    def current_performance_mode(self) -> PerformanceMode:
        return self._settings.performance_mode

    def set_strategy(self, strategy: Strategy | str) -> None:
        self._update(search_strategy=self._coerce(Strategy, strategy))

    def current_stages(self) -> StageToggles:
        s = self._settings
        return StageToggles(
            hyde=s.hyde_enabled,
            pagerank=s.pagerank_enabled,
            reranking=s.reranking_enabled,
            synthesis=s.synthesis_enabled,
        )

    def set_performance_mode(self, mode: PerformanceMode | str) -> None:
        self._update(performance_mode=self._coerce(PerformanceMode, mode))

    def set_stage(self, stage: RetrievalStage | str, enabled: bool) -> None:
        name = self._coerce(RetrievalStage, stage).value
        self._update(**{f"{name}_enabled": bool(enabled)})

    def export_json(self) -> str:
        return self._settings.model_dump_json(indent=2)

    def import_json(self, raw: str) -> None:
        try:
            settings = SettingsModel.model_validate_json(raw)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid configuration: {e.errors()[0].get('msg', 'invalid')}") from e
        self._settings = settings
        self._save()

    def reset_to_defaults(self) -> None:
        self._settings = SettingsModel()
        self._save()

    def as_dict(self) -> dict[str, Any]:
        return self._settings.model_dump(mode="json")

    @staticmethod
    def _coerce(kind: type[enum.Enum], value: Any) -> Any:
        try:
            return kind(value)
        except ValueError as e:
            allowed = ", ".join(m.value for m in kind)
            raise ValidationError(f"{value!r} is not one of: {allowed}") from e

    def _update(self, **changes: Any) -> None:
        self._settings = self._settings.model_copy(update=changes)
        self._save()

    def _load(self) -> SettingsModel:
        if self._backend is None:
            return _default_settings()
        for key in (SETTINGS_KEY_V1, SETTINGS_KEY_LEGACY):
            try:
                raw = self._backend.get(key)
            except OSError:
                logger.warning("settings_read_failed", extra={"fields": {"key": key}})
                continue
            if raw is None:
                continue
            try:
                return SettingsModel.model_validate(json.loads(raw.decode("utf-8")))
            except (ValueError, PydanticValidationError):
                logger.warning("settings_invalid", extra={"fields": {"key": key}})
                continue
        return _default_settings()

    def _save(self) -> None:
        if self._backend is None:
            return
        try:
            self._backend.put(SETTINGS_KEY_V1, self._settings.model_dump_json().encode("utf-8"))
        except Exception as e:
            # Settings stay in memory; the snapshot path reports storage problems.
            logger.warning("settings_write_failed", extra={"fields": {"error": str(e)}})

"""Mutable-by-replacement router configuration.

The router reads one RouterConfig per decision; the optimization monitor and
the mode endpoint publish a new one. A snapshot is never mutated in place,
so a decision always sees a consistent mode, fraction and flag set.
"""

from __future__ import annotations

import dataclasses
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from econ_router.routing.errors import InvalidEconomicMode

if TYPE_CHECKING:
    from econ_router.config import Settings
    from econ_router.routing.tiers import TierId

log = structlog.get_logger(__name__)


def _loggable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, frozenset):
        return sorted(getattr(item, "value", item) for item in value)
    return value


class EconomicMode(str, Enum):
    """Cost/quality trade-off requested for a decision."""

    COST_OPTIMIZED = "cost_optimized"  # Cheapest tier that fits
    BALANCED = "balanced"  # Best quality within a share of the remaining budget
    PERFORMANCE = "performance"  # Best quality; budget is soft

    @classmethod
    def parse(cls, value: object) -> EconomicMode:
        """Strict conversion. Unknown values raise InvalidEconomicMode."""
        if isinstance(value, EconomicMode):
            return value
        try:
            return cls(value)
        except ValueError as exc:
            raise InvalidEconomicMode(value, [m.value for m in cls]) from exc


@dataclass(frozen=True)
class RouterConfig:
    """Immutable snapshot of the knobs the router reads per decision.

    Attributes:
        mode: Active mode, used when a request does not name one
        balanced_budget_fraction: Balanced mode's per-request share of remaining budget
        simple_task_types: Task types routed cheapest-first in balanced mode
        caching_enabled: Serve repeated prompts from the response cache
        batching_enabled: Coalesce identical in-flight executions
        demoted_tiers: Tiers ranked last in balanced mode
        version: Incremented on every published change
        updated_at: When this snapshot was published
    """

    mode: EconomicMode = EconomicMode.BALANCED
    balanced_budget_fraction: float = 0.5
    simple_task_types: frozenset[str] = frozenset()
    caching_enabled: bool = False
    batching_enabled: bool = False
    demoted_tiers: frozenset[TierId] = frozenset()
    version: int = 0
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "balanced_budget_fraction": self.balanced_budget_fraction,
            "simple_task_types": sorted(self.simple_task_types),
            "caching_enabled": self.caching_enabled,
            "batching_enabled": self.batching_enabled,
            "demoted_tiers": sorted(tier.value for tier in self.demoted_tiers),
            "version": self.version,
            "updated_at": self.updated_at.isoformat(),
        }


class RuntimeConfigHolder:
    """Holds the current RouterConfig and publishes replacements.

    Reads are a plain attribute load. Writers serialize on a lock so that
    two read-modify-write updates cannot lose each other's change.
    """

    def __init__(self, initial: RouterConfig | None = None) -> None:
        self._current = initial or RouterConfig()
        self._write_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> RuntimeConfigHolder:
        return cls(
            RouterConfig(
                mode=EconomicMode.parse(settings.default_economic_mode),
                balanced_budget_fraction=settings.balanced_budget_fraction,
                simple_task_types=frozenset(settings.simple_task_types),
            )
        )

    def get(self) -> RouterConfig:
        return self._current

    def update(self, **changes: Any) -> RouterConfig:
        """Publish a copy of the current snapshot with ``changes`` applied.

        Returns the current snapshot unchanged when nothing would differ.
        """
        with self._write_lock:
            current = self._current
            if all(getattr(current, name) == value for name, value in changes.items()):
                return current
            updated = dataclasses.replace(
                current,
                version=current.version + 1,
                updated_at=datetime.now(UTC),
                **changes,
            )
            self._current = updated

        log.info(
            "runtime_config.updated",
            version=updated.version,
            changes={name: _loggable(value) for name, value in changes.items()},
        )
        return updated

    def set_mode(self, mode: EconomicMode | str) -> RouterConfig:
        return self.update(mode=EconomicMode.parse(mode))

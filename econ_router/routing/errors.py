"""Typed failures raised by the routing subsystem.

Anything recoverable by trying the next tier is handled inside the router;
what reaches the caller is one of these.
"""

from __future__ import annotations


class RouterError(Exception):
    """Base exception for all routing failures."""


class ConfigurationError(RouterError):
    """Malformed tier catalog or router configuration. Fatal at startup."""


class InvalidEconomicMode(ConfigurationError):
    """Economic mode outside the enumerated set."""

    def __init__(self, mode: object, valid: list[str]) -> None:
        super().__init__(
            f"Invalid economic mode {mode!r}. Must be one of: {', '.join(valid)}"
        )
        self.mode = mode
        self.valid = valid


class EstimationError(RouterError):
    """Request payload cannot be turned into token counts."""


class BudgetExceeded(RouterError):
    """No tier fits the binding remaining budget in a hard-ceiling mode."""

    def __init__(
        self,
        *,
        mode: str,
        owner: str,
        cheapest_cost: float,
        remaining: float,
    ) -> None:
        super().__init__(
            f"No tier fits the remaining budget for {owner!r} in {mode} mode: "
            f"cheapest candidate ${cheapest_cost:.4f} > remaining ${remaining:.4f}"
        )
        self.mode = mode
        self.owner = owner
        self.cheapest_cost = cheapest_cost
        self.remaining = remaining


class TierUnavailable(RouterError):
    """Every candidate tier is unavailable. Retryable."""

    def __init__(self, tiers: list[str], message: str | None = None) -> None:
        super().__init__(message or f"No available tier among: {', '.join(tiers)}")
        self.tiers = tiers


class OptimizationCycleError(RouterError):
    """Failure inside a background optimization pass. Never reaches requests."""


class DispatchError(RouterError):
    """Every tier tried for an execution failed."""

    def __init__(self, tiers: list[str], message: str) -> None:
        super().__init__(message)
        self.tiers = tiers

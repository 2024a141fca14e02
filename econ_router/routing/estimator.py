"""Token counting and per-tier cost estimation.

Token counts are approximate by design: the estimator exists to rank tiers
against each other and against remaining budget, not to reproduce a
provider's invoice. The counting policy is pluggable:

- HeuristicTokenCounter: ceil(len(text) / chars_per_token), default 4 chars
- TiktokenCounter: cl100k_base BPE counts, closer for OpenAI-style models

Cost math is done in Decimal so that repeated debits of the same estimate
sum exactly; the public API returns floats.
"""

from __future__ import annotations

import math
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol

import structlog
import tiktoken

from econ_router.routing.errors import ConfigurationError, EstimationError

if TYPE_CHECKING:
    from econ_router.config import Settings
    from econ_router.routing.tiers import Tier, TierId

log = structlog.get_logger(__name__)

_TOKENIZER_NAME = "cl100k_base"
_THOUSAND = Decimal(1000)
# Nine decimal places keep sub-microdollar local-tier prices distinguishable
_COST_QUANTUM = Decimal("0.000000001")


class TokenCounter(Protocol):
    """Turns a prompt into an input token estimate."""

    def count(self, text: str) -> int: ...


class HeuristicTokenCounter:
    """Length-based estimate: one token per ``chars_per_token`` characters."""

    def __init__(self, chars_per_token: float = 4.0) -> None:
        if chars_per_token <= 0:
            raise ConfigurationError("chars_per_token must be positive")
        self._chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self._chars_per_token)


class TiktokenCounter:
    """BPE token count using tiktoken's cl100k_base encoding."""

    def __init__(self, encoding_name: str = _TOKENIZER_NAME) -> None:
        self._encoding = tiktoken.get_encoding(encoding_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text))


def build_token_counter(settings: Settings) -> TokenCounter:
    if settings.token_counter == "tiktoken":
        return TiktokenCounter()
    return HeuristicTokenCounter(settings.chars_per_token)


def estimate_output_tokens(input_tokens: int, ratio: float = 1.0) -> int:
    """Completion length heuristic: proportional to the prompt."""
    if ratio < 0:
        raise EstimationError("output token ratio cannot be negative")
    return math.ceil(input_tokens * ratio)


def validate_token_count(value: object, name: str) -> int:
    """Accept non-negative ints only; bools and floats are rejected."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise EstimationError(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise EstimationError(f"{name} cannot be negative (got {value})")
    return value


class CostEstimator:
    """Pure cost model: tokens x per-1K rates of a tier. No I/O."""

    def estimate(self, tier: Tier, input_tokens: int, output_tokens: int) -> float:
        """Return the estimated USD cost of running the tokens on ``tier``.

        Zero tokens (or zero rates) estimate to exactly zero. Any positive
        cost rounds up to at least one nano-dollar so it is never free.
        """
        input_tokens = validate_token_count(input_tokens, "input_tokens")
        output_tokens = validate_token_count(output_tokens, "output_tokens")

        cost = (
            Decimal(input_tokens) / _THOUSAND * Decimal(str(tier.input_cost_per_1k))
            + Decimal(output_tokens) / _THOUSAND * Decimal(str(tier.output_cost_per_1k))
        )
        if cost > 0:
            return float(max(cost.quantize(_COST_QUANTUM), _COST_QUANTUM))
        return float(cost.quantize(_COST_QUANTUM))

    def estimate_all(
        self,
        tiers: list[Tier],
        input_tokens: int,
        output_tokens: int,
    ) -> dict[TierId, float]:
        return {
            tier.tier_id: self.estimate(tier, input_tokens, output_tokens) for tier in tiers
        }

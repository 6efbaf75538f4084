"""
Global token budget tracking for one orchestration run.

Usage from every iteration is accumulated here; ``is_exhausted`` is the stop signal
the sequential scheduler consults after each completed iteration. Tokens counted per
iteration are ``input_tokens + output_tokens``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from ralph_town.domain.models import TokenUsage


@dataclass(frozen=True, slots=True)
class BudgetSnapshot:
    """Point-in-time view of budget consumption."""

    tokens_used: int
    max_tokens: int
    cost_usd: float
    iterations: int

    @property
    def remaining_tokens(self) -> int:
        return max(0, self.max_tokens - self.tokens_used)

    @property
    def exhausted(self) -> bool:
        return self.tokens_used >= self.max_tokens

    def to_dict(self) -> dict[str, object]:
        return {
            "tokens_used": self.tokens_used,
            "max_tokens": self.max_tokens,
            "remaining_tokens": self.remaining_tokens,
            "cost_usd": self.cost_usd,
            "iterations": self.iterations,
        }


class TokenBudget:
    """Accumulate iteration usage against a global token cap."""

    def __init__(self, max_tokens: int, *, logger: Any | None = None) -> None:
        if max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        self._max_tokens = max_tokens
        self._tokens_used = 0
        self._cost_usd = 0.0
        self._iterations = 0
        self._exhaustion_logged = False
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def max_tokens(self) -> int:
        return self._max_tokens

    @property
    def tokens_used(self) -> int:
        return self._tokens_used

    @property
    def cost_usd(self) -> float:
        return self._cost_usd

    @property
    def iterations(self) -> int:
        return self._iterations

    @property
    def is_exhausted(self) -> bool:
        return self._tokens_used >= self._max_tokens

    def record(self, usage: TokenUsage, *, criterion_id: str | None = None) -> BudgetSnapshot:
        self._tokens_used += usage.total_tokens
        self._cost_usd += usage.cost_usd
        self._iterations += 1
        snapshot = self.snapshot()
        if snapshot.exhausted and not self._exhaustion_logged:
            self._exhaustion_logged = True
            self._logger.warning(
                "control_plane_budget_exhausted",
                criterion_id=criterion_id,
                **snapshot.to_dict(),
            )
        return snapshot

    def snapshot(self) -> BudgetSnapshot:
        return BudgetSnapshot(
            tokens_used=self._tokens_used,
            max_tokens=self._max_tokens,
            cost_usd=self._cost_usd,
            iterations=self._iterations,
        )


__all__ = ["BudgetSnapshot", "TokenBudget"]

"""Guardrail spending policy, bucket sequencing and target allocation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np

from core import AllocationPolicy, AssetBuckets, GlidePath, GuardrailPolicy


NORMAL = "normal"
CAPITAL_PRESERVATION = "capital-preservation"
PROSPERITY = "prosperity"

# Draw order absent an RMD override
WITHDRAWAL_ORDER = ("cash_equivalents", "capital_gains", "tax_deferred", "tax_free")


@dataclass(frozen=True)
class GuardrailDecision:
    state: str
    factor: float

    @property
    def adjusted(self) -> bool:
        return self.state != NORMAL


def apply_guardrails(
    policy: GuardrailPolicy,
    withdrawal_rate: float,
    factor: float,
    need: float,
    balance: float,
    first_year: bool = False,
) -> GuardrailDecision:
    """Move the discretionary spending factor when the withdrawal rate drifts.

    The current rate ``need / balance`` is compared with the initial
    ``withdrawal_rate`` widened by the upper and lower bands. The factor stays
    within ``[floor, ceiling]``.
    """

    if not policy.enabled or first_year or balance <= 0:
        return GuardrailDecision(NORMAL, factor)
    rate = need / balance
    if rate > withdrawal_rate * (1 + policy.upper_band):
        new_factor = max(policy.floor, factor * (1 - policy.cut))
        if new_factor < factor:
            return GuardrailDecision(CAPITAL_PRESERVATION, new_factor)
    elif rate < withdrawal_rate * (1 - policy.lower_band):
        new_factor = min(policy.ceiling, factor * (1 + policy.raise_))
        if new_factor > factor:
            return GuardrailDecision(PROSPERITY, new_factor)
    return GuardrailDecision(NORMAL, factor)


@dataclass(frozen=True)
class BucketDraw:
    cash_equivalents: float = 0.0
    capital_gains: float = 0.0
    tax_deferred: float = 0.0
    tax_free: float = 0.0

    @property
    def total(self) -> float:
        return self.cash_equivalents + self.capital_gains + self.tax_deferred + self.tax_free


@dataclass
class Balances:
    """Mutable bucket balances of one scenario."""

    tax_deferred: float
    tax_free: float
    capital_gains: float
    cash_equivalents: float
    # Cost basis of the capital-gains bucket, in dollars
    basis: float

    @classmethod
    def from_assets(cls, assets: AssetBuckets) -> "Balances":
        return cls(
            tax_deferred=assets.tax_deferred,
            tax_free=assets.tax_free,
            capital_gains=assets.capital_gains,
            cash_equivalents=assets.cash_equivalents,
            basis=assets.capital_gains * assets.capital_gains_basis,
        )

    @property
    def total(self) -> float:
        return self.tax_deferred + self.tax_free + self.capital_gains + self.cash_equivalents

    @property
    def invested(self) -> float:
        return self.tax_deferred + self.tax_free + self.capital_gains

    def is_finite(self) -> bool:
        return bool(np.isfinite([self.total, self.basis]).all())

    def grow(self, invested_return: float, cash_return: float) -> None:
        self.tax_deferred *= 1 + invested_return
        self.tax_free *= 1 + invested_return
        self.capital_gains *= 1 + invested_return
        self.cash_equivalents *= 1 + cash_return

    def gain_fraction(self) -> float:
        if self.capital_gains <= 0:
            return 0.0
        return max(0.0, 1.0 - self.basis / self.capital_gains)

    def plan(self, amount: float) -> Tuple[BucketDraw, float]:
        """Split ``amount`` across buckets in sequence; also return realized gains."""

        remaining = amount
        taken = {}
        for name in WITHDRAWAL_ORDER:
            take = min(remaining, getattr(self, name))
            taken[name] = take
            remaining -= take
        draw = BucketDraw(**taken)
        return draw, draw.capital_gains * self.gain_fraction()

    def apply(self, draw: BucketDraw) -> None:
        if draw.capital_gains > 0 and self.capital_gains > 0:
            self.basis -= self.basis * draw.capital_gains / self.capital_gains
        self.cash_equivalents -= draw.cash_equivalents
        self.capital_gains -= draw.capital_gains
        self.tax_deferred -= draw.tax_deferred
        self.tax_free -= draw.tax_free
        if self.capital_gains <= 0:
            self.capital_gains = 0.0
            self.basis = 0.0


def allocation_weights(policy: AllocationPolicy, names: Sequence[str], age: int) -> np.ndarray:
    """Target weight of each asset class in ``names`` at ``age``."""

    weights = np.zeros(len(names), dtype=np.float64)
    index = {name: i for i, name in enumerate(names)}
    if isinstance(policy, GlidePath):
        span = policy.end_age - policy.start_age
        progress = min(max((age - policy.start_age) / span, 0.0), 1.0)
        equity = policy.start_equity + (policy.end_equity - policy.start_equity) * progress
        cash = policy.cash if "cash" in index else 0.0
        weights[index["stocks"]] = equity
        weights[index["bonds"]] = 1.0 - equity - cash
        if "cash" in index:
            weights[index["cash"]] = cash
        return weights
    for name, weight in policy.weights.items():
        weights[index[name]] = weight
    return weights


def weight_schedule(policy: AllocationPolicy, names: Sequence[str], start_age: int, years: int) -> np.ndarray:
    return np.array(
        [allocation_weights(policy, names, start_age + t) for t in range(years)],
        dtype=np.float64,
    ).reshape(years, len(names))

"""Correlated asset-class returns with regime switching and variance reduction."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy.stats import norm

from core import (
    STREAM_REGIME,
    STREAM_RETURNS,
    STREAM_STRATA,
    InvalidParameterError,
    MarketAssumptions,
    RandomContext,
    VarianceReduction,
)


# Annual returns are floored so a bucket can never be wiped out in one year
MIN_RETURN = -0.99

NORMAL = "normal"
STRESS = "stress"


def cagr2aagr(cagr: float, volatility: float) -> float:
    """Arithmetic mean return that compounds to ``cagr`` at ``volatility``."""
    return cagr + volatility ** 2 / 2


def aagr2cagr(aagr: float, volatility: float) -> float:
    return aagr - volatility ** 2 / 2


@dataclass(frozen=True)
class ReturnDraw:
    year_index: int
    returns: Tuple[float, ...]
    regime: str


@dataclass(frozen=True)
class ScenarioReturns:
    """Sampled returns for one scenario, indexed ``[year, asset_class]``."""

    returns: np.ndarray
    unclipped: np.ndarray
    stress: np.ndarray

    def regime(self, year: int) -> str:
        return STRESS if self.stress[year] else NORMAL

    def draw(self, year: int) -> ReturnDraw:
        return ReturnDraw(year, tuple(float(r) for r in self.returns[year]), self.regime(year))

    def draws(self) -> List[ReturnDraw]:
        return [self.draw(t) for t in range(len(self.returns))]


def pair_index(scenario: int, antithetic: bool) -> int:
    """Scenarios ``2k`` and ``2k + 1`` share random streams when antithetic."""
    return scenario // 2 if antithetic else scenario


def pair_count(iterations: int, antithetic: bool) -> int:
    return (iterations + 1) // 2 if antithetic else iterations


def latin_hypercube_strata(ctx: RandomContext, n_pairs: int, dims: int) -> np.ndarray:
    """Stratum assignment ``[dim, pair]``: each dimension is a permutation of pairs."""

    rng = ctx.run_generator(STREAM_STRATA)
    if dims <= 0 or n_pairs <= 0:
        return np.empty((0, max(n_pairs, 0)), dtype=np.int64)
    return np.stack([rng.permutation(n_pairs) for _ in range(dims)])


class ReturnGenerator:
    """Draws correlated annual returns for every asset class of a market."""

    def __init__(self, market: MarketAssumptions, variance: Optional[VarianceReduction] = None):
        self.market = market
        self.variance = variance or VarianceReduction()
        self.names = market.names
        self.vols = np.array([c.volatility for c in market.asset_classes], dtype=np.float64)
        self.means = np.array(
            [cagr2aagr(c.cagr, c.volatility) for c in market.asset_classes], dtype=np.float64
        )
        try:
            self.cholesky = np.linalg.cholesky(np.asarray(market.correlation, dtype=np.float64))
        except np.linalg.LinAlgError as exc:
            raise InvalidParameterError("market.correlation", "must be positive definite") from exc

        regime = market.regime
        if regime is not None:
            self.stress_means = self.means - regime.stress_drag * self.vols
            self.stress_vols = self.vols * regime.stress_volatility
        else:
            self.stress_means = self.means
            self.stress_vols = self.vols

    @property
    def n_assets(self) -> int:
        return len(self.names)

    def noise(
        self,
        ctx: RandomContext,
        scenario: int,
        years: int,
        strata: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """Independent standard normals of shape ``(years, n_assets)``."""

        antithetic = self.variance.antithetic
        pair = pair_index(scenario, antithetic)
        z = ctx.generator(pair, STREAM_RETURNS).standard_normal((years, self.n_assets))
        if strata is not None and strata.size:
            dims = min(strata.shape[0], z.size)
            n_pairs = strata.shape[1]
            jitter = 1.0 - ctx.generator(pair, STREAM_STRATA).random(dims)
            u = (strata[:dims, pair] + jitter) / n_pairs
            u = np.clip(u, 1e-12, 1.0 - 1e-12)
            flat = z.reshape(-1)
            flat[:dims] = norm.ppf(u)
            z = flat.reshape(years, self.n_assets)
        if antithetic and scenario % 2:
            z = -z
        return z

    def regimes(self, ctx: RandomContext, scenario: int, years: int) -> np.ndarray:
        """Stress flag per year from a two-state Markov chain starting in normal."""

        regime = self.market.regime
        stress = np.zeros(years, dtype=bool)
        if regime is None:
            return stress
        u = ctx.generator(pair_index(scenario, self.variance.antithetic), STREAM_REGIME).random(years)
        state = False
        for t in range(years):
            if state:
                state = u[t] >= regime.to_normal
            else:
                state = u[t] < regime.to_stress
            stress[t] = state
        return stress

    def scenario_returns(
        self,
        ctx: RandomContext,
        scenario: int,
        years: int,
        strata: Optional[np.ndarray] = None,
    ) -> ScenarioReturns:
        z = self.noise(ctx, scenario, years, strata)
        stress = self.regimes(ctx, scenario, years)
        correlated = z @ self.cholesky.T
        means = np.where(stress[:, None], self.stress_means, self.means)
        vols = np.where(stress[:, None], self.stress_vols, self.vols)
        raw = means + vols * correlated
        return ScenarioReturns(returns=np.maximum(raw, MIN_RETURN), unclipped=raw, stress=stress)

    def expected_growth(self, weights: np.ndarray) -> float:
        """Closed-form ``E[prod(1 + w_t . r_t)]`` over the rows of ``weights``.

        Regimes enter through a forward recursion over the Markov chain; given
        the regime, each year's expected gross return is ``1 + w . mean``.
        """

        weights = np.asarray(weights, dtype=np.float64)
        normal = 1.0 + weights @ self.means
        regime = self.market.regime
        if regime is None:
            return float(np.prod(normal))
        stressed = 1.0 + weights @ self.stress_means
        ts, tn = regime.to_stress, regime.to_normal
        a_normal = (1.0 - ts) * normal[0]
        a_stress = ts * stressed[0]
        for t in range(1, len(weights)):
            a_normal, a_stress = (
                (a_normal * (1.0 - ts) + a_stress * tn) * normal[t],
                (a_normal * ts + a_stress * (1.0 - tn)) * stressed[t],
            )
        return float(a_normal + a_stress)


def control_statistic(unclipped: np.ndarray, weights: np.ndarray) -> float:
    """Compounded portfolio growth over the rows of ``weights``."""
    n = min(len(unclipped), len(weights))
    return float(np.prod(1.0 + np.sum(unclipped[:n] * weights[:n], axis=1)))


def control_variate_adjust(values, controls, expected: float) -> Tuple[float, float]:
    """Return ``(adjusted mean, beta)`` for ``values`` against a known-mean control."""

    y = np.asarray(values, dtype=np.float64)
    c = np.asarray(controls, dtype=np.float64)
    if len(y) == 0:
        return 0.0, 0.0
    if len(y) < 2:
        return float(y.mean()), 0.0
    var_c = np.var(c, ddof=1)
    if var_c == 0 or not np.isfinite(var_c):
        return float(y.mean()), 0.0
    beta = float(np.cov(y, c, ddof=1)[0, 1] / var_c)
    return float(y.mean() - beta * (c.mean() - expected)), beta

import numpy as np
import pytest
from scipy.stats import norm

from core import (
    AssetClass,
    InvalidParameterError,
    MarketAssumptions,
    RandomContext,
    RegimeSwitching,
    VarianceReduction,
)
from returns import (
    MIN_RETURN,
    ReturnGenerator,
    aagr2cagr,
    cagr2aagr,
    control_statistic,
    control_variate_adjust,
    latin_hypercube_strata,
    pair_index,
)


@pytest.mark.parametrize("cagr", [-0.05, 0.0, 0.025, 0.07, 0.12])
@pytest.mark.parametrize("vol", [0.0, 0.01, 0.16, 0.3])
def test_cagr_aagr_inverse(cagr, vol):
    assert aagr2cagr(cagr2aagr(cagr, vol), vol) == pytest.approx(cagr)


def test_cagr2aagr_adds_half_variance():
    assert cagr2aagr(0.07, 0.16) == pytest.approx(0.07 + 0.0128)


def test_non_positive_definite_correlation_rejected():
    classes = (AssetClass("a", 0.05, 0.1), AssetClass("b", 0.05, 0.1), AssetClass("c", 0.05, 0.1))
    corr = ((1.0, 0.9, -0.9), (0.9, 1.0, 0.9), (-0.9, 0.9, 1.0))
    with pytest.raises(InvalidParameterError) as info:
        MarketAssumptions(classes, corr)
    assert info.value.field == "market.correlation"


def test_same_seed_same_returns():
    gen = ReturnGenerator(MarketAssumptions())
    a = gen.scenario_returns(RandomContext(7), 3, 30)
    b = gen.scenario_returns(RandomContext(7), 3, 30)
    assert np.array_equal(a.returns, b.returns)
    c = gen.scenario_returns(RandomContext(8), 3, 30)
    assert not np.array_equal(a.returns, c.returns)


def test_antithetic_pairs_mirror_noise():
    gen = ReturnGenerator(MarketAssumptions(), VarianceReduction(antithetic=True))
    ctx = RandomContext(11)
    assert pair_index(4, True) == pair_index(5, True) == 2
    z_even = gen.noise(ctx, 4, 20)
    z_odd = gen.noise(ctx, 5, 20)
    assert np.array_equal(z_even, -z_odd)


def test_without_antithetic_each_scenario_independent():
    gen = ReturnGenerator(MarketAssumptions(), VarianceReduction(antithetic=False))
    ctx = RandomContext(11)
    assert not np.array_equal(gen.noise(ctx, 4, 20), -gen.noise(ctx, 5, 20))


def test_returns_clipped():
    market = MarketAssumptions(
        asset_classes=(AssetClass("wild", -0.9, 1.0),),
        correlation=((1.0,),),
    )
    gen = ReturnGenerator(market)
    draws = gen.scenario_returns(RandomContext(1), 0, 200)
    assert draws.returns.min() >= MIN_RETURN
    assert draws.unclipped.min() < MIN_RETURN


def test_sample_moments_match_assumptions():
    market = MarketAssumptions()
    gen = ReturnGenerator(market)
    ctx = RandomContext(3)
    samples = np.concatenate([gen.scenario_returns(ctx, i, 40).returns for i in range(500)])
    stocks = samples[:, 0]
    assert stocks.mean() == pytest.approx(cagr2aagr(0.07, 0.16), abs=0.01)
    assert stocks.std() == pytest.approx(0.16, rel=0.05)
    corr = np.corrcoef(samples[:, 0], samples[:, 1])[0, 1]
    assert corr == pytest.approx(0.10, abs=0.05)


def test_regime_chain_starts_normal_and_shares_label():
    market = MarketAssumptions(regime=RegimeSwitching(to_stress=0.5, to_normal=0.5))
    gen = ReturnGenerator(market)
    draws = gen.scenario_returns(RandomContext(5), 0, 50)
    assert draws.stress.dtype == bool
    assert draws.stress.any() and not draws.stress.all()
    records = draws.draws()
    assert len(records) == 50
    assert {r.regime for r in records} == {"normal", "stress"}
    assert all(len(r.returns) == 3 for r in records)


def test_no_regime_means_always_normal():
    draws = ReturnGenerator(MarketAssumptions()).scenario_returns(RandomContext(5), 0, 10)
    assert not draws.stress.any()


def test_latin_hypercube_covers_every_stratum():
    strata = latin_hypercube_strata(RandomContext(2), 50, 6)
    assert strata.shape == (6, 50)
    for row in strata:
        assert sorted(row) == list(range(50))


def test_stratified_noise_is_spread_across_quantiles():
    variance = VarianceReduction(antithetic=False, stratified=True, lhs_dims=3)
    gen = ReturnGenerator(MarketAssumptions(), variance)
    ctx = RandomContext(9)
    n = 40
    strata = latin_hypercube_strata(ctx, n, variance.lhs_dims)
    first = np.array([gen.noise(ctx, i, 5, strata)[0, 0] for i in range(n)])
    # exactly one draw per stratum of the normal distribution
    bins = np.floor(norm.cdf(first) * n).astype(int)
    assert sorted(bins) == list(range(n))


def test_expected_growth_without_regime():
    gen = ReturnGenerator(MarketAssumptions())
    weights = np.tile([0.6, 0.35, 0.05], (10, 1))
    expected = np.prod(1 + weights @ gen.means)
    assert gen.expected_growth(weights) == pytest.approx(expected)


def test_expected_growth_with_regime_matches_simulation():
    market = MarketAssumptions(regime=RegimeSwitching(to_stress=0.2, to_normal=0.5))
    gen = ReturnGenerator(market)
    weights = np.tile([0.6, 0.35, 0.05], (5, 1))
    ctx = RandomContext(4)
    stats = [control_statistic(gen.scenario_returns(ctx, i, 5).unclipped, weights) for i in range(4000)]
    assert np.mean(stats) == pytest.approx(gen.expected_growth(weights), rel=0.02)
    assert gen.expected_growth(weights) < np.prod(1 + weights @ gen.means)


def test_control_variate_removes_known_bias():
    rng = np.random.default_rng(0)
    c = rng.normal(1.0, 0.2, 2000)
    y = 3.0 * c + rng.normal(0, 0.01, 2000)
    adjusted, beta = control_variate_adjust(y, c, 1.0)
    assert beta == pytest.approx(3.0, rel=0.01)
    assert adjusted == pytest.approx(3.0, abs=0.01)


def test_control_variate_constant_control():
    adjusted, beta = control_variate_adjust([1.0, 0.0, 1.0], [2.0, 2.0, 2.0], 1.0)
    assert beta == 0.0
    assert adjusted == pytest.approx(2 / 3)

import numpy as np
import pytest

from core import AssetBuckets, GlidePath, GuardrailPolicy, StaticAllocation
from withdrawals import (
    CAPITAL_PRESERVATION,
    NORMAL,
    PROSPERITY,
    Balances,
    BucketDraw,
    allocation_weights,
    apply_guardrails,
    weight_schedule,
)


POLICY = GuardrailPolicy()


def test_guardrail_cut_when_rate_too_high():
    decision = apply_guardrails(POLICY, 0.04, 1.0, need=60_000, balance=1_000_000)
    assert decision.state == CAPITAL_PRESERVATION
    assert decision.factor == pytest.approx(0.9)
    assert decision.adjusted


def test_guardrail_raise_when_rate_low():
    decision = apply_guardrails(POLICY, 0.04, 1.0, need=20_000, balance=1_000_000)
    assert decision.state == PROSPERITY
    assert decision.factor == pytest.approx(1.1)


def test_guardrail_inside_band():
    decision = apply_guardrails(POLICY, 0.04, 1.0, need=40_000, balance=1_000_000)
    assert decision == apply_guardrails(POLICY, 0.04, 1.0, 40_000, 1_000_000)
    assert decision.state == NORMAL
    assert decision.factor == 1.0


def test_first_year_and_disabled_not_adjusted():
    assert apply_guardrails(POLICY, 0.04, 1.0, 90_000, 1_000_000, first_year=True).factor == 1.0
    disabled = GuardrailPolicy(enabled=False)
    assert apply_guardrails(disabled, 0.04, 1.0, 90_000, 1_000_000).factor == 1.0


def test_empty_portfolio_not_adjusted():
    assert apply_guardrails(POLICY, 0.04, 1.0, 0.0, 0.0).state == NORMAL


def test_factor_stays_between_floor_and_ceiling():
    factor = 1.0
    for _ in range(20):
        factor = apply_guardrails(POLICY, 0.04, factor, 90_000, 1_000_000).factor
    assert factor == pytest.approx(POLICY.floor)
    assert apply_guardrails(POLICY, 0.04, factor, 90_000, 1_000_000).state == NORMAL
    for _ in range(20):
        factor = apply_guardrails(POLICY, 0.04, factor, 1_000, 1_000_000).factor
    assert factor == pytest.approx(POLICY.ceiling)


def _balances():
    return Balances.from_assets(
        AssetBuckets(
            tax_deferred=100_000,
            tax_free=50_000,
            capital_gains=40_000,
            cash_equivalents=10_000,
            capital_gains_basis=0.25,
        )
    )


def test_sequencing_order():
    balances = _balances()
    draw, gains = balances.plan(70_000)
    assert draw == BucketDraw(
        cash_equivalents=10_000, capital_gains=40_000, tax_deferred=20_000, tax_free=0.0
    )
    assert gains == pytest.approx(30_000)
    draw, _ = balances.plan(190_000)
    assert draw.tax_free == pytest.approx(40_000)


def test_plan_does_not_mutate():
    balances = _balances()
    balances.plan(100_000)
    assert balances.total == 200_000


def test_apply_tracks_basis():
    balances = _balances()
    draw, gains = balances.plan(30_000)
    assert gains == pytest.approx(15_000)
    balances.apply(draw)
    assert balances.capital_gains == pytest.approx(20_000)
    assert balances.basis == pytest.approx(5_000)
    assert balances.gain_fraction() == pytest.approx(0.75)


def test_growth_changes_gain_fraction():
    balances = _balances()
    balances.grow(1.0, 0.0)
    assert balances.capital_gains == 80_000
    assert balances.cash_equivalents == 10_000
    assert balances.gain_fraction() == pytest.approx(1 - 10_000 / 80_000)


def test_static_weights():
    names = ("stocks", "bonds", "cash")
    weights = allocation_weights(StaticAllocation({"stocks": 0.5, "bonds": 0.5}), names, 70)
    assert list(weights) == [0.5, 0.5, 0.0]


def test_glide_path_derisks():
    names = ("stocks", "bonds", "cash")
    policy = GlidePath(start_equity=0.8, end_equity=0.4, start_age=60, end_age=80, cash=0.05)
    assert allocation_weights(policy, names, 55)[0] == pytest.approx(0.8)
    assert allocation_weights(policy, names, 70)[0] == pytest.approx(0.6)
    assert allocation_weights(policy, names, 90)[0] == pytest.approx(0.4)
    schedule = weight_schedule(policy, names, 60, 25)
    assert schedule.shape == (25, 3)
    assert np.allclose(schedule.sum(axis=1), 1.0)
    assert np.all(np.diff(schedule[:, 0]) <= 0)

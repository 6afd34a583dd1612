from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pytest

from core import (
    AssetBuckets,
    Couple,
    ExpenseBaseline,
    GlidePath,
    InvalidParameterError,
    Person,
    RandomContext,
    SimulationParameters,
    Single,
    StaticAllocation,
    _coerce,
    load_config,
    params_from_dict,
    params_to_dict,
    save_config,
)


PROFILE = {
    "person": {
        "current_age": "62",
        "retirement_age": 65,
        "gender": "Female",
        "social_security_benefit": "$28,000",
        "pension": {"annual_benefit": "$12,000", "cola": "yes"},
    },
    "spouse": {"current_age": 64, "retirement_age": 64, "part_time": {"annual_amount": 10_000, "end_age": 68}},
    "assets": {
        "tax_deferred": "$500,000",
        "tax_free": "100000",
        "capital_gains": 150_000,
        "cash_equivalents": "$50,000",
        "total_assets": "$800,000",
        "capital_gains_basis": "40%",
    },
    "expenses": {"essential": "$50,000", "discretionary": "$20,000"},
    "allocation": {"type": "glide_path", "start_equity": "60%", "end_equity": "30%", "start_age": 62, "end_age": 90},
    "filing_status": "married",
    "state": "ca",
    "withdrawal_rate": "4.5%",
    "ltc": {"enabled": "true", "insurance": {"daily_benefit": 150}},
    "iterations": "500",
    "seed": 3,
}


def _simple(**overrides):
    kwargs = dict(
        household=Single(Person(60, 65)),
        assets=AssetBuckets(tax_deferred=100_000),
        expenses=ExpenseBaseline(essential=30_000),
    )
    kwargs.update(overrides)
    return SimulationParameters(**kwargs)


def test_profile_coercion():
    params = params_from_dict(PROFILE)
    assert isinstance(params.household, Couple)
    assert params.primary.current_age == 62
    assert params.primary.gender == "female"
    assert params.primary.social_security_benefit == 28_000
    assert params.primary.pension.cola is True
    assert params.household.spouse.part_time.end_age == 68
    assert params.assets.capital_gains_basis == pytest.approx(0.4)
    assert params.assets.total_assets == 800_000
    assert isinstance(params.allocation, GlidePath)
    assert params.allocation.start_equity == pytest.approx(0.6)
    assert params.state == "CA"
    assert params.withdrawal_rate == pytest.approx(0.045)
    assert params.ltc.enabled and params.ltc.insurance.daily_benefit == 150
    assert params.iterations == 500


def test_single_without_spouse():
    data = {k: v for k, v in PROFILE.items() if k != "spouse"}
    assert isinstance(params_from_dict(data).household, Single)


def test_round_trip_through_json(tmp_path):
    params = params_from_dict(PROFILE)
    path = tmp_path / "profile.json"
    save_config(params, str(path))
    assert load_config(str(path)) == params
    assert params_from_dict(params_to_dict(_simple())) == _simple()


@pytest.mark.parametrize(
    "change, field",
    [
        ({"assets": {"tax_deferred": -1}}, "assets.tax_deferred"),
        ({"assets": {"tax_deferred": 10, "total_assets": 20}}, "assets.total_assets"),
        ({"iterations": 0}, "iterations"),
        ({"iterations": "2.5"}, "profile.iterations"),
        ({"filing_status": "joint"}, "filing_status"),
        ({"allocation": {"type": "static", "weights": {"stocks": 0.5, "bonds": 0.4}}}, "allocation.weights"),
        ({"allocation": {"type": "static", "weights": {"gold": 1.0}}}, "allocation.weights"),
        ({"allocation": {"type": "random"}}, "allocation.type"),
        ({"market": {"correlation": [[1, 0.5, 0], [0.4, 1, 0], [0, 0, 1]]}}, "market.correlation"),
        ({"assets": {"tax_deferred": "$-5"}}, "assets.tax_deferred"),
        ({"withdrawal_rate": "120%"}, "profile.withdrawal_rate"),
        ({"bogus": 1}, "profile"),
    ],
)
def test_invalid_profiles(change, field):
    data = dict(PROFILE)
    data.update(change)
    with pytest.raises(InvalidParameterError) as info:
        params_from_dict(data)
    assert info.value.field == field


def test_missing_sections():
    with pytest.raises(InvalidParameterError) as info:
        params_from_dict({"person": PROFILE["person"], "assets": PROFILE["assets"]})
    assert info.value.field == "expenses"


def test_invalid_parameter_is_value_error():
    with pytest.raises(ValueError):
        _simple(iterations=-5)


def test_invalid_person_fields():
    with pytest.raises(InvalidParameterError) as info:
        Person(60, 65, health_status="great")
    assert info.value.field == "health_status"


def test_default_allocation_valid():
    params = _simple()
    assert isinstance(params.allocation, StaticAllocation)
    assert params.assets.total_assets == 100_000


def test_random_context_streams_independent():
    ctx = RandomContext(1)
    a = ctx.generator(0, 1).random(5)
    assert np.array_equal(a, RandomContext(1).generator(0, 1).random(5))
    assert not np.array_equal(a, ctx.generator(1, 1).random(5))
    assert not np.array_equal(a, ctx.generator(0, 2).random(5))


def test_malformed_percentage_reports_field():
    data = dict(PROFILE)
    data["assets"] = dict(PROFILE["assets"], capital_gains_basis="forty%")
    with pytest.raises(InvalidParameterError) as info:
        params_from_dict(data)
    assert info.value.field == "assets.capital_gains_basis"
    assert "Invalid percentage" in info.value.message


@dataclass(frozen=True)
class _Series:
    values: Optional[Tuple[float, ...]] = None
    rate: float = 0.0


def test_coerce_leaves_compound_annotations_alone():
    series = _coerce(_Series, {"values": (1.0, 2.0), "rate": "5%"}, "series")
    assert series.values == (1.0, 2.0)
    assert series.rate == pytest.approx(0.05)

import pytest

from taxes import (
    DEFAULT_STATE_RATE,
    compute_taxes,
    gross_up,
    irmaa_surcharge,
    required_minimum_distribution,
    rmd_start_age,
    state_tax_rules,
    tax_liability,
    taxable_social_security,
)


@pytest.mark.parametrize(
    "status, income, expected",
    [
        # Single filer cases
        ("single", 0, 0.0),
        ("single", 11_600, 1_160.0),
        ("single", 11_601, 1_160.12),
        ("single", 47_150, 5_426.0),
        ("single", 47_151, 5_426.22),
        ("single", 100_525, 17_168.5),
        ("single", 100_526, 17_168.74),
        ("single", 191_950, 39_110.5),
        ("single", 191_951, 39_110.82),
        ("single", 243_725, 55_678.5),
        ("single", 243_726, 55_678.85),
        ("single", 609_350, 183_647.25),
        ("single", 609_351, 183_647.62),
        # Married filing jointly cases
        ("married", 0, 0.0),
        ("married", 23_200, 2_320.0),
        ("married", 23_201, 2_320.12),
        ("married", 94_300, 10_852.0),
        ("married", 94_301, 10_852.22),
        ("married", 201_050, 34_337.0),
        ("married", 201_051, 34_337.24),
        ("married", 383_900, 78_221.0),
        ("married", 383_901, 78_221.32),
        ("married", 487_450, 111_357.0),
        ("married", 487_451, 111_357.35),
        ("married", 731_200, 196_669.5),
        ("married", 731_201, 196_669.87),
        # Head of household cases
        ("head_of_household", 0, 0.0),
        ("head_of_household", 16_550, 1_655.0),
        ("head_of_household", 16_551, 1_655.12),
        ("head_of_household", 63_100, 7_241.0),
        ("head_of_household", 63_101, 7_241.22),
        ("head_of_household", 100_500, 15_469.0),
        ("head_of_household", 100_501, 15_469.24),
        ("head_of_household", 191_950, 37_417.0),
        ("head_of_household", 191_951, 37_417.32),
        ("head_of_household", 243_700, 53_977.0),
        ("head_of_household", 243_701, 53_977.35),
        ("head_of_household", 609_350, 181_954.5),
        ("head_of_household", 609_351, 181_954.87),
    ],
)
def test_tax_liability(status, income, expected):
    assert tax_liability(income, status) == pytest.approx(expected)



@pytest.mark.parametrize(
    "benefits, other, expected",
    [
        (20_000, 10_000, 0.0),
        (20_000, 20_000, 2_500.0),
        (30_000, 20_000, 5_350.0),
        (40_000, 200_000, 34_000.0),
    ],
)
def test_taxable_social_security_single(benefits, other, expected):
    assert taxable_social_security(benefits, other, "single") == pytest.approx(expected)


def test_brackets_scale_with_index():
    assert tax_liability(23_200, "single", 2.0) == pytest.approx(2 * 1_160.0)


def test_compute_taxes_ordinary_income():
    result = compute_taxes(50_000, 0.0, 0.0, "single")
    assert result.federal == pytest.approx(4_016.0)
    assert result.capital_gains == 0.0
    assert result.state == 0.0
    assert result.total == pytest.approx(4_016.0)
    assert result.magi == pytest.approx(50_000)


def test_deduction_shelters_gains_before_zero_bracket():
    result = compute_taxes(0.0, 0.0, 60_000, "single")
    assert result.federal == 0.0
    assert result.capital_gains == 0.0


def test_gains_stack_on_ordinary_income():
    result = compute_taxes(100_000, 0.0, 10_000, "single")
    assert result.capital_gains == pytest.approx(1_500.0)


def test_state_rates():
    assert state_tax_rules(None).income_rate == 0.0
    assert state_tax_rules("fl").income_rate == 0.0
    wa = state_tax_rules("WA")
    assert (wa.income_rate, wa.capital_gains_rate) == (0.0, 0.07)
    override = state_tax_rules("CA", 0.03)
    assert (override.income_rate, override.capital_gains_rate) == (0.03, 0.03)


def test_unknown_state_uses_default_rate(caplog):
    with caplog.at_level("WARNING", logger="taxes"):
        rules = state_tax_rules("ZZ")
    assert rules.income_rate == DEFAULT_STATE_RATE
    assert "ZZ" in caplog.text


def test_state_tax_applied_to_income_and_gains():
    result = compute_taxes(10_000, 0.0, 5_000, "single", state=state_tax_rules("MA"))
    assert result.state == pytest.approx(0.05 * 15_000)


@pytest.mark.parametrize(
    "magi, status, index, expected",
    [
        (100_000, "single", 1.0, 0.0),
        (110_000, "single", 1.0, (69.90 + 12.90) * 12),
        (110_000, "single", 2.0, 0.0),
        (250_000, "married", 1.0, (69.90 + 12.90) * 12),
        (1_000_000, "married", 1.0, (419.30 + 81.00) * 12),
    ],
)
def test_irmaa_surcharge(magi, status, index, expected):
    assert irmaa_surcharge(magi, status, index) == pytest.approx(expected)


@pytest.mark.parametrize("birth_year, age", [(1950, 72), (1951, 73), (1959, 73), (1960, 75)])
def test_rmd_start_age(birth_year, age):
    assert rmd_start_age(birth_year) == age


def test_required_minimum_distribution():
    assert required_minimum_distribution(265_000, 73, 1951) == pytest.approx(10_000)
    assert required_minimum_distribution(265_000, 72, 1951) == 0.0
    assert required_minimum_distribution(0.0, 80, 1940) == 0.0


def test_gross_up_flat_tax():
    def shortfall(d):
        return 10_000 - 0.75 * d

    result = gross_up(shortfall, 100_000)
    assert result.feasible
    assert shortfall(result.amount) <= 0
    assert result.amount == pytest.approx(13_333.33, abs=0.05)


def test_gross_up_through_brackets_never_underfunds():
    def shortfall(d):
        return 40_000 - (d - tax_liability(max(0.0, d - 14_600)))

    result = gross_up(shortfall, 1_000_000)
    assert result.feasible
    assert result.iterations <= 60
    assert shortfall(result.amount) <= 0
    assert shortfall(result.amount - 0.05) > 0


def test_gross_up_reports_infeasible_need():
    result = gross_up(lambda d: 10_000 - d, 5_000)
    assert not result.feasible
    assert result.amount == 5_000


def test_gross_up_without_need():
    result = gross_up(lambda d: -1.0 - d, 5_000)
    assert result.amount == 0.0
    assert result.feasible

"""Federal and state income tax, Medicare surcharges and required distributions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
from numba import njit


logger = logging.getLogger(__name__)


# IRS 2024 tax brackets and marginal rates by filing status
# Each status maps to the bracket thresholds that apply to taxable income for
# that filer type.
TAX_BRACKETS = {
    "single": [0, 11_600, 47_150, 100_525, 191_950, 243_725, 609_350],
    "married": [0, 23_200, 94_300, 201_050, 383_900, 487_450, 731_200],
    "head_of_household": [0, 16_550, 63_100, 100_500, 191_950, 243_700, 609_350],
}

TAX_RATES = {
    status: [0.10, 0.12, 0.22, 0.24, 0.32, 0.35, 0.37]
    for status in TAX_BRACKETS
}

STANDARD_DEDUCTION = {
    "single": 14_600,
    "married": 29_200,
    "head_of_household": 21_900,
}

# Taxable income where long-term gains move from 0% to 15% and 15% to 20%
LTCG_THRESHOLDS = {
    "single": (47_025, 518_900),
    "married": (94_050, 583_750),
    "head_of_household": (63_000, 551_350),
}

# Provisional income thresholds for taxing benefits; not indexed by law
SOCIAL_SECURITY_THRESHOLDS = {
    "single": (25_000, 34_000),
    "married": (32_000, 44_000),
    "head_of_household": (25_000, 34_000),
}

MEDICARE_AGE = 65

# IRMAA brackets (MAGI from two years prior)
# Each tuple: (threshold, Part B monthly surcharge, Part D monthly surcharge)
IRMAA_BRACKETS_SINGLE = [
    (103_000, 0, 0),
    (129_000, 69.90, 12.90),
    (161_000, 174.70, 33.30),
    (193_000, 279.50, 53.80),
    (500_000, 384.30, 74.20),
    (float("inf"), 419.30, 81.00),
]

IRMAA_BRACKETS_MARRIED = [
    (206_000, 0, 0),
    (258_000, 69.90, 12.90),
    (322_000, 174.70, 33.30),
    (386_000, 279.50, 53.80),
    (750_000, 384.30, 74.20),
    (float("inf"), 419.30, 81.00),
]

# IRS Publication 590-B, Table III (Uniform Lifetime)
RMD_FACTORS = {
    70: 29.1, 71: 28.2, 72: 27.4, 73: 26.5, 74: 25.5, 75: 24.6,
    76: 23.7, 77: 22.9, 78: 22.0, 79: 21.1, 80: 20.2, 81: 19.4,
    82: 18.5, 83: 17.7, 84: 16.8, 85: 16.0, 86: 15.2, 87: 14.4,
    88: 13.7, 89: 12.9, 90: 12.2, 91: 11.5, 92: 10.8, 93: 10.1,
    94: 9.5, 95: 8.9, 96: 8.4, 97: 7.8, 98: 7.3, 99: 6.8,
    100: 6.4, 101: 6.0, 102: 5.6, 103: 5.2, 104: 4.9, 105: 4.6,
    106: 4.3, 107: 4.1, 108: 3.9, 109: 3.7, 110: 3.5, 111: 3.4,
    112: 3.3, 113: 3.1, 114: 3.0, 115: 2.9, 116: 2.8, 117: 2.7,
    118: 2.5, 119: 2.3, 120: 2.0,
}


@dataclass(frozen=True)
class StateTax:
    code: Optional[str] = None
    income_rate: float = 0.0
    capital_gains_rate: float = 0.0
    taxes_social_security: bool = False


STATE_TAX_RATES = {
    "FL": StateTax("FL", 0.0, 0.0, False),
    "TX": StateTax("TX", 0.0, 0.0, False),
    "WA": StateTax("WA", 0.0, 0.07, False),
    "NV": StateTax("NV", 0.0, 0.0, False),
    "CA": StateTax("CA", 0.133, 0.133, False),
    "NY": StateTax("NY", 0.109, 0.109, False),
    "MA": StateTax("MA", 0.05, 0.05, False),
    "NC": StateTax("NC", 0.0475, 0.0475, False),
    "AZ": StateTax("AZ", 0.025, 0.025, False),
    "CO": StateTax("CO", 0.044, 0.044, True),
}

DEFAULT_STATE_RATE = 0.05

NO_STATE_TAX = StateTax()


def state_tax_rules(state: Optional[str], override: Optional[float] = None) -> StateTax:
    """Resolve the flat state rates; an explicit override replaces both rates."""

    if state is None:
        rules = NO_STATE_TAX
    else:
        code = state.strip().upper()
        rules = STATE_TAX_RATES.get(code)
        if rules is None:
            logger.warning(
                "No tax table for state %r; using default rate %.2f%%",
                state,
                DEFAULT_STATE_RATE * 100,
            )
            rules = StateTax(code, DEFAULT_STATE_RATE, DEFAULT_STATE_RATE, False)
    if override is not None:
        rules = StateTax(rules.code, override, override, rules.taxes_social_security)
    return rules


_BRACKET_CACHE: dict = {}


def _tax_arrays(filing_status: str) -> tuple:
    """Bracket floors, rates and the tax owed at each floor for ``filing_status``."""

    cached = _BRACKET_CACHE.get(filing_status)
    if cached is None:
        bracket_arr = np.array(TAX_BRACKETS[filing_status], dtype=np.float64)
        rate_arr = np.array(TAX_RATES[filing_status], dtype=np.float64)
        cumulative_tax = np.zeros(len(bracket_arr), dtype=np.float64)
        for i in range(1, len(bracket_arr)):
            cumulative_tax[i] = cumulative_tax[i - 1] + (
                bracket_arr[i] - bracket_arr[i - 1]
            ) * rate_arr[i - 1]
        cached = (bracket_arr, rate_arr, cumulative_tax)
        _BRACKET_CACHE[filing_status] = cached
    return cached


@njit(cache=True)
def _bracket_tax_jit(
    income: float,
    bracket_arr: np.ndarray,
    rate_arr: np.ndarray,
    cumulative_tax: np.ndarray,
) -> float:
    if income <= 0:
        return 0.0
    idx = np.searchsorted(bracket_arr, income, side="right") - 1
    if idx < 0:
        idx = 0
    if idx >= len(rate_arr):
        idx = len(rate_arr) - 1
    return cumulative_tax[idx] + (income - bracket_arr[idx]) * rate_arr[idx]


@njit(cache=True)
def _taxable_social_security_jit(
    benefits: float, other_income: float, base: float, upper: float
) -> float:
    """Portion of benefits included in income under the provisional income test."""
    if benefits <= 0:
        return 0.0
    provisional = other_income + 0.5 * benefits
    if provisional <= base:
        return 0.0
    if provisional <= upper:
        return min(0.5 * benefits, 0.5 * (provisional - base))
    return min(
        0.85 * benefits,
        0.85 * (provisional - upper) + min(0.5 * benefits, 0.5 * (upper - base)),
    )


def tax_liability(income: float, filing_status: str = "single", index: float = 1.0) -> float:
    """Ordinary income tax on taxable ``income`` with brackets scaled by ``index``."""

    bracket_arr, rate_arr, cumulative_tax = _tax_arrays(filing_status)
    # Scaling every bracket by ``index`` scales the tax by the same factor
    return float(_bracket_tax_jit(income / index, bracket_arr, rate_arr, cumulative_tax)) * index


def taxable_social_security(
    benefits: float, other_income: float, filing_status: str = "single"
) -> float:
    base, upper = SOCIAL_SECURITY_THRESHOLDS[filing_status]
    return float(_taxable_social_security_jit(benefits, other_income, base, upper))


@dataclass(frozen=True)
class TaxResult:
    federal: float
    state: float
    capital_gains: float
    taxable_social_security: float
    magi: float

    @property
    def total(self) -> float:
        return self.federal + self.state + self.capital_gains


def compute_taxes(
    ordinary_income: float,
    social_security: float,
    capital_gains: float,
    filing_status: str,
    index: float = 1.0,
    state: StateTax = NO_STATE_TAX,
) -> TaxResult:
    """Annual tax on one household's income.

    ``ordinary_income`` covers pensions, wages and tax-deferred withdrawals;
    ``capital_gains`` is the realized long-term gain. Brackets, deductions and
    gain thresholds are scaled by the general inflation ``index``.
    """

    capital_gains = max(0.0, capital_gains)
    taxable_ss = taxable_social_security(
        social_security, ordinary_income + capital_gains, filing_status
    )
    ordinary = ordinary_income + taxable_ss
    deduction = STANDARD_DEDUCTION[filing_status] * index
    taxable_ordinary = max(0.0, ordinary - deduction)
    # Unused deduction shelters gains
    taxable_gains = max(0.0, capital_gains - max(0.0, deduction - ordinary))

    federal = tax_liability(taxable_ordinary, filing_status, index)

    low, high = LTCG_THRESHOLDS[filing_status]
    low *= index
    high *= index
    start = taxable_ordinary
    end = start + taxable_gains
    at_15 = max(0.0, min(end, high) - max(start, low))
    at_20 = max(0.0, end - max(start, high))
    gains_tax = 0.15 * at_15 + 0.20 * at_20

    state_income = ordinary_income + (taxable_ss if state.taxes_social_security else 0.0)
    state_tax = state.income_rate * max(0.0, state_income) + state.capital_gains_rate * capital_gains

    return TaxResult(
        federal=federal,
        state=state_tax,
        capital_gains=gains_tax,
        taxable_social_security=taxable_ss,
        magi=ordinary + capital_gains,
    )


def irmaa_surcharge(magi: float, filing_status: str, index: float = 1.0) -> float:
    """Annual Part B and Part D surcharge for one Medicare enrollee."""

    brackets = IRMAA_BRACKETS_MARRIED if filing_status == "married" else IRMAA_BRACKETS_SINGLE
    for threshold, part_b, part_d in brackets:
        if magi <= threshold * index:
            return (part_b + part_d) * 12
    _, part_b, part_d = brackets[-1]
    return (part_b + part_d) * 12


def rmd_start_age(birth_year: int) -> int:
    if birth_year < 1951:
        return 72
    if birth_year <= 1959:
        return 73
    return 75


def required_minimum_distribution(balance: float, age: int, birth_year: int) -> float:
    if balance <= 0 or age < rmd_start_age(birth_year):
        return 0.0
    return balance / RMD_FACTORS[min(age, 120)]


@dataclass(frozen=True)
class GrossUp:
    amount: float
    feasible: bool
    iterations: int


def gross_up(
    shortfall: Callable[[float], float],
    upper: float,
    tolerance: float = 0.01,
    max_iterations: int = 60,
) -> GrossUp:
    """Smallest draw ``d`` in ``[0, upper]`` with ``shortfall(d) <= 0``.

    ``shortfall(d)`` is the cash still missing after drawing ``d`` and paying the
    tax that draw triggers; it falls as ``d`` grows. The search keeps a bracket
    ``[lo, hi]`` with ``shortfall(lo) > 0 >= shortfall(hi)`` and alternates
    secant steps with bisection, returning ``hi`` so the need is never
    under-funded.
    """

    lo, f_lo = 0.0, shortfall(0.0)
    if f_lo <= 0:
        return GrossUp(0.0, True, 0)
    hi, f_hi = upper, shortfall(upper)
    if f_hi > 0:
        return GrossUp(upper, False, 0)

    for i in range(1, max_iterations + 1):
        if hi - lo <= tolerance or f_hi > -tolerance:
            return GrossUp(hi, True, i - 1)
        x = hi - f_hi * (hi - lo) / (f_hi - f_lo)
        if i % 2 == 0 or not lo < x < hi:
            x = 0.5 * (lo + hi)
        fx = shortfall(x)
        if fx <= 0:
            hi, f_hi = x, fx
        else:
            lo, f_lo = x, fx
    return GrossUp(hi, True, max_iterations)

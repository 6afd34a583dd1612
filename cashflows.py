"""Guaranteed income, household expenses and long-term-care episodes by year."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy.stats import norm

from core import (
    EARLIEST_CLAIM_AGE,
    FULL_RETIREMENT_AGE,
    LATEST_CLAIM_AGE,
    Couple,
    ExpenseBaseline,
    InflationAssumptions,
    LongTermCare,
    LTCInsurance,
    Person,
    SimulationParameters,
)


def social_security_payout(full_ss_at_67: float, start_age: int) -> float:
    """Calculate yearly Social Security benefit based on start age."""

    start_age = min(max(start_age, EARLIEST_CLAIM_AGE), LATEST_CLAIM_AGE)
    if start_age == FULL_RETIREMENT_AGE:
        return full_ss_at_67
    months_difference = (start_age - FULL_RETIREMENT_AGE) * 12
    if start_age < FULL_RETIREMENT_AGE:
        months_early = -months_difference
        if months_early <= 36:
            reduction = months_early * (5 / 9) / 100
        else:
            reduction = (36 * (5 / 9) + (months_early - 36) * (5 / 12)) / 100
        return full_ss_at_67 * (1 - reduction)
    months_late = min(months_difference, 36)
    increase = months_late * (2 / 3) / 100
    return full_ss_at_67 * (1 + increase)


def claim_age(person: Person) -> int:
    return min(max(person.social_security_claim_age, EARLIEST_CLAIM_AGE), LATEST_CLAIM_AGE)


def growth_index(rate: float, year: int) -> float:
    return (1.0 + rate) ** year


@dataclass(frozen=True)
class IncomeBreakdown:
    social_security: float = 0.0
    pension: float = 0.0
    part_time: float = 0.0

    @property
    def total(self) -> float:
        return self.social_security + self.pension + self.part_time

    @property
    def ordinary(self) -> float:
        """Income taxed at ordinary rates in full."""
        return self.pension + self.part_time


def _own_benefit(person: Person, year: int, cola_index: float) -> float:
    if person.current_age + year < claim_age(person):
        return 0.0
    return social_security_payout(person.social_security_benefit, claim_age(person)) * cola_index


def project_income(
    params: SimulationParameters, year: int, alive: Sequence[bool]
) -> IncomeBreakdown:
    """Gross guaranteed income for ``year`` given who is still alive.

    A surviving spouse keeps the larger of the two Social Security benefits and
    the survivor share of the deceased's pension.
    """

    people = params.people
    cola_index = growth_index(params.inflation.social_security_cola, year)
    general_index = growth_index(params.inflation.general, year)
    benefits = [_own_benefit(p, year, cola_index) for p in people]

    social_security = 0.0
    pension = 0.0
    part_time = 0.0
    for i, person in enumerate(people):
        age = person.current_age + year
        if alive[i]:
            if len(people) == 2 and not alive[1 - i]:
                social_security += max(benefits)
            else:
                social_security += benefits[i]
            if person.part_time is not None and person.retirement_age <= age < person.part_time.end_age:
                part_time += person.part_time.annual_amount * general_index
        if person.pension is not None and age >= person.retirement_age:
            amount = person.pension.annual_benefit
            if person.pension.cola:
                amount *= general_index
            if alive[i]:
                pension += amount
            elif any(alive):
                pension += amount * person.pension.survivor_fraction
    return IncomeBreakdown(social_security, pension, part_time)


@dataclass(frozen=True)
class ExpenseProjection:
    essential: float
    discretionary: float
    discretionary_baseline: float
    healthcare: float
    total: float


def project_expenses(
    expenses: ExpenseBaseline,
    inflation: InflationAssumptions,
    year: int,
    discretionary_factor: float = 1.0,
    survivor: bool = False,
) -> ExpenseProjection:
    general_index = growth_index(inflation.general, year)
    healthcare_index = growth_index(inflation.healthcare, year)
    ratio = expenses.survivor_ratio if survivor else 1.0
    total = (
        expenses.essential + expenses.discretionary * discretionary_factor
    ) * general_index + expenses.healthcare * healthcare_index
    if survivor:
        total *= ratio
    return ExpenseProjection(
        essential=expenses.essential * general_index * ratio,
        discretionary=expenses.discretionary * discretionary_factor * general_index * ratio,
        discretionary_baseline=expenses.discretionary * general_index * ratio,
        healthcare=expenses.healthcare * healthcare_index * ratio,
        total=total,
    )


# ---------------------------------------------------------------------------
# Long-term care
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CareType:
    name: str
    weight: float
    annual_cost: float
    mean_years: float


# 2024 national median costs
CARE_TYPES = (
    CareType("home", 0.40, 61_776, 1.5),
    CareType("assisted", 0.30, 70_800, 2.0),
    CareType("nursing", 0.22, 104_025, 1.8),
    CareType("memory", 0.08, 90_000, 3.0),
)

_CARE_CUMULATIVE = np.cumsum([c.weight for c in CARE_TYPES])

# Cost of care relative to the national average
REGIONAL_LTC_COST_FACTORS = {
    "AL": 0.85, "AK": 1.45, "AZ": 0.95, "AR": 0.80, "CA": 1.35,
    "CO": 1.10, "CT": 1.30, "DE": 1.15, "FL": 0.90, "GA": 0.85,
    "HI": 1.40, "ID": 0.95, "IL": 1.05, "IN": 0.90, "IA": 0.85,
    "KS": 0.85, "KY": 0.85, "LA": 0.80, "ME": 1.10, "MD": 1.20,
    "MA": 1.35, "MI": 0.95, "MN": 1.15, "MS": 0.75, "MO": 0.85,
    "MT": 0.95, "NE": 0.90, "NV": 1.05, "NH": 1.20, "NJ": 1.25,
    "NM": 0.90, "NY": 1.40, "NC": 0.85, "ND": 1.00, "OH": 0.90,
    "OK": 0.80, "OR": 1.10, "PA": 1.00, "RI": 1.20, "SC": 0.85,
    "SD": 0.90, "TN": 0.85, "TX": 0.90, "UT": 0.95, "VT": 1.15,
    "VA": 0.95, "WA": 1.20, "WV": 0.85, "WI": 0.95, "WY": 1.00,
}

LTC_FEMALE_INCIDENCE = 1.15
LTC_FEMALE_DURATION = 1.68
LTC_HEALTH_MULTIPLIERS = {"excellent": 0.6, "good": 1.0, "fair": 1.3, "poor": 2.0}
LTC_MAX_PROBABILITY = 0.95
LTC_MIN_ONSET_AGE = 65
LTC_MAX_ONSET_AGE = 105
LTC_MIN_DURATION = 0.25


def region_multiplier(ltc: LongTermCare, state: Optional[str]) -> float:
    if ltc.region_multiplier is not None:
        return ltc.region_multiplier
    if state is None:
        return 1.0
    return REGIONAL_LTC_COST_FACTORS.get(state.upper(), 1.0)


def ltc_probability(ltc: LongTermCare, person: Person) -> float:
    prob = ltc.lifetime_probability * LTC_HEALTH_MULTIPLIERS[person.health_status]
    if person.gender == "female":
        prob *= LTC_FEMALE_INCIDENCE
    return min(prob, LTC_MAX_PROBABILITY)


@dataclass(frozen=True)
class LTCEpisode:
    person_index: int
    onset_age: float
    duration_years: float
    care_type: str
    # Today's dollars, regional factor applied
    annual_cost: float
    inflation: float

    @property
    def end_age(self) -> float:
        return self.onset_age + self.duration_years

    def years_in_care(self, age: int) -> float:
        """Fraction of the year starting at ``age`` spent in care."""
        return max(0.0, min(self.end_age, age + 1) - max(self.onset_age, age))

    def cost(self, age: int, year: int) -> float:
        return self.annual_cost * self.years_in_care(age) * growth_index(self.inflation, year)

    def insured_fraction(self, age: int, insurance: LTCInsurance) -> float:
        start = self.onset_age + insurance.elimination_days / 365.0
        return max(0.0, min(self.end_age, age + 1) - max(start, age))


def sample_ltc_episodes(
    ltc: LongTermCare,
    people: Sequence[Person],
    multiplier: float,
    uniforms: np.ndarray,
) -> Tuple[LTCEpisode, ...]:
    """Draw at most one care episode per person.

    ``uniforms`` has one row of four uniforms per person: occurrence, onset,
    care type and duration.
    """

    episodes = []
    for i, person in enumerate(people):
        u_occur, u_onset, u_type, u_duration = uniforms[i]
        if u_occur >= ltc_probability(ltc, person):
            continue
        onset = ltc.onset_mean_age + ltc.onset_sd_years * float(norm.ppf(min(max(u_onset, 1e-12), 1 - 1e-12)))
        onset = min(max(onset, LTC_MIN_ONSET_AGE), LTC_MAX_ONSET_AGE)
        onset = max(onset, float(person.current_age))
        care = CARE_TYPES[min(int(np.searchsorted(_CARE_CUMULATIVE, u_type, side="right")), len(CARE_TYPES) - 1)]
        mean_years = care.mean_years * (LTC_FEMALE_DURATION if person.gender == "female" else 1.0)
        duration = max(LTC_MIN_DURATION, -mean_years * np.log(1.0 - u_duration))
        episodes.append(
            LTCEpisode(
                person_index=i,
                onset_age=onset,
                duration_years=float(duration),
                care_type=care.name,
                annual_cost=care.annual_cost * multiplier,
                inflation=ltc.inflation,
            )
        )
    return tuple(episodes)


@dataclass
class InsuranceLedger:
    """Benefits paid so far against each person's policy pool."""

    insurance: LTCInsurance
    paid: list

    @classmethod
    def for_household(cls, insurance: LTCInsurance, size: int) -> "InsuranceLedger":
        return cls(insurance, [0.0] * size)

    def benefit(self, episode: LTCEpisode, age: int, cost: float) -> float:
        annual = self.insurance.daily_benefit * 365.0
        pool = annual * self.insurance.benefit_period_years
        covered = annual * episode.insured_fraction(age, self.insurance)
        remaining = pool - self.paid[episode.person_index]
        amount = max(0.0, min(cost, covered, remaining))
        self.paid[episode.person_index] += amount
        return amount


def ltc_costs(
    episodes: Sequence[LTCEpisode],
    people: Sequence[Person],
    year: int,
    alive: Sequence[bool],
    ledger: Optional[InsuranceLedger] = None,
) -> Tuple[float, float]:
    """Gross care cost for ``year`` and the part paid by insurance."""

    gross = 0.0
    covered = 0.0
    for episode in episodes:
        if not alive[episode.person_index]:
            continue
        age = people[episode.person_index].current_age + year
        cost = episode.cost(age, year)
        if cost <= 0:
            continue
        gross += cost
        if ledger is not None:
            covered += ledger.benefit(episode, age, cost)
    return gross, covered


def is_survivor_year(params: SimulationParameters, alive: Sequence[bool]) -> bool:
    return isinstance(params.household, Couple) and sum(alive) == 1

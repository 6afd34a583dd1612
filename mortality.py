"""Period life table hazards and death-age sampling."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

import numpy as np
from numba import njit

from core import Person


MIN_TABLE_AGE = 50
MAX_TABLE_AGE = 120

# Enough uniforms to walk any starting age through to the end of the table
MAX_SAMPLED_YEARS = 130

# SSA 2021 period life table, probability of dying within one year (male, female)
PERIOD_LIFE_TABLE: Dict[int, Tuple[float, float]] = {
    50: (0.004186, 0.002634),
    51: (0.004530, 0.002838),
    52: (0.004912, 0.003071),
    53: (0.005346, 0.003344),
    54: (0.005838, 0.003658),
    55: (0.006390, 0.004005),
    56: (0.006993, 0.004379),
    57: (0.007646, 0.004780),
    58: (0.008359, 0.005217),
    59: (0.009147, 0.005710),
    60: (0.010028, 0.006283),
    61: (0.010998, 0.006920),
    62: (0.012047, 0.007610),
    63: (0.013168, 0.008351),
    64: (0.014366, 0.009154),
    65: (0.015651, 0.010035),
    66: (0.017030, 0.010998),
    67: (0.018506, 0.012049),
    68: (0.020088, 0.013201),
    69: (0.021791, 0.014477),
    70: (0.023640, 0.015901),
    71: (0.025660, 0.017483),
    72: (0.027872, 0.019230),
    73: (0.030275, 0.021139),
    74: (0.032884, 0.023216),
    75: (0.035746, 0.025490),
    76: (0.038921, 0.027998),
    77: (0.042465, 0.030774),
    78: (0.046414, 0.033834),
    79: (0.050799, 0.037189),
    80: (0.055651, 0.040853),
    81: (0.061000, 0.044842),
    82: (0.066875, 0.049174),
    83: (0.073305, 0.053870),
    84: (0.080319, 0.058954),
    85: (0.087945, 0.064449),
    86: (0.096211, 0.070379),
    87: (0.105145, 0.076770),
    88: (0.114772, 0.083647),
    89: (0.125116, 0.091037),
    90: (0.136200, 0.098966),
    91: (0.148046, 0.107461),
    92: (0.160674, 0.116549),
    93: (0.174102, 0.126257),
    94: (0.188348, 0.136613),
    95: (0.203426, 0.147644),
    96: (0.219352, 0.159378),
    97: (0.236136, 0.171842),
    98: (0.253789, 0.185064),
    99: (0.272320, 0.199071),
    100: (0.291735, 0.213890),
    101: (0.312043, 0.229548),
    102: (0.333249, 0.246073),
    103: (0.355359, 0.263492),
    104: (0.378378, 0.281832),
    105: (0.402310, 0.301122),
    106: (0.427159, 0.321389),
    107: (0.452928, 0.342661),
    108: (0.479619, 0.364966),
    109: (0.507236, 0.388332),
    110: (0.535782, 0.412788),
    111: (0.565256, 0.438361),
    112: (0.595662, 0.465082),
    113: (0.627001, 0.492978),
    114: (0.659274, 0.522080),
    115: (0.692482, 0.552418),
    116: (0.726625, 0.584022),
    117: (0.761705, 0.616923),
    118: (0.797720, 0.651152),
    119: (0.834672, 0.686741),
    120: (1.000000, 1.000000),
}

HEALTH_MULTIPLIERS = {
    "excellent": 0.7,
    "good": 1.0,
    "fair": 1.3,
    "poor": 1.6,
}

_QX = np.array(
    [PERIOD_LIFE_TABLE[age] for age in range(MIN_TABLE_AGE, MAX_TABLE_AGE + 1)],
    dtype=np.float64,
)


@dataclass(frozen=True)
class MortalityProfile:
    gender: str = "male"
    health_status: str = "good"

    @classmethod
    def for_person(cls, person: Person) -> "MortalityProfile":
        return cls(person.gender, person.health_status)

    def hazards(self) -> np.ndarray:
        """Annual hazard for every table age, health-adjusted and capped at 1."""
        column = 1 if self.gender == "female" else 0
        return np.minimum(_QX[:, column] * HEALTH_MULTIPLIERS[self.health_status], 1.0)

    def hazard(self, age: int) -> float:
        age = min(max(int(round(age)), MIN_TABLE_AGE), MAX_TABLE_AGE)
        return float(self.hazards()[age - MIN_TABLE_AGE])


@njit(cache=True)
def _sample_death_age_jit(current_age: int, hazards: np.ndarray, uniforms: np.ndarray) -> int:
    """Walk the table from ``current_age`` until a uniform falls under the hazard."""
    age = current_age
    for i in range(len(uniforms)):
        a = age
        if a < 50:
            a = 50
        if a > 120:
            a = 120
        if uniforms[i] < hazards[a - 50]:
            return age
        age += 1
    return age


def sample_death_age(profile: MortalityProfile, current_age: int, uniforms: np.ndarray) -> int:
    """Age during which the person dies; they are alive for that whole year."""
    return int(_sample_death_age_jit(max(int(current_age), 0), profile.hazards(), uniforms))


def death_age(person: Person, uniforms: np.ndarray, dynamic: bool = True) -> int:
    if not dynamic:
        return person.life_expectancy
    return sample_death_age(MortalityProfile.for_person(person), person.current_age, uniforms)


def years_alive(person: Person, age_at_death: int) -> int:
    return max(0, age_at_death - person.current_age + 1)


def household_horizon(people: Sequence[Person], death_ages: Sequence[int]) -> int:
    """Years until the last death of the household."""
    return max((years_alive(p, d) for p, d in zip(people, death_ages)), default=0)


def survival_probability(profile: MortalityProfile, from_age: int, to_age: int) -> float:
    if to_age <= from_age:
        return 1.0
    prob = 1.0
    for age in range(int(round(from_age)), int(round(to_age))):
        prob *= 1.0 - profile.hazard(age)
    return prob


def life_expectancy(profile: MortalityProfile, age: int) -> int:
    """Expected age at death, counting half a year for the year of death."""

    total = 0.0
    alive = 1.0
    for future in range(age + 1, MAX_TABLE_AGE + 1):
        survive = survival_probability(profile, age, future)
        total += (alive - survive) * 0.5
        alive = survive
        if future < MAX_TABLE_AGE:
            total += survive
    return int(round(age + total))

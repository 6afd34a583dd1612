"""Core data model, validation and ingestion for retirement simulations."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Mapping, Optional, Tuple, Union

import numpy as np


GENDERS = ("male", "female")
HEALTH_STATUSES = ("excellent", "good", "fair", "poor")
FILING_STATUSES = ("single", "married", "head_of_household")

# Social Security claiming window
EARLIEST_CLAIM_AGE = 62
FULL_RETIREMENT_AGE = 67
LATEST_CLAIM_AGE = 70

CONFIG_FILE = "config.json"

# Random stream identifiers; each scenario draws every stream from its own
# SeedSequence so results never depend on scheduling order.
STREAM_RETURNS = 1
STREAM_REGIME = 2
STREAM_MORTALITY = 3
STREAM_LTC = 4
STREAM_STRATA = 5


class InvalidParameterError(ValueError):
    """Raised when simulation inputs are malformed."""

    def __init__(self, field_name: str, message: str):
        super().__init__(f"{field_name}: {message}")
        self.field = field_name
        self.message = message


class EngineUnavailableError(RuntimeError):
    """The worker pool could not run the simulation; retrying may succeed."""

    retryable = True


class SimulationCancelled(RuntimeError):
    """Raised when a run is cancelled before every scenario completed."""


def parse_percent(val: str) -> float:
    """Convert a percentage string like '10%' to a float 0.10."""

    try:
        pct = float(val.strip().rstrip("%")) / 100
    except ValueError as exc:
        raise ValueError(f"Invalid percentage: {val!r}") from exc
    if not 0 <= pct <= 1:
        raise ValueError("Percentage must be between 0% and 100%")
    return pct


def parse_dollars(val: str) -> float:
    """Convert a currency string like '$1,234' to a float 1234.0."""

    try:
        amt = float(val.replace("$", "").replace(",", "").strip())
    except ValueError as exc:
        raise ValueError(f"Invalid dollar amount: {val!r}") from exc
    if amt < 0:
        raise ValueError("Dollar amount cannot be negative")
    return amt


def _require(condition: bool, field_name: str, message: str) -> None:
    if not condition:
        raise InvalidParameterError(field_name, message)


def _check_fraction(value: float, field_name: str) -> None:
    _require(np.isfinite(value) and 0.0 <= value <= 1.0, field_name, "must be between 0 and 1")


def _check_amount(value: float, field_name: str) -> None:
    _require(np.isfinite(value) and value >= 0, field_name, "must be a non-negative amount")


@dataclass(frozen=True)
class Pension:
    annual_benefit: float
    survivor_fraction: float = 0.5
    cola: bool = False

    def __post_init__(self) -> None:
        _check_amount(self.annual_benefit, "pension.annual_benefit")
        _check_fraction(self.survivor_fraction, "pension.survivor_fraction")


@dataclass(frozen=True)
class PartTimeIncome:
    annual_amount: float
    end_age: int

    def __post_init__(self) -> None:
        _check_amount(self.annual_amount, "part_time.annual_amount")
        _require(self.end_age >= 0, "part_time.end_age", "must be non-negative")


@dataclass(frozen=True)
class Person:
    current_age: int
    retirement_age: int
    gender: str = "male"
    health_status: str = "good"
    life_expectancy: int = 93
    # Annual benefit at full retirement age, in today's dollars
    social_security_benefit: float = 0.0
    social_security_claim_age: int = FULL_RETIREMENT_AGE
    pension: Optional[Pension] = None
    part_time: Optional[PartTimeIncome] = None

    def __post_init__(self) -> None:
        _require(self.current_age >= 0, "current_age", "must be non-negative")
        _require(self.retirement_age >= 0, "retirement_age", "must be non-negative")
        _require(self.gender in GENDERS, "gender", f"must be one of {GENDERS}")
        _require(
            self.health_status in HEALTH_STATUSES,
            "health_status",
            f"must be one of {HEALTH_STATUSES}",
        )
        _require(self.life_expectancy >= 0, "life_expectancy", "must be non-negative")
        _check_amount(self.social_security_benefit, "social_security_benefit")
        _require(
            self.social_security_claim_age >= 0,
            "social_security_claim_age",
            "must be non-negative",
        )


@dataclass(frozen=True)
class Single:
    person: Person

    @property
    def people(self) -> Tuple[Person, ...]:
        return (self.person,)


@dataclass(frozen=True)
class Couple:
    primary: Person
    spouse: Person

    @property
    def people(self) -> Tuple[Person, ...]:
        return (self.primary, self.spouse)


Household = Union[Single, Couple]


@dataclass(frozen=True)
class AssetBuckets:
    tax_deferred: float = 0.0
    tax_free: float = 0.0
    capital_gains: float = 0.0
    cash_equivalents: float = 0.0
    total_assets: Optional[float] = None
    # Cost-basis fraction of the capital-gains bucket
    capital_gains_basis: float = 1.0

    def __post_init__(self) -> None:
        for name in ("tax_deferred", "tax_free", "capital_gains", "cash_equivalents"):
            _check_amount(getattr(self, name), f"assets.{name}")
        _check_fraction(self.capital_gains_basis, "assets.capital_gains_basis")
        parts = self.tax_deferred + self.tax_free + self.capital_gains + self.cash_equivalents
        if self.total_assets is None:
            object.__setattr__(self, "total_assets", parts)
        else:
            _check_amount(self.total_assets, "assets.total_assets")
            _require(
                abs(self.total_assets - parts) <= 0.01,
                "assets.total_assets",
                f"buckets sum to {parts:.2f}, not {self.total_assets:.2f}",
            )


@dataclass(frozen=True)
class ExpenseBaseline:
    essential: float
    discretionary: float = 0.0
    healthcare: float = 0.0
    # Share of household spending that continues after the first death
    survivor_ratio: float = 0.7

    def __post_init__(self) -> None:
        _check_amount(self.essential, "expenses.essential")
        _check_amount(self.discretionary, "expenses.discretionary")
        _check_amount(self.healthcare, "expenses.healthcare")
        _check_fraction(self.survivor_ratio, "expenses.survivor_ratio")


@dataclass(frozen=True)
class InflationAssumptions:
    general: float = 0.025
    healthcare: float = 0.05
    social_security_cola: float = 0.025

    def __post_init__(self) -> None:
        for name in ("general", "healthcare", "social_security_cola"):
            value = getattr(self, name)
            _require(-0.5 < value < 1.0, f"inflation.{name}", "must be a plausible annual rate")


@dataclass(frozen=True)
class AssetClass:
    name: str
    cagr: float
    volatility: float

    def __post_init__(self) -> None:
        _require(bool(self.name), "market.asset_classes", "asset class needs a name")
        _require(self.volatility >= 0, f"market.{self.name}.volatility", "must be non-negative")
        _require(self.cagr > -1.0, f"market.{self.name}.cagr", "must exceed -100%")


@dataclass(frozen=True)
class RegimeSwitching:
    # Annual transition probabilities between "normal" and "stress"
    to_stress: float = 0.10
    to_normal: float = 0.50
    # Stress mean is shifted down by stress_drag volatilities
    stress_drag: float = 1.0
    stress_volatility: float = 1.5

    def __post_init__(self) -> None:
        _check_fraction(self.to_stress, "market.regime.to_stress")
        _check_fraction(self.to_normal, "market.regime.to_normal")
        _require(self.stress_volatility >= 0, "market.regime.stress_volatility", "must be non-negative")


DEFAULT_ASSET_CLASSES = (
    AssetClass("stocks", 0.07, 0.16),
    AssetClass("bonds", 0.04, 0.06),
    AssetClass("cash", 0.025, 0.01),
)

# Stock-bond correlation is historically low; cash is nearly uncorrelated
DEFAULT_CORRELATION = (
    (1.0, 0.10, 0.0),
    (0.10, 1.0, 0.20),
    (0.0, 0.20, 1.0),
)


@dataclass(frozen=True)
class MarketAssumptions:
    asset_classes: Tuple[AssetClass, ...] = DEFAULT_ASSET_CLASSES
    correlation: Tuple[Tuple[float, ...], ...] = DEFAULT_CORRELATION
    regime: Optional[RegimeSwitching] = None

    def __post_init__(self) -> None:
        n = len(self.asset_classes)
        _require(n > 0, "market.asset_classes", "at least one asset class is required")
        names = [c.name for c in self.asset_classes]
        _require(len(set(names)) == n, "market.asset_classes", "names must be unique")
        corr = np.asarray(self.correlation, dtype=np.float64)
        _require(corr.shape == (n, n), "market.correlation", f"must be a {n}x{n} matrix")
        _require(np.allclose(corr, corr.T), "market.correlation", "must be symmetric")
        _require(np.allclose(np.diag(corr), 1.0), "market.correlation", "diagonal must be 1")
        try:
            np.linalg.cholesky(corr)
        except np.linalg.LinAlgError as exc:
            raise InvalidParameterError("market.correlation", "must be positive definite") from exc

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.asset_classes)


@dataclass(frozen=True)
class StaticAllocation:
    weights: Mapping[str, float] = field(
        default_factory=lambda: {"stocks": 0.6, "bonds": 0.35, "cash": 0.05}
    )


@dataclass(frozen=True)
class GlidePath:
    """Equity share falls linearly from start_equity to end_equity."""

    start_equity: float = 0.7
    end_equity: float = 0.3
    start_age: int = 55
    end_age: int = 85
    cash: float = 0.05

    def __post_init__(self) -> None:
        _check_fraction(self.start_equity, "allocation.start_equity")
        _check_fraction(self.end_equity, "allocation.end_equity")
        _check_fraction(self.cash, "allocation.cash")
        _require(
            max(self.start_equity, self.end_equity) + self.cash <= 1.0 + 1e-9,
            "allocation.cash",
            "equity plus cash cannot exceed 100%",
        )
        _require(self.end_age > self.start_age, "allocation.end_age", "must be after start_age")


AllocationPolicy = Union[StaticAllocation, GlidePath]


@dataclass(frozen=True)
class GuardrailPolicy:
    enabled: bool = True
    upper_band: float = 0.20
    lower_band: float = 0.20
    cut: float = 0.10
    raise_: float = 0.10
    # Bounds on the discretionary multiplier
    floor: float = 0.70
    ceiling: float = 1.30

    def __post_init__(self) -> None:
        _require(self.upper_band >= 0, "guardrails.upper_band", "must be non-negative")
        _check_fraction(self.lower_band, "guardrails.lower_band")
        _check_fraction(self.cut, "guardrails.cut")
        _require(self.raise_ >= 0, "guardrails.raise_", "must be non-negative")
        _require(0 <= self.floor <= 1.0, "guardrails.floor", "must be between 0 and 1")
        _require(self.ceiling >= 1.0, "guardrails.ceiling", "must be at least 1")


@dataclass(frozen=True)
class LTCInsurance:
    daily_benefit: float = 200.0
    benefit_period_years: float = 3.0
    elimination_days: int = 90

    def __post_init__(self) -> None:
        _check_amount(self.daily_benefit, "ltc.insurance.daily_benefit")
        _require(self.benefit_period_years > 0, "ltc.insurance.benefit_period_years", "must be positive")
        _require(0 <= self.elimination_days <= 365, "ltc.insurance.elimination_days", "must be 0-365")


@dataclass(frozen=True)
class LongTermCare:
    enabled: bool = False
    lifetime_probability: float = 0.48
    inflation: float = 0.045
    onset_mean_age: float = 82.0
    onset_sd_years: float = 6.0
    # None means look up the state's regional factor
    region_multiplier: Optional[float] = None
    insurance: Optional[LTCInsurance] = None
    counterfactual: bool = True

    def __post_init__(self) -> None:
        _check_fraction(self.lifetime_probability, "ltc.lifetime_probability")
        _require(-0.5 < self.inflation < 1.0, "ltc.inflation", "must be a plausible annual rate")
        _require(self.onset_sd_years >= 0, "ltc.onset_sd_years", "must be non-negative")
        if self.region_multiplier is not None:
            _require(self.region_multiplier > 0, "ltc.region_multiplier", "must be positive")


@dataclass(frozen=True)
class VarianceReduction:
    antithetic: bool = True
    control_variates: bool = False
    stratified: bool = False
    # Number of leading noise dimensions covered by Latin-hypercube strata
    lhs_dims: int = 30
    control_years: int = 30

    def __post_init__(self) -> None:
        _require(self.lhs_dims >= 0, "variance_reduction.lhs_dims", "must be non-negative")
        _require(self.control_years > 0, "variance_reduction.control_years", "must be positive")


@dataclass(frozen=True)
class SafeWithdrawalSearch:
    enabled: bool = False
    target: float = 0.80
    iterations: int = 200
    max_rate: float = 0.15
    max_evaluations: int = 40
    tolerance: float = 1e-4

    def __post_init__(self) -> None:
        _require(0 < self.target < 1, "safe_withdrawal.target", "must be between 0 and 1")
        _require(self.iterations > 0, "safe_withdrawal.iterations", "must be positive")
        _require(0 < self.max_rate <= 1, "safe_withdrawal.max_rate", "must be in (0, 1]")
        _require(self.max_evaluations > 0, "safe_withdrawal.max_evaluations", "must be positive")


@dataclass(frozen=True)
class SimulationParameters:
    household: Household
    assets: AssetBuckets
    expenses: ExpenseBaseline
    inflation: InflationAssumptions = InflationAssumptions()
    market: MarketAssumptions = MarketAssumptions()
    allocation: AllocationPolicy = StaticAllocation()
    filing_status: str = "single"
    state: Optional[str] = None
    state_tax_rate: Optional[float] = None
    withdrawal_rate: float = 0.04
    guardrails: GuardrailPolicy = GuardrailPolicy()
    annual_savings: float = 0.0
    legacy_goal: float = 0.0
    ltc: LongTermCare = LongTermCare()
    variance_reduction: VarianceReduction = VarianceReduction()
    safe_withdrawal: SafeWithdrawalSearch = SafeWithdrawalSearch()
    dynamic_mortality: bool = True
    iterations: int = 1_000
    seed: int = 0
    start_year: int = 2025
    # MAGI for the two years before the simulation starts (IRMAA lookback)
    prior_magi: float = 0.0

    def __post_init__(self) -> None:
        _require(
            isinstance(self.household, (Single, Couple)),
            "household",
            "must be a Single or Couple household",
        )
        _require(
            self.filing_status in FILING_STATUSES,
            "filing_status",
            f"must be one of {FILING_STATUSES}",
        )
        _require(
            isinstance(self.iterations, (int, np.integer)) and self.iterations > 0,
            "iterations",
            "must be a positive integer",
        )
        _require(self.seed >= 0, "seed", "must be non-negative")
        _require(0 < self.withdrawal_rate < 1, "withdrawal_rate", "must be between 0 and 1")
        _check_amount(self.annual_savings, "annual_savings")
        _check_amount(self.legacy_goal, "legacy_goal")
        _check_amount(self.prior_magi, "prior_magi")
        if self.state_tax_rate is not None:
            _check_fraction(self.state_tax_rate, "state_tax_rate")
        self._check_allocation()

    def _check_allocation(self) -> None:
        names = set(self.market.names)
        if isinstance(self.allocation, StaticAllocation):
            weights = dict(self.allocation.weights)
            unknown = set(weights) - names
            _require(not unknown, "allocation.weights", f"unknown asset classes {sorted(unknown)}")
            for name, weight in weights.items():
                _require(weight >= 0, f"allocation.weights.{name}", "must be non-negative")
            _require(
                abs(sum(weights.values()) - 1.0) <= 1e-6,
                "allocation.weights",
                f"must sum to 1, got {sum(weights.values()):.6f}",
            )
        elif isinstance(self.allocation, GlidePath):
            _require(
                {"stocks", "bonds"} <= names,
                "allocation",
                "glide path needs 'stocks' and 'bonds' asset classes",
            )
        else:
            raise InvalidParameterError("allocation", "must be StaticAllocation or GlidePath")

    @property
    def people(self) -> Tuple[Person, ...]:
        return self.household.people

    @property
    def primary(self) -> Person:
        return self.household.people[0]


class RandomContext:
    """Per-run source of independent, reproducible random generators.

    Every generator is derived from ``(seed, key..., stream)`` so the numbers a
    scenario sees do not depend on which worker runs it or in what order.
    """

    def __init__(self, seed: int):
        self.seed = int(seed)

    def generator(self, key: int, stream: int) -> np.random.Generator:
        return np.random.default_rng(np.random.SeedSequence([self.seed, int(key), int(stream)]))

    def run_generator(self, stream: int) -> np.random.Generator:
        return np.random.default_rng(np.random.SeedSequence([self.seed, stream]))


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

_TRUE = {"true", "yes", "y", "1", "on"}
_FALSE = {"false", "no", "n", "0", "off", ""}


def _as_float(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise InvalidParameterError(field_name, "expected a number")
    if isinstance(value, (int, float, np.integer, np.floating)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            if text.endswith("%"):
                return parse_percent(text)
            if text.startswith("$") or "," in text:
                return parse_dollars(text)
            return float(text)
        except ValueError as exc:
            raise InvalidParameterError(field_name, str(exc)) from exc
    raise InvalidParameterError(field_name, f"expected a number, got {type(value).__name__}")


def _as_int(value: Any, field_name: str) -> int:
    number = _as_float(value, field_name)
    if not float(number).is_integer():
        raise InvalidParameterError(field_name, f"expected a whole number, got {value!r}")
    return int(number)


def _as_bool(value: Any, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
    raise InvalidParameterError(field_name, f"expected true/false, got {value!r}")


def _as_str(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise InvalidParameterError(field_name, "expected text")
    return value.strip().lower()


_SCALARS = {
    "bool": _as_bool,
    "int": _as_int,
    "float": _as_float,
    "str": _as_str,
    "Optional[bool]": _as_bool,
    "Optional[int]": _as_int,
    "Optional[float]": _as_float,
    "Optional[str]": _as_str,
}


def _coerce(cls, data: Mapping[str, Any], prefix: str):
    """Build a flat dataclass from a mapping, coercing scalars by annotation."""

    if not isinstance(data, Mapping):
        raise InvalidParameterError(prefix, "expected an object")
    known = {f.name: f for f in fields(cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise InvalidParameterError(prefix, f"unknown fields {sorted(unknown)}")
    kwargs = {}
    for name, value in data.items():
        path = f"{prefix}.{name}"
        convert = _SCALARS.get(str(known[name].type))
        if value is None or convert is None:
            kwargs[name] = value
        else:
            kwargs[name] = convert(value, path)
    return cls(**kwargs)


def _person_from_dict(data: Mapping[str, Any], prefix: str) -> Person:
    data = dict(data)
    pension = data.pop("pension", None)
    part_time = data.pop("part_time", None)
    person = _coerce(Person, data, prefix)
    return replace(
        person,
        pension=_coerce(Pension, pension, f"{prefix}.pension") if pension else None,
        part_time=_coerce(PartTimeIncome, part_time, f"{prefix}.part_time") if part_time else None,
    )


def _market_from_dict(data: Mapping[str, Any]) -> MarketAssumptions:
    classes = data.get("asset_classes")
    asset_classes = (
        tuple(_coerce(AssetClass, c, "market.asset_classes") for c in classes)
        if classes
        else DEFAULT_ASSET_CLASSES
    )
    correlation = data.get("correlation")
    if correlation is None:
        correlation = DEFAULT_CORRELATION if asset_classes == DEFAULT_ASSET_CLASSES else tuple(
            tuple(1.0 if i == j else 0.0 for j in range(len(asset_classes)))
            for i in range(len(asset_classes))
        )
    correlation = tuple(
        tuple(_as_float(v, "market.correlation") for v in row) for row in correlation
    )
    regime = data.get("regime")
    return MarketAssumptions(
        asset_classes=asset_classes,
        correlation=correlation,
        regime=_coerce(RegimeSwitching, regime, "market.regime") if regime else None,
    )


def _allocation_from_dict(data: Mapping[str, Any]) -> AllocationPolicy:
    data = dict(data)
    kind = data.pop("type", "static")
    if kind == "static":
        weights = data.get("weights", {})
        return StaticAllocation(
            {k: _as_float(v, f"allocation.weights.{k}") for k, v in weights.items()}
        )
    if kind == "glide_path":
        return _coerce(GlidePath, data, "allocation")
    raise InvalidParameterError("allocation.type", f"unknown allocation type {kind!r}")


def params_from_dict(data: Mapping[str, Any]) -> SimulationParameters:
    """Build validated parameters from a loosely-typed profile mapping.

    Strings such as ``"$250,000"`` or ``"4%"`` are coerced here and nowhere
    else. A ``spouse`` entry turns the household into a couple.
    """

    data = dict(data)
    try:
        primary = _person_from_dict(data.pop("person"), "person")
    except KeyError as exc:
        raise InvalidParameterError("person", "is required") from exc
    spouse = data.pop("spouse", None)
    household: Household = (
        Couple(primary, _person_from_dict(spouse, "spouse")) if spouse else Single(primary)
    )
    if "assets" not in data or "expenses" not in data:
        missing = "assets" if "assets" not in data else "expenses"
        raise InvalidParameterError(missing, "is required")

    kwargs: dict = {
        "household": household,
        "assets": _coerce(AssetBuckets, data.pop("assets"), "assets"),
        "expenses": _coerce(ExpenseBaseline, data.pop("expenses"), "expenses"),
    }
    nested = {
        "inflation": InflationAssumptions,
        "guardrails": GuardrailPolicy,
        "variance_reduction": VarianceReduction,
        "safe_withdrawal": SafeWithdrawalSearch,
    }
    for name, cls in nested.items():
        if name in data:
            kwargs[name] = _coerce(cls, data.pop(name), name)
    if "market" in data:
        kwargs["market"] = _market_from_dict(data.pop("market"))
    if "allocation" in data:
        kwargs["allocation"] = _allocation_from_dict(data.pop("allocation"))
    if "ltc" in data:
        ltc = dict(data.pop("ltc"))
        insurance = ltc.pop("insurance", None)
        ltc_params = _coerce(LongTermCare, ltc, "ltc")
        if insurance:
            ltc_params = replace(
                ltc_params, insurance=_coerce(LTCInsurance, insurance, "ltc.insurance")
            )
        kwargs["ltc"] = ltc_params
    if "state" in data:
        state = data.pop("state")
        kwargs["state"] = state.strip().upper() if state else None

    scalars = {f.name: f for f in fields(SimulationParameters)}
    unknown = set(data) - set(scalars)
    if unknown:
        raise InvalidParameterError("profile", f"unknown fields {sorted(unknown)}")
    top = _coerce(_TopLevel, data, "profile")
    for name, value in asdict(top).items():
        if name in data:
            kwargs[name] = value
    return SimulationParameters(**kwargs)


@dataclass
class _TopLevel:
    filing_status: str = "single"
    state_tax_rate: Optional[float] = None
    withdrawal_rate: float = 0.04
    annual_savings: float = 0.0
    legacy_goal: float = 0.0
    dynamic_mortality: bool = True
    iterations: int = 1_000
    seed: int = 0
    start_year: int = 2025
    prior_magi: float = 0.0


def params_to_dict(params: SimulationParameters) -> dict:
    """Inverse of :func:`params_from_dict`."""

    def person(p: Person) -> dict:
        out = asdict(p)
        if p.pension is None:
            out.pop("pension")
        if p.part_time is None:
            out.pop("part_time")
        return out

    data: dict = {"person": person(params.primary)}
    if isinstance(params.household, Couple):
        data["spouse"] = person(params.household.spouse)
    data["assets"] = asdict(params.assets)
    data["expenses"] = asdict(params.expenses)
    data["inflation"] = asdict(params.inflation)
    data["market"] = {
        "asset_classes": [asdict(c) for c in params.market.asset_classes],
        "correlation": [list(row) for row in params.market.correlation],
    }
    if params.market.regime is not None:
        data["market"]["regime"] = asdict(params.market.regime)
    if isinstance(params.allocation, GlidePath):
        data["allocation"] = {"type": "glide_path", **asdict(params.allocation)}
    else:
        data["allocation"] = {"type": "static", "weights": dict(params.allocation.weights)}
    ltc = asdict(params.ltc)
    if params.ltc.insurance is None:
        ltc.pop("insurance")
    data["ltc"] = ltc
    data["guardrails"] = asdict(params.guardrails)
    data["variance_reduction"] = asdict(params.variance_reduction)
    data["safe_withdrawal"] = asdict(params.safe_withdrawal)
    data["state"] = params.state
    for f in fields(_TopLevel):
        data[f.name] = getattr(params, f.name)
    return data


def load_config(path: str = CONFIG_FILE) -> SimulationParameters:
    """Load a saved JSON profile."""

    with open(path) as f:
        return params_from_dict(json.load(f))


def save_config(params: SimulationParameters, path: str = CONFIG_FILE) -> None:
    """Persist the provided parameters to disk."""

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w") as f:
        json.dump(params_to_dict(params), f, indent=2)

"""Scenario runner and aggregation of Monte Carlo retirement outcomes."""

from __future__ import annotations

import logging
import math
import os
from concurrent.futures import FIRST_COMPLETED, ProcessPoolExecutor, wait
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import brentq

from cashflows import (
    IncomeBreakdown,
    InsuranceLedger,
    LTCEpisode,
    growth_index,
    is_survivor_year,
    ltc_costs,
    project_expenses,
    project_income,
    region_multiplier,
    sample_ltc_episodes,
)
from core import (
    STREAM_LTC,
    STREAM_MORTALITY,
    EngineUnavailableError,
    RandomContext,
    SimulationCancelled,
    SimulationParameters,
)
from mortality import MAX_SAMPLED_YEARS, MAX_TABLE_AGE, death_age, household_horizon, years_alive
from returns import (
    ReturnDraw,
    ReturnGenerator,
    ScenarioReturns,
    control_statistic,
    control_variate_adjust,
    latin_hypercube_strata,
    pair_count,
    pair_index,
)
from taxes import (
    MEDICARE_AGE,
    StateTax,
    TaxResult,
    compute_taxes,
    gross_up,
    irmaa_surcharge,
    required_minimum_distribution,
    state_tax_rules,
)
from withdrawals import (
    CAPITAL_PRESERVATION,
    NORMAL,
    PROSPERITY,
    Balances,
    BucketDraw,
    apply_guardrails,
    weight_schedule,
)


logger = logging.getLogger(__name__)

PERCENTILES = (10, 25, 50, 75, 90)

# Scenarios handed to a worker at a time
BATCHES_PER_WORKER = 4


@dataclass(frozen=True)
class YearlyCashFlow:
    year_index: int
    calendar_year: int
    ages: Tuple[int, ...]
    alive: Tuple[bool, ...]
    balance: float
    tax_deferred: float
    tax_free: float
    capital_gains: float
    cash_equivalents: float
    income: IncomeBreakdown = IncomeBreakdown()
    withdrawals: BucketDraw = BucketDraw()
    rmd: float = 0.0
    federal_tax: float = 0.0
    state_tax: float = 0.0
    capital_gains_tax: float = 0.0
    medicare_surcharge: float = 0.0
    expenses: float = 0.0
    essential: float = 0.0
    discretionary: float = 0.0
    discretionary_baseline: float = 0.0
    healthcare: float = 0.0
    ltc_cost: float = 0.0
    ltc_insurance: float = 0.0
    contributions: float = 0.0
    net_cash_flow: float = 0.0
    guardrail_state: str = NORMAL
    regime: str = "normal"
    # Asset-class returns of the year, kept on recorded series only
    market: Optional[ReturnDraw] = None

    @property
    def taxes(self) -> float:
        return self.federal_tax + self.state_tax + self.capital_gains_tax


@dataclass
class ScenarioState:
    balances: Balances
    year_index: int = 0
    factor: float = 1.0
    guardrail_state: str = NORMAL
    distribution_years: int = 0
    cuts: int = 0
    raises: int = 0
    magi: List[float] = field(default_factory=list)
    ledger: Optional[InsuranceLedger] = None
    ltc_cost: float = 0.0


@dataclass(frozen=True)
class ScenarioOutcome:
    index: int
    success: bool
    excluded: bool
    depletion_year: Optional[int]
    ending_balance: float
    balance_path: Tuple[float, ...]
    horizon: int
    guardrail_cuts: int
    guardrail_raises: int
    ltc_occurred: bool
    ltc_cost: float
    control: float
    cash_flows: Tuple[YearlyCashFlow, ...] = ()


@dataclass(frozen=True)
class GuardrailStats:
    average_adjustments: float = 0.0
    average_cuts: float = 0.0
    average_raises: float = 0.0
    scenarios_adjusted: int = 0


@dataclass(frozen=True)
class LTCImpact:
    probability: float
    average_cost: float
    success_without_ltc: Optional[float] = None
    success_delta: Optional[float] = None


@dataclass(frozen=True)
class SafeWithdrawalEstimate:
    rate: float
    success_probability: float
    converged: bool
    low_confidence: bool
    evaluations: int


@dataclass(frozen=True)
class SimulationResult:
    success_probability: float
    raw_success_probability: float
    median_ending_balance: float
    p10_ending_balance: float
    p90_ending_balance: float
    mean_ending_balance: float
    balance_percentiles: Dict[int, Tuple[float, ...]]
    years_until_depletion: Optional[float]
    successful: int
    failed: int
    total: int
    excluded: int
    legacy_goal_probability: float
    cash_flows: Tuple[YearlyCashFlow, ...]
    guardrails: GuardrailStats
    ltc: Optional[LTCImpact] = None
    safe_withdrawal: Optional[SafeWithdrawalEstimate] = None


@dataclass(frozen=True)
class ScenarioModel:
    """Everything a worker needs to run scenarios of one parameter set."""

    params: SimulationParameters
    ctx: RandomContext
    generator: ReturnGenerator
    weights: np.ndarray
    strata: Optional[np.ndarray]
    state_tax: StateTax
    ltc_enabled: bool
    ltc_multiplier: float
    years: int
    draw_years: int
    distribution_start: int
    cash_index: Optional[int]
    expected_control: float


def build_model(params: SimulationParameters, ltc_enabled: Optional[bool] = None) -> ScenarioModel:
    variance = params.variance_reduction
    ctx = RandomContext(params.seed)
    generator = ReturnGenerator(params.market, variance)
    primary = params.primary

    years = max(
        years_alive(p, max(MAX_TABLE_AGE, p.current_age, p.life_expectancy)) for p in params.people
    )
    draw_years = max(years, variance.control_years)
    weights = weight_schedule(params.allocation, generator.names, primary.current_age, draw_years)

    strata = None
    if variance.stratified:
        strata = latin_hypercube_strata(
            ctx, pair_count(params.iterations, variance.antithetic), variance.lhs_dims
        )

    return ScenarioModel(
        params=params,
        ctx=ctx,
        generator=generator,
        weights=weights,
        strata=strata,
        state_tax=state_tax_rules(params.state, params.state_tax_rate),
        ltc_enabled=params.ltc.enabled if ltc_enabled is None else ltc_enabled,
        ltc_multiplier=region_multiplier(params.ltc, params.state),
        years=years,
        draw_years=draw_years,
        distribution_start=max(0, primary.retirement_age - primary.current_age),
        cash_index=generator.names.index("cash") if "cash" in generator.names else None,
        expected_control=generator.expected_growth(weights[: variance.control_years]),
    )


def _snapshot(
    model: ScenarioModel,
    state: ScenarioState,
    ages: Tuple[int, ...],
    alive: Tuple[bool, ...],
    regime: str,
    **flows,
) -> YearlyCashFlow:
    b = state.balances
    return YearlyCashFlow(
        year_index=state.year_index,
        calendar_year=model.params.start_year + state.year_index,
        ages=ages,
        alive=alive,
        balance=b.total,
        tax_deferred=b.tax_deferred,
        tax_free=b.tax_free,
        capital_gains=b.capital_gains,
        cash_equivalents=b.cash_equivalents,
        guardrail_state=state.guardrail_state,
        regime=regime,
        **flows,
    )


def _advance_year(
    model: ScenarioModel,
    state: ScenarioState,
    draws: ScenarioReturns,
    episodes: Sequence[LTCEpisode],
    alive: Tuple[bool, ...],
) -> Tuple[YearlyCashFlow, bool]:
    """Apply one simulated year to ``state``; the flag is True on depletion."""

    params = model.params
    people = params.people
    t = state.year_index
    balances = state.balances
    start_tax_deferred = balances.tax_deferred

    returns = draws.returns[t]
    invested_return = float(model.weights[t] @ returns)
    cash_return = float(returns[model.cash_index]) if model.cash_index is not None else 0.0
    balances.grow(invested_return, cash_return)
    if not balances.is_finite():
        raise FloatingPointError("portfolio growth overflowed")

    ages = tuple(p.current_age + t for p in people)
    regime = draws.regime(t)
    general_index = growth_index(params.inflation.general, t)

    if t < model.distribution_start and alive[0]:
        contribution = params.annual_savings * general_index
        balances.tax_deferred += contribution
        state.magi.append(params.prior_magi)
        return (
            _snapshot(model, state, ages, alive, regime, contributions=contribution),
            False,
        )

    survivor = is_survivor_year(params, alive)
    filing = "single" if survivor else params.filing_status
    income = project_income(params, t, alive)

    ltc_gross, ltc_covered = ltc_costs(episodes, people, t, alive, state.ledger)
    state.ltc_cost += ltc_gross
    ltc_net = ltc_gross - ltc_covered

    # The tax-deferred bucket belongs to the primary, then the surviving spouse
    owner = 0 if alive[0] else 1
    birth_year = params.start_year - people[owner].current_age
    rmd = min(
        required_minimum_distribution(start_tax_deferred, ages[owner], birth_year),
        balances.tax_deferred,
    )

    on_medicare = sum(1 for a, living in zip(ages, alive) if living and a >= MEDICARE_AGE)
    lagged_magi = state.magi[t - 2] if t >= 2 else params.prior_magi
    surcharge = on_medicare * irmaa_surcharge(lagged_magi, filing, general_index) if on_medicare else 0.0

    expenses = project_expenses(params.expenses, params.inflation, t, state.factor, survivor)
    need = max(0.0, expenses.total + ltc_net + surcharge - income.total - rmd)
    decision = apply_guardrails(
        params.guardrails,
        params.withdrawal_rate,
        state.factor,
        need,
        balances.total,
        first_year=state.distribution_years == 0,
    )
    state.guardrail_state = decision.state
    if decision.factor != state.factor:
        if decision.state == CAPITAL_PRESERVATION:
            state.cuts += 1
        elif decision.state == PROSPERITY:
            state.raises += 1
        state.factor = decision.factor
        expenses = project_expenses(params.expenses, params.inflation, t, state.factor, survivor)
    state.distribution_years += 1

    spending = expenses.total + ltc_net + surcharge
    balances.tax_deferred -= rmd
    cash_in = income.total + rmd

    def taxes_for(amount: float) -> Tuple[BucketDraw, TaxResult]:
        draw, gains = balances.plan(amount)
        tax = compute_taxes(
            income.ordinary + rmd + draw.tax_deferred,
            income.social_security,
            gains,
            filing,
            general_index,
            model.state_tax,
        )
        return draw, tax

    # Tax on guaranteed income and the RMD is paid out of that income; the
    # portfolio funds only the tax its own draw adds
    base_tax = taxes_for(0.0)[1].total

    def shortfall(amount: float) -> float:
        return (spending - cash_in) + (taxes_for(amount)[1].total - base_tax) - amount

    search = gross_up(shortfall, balances.total)
    draw, tax = taxes_for(search.amount)
    balances.apply(draw)
    net = cash_in + draw.total - spending - tax.total
    if search.feasible and net > 0:
        balances.cash_equivalents += net
    state.magi.append(tax.magi)

    flow = _snapshot(
        model,
        state,
        ages,
        alive,
        regime,
        income=income,
        withdrawals=draw,
        rmd=rmd,
        federal_tax=tax.federal,
        state_tax=tax.state,
        capital_gains_tax=tax.capital_gains,
        medicare_surcharge=surcharge,
        expenses=expenses.total + ltc_net,
        essential=expenses.essential,
        discretionary=expenses.discretionary,
        discretionary_baseline=expenses.discretionary_baseline,
        healthcare=expenses.healthcare,
        ltc_cost=ltc_gross,
        ltc_insurance=ltc_covered,
        net_cash_flow=net,
    )
    return flow, not search.feasible


def run_scenario(model: ScenarioModel, index: int, record: bool = False) -> ScenarioOutcome:
    """Simulate scenario ``index`` from its own deterministic random streams."""

    params = model.params
    people = params.people
    ctx = model.ctx
    variance = params.variance_reduction
    pair = pair_index(index, variance.antithetic)

    uniforms = ctx.generator(pair, STREAM_MORTALITY).random((len(people), MAX_SAMPLED_YEARS))
    death_ages = [death_age(p, uniforms[i], params.dynamic_mortality) for i, p in enumerate(people)]
    lifetimes = [years_alive(p, d) for p, d in zip(people, death_ages)]
    horizon = household_horizon(people, death_ages)

    draws = model.generator.scenario_returns(ctx, index, model.draw_years, model.strata)
    control = control_statistic(
        draws.unclipped[: variance.control_years], model.weights[: variance.control_years]
    )

    episodes: Tuple[LTCEpisode, ...] = ()
    if model.ltc_enabled:
        ltc_uniforms = ctx.generator(pair, STREAM_LTC).random((len(people), 4))
        episodes = sample_ltc_episodes(params.ltc, people, model.ltc_multiplier, ltc_uniforms)

    state = ScenarioState(balances=Balances.from_assets(params.assets))
    if episodes and params.ltc.insurance is not None:
        state.ledger = InsuranceLedger.for_household(params.ltc.insurance, len(people))

    path: List[float] = []
    flows: List[YearlyCashFlow] = []
    depletion_year = None
    excluded = False
    for t in range(horizon):
        state.year_index = t
        alive = tuple(t < n for n in lifetimes)
        try:
            flow, depleted = _advance_year(model, state, draws, episodes, alive)
        except (OverflowError, ZeroDivisionError, FloatingPointError) as exc:
            logger.warning("Scenario %d excluded: %s in year %d", index, exc, t)
            excluded = True
            break
        if not state.balances.is_finite() or not math.isfinite(flow.net_cash_flow):
            logger.warning("Scenario %d excluded: non-finite balance in year %d", index, t)
            excluded = True
            break
        if record:
            flows.append(replace(flow, market=draws.draw(t)))
        if depleted:
            depletion_year = t
            path.extend([0.0] * (horizon - t))
            break
        path.append(state.balances.total)

    if excluded:
        ending = 0.0
    elif depletion_year is not None:
        ending = 0.0
    else:
        ending = state.balances.total if horizon else params.assets.total_assets

    return ScenarioOutcome(
        index=index,
        success=not excluded and depletion_year is None,
        excluded=excluded,
        depletion_year=depletion_year,
        ending_balance=float(ending),
        balance_path=tuple(path),
        horizon=horizon,
        guardrail_cuts=state.cuts,
        guardrail_raises=state.raises,
        ltc_occurred=state.ltc_cost > 0,
        ltc_cost=state.ltc_cost,
        control=control,
        cash_flows=tuple(flows),
    )


def _run_batch(model: ScenarioModel, start: int, stop: int) -> List[ScenarioOutcome]:
    return [run_scenario(model, i) for i in range(start, stop)]


def _worker_count(workers: Optional[int], iterations: int) -> int:
    if workers is None:
        workers = os.cpu_count() or 1
    return max(1, min(int(workers), iterations))


def _cancelled(cancel) -> bool:
    return cancel is not None and cancel.is_set()


def run_scenarios(model: ScenarioModel, workers: Optional[int] = None, cancel=None) -> List[ScenarioOutcome]:
    """Run every scenario of ``model``, ordered by scenario index.

    ``cancel`` is any object with ``is_set()`` such as ``threading.Event``. A
    cancelled run raises :class:`SimulationCancelled` and returns nothing.
    """

    n = model.params.iterations
    workers = _worker_count(workers, n)
    logger.debug("Running %d scenarios on %d worker(s)", n, workers)

    if workers == 1:
        outcomes = []
        for i in range(n):
            if _cancelled(cancel):
                raise SimulationCancelled(f"cancelled after {i} of {n} scenarios")
            outcomes.append(run_scenario(model, i))
        return outcomes

    size = max(1, math.ceil(n / (workers * BATCHES_PER_WORKER)))
    batches = [(start, min(start + size, n)) for start in range(0, n, size)]
    try:
        with ProcessPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(_run_batch, model, start, stop) for start, stop in batches]
            pending = set(futures)
            while pending:
                _, pending = wait(pending, timeout=0.1, return_when=FIRST_COMPLETED)
                if _cancelled(cancel):
                    executor.shutdown(wait=False, cancel_futures=True)
                    raise SimulationCancelled("cancelled before all scenarios completed")
            return [outcome for future in futures for outcome in future.result()]
    except (BrokenProcessPool, OSError) as exc:
        logger.error("Worker pool failed: %s", exc)
        raise EngineUnavailableError(f"worker pool unavailable: {exc}") from exc


def _success_probability(model: ScenarioModel, valid: Sequence[ScenarioOutcome]) -> float:
    if not valid:
        return 0.0
    raw = sum(o.success for o in valid) / len(valid)
    if not model.params.variance_reduction.control_variates or len(valid) < 2:
        return raw
    adjusted, _ = control_variate_adjust(
        [float(o.success) for o in valid], [o.control for o in valid], model.expected_control
    )
    return min(max(adjusted, 0.0), 1.0)


def _balance_percentiles(valid: Sequence[ScenarioOutcome]) -> Dict[int, Tuple[float, ...]]:
    width = max((len(o.balance_path) for o in valid), default=0)
    if width == 0:
        return {p: () for p in PERCENTILES}
    grid = np.full((len(valid), width), np.nan)
    for row, outcome in zip(grid, valid):
        row[: len(outcome.balance_path)] = outcome.balance_path
    return {
        p: tuple(float(v) for v in np.nanpercentile(grid, p, axis=0)) for p in PERCENTILES
    }


def aggregate(
    model: ScenarioModel, outcomes: Sequence[ScenarioOutcome], cash_flows: Tuple[YearlyCashFlow, ...] = ()
) -> SimulationResult:
    params = model.params
    valid = [o for o in outcomes if not o.excluded]
    successful = sum(o.success for o in valid)
    failed = len(valid) - successful

    endings = np.array([o.ending_balance for o in valid], dtype=np.float64)
    if len(valid):
        p10, median, p90 = (float(v) for v in np.percentile(endings, [10, 50, 90]))
        mean_ending = float(endings.mean())
        if params.variance_reduction.control_variates and len(valid) >= 2:
            mean_ending, _ = control_variate_adjust(
                endings, [o.control for o in valid], model.expected_control
            )
    else:
        p10 = median = p90 = mean_ending = 0.0

    depletions = [
        o.depletion_year - model.distribution_start + 1
        for o in valid
        if o.depletion_year is not None
    ]

    n = len(valid) or 1
    cuts = sum(o.guardrail_cuts for o in valid)
    raises = sum(o.guardrail_raises for o in valid)
    guardrails = GuardrailStats(
        average_adjustments=(cuts + raises) / n,
        average_cuts=cuts / n,
        average_raises=raises / n,
        scenarios_adjusted=sum(1 for o in valid if o.guardrail_cuts or o.guardrail_raises),
    )

    ltc = None
    if model.ltc_enabled:
        with_ltc = [o for o in valid if o.ltc_occurred]
        ltc = LTCImpact(
            probability=len(with_ltc) / n,
            average_cost=float(np.mean([o.ltc_cost for o in with_ltc])) if with_ltc else 0.0,
        )

    return SimulationResult(
        success_probability=_success_probability(model, valid),
        raw_success_probability=successful / len(valid) if valid else 0.0,
        median_ending_balance=median,
        p10_ending_balance=p10,
        p90_ending_balance=p90,
        mean_ending_balance=float(mean_ending),
        balance_percentiles=_balance_percentiles(valid),
        years_until_depletion=float(np.mean(depletions)) if depletions else None,
        successful=successful,
        failed=failed,
        total=len(outcomes),
        excluded=len(outcomes) - len(valid),
        legacy_goal_probability=(
            sum(1 for o in valid if o.success and o.ending_balance >= params.legacy_goal) / n
            if valid
            else 0.0
        ),
        cash_flows=cash_flows,
        guardrails=guardrails,
        ltc=ltc,
    )


def representative_cash_flows(
    model: ScenarioModel, outcomes: Sequence[ScenarioOutcome]
) -> Tuple[YearlyCashFlow, ...]:
    """Yearly records of the scenario ending closest to the median balance."""

    valid = [o for o in outcomes if not o.excluded]
    if not valid:
        return ()
    endings = np.array([o.ending_balance for o in valid])
    chosen = valid[int(np.argmin(np.abs(endings - np.median(endings))))]
    return run_scenario(model, chosen.index, record=True).cash_flows


def _spending_for_rate(params: SimulationParameters, rate: float) -> SimulationParameters:
    """Replace baseline spending with guaranteed income plus ``rate`` of assets.

    Healthcare is folded into the essential share, so spending beyond
    guaranteed income is ``rate`` of assets in today's dollars.
    """

    primary = params.primary
    start = max(0, primary.retirement_age - primary.current_age)
    alive = tuple(True for _ in params.people)
    guaranteed = project_income(params, start, alive).total / growth_index(params.inflation.general, start)
    expenses = params.expenses
    essential = expenses.essential + expenses.healthcare
    baseline = essential + expenses.discretionary
    share = essential / baseline if baseline > 0 else 1.0
    total = guaranteed + rate * params.assets.total_assets
    return replace(
        params,
        expenses=replace(
            expenses,
            essential=total * share,
            discretionary=total * (1.0 - share),
            healthcare=0.0,
        ),
        withdrawal_rate=max(rate, 1e-6),
    )


def find_safe_withdrawal_rate(
    params: SimulationParameters, workers: Optional[int] = None, cancel=None
) -> SafeWithdrawalEstimate:
    """Withdrawal rate at which success probability crosses the target."""

    search = params.safe_withdrawal
    base = replace(params, iterations=search.iterations)
    evaluations = 0

    def success(rate: float) -> float:
        nonlocal evaluations
        evaluations += 1
        model = build_model(_spending_for_rate(base, rate))
        return _success_probability(model, [o for o in run_scenarios(model, workers, cancel) if not o.excluded])

    def excess(rate: float) -> float:
        return success(rate) - search.target

    at_zero = success(0.0)
    if at_zero < search.target:
        logger.warning("Success probability %.3f is below target even with no withdrawals", at_zero)
        return SafeWithdrawalEstimate(0.0, at_zero, False, True, evaluations)
    at_max = success(search.max_rate)
    if at_max >= search.target:
        return SafeWithdrawalEstimate(search.max_rate, at_max, False, True, evaluations)

    rate, info = brentq(
        excess,
        0.0,
        search.max_rate,
        xtol=search.tolerance,
        maxiter=search.max_evaluations,
        full_output=True,
        disp=False,
    )
    if not info.converged:
        logger.warning(
            "Safe withdrawal search stopped after %d evaluations at %.4f", evaluations, rate
        )
    return SafeWithdrawalEstimate(
        rate=float(rate),
        success_probability=success(rate),
        converged=bool(info.converged),
        low_confidence=not info.converged,
        evaluations=evaluations,
    )


def simulate(
    params: SimulationParameters,
    workers: Optional[int] = None,
    cancel=None,
    search_safe_withdrawal: Optional[bool] = None,
) -> SimulationResult:
    """Run the Monte Carlo simulation for ``params``."""

    model = build_model(params)
    logger.info("Simulating %d scenarios (seed %d)", params.iterations, params.seed)
    outcomes = run_scenarios(model, workers, cancel)
    result = aggregate(model, outcomes, representative_cash_flows(model, outcomes))
    if result.excluded:
        logger.warning("%d of %d scenarios excluded for numeric instability", result.excluded, result.total)

    if model.ltc_enabled and params.ltc.counterfactual:
        baseline = build_model(params, ltc_enabled=False)
        without = _success_probability(
            baseline, [o for o in run_scenarios(baseline, workers, cancel) if not o.excluded]
        )
        result = replace(
            result,
            ltc=replace(
                result.ltc,
                success_without_ltc=without,
                success_delta=result.success_probability - without,
            ),
        )

    if search_safe_withdrawal is None:
        search_safe_withdrawal = params.safe_withdrawal.enabled
    if search_safe_withdrawal:
        result = replace(result, safe_withdrawal=find_safe_withdrawal_rate(params, workers, cancel))

    logger.info(
        "Success probability %.1f%% (%d/%d)",
        result.success_probability * 100,
        result.successful,
        result.total,
    )
    return result

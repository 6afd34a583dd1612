"""Command-line front end: run a saved profile and report the outcome."""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from typing import List, Optional

import numpy as np

from core import (
    CONFIG_FILE,
    EngineUnavailableError,
    InvalidParameterError,
    load_config,
    params_from_dict,
    save_config,
)
from simulation import SimulationResult, simulate


logger = logging.getLogger(__name__)


# Starter profile written by --init
DEFAULT_PROFILE = {
    "person": {
        "current_age": 60,
        "retirement_age": 65,
        "gender": "male",
        "health_status": "good",
        "social_security_benefit": "$30,000",
        "social_security_claim_age": 67,
    },
    "spouse": {
        "current_age": 58,
        "retirement_age": 65,
        "gender": "female",
        "health_status": "good",
        "social_security_benefit": "$20,000",
        "social_security_claim_age": 67,
    },
    "assets": {
        "tax_deferred": "$600,000",
        "tax_free": "$150,000",
        "capital_gains": "$200,000",
        "cash_equivalents": "$50,000",
        "capital_gains_basis": "60%",
    },
    "expenses": {
        "essential": "$55,000",
        "discretionary": "$25,000",
        "healthcare": "$12,000",
    },
    "filing_status": "married",
    "state": "NC",
    "annual_savings": "$20,000",
    "allocation": {"type": "glide_path", "start_equity": "70%", "end_equity": "40%",
                   "start_age": 60, "end_age": 85},
    "iterations": 1000,
    "seed": 42,
}


def plot_balances(result: SimulationResult, path: Optional[str] = None) -> None:
    """Fan chart of the total balance percentiles by year."""
    import matplotlib

    if path:
        matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    bands = result.balance_percentiles
    years = np.arange(len(bands[50]))
    if not len(years):
        logger.warning("Nothing to plot: every scenario has a zero-year horizon")
        return

    fig, ax = plt.subplots(figsize=(8, 4))
    ax.fill_between(years, bands[10], bands[90], color="green", alpha=0.15, label="10th-90th")
    ax.fill_between(years, bands[25], bands[75], color="green", alpha=0.3, label="25th-75th")
    ax.plot(years, bands[50], color="black", linewidth=1, label="Median")
    ax.set_xlabel("Years from today")
    ax.set_ylabel("Total funds ($)")
    ax.set_title(f"Balance percentiles ({result.success_probability * 100:.1f}% success)")
    ax.set_xlim(0, max(years[-1], 1))
    ax.set_ylim(bottom=0)
    ax.legend()
    if path:
        fig.savefig(path, dpi=150, bbox_inches="tight")
        plt.close(fig)
    else:
        plt.show()


def format_result(result: SimulationResult) -> List[str]:
    lines = [
        f"Success rate: {result.success_probability * 100:.1f}%"
        f" ({result.successful} of {result.total - result.excluded} scenarios)",
        f"Ending balance 10th / median / 90th: ${result.p10_ending_balance:,.0f}"
        f" / ${result.median_ending_balance:,.0f} / ${result.p90_ending_balance:,.0f}",
        f"Legacy goal met: {result.legacy_goal_probability * 100:.1f}%",
    ]
    if result.years_until_depletion is not None:
        lines.append(f"Mean years until depletion: {result.years_until_depletion:.0f}")
    if result.excluded:
        lines.append(f"Excluded (numeric instability): {result.excluded}")
    g = result.guardrails
    lines.append(
        f"Guardrail adjustments per scenario: {g.average_adjustments:.2f}"
        f" (cuts {g.average_cuts:.2f}, raises {g.average_raises:.2f})"
    )
    if result.ltc is not None:
        lines.append(
            f"Long-term care: {result.ltc.probability * 100:.1f}% of scenarios,"
            f" average cost ${result.ltc.average_cost:,.0f}"
        )
        if result.ltc.success_delta is not None:
            lines.append(f"Success change from care costs: {result.ltc.success_delta * 100:+.1f} pts")
    sw = result.safe_withdrawal
    if sw is not None:
        note = " (low confidence)" if sw.low_confidence else ""
        lines.append(f"Safe withdrawal rate: {sw.rate * 100:.2f}%{note}")
    return lines


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Monte Carlo retirement outcome simulation")
    parser.add_argument("profile", nargs="?", default=CONFIG_FILE, help="JSON profile to run")
    parser.add_argument("--init", action="store_true", help="write a starter profile and exit")
    parser.add_argument("-n", "--iterations", type=int, help="override the scenario count")
    parser.add_argument("--seed", type=int, help="override the run seed")
    parser.add_argument("-j", "--workers", type=int, help="worker processes (default: all cores)")
    parser.add_argument("--safe-withdrawal", action="store_true", help="search for the safe withdrawal rate")
    parser.add_argument("--plot", nargs="?", const="", metavar="FILE", help="plot balances, optionally to FILE")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.init:
        save_config(params_from_dict(DEFAULT_PROFILE), args.profile)
        print(f"Wrote starter profile to {args.profile}")
        return 0

    try:
        params = load_config(args.profile)
        overrides = {}
        if args.iterations is not None:
            overrides["iterations"] = args.iterations
        if args.seed is not None:
            overrides["seed"] = args.seed
        if overrides:
            params = replace(params, **overrides)
    except FileNotFoundError:
        logger.error("Profile %s not found; create one with --init", args.profile)
        return 2
    except InvalidParameterError as exc:
        logger.error("Invalid input: %s", exc)
        return 2

    try:
        result = simulate(
            params,
            workers=args.workers,
            search_safe_withdrawal=args.safe_withdrawal or None,
        )
    except EngineUnavailableError as exc:
        logger.error("%s (retry may succeed)", exc)
        return 3

    print("\n".join(format_result(result)))
    if args.plot is not None:
        plot_balances(result, args.plot or None)
    return 0


if __name__ == "__main__":
    sys.exit(main())

import datetime as _dt
import hashlib
import itertools
from typing import Dict, List, Optional

import pandas as pd
from loguru import logger

from social_security import find_breakeven_age

_seed_counter = itertools.count()


def _generate_seed_from_timestamp() -> int:
    # The counter keeps back-to-back calls within one clock tick distinct.
    ts = f"{_dt.datetime.now(_dt.timezone.utc).isoformat()}#{next(_seed_counter)}"
    return int.from_bytes(hashlib.sha256(ts.encode()).digest()[:8], "big") % (2**32 - 1)


def log_input_parameters(config) -> None:
    """Logs the input parameters of a ScenarioConfig."""
    logger.info(f"--- Input Parameters For Scenario: {config.nickname} ---")
    client = config.client
    logger.info(
        f"Client: age {client.current_age}, retirement age {client.effective_retirement_age}"
        + (
            f", married (partner age {client.partner_current_age}, "
            f"retires at {client.effective_partner_retirement_age})"
            if client.is_married
            else ", single"
        )
    )
    for key, value in config.inputs.model_dump(by_alias=False).items():
        if key == "additional_incomes":
            logger.info(f"{key.replace('_', ' ').title()}:")
            if config.inputs.additional_incomes:
                for event in config.inputs.additional_incomes:
                    if event.is_one_time:
                        when = f"one-time at age {event.start_age}"
                        amount = f"${event.amount:,.0f}"
                    else:
                        when = f"ages {event.start_age}-{event.last_age}"
                        amount = f"${event.amount:,.0f}/mo"
                    inflation_str = " (Inflation Adj.)" if event.inflation_adjusted else ""
                    logger.info(f"  - {event.name or event.id}: {amount}, {when}{inflation_str}, owner {event.owner}")
            else:
                logger.info("  - None")
        elif isinstance(value, float) and "rate" in key:
            logger.info(f"{key.replace('_', ' ').title()}: {value:.2f}%")
        elif isinstance(value, (float, int)) and not isinstance(value, bool) and any(
            kw in key for kw in ["portfolio", "spending", "pia", "pension"]
        ) and "age" not in key:
            logger.info(f"{key.replace('_', ' ').title()}: ${value:,.2f}")
        else:
            logger.info(f"{key.replace('_', ' ').title()}: {value}")
    for key, a in config.assumptions.as_dict().items():
        logger.info(f"{key.upper()} {a.name}: return {a.expected_return:.2f}%, std dev {a.std_dev:.2f}%")
    logger.info(
        f"Rebalance: every {config.rebalance_freq} yrs ({config.rebalance_policy}); "
        f"optimizer every {config.effective_optimizer_rebalance_freq} yrs"
    )
    logger.info("--- End of Input Parameters ---")


def log_simulation_results(
    config,
    plan,
    projection_df: pd.DataFrame,
    monte_carlo,
    optimizer_results: Optional[Dict] = None,
    ss_analysis=None,
    ss_partner_analysis=None,
) -> None:
    """Logs the final results of a scenario run."""
    logger.info(f"--- Results for Scenario: '{config.nickname}' ---")
    logger.info(
        "Bucket Allocation: "
        + ", ".join(f"{k.upper()} ${v:,.0f}" for k, v in plan.as_dict().items())
    )
    if plan.is_deficit:
        logger.warning("Allocation is in DEFICIT: the income buckets exceed the portfolio.")

    final_row = projection_df.iloc[-1]
    logger.info(
        f"Deterministic Projection: ending balance ${final_row['End Balance']:,.2f} "
        f"at age {final_row['Age']} (benchmark ${final_row['Benchmark']:,.2f})"
    )
    logger.info(f"Peak Distribution Rate: {projection_df['Dist Rate %'].max():.2f}%")

    logger.info(
        f"Monte Carlo ({monte_carlo.iterations} paths): success rate {monte_carlo.success_rate:.1f}%"
    )
    last = monte_carlo.data[-1]
    logger.info(
        f"Year {last.year} balance bands: p10 ${last.p10:,.0f} | median ${last.median:,.0f} | p90 ${last.p90:,.0f}"
    )

    if optimizer_results:
        logger.info("Allocation Strategy Comparison:")
        for name, result in optimizer_results.items():
            logger.info(
                f"  - {name}: success {result.success_rate:.1f}%, "
                f"median legacy ${result.median_legacy:,.0f}"
            )

    for label, analysis in (("Client", ss_analysis), ("Partner", ss_partner_analysis)):
        if analysis is None:
            continue
        outcomes: List = analysis.outcomes
        logger.info(
            f"{label} SS Claiming: best age {analysis.winner.age} "
            + "("
            + ", ".join(f"{o.age}: ${o.projected_balance:,.0f}" for o in outcomes)
            + ")"
        )
        if analysis.breakeven_data:
            breakeven_age = find_breakeven_age(analysis.breakeven_data)
            logger.info(
                f"{label} Breakeven (claim at 70 vs 62): "
                + (f"age {breakeven_age}" if breakeven_age is not None else "not reached by 95")
            )

    logger.info(f"--- End of Results for Scenario: '{config.nickname}' ---")

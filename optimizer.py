"""
Side-by-side comparison of alternative bucket allocations.

Each strategy is a fully specified split of the portfolio across the five
buckets. Strategies are scored by running the Monte Carlo harness from the
strategy's starting balances, with the same cash flows and withdrawal rules as
the main plan.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
from loguru import logger

from buckets import BucketPlan, calculate_base_plan, round_to_unit
from cash_flow import CashFlowCalculator
from config import ClientProfile, PlanInputs, ReturnAssumptions
from constants import (
    B4_PORTFOLIO_SHARE,
    BUCKET_KEYS,
    BUCKET_WINDOWS,
    MONTE_CARLO_ITERATIONS,
    REBALANCE_ROLLING_PV,
    SMALL_EPSILON,
)
from simulation import DistributionSimulator, MonteCarloYear
from utils import _generate_seed_from_timestamp


@dataclass(frozen=True)
class AllocationStrategy:
    key: str
    name: str
    description: str
    b1_val: float
    b2_val: float
    b3_val: float
    b4_val: float
    b5_val: float

    def as_dict(self) -> Dict[str, float]:
        return {key: getattr(self, f"{key}_val") for key in BUCKET_KEYS}

    @property
    def total(self) -> float:
        return sum(self.as_dict().values())

    def to_bucket_plan(self, cash_flow: CashFlowCalculator, total_portfolio: float) -> BucketPlan:
        return BucketPlan(
            b1_val=self.b1_val,
            b2_val=self.b2_val,
            b3_val=self.b3_val,
            b4_val=self.b4_val,
            b5_val=self.b5_val,
            is_deficit=self.b5_val < 0,
            total_portfolio=total_portfolio,
            cash_flow=cash_flow,
        )


@dataclass
class OptimizedStrategyResult:
    success_rate: float
    median_legacy: float
    allocation: AllocationStrategy
    bands: List[MonteCarloYear]


def _sequential_split(key: str, name: str, description: str, total: float, amounts: List[float]) -> AllocationStrategy:
    """
    Fills b1..b4 with ``amounts`` (whole dollars) in order, each clipped to
    what is left, and puts the remainder in b5.
    """
    remaining = total
    values = []
    for amount in amounts:
        allocated = min(round_to_unit(max(0.0, amount), 1), max(0.0, remaining))
        values.append(allocated)
        remaining -= allocated
    values.append(total - sum(values))
    return AllocationStrategy(key, name, description, *values)


def _share_split(key: str, name: str, description: str, total: float, shares: List[float]) -> AllocationStrategy:
    return _sequential_split(key, name, description, total, [total * s for s in shares])


def calculate_alternative_allocations(
    inputs: PlanInputs, base_plan: BucketPlan
) -> Dict[str, AllocationStrategy]:
    """
    Named alternative allocations of ``inputs.total_portfolio``. Every
    allocation sums exactly to the portfolio.
    """
    total = inputs.total_portfolio
    cash_flow = base_plan.cash_flow
    annual_distribution = cash_flow.annual_gap(0)

    def undiscounted_need(bucket: str) -> float:
        first_year, last_year = BUCKET_WINDOWS[bucket]
        return sum(cash_flow.annual_gap(y - 1) for y in range(first_year, last_year + 1))

    strategies = [
        AllocationStrategy(
            "strategy1",
            "Current Model",
            "Present-value bucket plan: each income bucket funds only its own years.",
            *base_plan.as_dict().values(),
        ),
        _share_split(
            "strategy2",
            "Conservative Equity Tilt",
            "10% short term, 10% mid term, 30% balanced, half in long-term growth.",
            total,
            [0.10, 0.10, 0.30, 0.0],
        ),
        _sequential_split(
            "strategy3",
            "Barbell",
            "Three years of distributions in cash, everything else in long-term growth.",
            total,
            [min(3 * annual_distribution, total), 0.0, 0.0, 0.0],
        ),
        _share_split(
            "strategy4",
            "Equal Weight",
            "20% in every bucket.",
            total,
            [0.20, 0.20, 0.20, 0.20],
        ),
        _sequential_split(
            "strategy5",
            "Liability Matched",
            "Buckets hold the undiscounted gaps of their years, 10% income & growth sleeve.",
            total,
            [
                undiscounted_need("b1"),
                undiscounted_need("b2"),
                undiscounted_need("b3"),
                total * B4_PORTFOLIO_SHARE,
            ],
        ),
        _share_split(
            "strategy6",
            "Growth Tilt",
            "Thin short-term reserves, 60% in long-term growth.",
            total,
            [0.05, 0.05, 0.15, 0.15],
        ),
    ]
    return {s.name: s for s in strategies}


def run_optimized_simulation(
    allocation: AllocationStrategy,
    assumptions: ReturnAssumptions,
    inputs: PlanInputs,
    client: ClientProfile,
    rebalance_freq: int = 0,
    seed: Optional[int] = None,
    iterations: int = MONTE_CARLO_ITERATIONS,
    num_processes: int = 1,
    rebalance_policy: str = REBALANCE_ROLLING_PV,
) -> OptimizedStrategyResult:
    """
    Monte Carlo score for one allocation. ``median_legacy`` is the median
    year-30 balance over the paths that never ran out of money.
    """
    if abs(allocation.total - inputs.total_portfolio) > SMALL_EPSILON * max(1.0, inputs.total_portfolio):
        raise ValueError(
            f"Allocation '{allocation.name}' sums to {allocation.total:,.2f}, "
            f"not the portfolio total {inputs.total_portfolio:,.2f}"
        )

    cash_flow = CashFlowCalculator(inputs, client)
    plan = allocation.to_bucket_plan(cash_flow, inputs.total_portfolio)
    simulator = DistributionSimulator(
        plan,
        assumptions,
        inputs,
        rebalance_freq=rebalance_freq,
        rebalance_policy=rebalance_policy,
        seed=seed,
    )
    mc = simulator.run_monte_carlo(iterations, num_processes)

    survivors = np.sort(mc.final_balances[~mc.failures])
    median_legacy = float(survivors[len(survivors) // 2]) if len(survivors) else 0.0

    logger.debug(
        f"Strategy '{allocation.name}': success {mc.success_rate:.1f}%, median legacy ${median_legacy:,.0f}"
    )
    return OptimizedStrategyResult(
        success_rate=mc.success_rate,
        median_legacy=median_legacy,
        allocation=allocation,
        bands=mc.data,
    )


def compare_strategies(
    inputs: PlanInputs,
    assumptions: ReturnAssumptions,
    client: ClientProfile,
    base_plan: Optional[BucketPlan] = None,
    rebalance_freq: int = 0,
    seed: Optional[int] = None,
    iterations: int = MONTE_CARLO_ITERATIONS,
    num_processes: int = 1,
    rebalance_policy: str = REBALANCE_ROLLING_PV,
) -> Dict[str, OptimizedStrategyResult]:
    """
    Scores every alternative allocation. All strategies share one seed so they
    face the same return sequences.
    """
    if base_plan is None:
        base_plan = calculate_base_plan(inputs, assumptions, client)
    if seed is None:
        seed = _generate_seed_from_timestamp()

    allocations = calculate_alternative_allocations(inputs, base_plan)
    logger.info(f"Comparing {len(allocations)} allocation strategies (seed {seed}).")
    return {
        name: run_optimized_simulation(
            allocation,
            assumptions,
            inputs,
            client,
            rebalance_freq=rebalance_freq,
            seed=seed,
            iterations=iterations,
            num_processes=num_processes,
            rebalance_policy=rebalance_policy,
        )
        for name, allocation in allocations.items()
    }

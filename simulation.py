import math
import multiprocessing
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd
from loguru import logger

from buckets import BucketPlan, rolling_targets
from cash_flow import AnnualDetail
from config import PlanInputs, ReturnAssumptions
from constants import (
    BENCHMARK_BUCKET,
    BUCKET_KEYS,
    MONTE_CARLO_ITERATIONS,
    PERCENTILES,
    REBALANCE_GREEDY_REFILL,
    REBALANCE_ROLLING_PV,
    SIMULATION_YEARS,
    SMALL_EPSILON,
    WITHDRAWAL_ORDER,
)
from utils import _generate_seed_from_timestamp


@dataclass
class SimulationYearRecord:
    """One row of a projection."""
    year: int
    age: int
    partner_age: Optional[int]
    start_balance: float
    growth: float
    ss_income: float
    income: float
    one_time_contribution: float
    expenses: float
    gap: float
    total_withdrawal: float
    shortfall: float
    end_total: float
    benchmark_balance: float
    distribution_rate: float
    bucket_balances: Dict[str, float] = field(default_factory=dict)
    bucket_withdrawals: Dict[str, float] = field(default_factory=dict)
    rebalanced: bool = False


@dataclass
class PathResult:
    records: List[SimulationYearRecord]
    failed: bool
    final_total: float


@dataclass
class MonteCarloYear:
    year: int
    p10: float
    median: float
    p90: float


@dataclass
class MonteCarloResult:
    """Percentile bands per year and the share of paths that never ran dry."""
    data: List[MonteCarloYear]
    success_rate: float
    iterations: int
    failed_count: int
    seed: int
    final_balances: np.ndarray
    failures: np.ndarray


def box_muller(rng: np.random.Generator) -> float:
    """Standard normal draw via the Box-Muller transform."""
    u = 0.0
    while u == 0.0:
        u = rng.random()
    v = 0.0
    while v == 0.0:
        v = rng.random()
    return math.sqrt(-2.0 * math.log(u)) * math.cos(2.0 * math.pi * v)


class DistributionSimulator:
    """
    Time-steps the five buckets through the distribution phase.

    Each year the buckets grow at their own (fixed or random) return, one-time
    inflows land in bucket 5, the year's funding gap is withdrawn in bucket
    order, and the buckets are optionally re-sliced every ``rebalance_freq``
    years.
    """

    def __init__(
        self,
        plan: BucketPlan,
        assumptions: ReturnAssumptions,
        inputs: PlanInputs,
        rebalance_freq: int = 0,
        rebalance_policy: str = REBALANCE_ROLLING_PV,
        years: int = SIMULATION_YEARS,
        seed: Optional[int] = None,
    ):
        if rebalance_freq < 0:
            raise ValueError(f"rebalance_freq must be >= 0, got {rebalance_freq}")
        if rebalance_policy not in (REBALANCE_ROLLING_PV, REBALANCE_GREEDY_REFILL):
            raise ValueError(f"Unknown rebalance policy: {rebalance_policy!r}")

        self.plan = plan
        self.cash_flow = plan.cash_flow
        self.assumptions = assumptions
        self.inputs = inputs
        self.rebalance_freq = rebalance_freq
        self.rebalance_policy = rebalance_policy
        self.years = years
        self.main_seed = seed if seed is not None else _generate_seed_from_timestamp()
        logger.debug(
            f"Simulator initialized: {years} yrs, rebalance every {rebalance_freq} yrs "
            f"({rebalance_policy}), main seed {self.main_seed}"
        )

    def _draw_rates(self, rng: Optional[np.random.Generator]) -> Dict[str, float]:
        rates = {}
        for key in BUCKET_KEYS:
            a = self.assumptions.bucket(key)
            if rng is None:
                rates[key] = a.expected_return / 100
            else:
                rates[key] = (a.expected_return + a.std_dev * box_muller(rng)) / 100
        bench = self.assumptions.bucket(BENCHMARK_BUCKET)
        if rng is None:
            rates["benchmark"] = bench.expected_return / 100
        else:
            rates["benchmark"] = bench.expected_return / 100 + (bench.std_dev / 100) * box_muller(rng)
        return rates

    @staticmethod
    def _withdraw(balances: Dict[str, float], amount: float):
        """
        Drains ``amount`` from the buckets in withdrawal order. Every bucket is
        left non-negative. Returns (per-bucket withdrawals, unfunded amount).

        A negative bucket (bucket 5 of a deficit plan) is a claim on the rest
        of the portfolio: it is zeroed and its deficit is first netted against
        the other buckets in the same order, so the total is unchanged.
        """
        deficit = 0.0
        for key in WITHDRAWAL_ORDER:
            if balances[key] < 0:
                deficit -= balances[key]
                balances[key] = 0.0
        for key in WITHDRAWAL_ORDER:
            if deficit <= 0:
                break
            charge = min(balances[key], deficit)
            balances[key] -= charge
            deficit -= charge

        remaining = amount
        withdrawals = {}
        for key in WITHDRAWAL_ORDER:
            take = min(balances[key], remaining)
            balances[key] -= take
            withdrawals[key] = take
            remaining -= take
        shortfall = remaining if remaining > SMALL_EPSILON else 0.0
        return withdrawals, shortfall

    def _rebalance_rolling_pv(self, balances: Dict[str, float], year: int) -> None:
        total = sum(balances.values())
        targets = rolling_targets(self.cash_flow, self.assumptions, year, total)
        remaining = total
        for key in BUCKET_KEYS[:-1]:
            allocation = min(max(0.0, targets[key]), remaining)
            balances[key] = allocation
            remaining -= allocation
        balances[BUCKET_KEYS[-1]] = max(0.0, remaining)

    def _rebalance_greedy_refill(self, balances: Dict[str, float], year: int) -> None:
        next_3_years_gap = sum(self.cash_flow.annual_gap(year + k) for k in range(3))
        amount_to_refill = max(0.0, next_3_years_gap - balances["b1"])
        for key in ("b5", "b4", "b3"):
            if amount_to_refill <= 0:
                break
            take = min(max(0.0, balances[key]), amount_to_refill)
            balances[key] -= take
            balances["b1"] += take
            amount_to_refill -= take

    def _rebalance(self, balances: Dict[str, float], year: int) -> None:
        if self.rebalance_policy == REBALANCE_GREEDY_REFILL:
            self._rebalance_greedy_refill(balances, year)
        else:
            self._rebalance_rolling_pv(balances, year)

    def run_path(self, path_seed: Optional[int] = None) -> PathResult:
        """
        Runs a single iteration. With ``path_seed`` None the expected returns
        are used; otherwise returns are drawn from a generator seeded with it.
        """
        rng = np.random.default_rng(path_seed) if path_seed is not None else None
        balances = dict(self.plan.as_dict())
        benchmark_balance = self.inputs.total_portfolio
        history: List[SimulationYearRecord] = []
        failed = False

        for i in range(1, self.years + 1):
            start_total = sum(balances.values())
            rates = self._draw_rates(rng)
            detail: AnnualDetail = self.cash_flow.annual_detail(i - 1)

            benchmark_balance *= 1 + rates["benchmark"]
            benchmark_balance += detail.one_time_contribution
            benchmark_balance = max(0.0, benchmark_balance - detail.gap)

            growth = 0.0
            withdrawals = {key: 0.0 for key in BUCKET_KEYS}
            shortfall = detail.gap
            rebalanced = False

            if not failed:
                for key in BUCKET_KEYS:
                    balances[key] *= 1 + rates[key]
                growth = sum(balances.values()) - start_total

                balances["b5"] += detail.one_time_contribution
                withdrawals, shortfall = self._withdraw(balances, detail.gap)

                if self.rebalance_freq > 0 and i % self.rebalance_freq == 0:
                    self._rebalance(balances, i)
                    rebalanced = True

            total = sum(balances.values())
            if total <= SMALL_EPSILON:
                if not failed and rng is None:
                    logger.warning(
                        f"Portfolio depleted in year {i} (age {detail.sim_age}); "
                        f"unfunded gap ${shortfall:,.0f}."
                    )
                failed = True
                balances = {key: 0.0 for key in BUCKET_KEYS}
                total = 0.0

            total_withdrawal = sum(withdrawals.values())
            history.append(
                SimulationYearRecord(
                    year=i,
                    age=detail.sim_age,
                    partner_age=detail.partner_age,
                    start_balance=start_total,
                    growth=growth,
                    ss_income=detail.social_security,
                    income=detail.income,
                    one_time_contribution=detail.one_time_contribution,
                    expenses=detail.expenses,
                    gap=detail.gap,
                    total_withdrawal=total_withdrawal,
                    shortfall=shortfall,
                    end_total=total,
                    benchmark_balance=benchmark_balance,
                    distribution_rate=(
                        total_withdrawal / start_total * 100 if start_total > 0 else 0.0
                    ),
                    bucket_balances=dict(balances),
                    bucket_withdrawals=withdrawals,
                    rebalanced=rebalanced,
                )
            )

        return PathResult(records=history, failed=failed, final_total=history[-1].end_total)

    def run_deterministic(self) -> List[SimulationYearRecord]:
        return self.run_path(None).records

    def run_monte_carlo_paths(
        self, iterations: int = MONTE_CARLO_ITERATIONS, num_processes: int = 1
    ) -> List[PathResult]:
        """
        Runs ``iterations`` independent paths, either sequentially or in parallel.
        Path ``k`` is seeded with ``main_seed + k``.
        """
        path_seeds = [self.main_seed + i for i in range(iterations)]

        if num_processes <= 1:
            logger.debug(f"Running {iterations} simulations sequentially.")
            return [self.run_path(seed) for seed in path_seeds]

        logger.debug(f"Running {iterations} simulations in parallel using {num_processes} processes.")
        try:
            with multiprocessing.Pool(processes=num_processes) as pool:
                return pool.map(self.run_path, path_seeds)
        except Exception as e:
            logger.error(
                f"Multiprocessing pool error: {e}. Falling back to sequential execution."
            )
            return [self.run_path(seed) for seed in path_seeds]

    def run_monte_carlo(
        self, iterations: int = MONTE_CARLO_ITERATIONS, num_processes: int = 1
    ) -> MonteCarloResult:
        paths = self.run_monte_carlo_paths(iterations, num_processes)
        return aggregate_paths(paths, self.main_seed)


def aggregate_paths(paths: List[PathResult], seed: int) -> MonteCarloResult:
    """
    Per-year p10 / median / p90 of the end-of-year totals (sorted ascending,
    taken at index floor(n * p)) and the success rate.
    """
    iterations = len(paths)
    if iterations == 0:
        raise ValueError("Cannot aggregate zero simulation paths")

    trajectory_df = pd.DataFrame(
        [[r.end_total for r in path.records] for path in paths]
    ).transpose()  # Rows are years, columns are simulations
    sorted_totals = np.sort(trajectory_df.to_numpy(), axis=1)
    idx = {name: int(math.floor(iterations * p)) for name, p in PERCENTILES.items()}

    data = [
        MonteCarloYear(
            year=y + 1,
            p10=float(sorted_totals[y, idx["p10"]]),
            median=float(sorted_totals[y, idx["median"]]),
            p90=float(sorted_totals[y, idx["p90"]]),
        )
        for y in range(sorted_totals.shape[0])
    ]

    failures = np.array([path.failed for path in paths], dtype=bool)
    failed_count = int(failures.sum())
    success_rate = (iterations - failed_count) / iterations * 100

    logger.debug(
        f"Monte Carlo: {iterations} paths, {failed_count} failed, success {success_rate:.1f}%"
    )
    return MonteCarloResult(
        data=data,
        success_rate=success_rate,
        iterations=iterations,
        failed_count=failed_count,
        seed=seed,
        final_balances=np.array([path.final_total for path in paths], dtype=float),
        failures=failures,
    )


def run_simulation(
    base_plan: BucketPlan,
    assumptions: ReturnAssumptions,
    inputs: PlanInputs,
    rebalance_freq: int = 0,
    is_monte_carlo: bool = False,
    seed: Optional[int] = None,
    iterations: int = MONTE_CARLO_ITERATIONS,
    num_processes: int = 1,
    rebalance_policy: str = REBALANCE_ROLLING_PV,
    years: int = SIMULATION_YEARS,
) -> Union[List[SimulationYearRecord], MonteCarloResult]:
    """
    Runs the deterministic projection (one path at expected returns) or the
    Monte Carlo harness. Without ``seed`` every Monte Carlo call draws fresh
    samples.
    """
    simulator = DistributionSimulator(
        base_plan,
        assumptions,
        inputs,
        rebalance_freq=rebalance_freq,
        rebalance_policy=rebalance_policy,
        years=years,
        seed=seed,
    )
    if is_monte_carlo:
        return simulator.run_monte_carlo(iterations, num_processes)
    return simulator.run_deterministic()


def records_to_dataframe(records: List[SimulationYearRecord]) -> pd.DataFrame:
    """Flattens a projection into a year-by-year table."""
    rows = []
    for r in records:
        row = {
            "Year": r.year,
            "Age": r.age,
            "Partner Age": r.partner_age,
            "Start Balance": r.start_balance,
            "Growth": r.growth,
            "SS Income": r.ss_income,
            "Total Income": r.income,
            "One-Time Inflow": r.one_time_contribution,
            "Expenses": r.expenses,
            "Distribution": r.total_withdrawal,
            "Shortfall": r.shortfall,
            "End Balance": r.end_total,
            "Benchmark": r.benchmark_balance,
            "Dist Rate %": r.distribution_rate,
            "Rebalanced": r.rebalanced,
        }
        for key in BUCKET_KEYS:
            row[f"{key.upper()} Balance"] = r.bucket_balances.get(key, 0.0)
            row[f"{key.upper()} Withdrawal"] = r.bucket_withdrawals.get(key, 0.0)
        rows.append(row)
    return pd.DataFrame(rows)

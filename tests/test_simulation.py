"""
Tests for the distribution simulator and the Monte Carlo harness.
"""
import numpy as np
import pandas as pd
import pytest

from buckets import BucketPlan, calculate_base_plan
from cash_flow import CashFlowCalculator
from config import IncomeEvent, PlanInputs
from constants import BUCKET_KEYS, REBALANCE_GREEDY_REFILL, REBALANCE_ROLLING_PV
from simulation import (
    DistributionSimulator,
    MonteCarloResult,
    PathResult,
    SimulationYearRecord,
    aggregate_paths,
    box_muller,
    records_to_dataframe,
    run_simulation,
)


def _manual_plan(inputs, client, b1, b2, b3, b4, b5):
    return BucketPlan(
        b1_val=b1,
        b2_val=b2,
        b3_val=b3,
        b4_val=b4,
        b5_val=b5,
        is_deficit=False,
        total_portfolio=inputs.total_portfolio,
        cash_flow=CashFlowCalculator(inputs, client),
    )


def _record(year: int, end_total: float) -> SimulationYearRecord:
    return SimulationYearRecord(
        year=year,
        age=64 + year,
        partner_age=None,
        start_balance=0.0,
        growth=0.0,
        ss_income=0.0,
        income=0.0,
        one_time_contribution=0.0,
        expenses=0.0,
        gap=0.0,
        total_withdrawal=0.0,
        shortfall=0.0,
        end_total=end_total,
        benchmark_balance=0.0,
        distribution_rate=0.0,
    )


def test_box_muller_is_reproducible():
    a = [box_muller(np.random.default_rng(7)) for _ in range(3)]
    b = [box_muller(np.random.default_rng(7)) for _ in range(3)]
    assert a == b
    draws = np.array([box_muller(np.random.default_rng(seed)) for seed in range(2_000)])
    assert abs(draws.mean()) < 0.1
    assert draws.std() == pytest.approx(1.0, abs=0.1)


class TestDeterministicProjection:
    """Single path at expected returns"""

    def test_runs_thirty_years(self, inputs, assumptions, client):
        plan = calculate_base_plan(inputs, assumptions, client)
        records = run_simulation(plan, assumptions, inputs)
        assert [r.year for r in records] == list(range(1, 31))
        assert records[0].age == 65
        assert records[0].start_balance == pytest.approx(inputs.total_portfolio)

    def test_withdrawals_follow_bucket_order(self, inputs, client, zero_returns):
        plan = _manual_plan(inputs, client, 10_000, 10_000, 20_000, 100_000, 0)
        records = DistributionSimulator(plan, zero_returns, inputs).run_deterministic()
        first = records[0]
        assert first.gap == pytest.approx(48_000)
        assert first.bucket_withdrawals == pytest.approx(
            {"b1": 10_000, "b2": 10_000, "b3": 20_000, "b4": 8_000, "b5": 0}
        )
        assert first.bucket_balances == pytest.approx({"b1": 0, "b2": 0, "b3": 0, "b4": 92_000, "b5": 0})
        assert first.total_withdrawal == pytest.approx(48_000)
        assert first.shortfall == 0

    def test_balances_never_negative(self, inputs, assumptions, client):
        plan = calculate_base_plan(inputs, assumptions, client)
        for record in run_simulation(plan, assumptions, inputs, rebalance_freq=3):
            assert all(v >= 0 for v in record.bucket_balances.values())
            assert record.end_total == pytest.approx(sum(record.bucket_balances.values()))

    def test_depletion_is_terminal(self, client, zero_returns):
        windfall = IncomeEvent(name="Late windfall", amount=100_000, start_age=70, is_one_time=True)
        inputs = PlanInputs(total_portfolio=50_000, monthly_spending=4_000, additional_incomes=[windfall])
        plan = _manual_plan(inputs, client, 50_000, 0, 0, 0, 0)
        result = DistributionSimulator(plan, zero_returns, inputs).run_path(None)

        assert result.failed
        assert result.final_total == 0
        year1, year2 = result.records[0], result.records[1]
        assert year1.end_total == pytest.approx(2_000)
        assert year2.total_withdrawal == pytest.approx(2_000)
        assert year2.shortfall == pytest.approx(year2.gap - 2_000)
        assert year2.end_total == 0
        for record in result.records[2:]:
            assert record.end_total == 0
            assert record.growth == 0
            assert record.total_withdrawal == 0
            assert record.shortfall == pytest.approx(record.gap)

    def test_deficit_plan_is_charged_against_other_buckets(self, client, zero_returns):
        inputs = PlanInputs(total_portfolio=200_000, monthly_spending=10_000)
        plan = calculate_base_plan(inputs, zero_returns, client)
        assert plan.is_deficit
        result = DistributionSimulator(plan, zero_returns, inputs).run_path(None)

        year1, year2 = result.records[0], result.records[1]
        assert year1.start_balance == pytest.approx(200_000)
        assert year1.total_withdrawal == pytest.approx(120_000)
        assert year1.end_total == pytest.approx(80_000)
        assert all(v >= 0 for v in year1.bucket_balances.values())
        assert year2.total_withdrawal == pytest.approx(80_000)
        assert year2.shortfall == pytest.approx(year2.gap - 80_000)
        assert result.failed

    def test_balance_moves_only_by_growth_inflows_and_withdrawals(self, client, assumptions):
        inputs = PlanInputs(total_portfolio=400_000, monthly_spending=4_000)
        plan = calculate_base_plan(inputs, assumptions, client)
        assert plan.is_deficit
        for record in DistributionSimulator(plan, assumptions, inputs).run_path(5).records:
            if record.end_total == 0:
                break
            expected = (
                record.start_balance + record.growth + record.one_time_contribution
                - record.total_withdrawal
            )
            assert record.end_total == pytest.approx(expected)

    def test_same_inputs_same_projection(self, inputs, assumptions, client):
        plan = calculate_base_plan(inputs, assumptions, client)
        first = run_simulation(plan, assumptions, inputs, rebalance_freq=3)
        second = run_simulation(plan, assumptions, inputs, rebalance_freq=3)
        assert first == second

    def test_one_time_contribution_lands_in_b5(self, inputs, client, zero_returns):
        event = IncomeEvent(name="Inheritance", amount=75_000, start_age=65, is_one_time=True)
        inputs = inputs.model_copy(update={"additional_incomes": [event]})
        plan = _manual_plan(inputs, client, 100_000, 0, 0, 0, 900_000)
        first = DistributionSimulator(plan, zero_returns, inputs).run_deterministic()[0]
        assert first.one_time_contribution == 75_000
        assert first.bucket_balances["b5"] == pytest.approx(975_000)
        assert first.bucket_balances["b1"] == pytest.approx(52_000)

    def test_benchmark_tracks_single_portfolio(self, inputs, client, zero_returns):
        plan = _manual_plan(inputs, client, 0, 0, 0, 0, 1_000_000)
        records = DistributionSimulator(plan, zero_returns, inputs).run_deterministic()
        cf = plan.cash_flow
        expected = inputs.total_portfolio - sum(cf.annual_gap(i) for i in range(5))
        assert records[4].benchmark_balance == pytest.approx(expected)

    def test_distribution_rate(self, inputs, client, zero_returns):
        plan = _manual_plan(inputs, client, 0, 0, 0, 0, 1_000_000)
        first = DistributionSimulator(plan, zero_returns, inputs).run_deterministic()[0]
        assert first.distribution_rate == pytest.approx(4.8)


class TestRebalancing:
    """Periodic re-slicing of the buckets"""

    @pytest.mark.parametrize("policy", [REBALANCE_ROLLING_PV, REBALANCE_GREEDY_REFILL])
    def test_equal_returns_make_rebalancing_neutral(self, inputs, assumptions, client, flat_assumptions, policy):
        flat = flat_assumptions(5.0)
        plan = calculate_base_plan(inputs, assumptions, client)
        never = run_simulation(plan, flat, inputs, rebalance_freq=0)
        every_three = run_simulation(plan, flat, inputs, rebalance_freq=3, rebalance_policy=policy)
        for a, b in zip(never, every_three):
            assert a.end_total == pytest.approx(b.end_total)

    def test_rebalance_years(self, inputs, assumptions, client):
        plan = calculate_base_plan(inputs, assumptions, client)
        records = run_simulation(plan, assumptions, inputs, rebalance_freq=4)
        assert [r.year for r in records if r.rebalanced] == [4, 8, 12, 16, 20, 24, 28]

    def test_no_rebalancing_when_disabled(self, inputs, assumptions, client):
        plan = calculate_base_plan(inputs, assumptions, client)
        assert not any(r.rebalanced for r in run_simulation(plan, assumptions, inputs))

    def test_rolling_pv_resizes_income_buckets(self, inputs, assumptions, client):
        plan = calculate_base_plan(inputs, assumptions, client)
        records = run_simulation(plan, assumptions, inputs, rebalance_freq=3)
        after = records[2]
        cf = plan.cash_flow
        assert after.rebalanced
        assert after.bucket_balances["b1"] == pytest.approx(cf.present_value_of_gaps(4, 6, 2.0, reference_year=3))
        assert after.bucket_balances["b2"] == pytest.approx(cf.present_value_of_gaps(7, 9, 4.0, reference_year=3))
        assert after.bucket_balances["b4"] == pytest.approx(after.end_total * 0.10)
        assert after.end_total == pytest.approx(sum(after.bucket_balances.values()))

    def test_greedy_refill_tops_up_b1(self, inputs, assumptions, client):
        plan = calculate_base_plan(inputs, assumptions, client)
        before = run_simulation(plan, assumptions, inputs, rebalance_freq=0)[2]
        after = run_simulation(
            plan, assumptions, inputs, rebalance_freq=3, rebalance_policy=REBALANCE_GREEDY_REFILL
        )[2]
        cf = plan.cash_flow
        target = sum(cf.annual_gap(i) for i in (3, 4, 5))
        assert before.bucket_balances["b1"] < target
        assert after.bucket_balances["b1"] == pytest.approx(target)
        assert after.bucket_balances["b2"] == pytest.approx(before.bucket_balances["b2"])
        assert after.bucket_balances["b5"] < before.bucket_balances["b5"]

    def test_invalid_settings_rejected(self, inputs, assumptions, client):
        plan = calculate_base_plan(inputs, assumptions, client)
        with pytest.raises(ValueError):
            DistributionSimulator(plan, assumptions, inputs, rebalance_freq=-1)
        with pytest.raises(ValueError):
            DistributionSimulator(plan, assumptions, inputs, rebalance_policy="calendar")


class TestMonteCarlo:
    """Many randomised paths aggregated into percentile bands"""

    def test_same_seed_same_result(self, inputs, assumptions, client):
        plan = calculate_base_plan(inputs, assumptions, client)
        a = run_simulation(plan, assumptions, inputs, is_monte_carlo=True, seed=42, iterations=50)
        b = run_simulation(plan, assumptions, inputs, is_monte_carlo=True, seed=42, iterations=50)
        assert a.data == b.data
        assert a.success_rate == b.success_rate
        np.testing.assert_array_equal(a.final_balances, b.final_balances)

    def test_result_shape(self, inputs, assumptions, client):
        plan = calculate_base_plan(inputs, assumptions, client)
        mc = run_simulation(plan, assumptions, inputs, rebalance_freq=3, is_monte_carlo=True, seed=1, iterations=40)
        assert isinstance(mc, MonteCarloResult)
        assert mc.iterations == 40
        assert mc.seed == 1
        assert len(mc.data) == 30
        assert 0 <= mc.success_rate <= 100
        assert mc.success_rate == pytest.approx((40 - mc.failed_count) / 40 * 100)
        for year in mc.data:
            assert year.p10 <= year.median <= year.p90

    def test_paths_use_consecutive_seeds(self, inputs, assumptions, client):
        plan = calculate_base_plan(inputs, assumptions, client)
        simulator = DistributionSimulator(plan, assumptions, inputs, seed=100)
        paths = simulator.run_monte_carlo_paths(iterations=3)
        assert paths[2].final_total == pytest.approx(simulator.run_path(102).final_total)

    def test_process_count_does_not_change_results(self, inputs, assumptions, client):
        plan = calculate_base_plan(inputs, assumptions, client)
        sequential = run_simulation(plan, assumptions, inputs, is_monte_carlo=True, seed=77, iterations=12)
        parallel = run_simulation(
            plan, assumptions, inputs, is_monte_carlo=True, seed=77, iterations=12, num_processes=2
        )
        assert parallel.data == sequential.data
        assert parallel.success_rate == sequential.success_rate

    def test_zero_volatility_matches_deterministic(self, inputs, assumptions, client, flat_assumptions):
        flat = flat_assumptions(4.0)
        plan = calculate_base_plan(inputs, assumptions, client)
        deterministic = run_simulation(plan, flat, inputs, rebalance_freq=3)
        mc = run_simulation(plan, flat, inputs, rebalance_freq=3, is_monte_carlo=True, seed=9, iterations=10)
        for record, band in zip(deterministic, mc.data):
            assert band.median == pytest.approx(record.end_total)
            assert band.p10 == pytest.approx(band.p90)

    def test_success_rate_falls_as_spending_rises(self, client, assumptions):
        # Same seed and a single growth bucket: every path sees the same returns.
        rates = []
        for spending in (3_000, 5_000, 7_000, 9_000):
            inputs = PlanInputs(total_portfolio=1_000_000, monthly_spending=spending)
            plan = _manual_plan(inputs, client, 0, 0, 0, 0, 1_000_000)
            mc = DistributionSimulator(plan, assumptions, inputs, seed=2024).run_monte_carlo(iterations=60)
            rates.append(mc.success_rate)
        assert rates == sorted(rates, reverse=True)
        assert rates[0] > rates[-1]

    def test_ample_and_hopeless_portfolios(self, client, flat_assumptions):
        flat = flat_assumptions(3.0, std_dev=1.0)
        rich = PlanInputs(total_portfolio=5_000_000, monthly_spending=3_000)
        poor = PlanInputs(total_portfolio=100_000, monthly_spending=5_000)
        for inputs, expected in ((rich, 100.0), (poor, 0.0)):
            plan = calculate_base_plan(inputs, flat, client)
            mc = run_simulation(plan, flat, inputs, is_monte_carlo=True, seed=3, iterations=20)
            assert mc.success_rate == expected


def test_aggregate_paths_percentile_indices():
    paths = [
        PathResult(records=[_record(1, float(total))], failed=total == 0, final_total=float(total))
        for total in [7, 3, 0, 9, 1, 5, 8, 2, 6, 4]
    ]
    mc = aggregate_paths(paths, seed=0)
    assert mc.data[0].p10 == 1
    assert mc.data[0].median == 5
    assert mc.data[0].p90 == 9
    assert mc.failed_count == 1
    assert mc.success_rate == 90.0


def test_aggregate_paths_rejects_empty():
    with pytest.raises(ValueError):
        aggregate_paths([], seed=0)


def test_records_to_dataframe(inputs, assumptions, client):
    plan = calculate_base_plan(inputs, assumptions, client)
    df = records_to_dataframe(run_simulation(plan, assumptions, inputs, rebalance_freq=3))
    assert isinstance(df, pd.DataFrame)
    assert len(df) == 30
    for key in BUCKET_KEYS:
        assert f"{key.upper()} Balance" in df.columns
    assert df["Rebalanced"].sum() == 10
    assert df["End Balance"].iloc[0] == pytest.approx(
        sum(df[f"{k.upper()} Balance"].iloc[0] for k in BUCKET_KEYS)
    )

"""
Bucket sizing for the five-segment distribution portfolio.

Buckets 1-3 are sized as the present value of the gaps only they must fund,
discounted at their own expected return. Bucket 4 is a fixed 10% sleeve and
bucket 5 holds whatever is left.
"""
import math
from dataclasses import dataclass
from typing import Dict

from loguru import logger

from cash_flow import CashFlowCalculator
from config import ClientProfile, PlanInputs, ReturnAssumptions
from constants import (
    ALLOCATION_ROUNDING,
    B4_PORTFOLIO_SHARE,
    BUCKET_KEYS,
    BUCKET_WINDOWS,
)


@dataclass(frozen=True)
class BucketPlan:
    """Initial bucket allocation plus the cash-flow model it was sized from."""
    b1_val: float
    b2_val: float
    b3_val: float
    b4_val: float
    b5_val: float
    is_deficit: bool
    total_portfolio: float
    cash_flow: CashFlowCalculator

    def as_dict(self) -> Dict[str, float]:
        return {key: getattr(self, f"{key}_val") for key in BUCKET_KEYS}

    def annual_gap(self, year_index: int) -> float:
        return self.cash_flow.annual_gap(year_index)

    def annual_detail(self, year_index: int):
        return self.cash_flow.annual_detail(year_index)


def round_to_unit(value: float, unit: int = ALLOCATION_ROUNDING) -> float:
    """Nearest multiple of ``unit``, with halves rounded up."""
    return float(math.floor(value / unit + 0.5) * unit)


def bucket_need(
    cash_flow: CashFlowCalculator, start_year: int, end_year: int, rate: float
) -> float:
    """Present value today of the gaps in simulation years ``start_year..end_year``."""
    return cash_flow.present_value_of_gaps(start_year, end_year, rate)


def calculate_base_plan(
    inputs: PlanInputs,
    assumptions: ReturnAssumptions,
    client: ClientProfile,
) -> BucketPlan:
    """Sizes the five buckets for ``inputs.total_portfolio``."""
    cash_flow = CashFlowCalculator(inputs, client)
    total = inputs.total_portfolio

    sized = {}
    for key, (first_year, last_year) in BUCKET_WINDOWS.items():
        need = bucket_need(
            cash_flow, first_year, last_year, assumptions.bucket(key).expected_return
        )
        sized[key] = round_to_unit(need)
    sized["b4"] = round_to_unit(total * B4_PORTFOLIO_SHARE)
    b5_val = total - (sized["b1"] + sized["b2"] + sized["b3"] + sized["b4"])

    is_deficit = b5_val < 0
    if is_deficit:
        logger.warning(
            f"Income-gap buckets need ${total - b5_val:,.0f} but the portfolio is "
            f"${total:,.0f}; bucket 5 is short by ${-b5_val:,.0f}."
        )
    logger.debug(
        "Base plan: "
        + ", ".join(f"{k}=${v:,.0f}" for k, v in sized.items())
        + f", b5=${b5_val:,.0f}"
    )

    return BucketPlan(
        b1_val=sized["b1"],
        b2_val=sized["b2"],
        b3_val=sized["b3"],
        b4_val=sized["b4"],
        b5_val=b5_val,
        is_deficit=is_deficit,
        total_portfolio=total,
        cash_flow=cash_flow,
    )


def rolling_targets(
    cash_flow: CashFlowCalculator,
    assumptions: ReturnAssumptions,
    year: int,
    total: float,
) -> Dict[str, float]:
    """
    Rebalance targets as seen from the end of simulation year ``year``.

    The present-value windows roll forward so that bucket 1 again covers the
    next three years, bucket 2 the three after that, and so on. Targets for
    buckets 1-4 are not clipped here; bucket 5 is the (possibly negative)
    remainder of ``total``.
    """
    targets = {}
    for key, (first_year, last_year) in BUCKET_WINDOWS.items():
        targets[key] = cash_flow.present_value_of_gaps(
            year + first_year,
            year + last_year,
            assumptions.bucket(key).expected_return,
            reference_year=year,
        )
    targets["b4"] = total * B4_PORTFOLIO_SHARE
    targets["b5"] = total - sum(targets.values())
    return targets

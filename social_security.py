"""
Social Security claiming-age analysis.

Each candidate claiming age is scored by projecting the whole portfolio at a
single blended return and paying each year's gap out of it. This is a coarser
model than the bucket simulator; it is only used to rank claiming ages.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional

from loguru import logger

from cash_flow import CashFlowCalculator, get_adjusted_ss
from config import ClientProfile, PlanInputs, ReturnAssumptions
from constants import (
    BREAKEVEN_END_AGE,
    BREAKEVEN_START_AGE,
    DEFAULT_SS_REINVEST_RATE,
    EARLIEST_CLAIM_AGE,
    FULL_RETIREMENT_AGE,
    MONTHS_PER_YEAR,
    SS_CANDIDATE_AGES,
    WEIGHTED_RETURN_WEIGHTS,
)

__all__ = [
    "SSOutcome",
    "SSAnalysisResult",
    "BreakevenPoint",
    "get_adjusted_ss",
    "calculate_weighted_return",
    "candidate_claim_ages",
    "calculate_ss_analysis",
    "calculate_ss_partner_analysis",
    "calculate_breakeven_data",
    "find_breakeven_age",
]


@dataclass(frozen=True)
class SSOutcome:
    age: int
    projected_balance: float


@dataclass(frozen=True)
class BreakevenPoint:
    age: int
    claim62: int
    claim67: int
    claim70: int


@dataclass
class SSAnalysisResult:
    winner: SSOutcome
    outcomes: List[SSOutcome]
    breakeven_data: List[BreakevenPoint]


def calculate_weighted_return(assumptions: ReturnAssumptions) -> float:
    """Blended portfolio return (decimal) at fixed 10/20/30/10/30 bucket weights."""
    return sum(
        assumptions.bucket(key).expected_return * weight
        for key, weight in WEIGHTED_RETURN_WEIGHTS.items()
    ) / 100


def candidate_claim_ages(retirement_age: int) -> List[int]:
    ages = set(SS_CANDIDATE_AGES)
    if EARLIEST_CLAIM_AGE < retirement_age < FULL_RETIREMENT_AGE:
        ages.add(retirement_age)
    return sorted(ages)


def _project_balance(
    cash_flow: CashFlowCalculator,
    start_balance: float,
    weighted_return: float,
    target_age: int,
) -> float:
    """Unfloored portfolio balance at ``target_age``."""
    balance = start_balance
    for year_index in range(max(0, target_age - cash_flow.simulation_start_age + 1)):
        balance *= 1 + weighted_return
        detail = cash_flow.annual_detail(year_index)
        balance += detail.one_time_contribution
        balance -= detail.gap
    return balance


def _score_candidates(
    inputs: PlanInputs,
    client: ClientProfile,
    assumptions: ReturnAssumptions,
    target_max_portfolio_age: int,
    ages: List[int],
    age_field: str,
    partner_requires_retirement: bool,
    fixed: Optional[Dict] = None,
):
    weighted_return = calculate_weighted_return(assumptions)
    outcomes = []
    winner = None
    best_balance = None
    for age in ages:
        update = dict(fixed or {})
        update[age_field] = age
        cash_flow = CashFlowCalculator(
            inputs.model_copy(update=update),
            client,
            partner_requires_retirement=partner_requires_retirement,
            claim_ages_binding=True,
        )
        balance = _project_balance(
            cash_flow, inputs.total_portfolio, weighted_return, target_max_portfolio_age
        )
        outcome = SSOutcome(age=age, projected_balance=max(0.0, balance))
        outcomes.append(outcome)
        # Depleted outcomes are still ranked by how deep the shortfall goes.
        if best_balance is None or balance > best_balance:
            best_balance = balance
            winner = outcome
    return winner, outcomes


def calculate_ss_analysis(
    inputs: PlanInputs,
    client: ClientProfile,
    assumptions: ReturnAssumptions,
    target_max_portfolio_age: int,
) -> SSAnalysisResult:
    """
    Ranks the client's claiming ages by projected portfolio balance at
    ``target_max_portfolio_age``, holding the partner's claim age fixed.
    Benefits begin at the candidate age even when the client is already past
    full retirement age.
    """
    ages = candidate_claim_ages(client.effective_retirement_age)
    winner, outcomes = _score_candidates(
        inputs,
        client,
        assumptions,
        target_max_portfolio_age,
        ages,
        age_field="ss_start_age",
        partner_requires_retirement=False,
    )
    logger.debug(
        f"Client SS analysis to age {target_max_portfolio_age}: best claim age {winner.age} "
        f"of {[o.age for o in outcomes]}"
    )
    return SSAnalysisResult(
        winner=winner,
        outcomes=outcomes,
        breakeven_data=calculate_breakeven_data(inputs.ss_pia, inputs.ss_reinvest_rate),
    )


def calculate_ss_partner_analysis(
    inputs: PlanInputs,
    client: ClientProfile,
    assumptions: ReturnAssumptions,
    target_max_portfolio_age: int,
    client_winner: Optional[SSOutcome] = None,
) -> Optional[SSAnalysisResult]:
    """
    Same ranking for the partner's claiming age, with the client claiming at
    ``client_winner.age``. The partner is assumed to work (and not collect)
    until their own retirement age. Returns None for single clients.
    """
    if not client.is_married:
        return None
    if client_winner is None:
        client_winner = calculate_ss_analysis(
            inputs, client, assumptions, target_max_portfolio_age
        ).winner

    ages = candidate_claim_ages(client.effective_partner_retirement_age)
    winner, outcomes = _score_candidates(
        inputs,
        client,
        assumptions,
        target_max_portfolio_age,
        ages,
        age_field="partner_ss_start_age",
        partner_requires_retirement=True,
        fixed={"ss_start_age": client_winner.age},
    )
    logger.debug(
        f"Partner SS analysis (client claims at {client_winner.age}): best claim age {winner.age}"
    )
    return SSAnalysisResult(winner=winner, outcomes=outcomes, breakeven_data=[])


def calculate_breakeven_data(
    pia: float, reinvest_rate: float = DEFAULT_SS_REINVEST_RATE
) -> List[BreakevenPoint]:
    """
    Benefits received (and reinvested at ``reinvest_rate`` %) by each age from
    60 to 95, for claims at 62, 67 and 70.
    """
    benefits = {claim_age: get_adjusted_ss(pia, claim_age) * MONTHS_PER_YEAR for claim_age in SS_CANDIDATE_AGES}
    accumulated = {claim_age: 0.0 for claim_age in SS_CANDIDATE_AGES}
    growth = 1 + reinvest_rate / 100

    data = []
    for age in range(BREAKEVEN_START_AGE, BREAKEVEN_END_AGE + 1):
        for claim_age in SS_CANDIDATE_AGES:
            accumulated[claim_age] *= growth
            if age >= claim_age:
                accumulated[claim_age] += benefits[claim_age]
        data.append(
            BreakevenPoint(
                age=age,
                claim62=round(accumulated[62]),
                claim67=round(accumulated[67]),
                claim70=round(accumulated[70]),
            )
        )
    return data


def find_breakeven_age(
    data: List[BreakevenPoint], early: str = "claim62", late: str = "claim70"
) -> Optional[int]:
    """First age at which the later claim has caught up with the earlier one."""
    for point in data:
        late_value = getattr(point, late)
        if late_value > 0 and late_value >= getattr(point, early):
            return point.age
    return None

"""
Year-by-year cash flows for the distribution phase.

The calculator is built once from the plan inputs and client profile and is
then shared by the bucket allocator, the simulator and the optimizers.
"""
from dataclasses import dataclass
from typing import Optional

from config import ClientProfile, PlanInputs
from constants import (
    DELAYED_CREDIT_RATE,
    EARLY_REDUCTION_RATE_AFTER_3_YEARS,
    EARLY_REDUCTION_RATE_FIRST_3_YEARS,
    FULL_RETIREMENT_AGE,
    LATEST_CLAIM_AGE,
    MONTHS_PER_YEAR,
)


def get_adjusted_ss(pia: float, start_age: int) -> float:
    """
    Monthly Social Security benefit when claiming at ``start_age``.

    Claims before full retirement age are reduced 6.67% a year for the first
    three years and 5% a year beyond that. Claims after it earn 8% a year of
    delayed credits, which stop accruing at 70.
    """
    if start_age < FULL_RETIREMENT_AGE:
        years_early = FULL_RETIREMENT_AGE - start_age
        if years_early <= 3:
            reduction = years_early * EARLY_REDUCTION_RATE_FIRST_3_YEARS
        else:
            reduction = (3 * EARLY_REDUCTION_RATE_FIRST_3_YEARS) + (
                (years_early - 3) * EARLY_REDUCTION_RATE_AFTER_3_YEARS
            )
        return pia * (1 - reduction)
    elif start_age > FULL_RETIREMENT_AGE:
        years_late = min(start_age, LATEST_CLAIM_AGE) - FULL_RETIREMENT_AGE
        return pia * (1 + years_late * DELAYED_CREDIT_RATE)
    return pia


@dataclass(frozen=True)
class AnnualDetail:
    """Cash flows for one simulation year."""
    year_index: int
    sim_age: int
    partner_age: Optional[int]
    expenses: float
    income: float
    social_security: float
    pension: float
    other_income: float
    one_time_contribution: float
    gap: float


class CashFlowCalculator:
    """Expenses, income and funding gap for any simulation year."""

    def __init__(
        self,
        inputs: PlanInputs,
        client: ClientProfile,
        partner_requires_retirement: bool = False,
        claim_ages_binding: bool = False,
    ):
        self.inputs = inputs
        self.client = client
        # Partner claims are only counted once the partner has stopped working.
        self.partner_requires_retirement = partner_requires_retirement
        # When set, benefits start at the configured claim ages even for
        # someone already past full retirement age.
        self.claim_ages_binding = claim_ages_binding

        self.simulation_start_age = client.simulation_start_age
        self.client_monthly_ss = get_adjusted_ss(inputs.ss_pia, inputs.ss_start_age)
        self.partner_monthly_ss = get_adjusted_ss(
            inputs.partner_ss_pia, inputs.partner_ss_start_age
        )

    def expense_inflation_factor(self, year_index: int) -> float:
        return (1 + self.inputs.personal_inflation_rate / 100) ** year_index

    def income_inflation_factor(self, year_index: int) -> float:
        return (1 + self.inputs.inflation_rate / 100) ** year_index

    def sim_age(self, year_index: int) -> int:
        return self.simulation_start_age + year_index

    def partner_age(self, year_index: int) -> int:
        return self.client.partner_current_age + (
            self.sim_age(year_index) - self.client.current_age
        )

    def _client_ss_eligible(self, sim_age: int) -> bool:
        already_collecting = (
            not self.claim_ages_binding and self.client.current_age >= FULL_RETIREMENT_AGE
        )
        return already_collecting or sim_age >= self.inputs.ss_start_age

    def _partner_ss_eligible(self, partner_age: int) -> bool:
        if not self.client.is_married:
            return False
        if (
            self.partner_requires_retirement
            and partner_age < self.client.effective_partner_retirement_age
        ):
            return False
        already_collecting = (
            not self.claim_ages_binding
            and self.client.partner_current_age >= FULL_RETIREMENT_AGE
        )
        return already_collecting or partner_age >= self.inputs.partner_ss_start_age

    def annual_detail(self, year_index: int) -> AnnualDetail:
        p = self.inputs
        sim_age = self.sim_age(year_index)
        partner_age = self.partner_age(year_index) if self.client.is_married else None
        income_factor = self.income_inflation_factor(year_index)

        expenses = p.monthly_spending * MONTHS_PER_YEAR * self.expense_inflation_factor(year_index)

        social_security = 0.0
        if self._client_ss_eligible(sim_age):
            social_security += self.client_monthly_ss * MONTHS_PER_YEAR * income_factor
        if partner_age is not None and self._partner_ss_eligible(partner_age):
            social_security += self.partner_monthly_ss * MONTHS_PER_YEAR * income_factor

        pension = 0.0
        if p.monthly_pension > 0 and sim_age >= p.pension_start_age:
            pension += p.monthly_pension * MONTHS_PER_YEAR * (
                income_factor if p.pension_cola else 1.0
            )
        if (
            partner_age is not None
            and p.partner_monthly_pension > 0
            and partner_age >= p.partner_pension_start_age
        ):
            pension += p.partner_monthly_pension * MONTHS_PER_YEAR * (
                income_factor if p.partner_pension_cola else 1.0
            )

        other_income = 0.0
        one_time_contribution = 0.0
        for event in p.additional_incomes:
            if event.fires_once_at(sim_age):
                amount = event.amount
                if event.inflation_adjusted:
                    amount *= income_factor
                one_time_contribution += amount
            elif event.is_recurring_active(sim_age):
                amount = event.amount * MONTHS_PER_YEAR
                if event.inflation_adjusted:
                    amount *= income_factor
                other_income += amount

        income = social_security + pension + other_income
        return AnnualDetail(
            year_index=year_index,
            sim_age=sim_age,
            partner_age=partner_age,
            expenses=expenses,
            income=income,
            social_security=social_security,
            pension=pension,
            other_income=other_income,
            one_time_contribution=one_time_contribution,
            gap=max(0.0, expenses - income),
        )

    def annual_gap(self, year_index: int) -> float:
        return self.annual_detail(year_index).gap

    def present_value_of_gaps(
        self, start_year: int, end_year: int, rate: float, reference_year: int = 0
    ) -> float:
        """
        Present value, at ``reference_year``, of the gaps of simulation years
        ``start_year..end_year`` (inclusive, 1-based) discounted at ``rate`` %.
        """
        total_pv = 0.0
        for year in range(start_year, end_year + 1):
            future_gap = self.annual_gap(year - 1)
            pv_factor = (1 + rate / 100) ** (year - 1 - reference_year)
            total_pv += future_gap / pv_factor
        return total_pv

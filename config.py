import os
import json
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field, field_validator, ValidationInfo
from pydantic.alias_generators import to_camel
from loguru import logger

from constants import (
    BUCKET_KEYS,
    DEFAULT_INCOME_END_AGE,
    DEFAULT_SS_REINVEST_RATE,
    FULL_RETIREMENT_AGE,
    MONTE_CARLO_ITERATIONS,
    REBALANCE_GREEDY_REFILL,
    REBALANCE_ROLLING_PV,
    SIMULATION_YEARS,
)


class ConfigurationError(Exception):
    """Raised when the configuration file cannot be loaded or parsed."""


# Inputs arrive from the web form layer with camelCase keys; snake_case is accepted too.
_MODEL_CONFIG = {
    "alias_generator": to_camel,
    "validate_by_name": True,
    "validate_by_alias": True,
    "frozen": True,
}


class ClientProfile(BaseModel):
    """Client (and partner) ages and savings profile. Read-only input."""

    current_age: int = Field(..., ge=0, le=120)
    retirement_age: int = Field(..., ge=0, le=120)
    is_married: bool = Field(False)
    is_retired: bool = Field(
        False, description="Already retired; retirement age is taken as the current age."
    )
    partner_age: Optional[int] = Field(
        None, ge=0, le=120, description="Partner's current age. Defaults to the client's age."
    )
    partner_retirement_age: Optional[int] = Field(None, ge=0, le=120)
    partner_is_retired: bool = Field(False)
    current_portfolio: float = Field(0.0, ge=0)
    annual_savings: float = Field(0.0, ge=0)
    expected_return: float = Field(7.0)
    current_spending: float = Field(0.0, ge=0)

    model_config = _MODEL_CONFIG

    @property
    def effective_retirement_age(self) -> int:
        return self.current_age if self.is_retired else self.retirement_age

    @property
    def partner_current_age(self) -> int:
        return self.partner_age if self.partner_age is not None else self.current_age

    @property
    def effective_partner_retirement_age(self) -> int:
        if self.partner_is_retired:
            return self.partner_current_age
        if self.partner_retirement_age is not None:
            return self.partner_retirement_age
        return self.effective_retirement_age

    @property
    def simulation_start_age(self) -> int:
        # Clients already past their retirement age start the simulation today.
        return max(self.current_age, self.effective_retirement_age)


class IncomeEvent(BaseModel):
    """An additional income stream (recurring) or a lump sum (one-time)."""

    id: Optional[Any] = Field(None)
    name: str = Field("", description="e.g. 'Rental Income', 'Inheritance'.")
    amount: float = Field(
        0.0, description="Monthly amount for recurring income, lump amount for one-time events."
    )
    start_age: Optional[int] = Field(None)
    end_age: Optional[int] = Field(None)
    is_one_time: bool = Field(False)
    inflation_adjusted: bool = Field(False)
    owner: str = Field("client")

    model_config = _MODEL_CONFIG

    @field_validator("start_age", "end_age", mode="before")
    @classmethod
    def coerce_age(cls, v: Any, info: ValidationInfo) -> Optional[int]:
        if v is None or v == "":
            return None
        try:
            return int(float(v))
        except (TypeError, ValueError):
            logger.warning(
                f"Income event '{info.data.get('name', 'N/A')}' has an unreadable "
                f"{info.field_name} ({v!r}); treating it as missing."
            )
            return None

    @property
    def is_valid(self) -> bool:
        return self.start_age is not None

    @property
    def last_age(self) -> int:
        return self.end_age if self.end_age is not None else DEFAULT_INCOME_END_AGE

    def is_recurring_active(self, age: int) -> bool:
        if not self.is_valid or self.is_one_time:
            return False
        return self.start_age <= age <= self.last_age

    def fires_once_at(self, age: int) -> bool:
        return self.is_valid and self.is_one_time and age == self.start_age


class PlanInputs(BaseModel):
    """Distribution-phase inputs entered by the advisor."""

    total_portfolio: float = Field(..., ge=0)
    monthly_spending: float = Field(..., ge=0)
    ss_pia: float = Field(0.0, ge=0, alias="ssPIA")
    partner_ss_pia: float = Field(0.0, ge=0, alias="partnerSSPIA")
    ss_start_age: int = Field(FULL_RETIREMENT_AGE, ge=0, le=120)
    partner_ss_start_age: int = Field(
        FULL_RETIREMENT_AGE, ge=0, le=120, alias="partnerSSStartAge"
    )
    monthly_pension: float = Field(0.0, ge=0)
    pension_start_age: int = Field(65, ge=0, le=120)
    pension_cola: bool = Field(False, alias="pensionCOLA")
    partner_monthly_pension: float = Field(0.0, ge=0)
    partner_pension_start_age: int = Field(65, ge=0, le=120)
    partner_pension_cola: bool = Field(False, alias="partnerPensionCOLA")
    inflation_rate: float = Field(2.5, description="Inflation applied to income, in %.")
    personal_inflation_rate: float = Field(1.5, description="Inflation applied to expenses, in %.")
    ss_reinvest_rate: float = Field(DEFAULT_SS_REINVEST_RATE)
    additional_incomes: List[IncomeEvent] = Field([])

    model_config = _MODEL_CONFIG

    @field_validator("inflation_rate", "personal_inflation_rate")
    @classmethod
    def check_inflation(cls, v: float, info: ValidationInfo) -> float:
        if v > 10.0:
            logger.warning(f"{info.field_name.replace('_', ' ').title()} ({v:.1f}%) is unusually high.")
        return v

    @field_validator("additional_incomes")
    @classmethod
    def check_income_events(cls, v: List[IncomeEvent]) -> List[IncomeEvent]:
        for event in v:
            if not event.is_valid:
                logger.warning(f"Income event '{event.name or event.id}' has no start age and will be ignored.")
        return v


class ReturnAssumption(BaseModel):
    """Capital market assumption for a single bucket, in percent."""

    expected_return: float = Field(..., alias="return")
    std_dev: float = Field(..., ge=0)
    historical: Optional[float] = Field(None)
    name: str = Field("")

    model_config = _MODEL_CONFIG

    @field_validator("std_dev")
    @classmethod
    def check_volatility(cls, v: float, info: ValidationInfo) -> float:
        if v > 40.0:
            logger.warning(f"Volatility of {v:.1f}% for bucket '{info.data.get('name', 'N/A')}' is very high.")
        return v


class ReturnAssumptions(BaseModel):
    """Return assumptions for the five fixed buckets."""

    b1: ReturnAssumption = Field(
        ReturnAssumption(expected_return=2.0, std_dev=2.0, historical=2.8, name="Short Term")
    )
    b2: ReturnAssumption = Field(
        ReturnAssumption(expected_return=4.0, std_dev=5.0, historical=5.2, name="Mid Term")
    )
    b3: ReturnAssumption = Field(
        ReturnAssumption(expected_return=5.5, std_dev=8.0, historical=7.5, name="Balanced 60/40")
    )
    b4: ReturnAssumption = Field(
        ReturnAssumption(expected_return=6.0, std_dev=12.0, historical=9.1, name="Inc & Growth")
    )
    b5: ReturnAssumption = Field(
        ReturnAssumption(expected_return=8.0, std_dev=18.0, historical=10.2, name="Long Term")
    )

    model_config = _MODEL_CONFIG

    def bucket(self, key: str) -> ReturnAssumption:
        return getattr(self, key)

    def as_dict(self) -> Dict[str, ReturnAssumption]:
        return {key: self.bucket(key) for key in BUCKET_KEYS}


class ScenarioConfig(BaseModel):
    """A complete scenario as saved by the planning tool."""

    nickname: str = Field(
        "DefaultScenario",
        alias="scenario",
        description="A nickname for this scenario.",
    )
    client: ClientProfile = Field(..., alias="clientInfo")
    inputs: PlanInputs
    assumptions: ReturnAssumptions = Field(ReturnAssumptions())
    rebalance_freq: int = Field(3, ge=0)
    rebalance_policy: Literal["rolling_pv", "greedy_refill"] = Field(REBALANCE_ROLLING_PV)
    optimizer_rebalance_freq: Optional[int] = Field(
        None, ge=0, description="None means the optimizer rebalances like the main plan."
    )
    target_max_portfolio_age: int = Field(80, ge=0, le=120)
    seed: Optional[int] = Field(None)
    num_processes: Optional[int] = Field(1, ge=1)
    monte_carlo_iterations: int = Field(MONTE_CARLO_ITERATIONS, gt=0)

    model_config = _MODEL_CONFIG

    @field_validator("rebalance_freq")
    @classmethod
    def check_rebalance_freq(cls, v: int, info: ValidationInfo) -> int:
        if v > SIMULATION_YEARS:
            scen_name = info.data.get("nickname", "N/A")
            logger.warning(
                f"Rebalance frequency ({v} yrs) exceeds the {SIMULATION_YEARS}-year horizon "
                f"for scenario '{scen_name}'; buckets will never be rebalanced."
            )
        return v

    @field_validator("rebalance_policy")
    @classmethod
    def check_rebalance_policy(cls, v: str) -> str:
        if v == REBALANCE_GREEDY_REFILL:
            logger.info("Using the legacy greedy bucket-refill rebalancing policy.")
        return v

    @property
    def effective_optimizer_rebalance_freq(self) -> int:
        if self.optimizer_rebalance_freq is None:
            return self.rebalance_freq
        return self.optimizer_rebalance_freq


def load_config_from_json(file_path: str) -> Dict[str, Any]:
    """Loads and returns the configuration dictionary from a JSON file."""
    if not os.path.exists(file_path):
        raise ConfigurationError(f"Configuration file not found at: {file_path}")

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Error parsing JSON file '{file_path}': {e}"
        ) from e
    except Exception as e:
        raise ConfigurationError(
            f"Unexpected error reading config file '{file_path}': {e}"
        ) from e

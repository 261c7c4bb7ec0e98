import pytest

from config import ClientProfile, PlanInputs, ReturnAssumption, ReturnAssumptions


@pytest.fixture
def client():
    """Single client retiring today at 65"""
    return ClientProfile(current_age=65, retirement_age=65)


@pytest.fixture
def inputs():
    """$1M portfolio, $4,000/month spending, $2,500 PIA claimed at 67"""
    return PlanInputs(
        total_portfolio=1_000_000,
        monthly_spending=4_000,
        ss_pia=2_500,
        ss_start_age=67,
    )


@pytest.fixture
def assumptions():
    return ReturnAssumptions()


def _flat(rate: float = 0.0, std_dev: float = 0.0) -> ReturnAssumptions:
    bucket = ReturnAssumption(expected_return=rate, std_dev=std_dev, name="Flat")
    return ReturnAssumptions(b1=bucket, b2=bucket, b3=bucket, b4=bucket, b5=bucket)


@pytest.fixture
def flat_assumptions():
    """Factory: every bucket earns the same return"""
    return _flat


@pytest.fixture
def zero_returns():
    return _flat(0.0)

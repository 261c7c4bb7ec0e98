# constants.py

MONTHS_PER_YEAR: int = 12
SMALL_EPSILON: float = 1e-6

# Social Security
FULL_RETIREMENT_AGE: int = 67
EARLIEST_CLAIM_AGE: int = 62
LATEST_CLAIM_AGE: int = 70
EARLY_REDUCTION_RATE_FIRST_3_YEARS: float = 0.0667
EARLY_REDUCTION_RATE_AFTER_3_YEARS: float = 0.05
DELAYED_CREDIT_RATE: float = 0.08
SS_CANDIDATE_AGES = (62, 67, 70)
BREAKEVEN_START_AGE: int = 60
BREAKEVEN_END_AGE: int = 95
DEFAULT_SS_REINVEST_RATE: float = 4.5

# Simulation
SIMULATION_YEARS: int = 30
MONTE_CARLO_ITERATIONS: int = 500
PERCENTILES = {"p10": 0.10, "median": 0.50, "p90": 0.90}
DEFAULT_INCOME_END_AGE: int = 100

# Buckets
BUCKET_KEYS = ("b1", "b2", "b3", "b4", "b5")
WITHDRAWAL_ORDER = ("b1", "b2", "b3", "b4", "b5")
# (first_year, last_year) of the gaps each present-value bucket funds
BUCKET_WINDOWS = {"b1": (1, 3), "b2": (4, 6), "b3": (7, 14)}
B4_PORTFOLIO_SHARE: float = 0.10
ALLOCATION_ROUNDING: int = 1000
BENCHMARK_BUCKET: str = "b3"
WEIGHTED_RETURN_WEIGHTS = {"b1": 0.10, "b2": 0.20, "b3": 0.30, "b4": 0.10, "b5": 0.30}

REBALANCE_ROLLING_PV: str = "rolling_pv"
REBALANCE_GREEDY_REFILL: str = "greedy_refill"

# Plot text colours
TEXT_INPUT_COLOR = '#1f77b4'
TEXT_OUTPUT_COLOR = '#ff7f0e'

from dataclasses import dataclass
import multiprocessing

# ============================================================================
# CONFIGURATION
# ============================================================================

MONTHS_PER_YEAR = 12
INITIAL_EQUITY_PRICE = 100.0

# Flat capital gains tax: 25% base rate plus 5.5% solidarity surcharge on the tax
BASE_TAX_RATE = 0.25
SOLIDARITY_SURCHARGE = 0.055
CHURCH_TAX_RATES = {
    'none': 0.0,
    '8': 0.08,
    '9': 0.09,
}

# Annual tax-free allowance on capital income
ALLOWANCE_SINGLE = 1000.0
ALLOWANCE_MARRIED = 2000.0

# Partial exemption of fund gains by fund type
EXEMPTION_FACTORS = {
    'equity': 0.7,    # >= 51% equity quota: 30% of gains tax-free
    'mixed': 0.85,    # >= 25% equity quota: 15% tax-free
    'bond': 1.0,      # fully taxable
}
DEFAULT_EXEMPTION_FACTOR = EXEMPTION_FACTORS['equity']

# Advance lump sum (Vorabpauschale): base yield = value at year start x base rate x 0.7
BASE_YIELD_FACTOR = 0.7
DEFAULT_BASE_RATE = 2.53          # percent, used for years without a published rate
BASE_RATE_HISTORY = {
    2025: 2.53,
    2024: 2.29,
    2023: 2.55,
    2022: -0.05,    # negative: no advance lump sum
    2021: -0.45,
    2020: 0.07,
    2019: 0.52,
    2018: 0.87,
}

# Sale loop stops once less than this is still owed
SALE_TOLERANCE = 0.01

# Lot bookkeeping
LOT_CONSOLIDATION_THRESHOLD = 50
LOT_PRICE_TOLERANCE = 0.01

# Monte Carlo parameters
MC_DEFAULT_ITERATIONS = 2000
MC_MAX_ITERATIONS = 10000
MC_CHUNK_SIZE = 200
MC_DEFAULT_VOLATILITY = 15.0      # annual, percent
MAX_SAMPLE_PATHS_PER_CHUNK = 10
MAX_SAMPLE_PATHS = 50             # default for MonteCarloOptions.max_sample_paths
PERCENTILES = (5, 10, 25, 50, 75, 90, 95)

# Path classification
DEFAULT_SUCCESS_THRESHOLD_REAL = 100.0
SUCCESS_THRESHOLD_MONTHS = 12
DEFAULT_RUIN_THRESHOLD_PERCENT = 10.0
SHORTFALL_TOLERANCE_PERCENT = 0.01
SHORTFALL_TOLERANCE_ABS = 50.0
SORR_WINDOW_YEARS = 5
SORR_MIN_SAMPLES = 10

# Worker progress reporting
PROGRESS_BATCH_SIZE = 50
PROGRESS_THROTTLE_SECONDS = 0.1
POOL_POLL_SECONDS = 0.1

# ETA smoothing
ETA_ALPHA = 0.3
ETA_MIN_SAMPLES = 3
ETA_MIN_ELAPSED_SECONDS = 1.5
ETA_MIN_DELTA_SECONDS = 0.2

# Worker pool bounds
MIN_POOL_SIZE = 2
MAX_POOL_SIZE = 8

# Optimizer
OPTIMIZER_DEFAULT_ITERATIONS = 1000
OPTIMIZER_MAX_ITERATIONS = 2000
OPTIMIZER_CHUNK_SIZE = 5
DEFAULT_TARGET_SUCCESS = 90.0
DEFAULT_MAX_COMBINATIONS = 60

# Debugging and logging
DEBUG = False                     # Set to True for verbose worker error traces

# Deterministic annual returns applied in the first withdrawal years
STRESS_SCENARIOS = {
    'none': {
        'name': 'Standard (random)',
        'description': 'Regular Monte Carlo run with random returns',
        'returns': None,
    },
    'early_crash': {
        'name': 'Early crash',
        'description': '-30% in the first retirement year, slow recovery over 5 years',
        'returns': [-0.30, -0.10, 0.05, 0.08, 0.10, 0.12, 0.08, 0.07, 0.06, 0.06],
    },
    'sideways': {
        'name': 'Sideways market',
        'description': 'Roughly 0% real return for 10 years',
        'returns': [0.02, 0.01, -0.01, 0.02, 0.00, -0.02, 0.03, -0.01, 0.01, 0.00],
    },
    'bear_market': {
        'name': 'Bear market',
        'description': '3-5 years of slightly negative returns, then normal',
        'returns': [-0.05, -0.08, -0.03, -0.02, 0.02, 0.08, 0.10, 0.07, 0.06, 0.06],
    },
    'late_crash': {
        'name': 'Late crash',
        'description': 'Normal start, crash after 5 years',
        'returns': [0.08, 0.10, 0.07, 0.09, 0.06, -0.35, -0.15, 0.10, 0.12, 0.08],
    },
}


def get_pool_size(available: int = None) -> int:
    """Worker count: one core left for the controller, clamped to [2, 8]."""
    if available is None:
        available = multiprocessing.cpu_count()
    return min(max(MIN_POOL_SIZE, available - 1), MAX_POOL_SIZE)


N_WORKERS = get_pool_size()


@dataclass(frozen=True)
class PoolConfig:
    """Worker pool settings used by the Monte Carlo runner and the optimizer."""
    n_workers: int
    optimizer_chunk_size: int
    poll_seconds: float


def get_pool_config() -> PoolConfig:
    """Return the active pool configuration in one canonical object."""
    return PoolConfig(
        n_workers=N_WORKERS,
        optimizer_chunk_size=OPTIMIZER_CHUNK_SIZE,
        poll_seconds=float(POOL_POLL_SECONDS)
    )


def print_banner():
    """Print the startup banner."""
    print(f"\n{'='*80}")
    print(f"WEALTHSIM - ACCUMULATION / WITHDRAWAL PLAN SIMULATOR")
    print(f"{'='*80}")
    print(f"MODEL:")
    print(f"  1. Cash bucket with target level, equity bucket tracked per tax lot")
    print(f"  2. Flat capital gains tax with annual allowance, loss pot, partial exemption")
    print(f"     and the yearly advance lump sum on fund holdings")
    print(f"  3. Log-normal monthly equity returns, optional stress scenarios")
    print(f"  4. Monte Carlo percentile bands, success/ruin rates, sequence-of-returns risk")
    print(f"  5. Grid optimizer with common random numbers")
    print(f"{'='*80}")
    print(f"System: {N_WORKERS} workers, {MC_DEFAULT_ITERATIONS} default iterations, "
          f"chunk size {MC_CHUNK_SIZE}")
    print(f"{'='*80}\n")

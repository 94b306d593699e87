"""
Immutable input values for a simulation run.

Parameters is created once and never mutated; variants for the optimizer are
built with Parameters.with_overrides(), which re-validates the result.
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Dict, Optional, Union

from wealthsim import config as cfg
from wealthsim.tax.engine import calculate_tax_rate
from wealthsim.tax.lot_selection import LotSelectionMethod
from wealthsim.validation import validate_monte_carlo_options, validate_parameters


@dataclass(frozen=True)
class FixedPayout:
    """Fixed monthly net payout in currency units."""
    amount: float


@dataclass(frozen=True)
class PercentOfWealthPayout:
    """Annual payout as a percentage of wealth at retirement start, fixed once."""
    percent: float


Payout = Union[FixedPayout, PercentOfWealthPayout]


@dataclass(frozen=True)
class LumpSum:
    """Periodic one-off outflow, due every `interval_years` (0 disables it)."""
    amount: float = 0.0
    interval_years: int = 0
    inflation_adjust: bool = True

    @property
    def enabled(self) -> bool:
        return self.interval_years > 0 and self.amount > 0

    def is_due(self, month: int) -> bool:
        return self.enabled and month % (self.interval_years * cfg.MONTHS_PER_YEAR) == 0

    def amount_at(self, month: int, inflation_rate_pa: float) -> float:
        if not self.inflation_adjust:
            return self.amount
        years_elapsed = month / cfg.MONTHS_PER_YEAR
        return self.amount * (1 + inflation_rate_pa / 100) ** years_elapsed


@dataclass(frozen=True)
class CapitalPreservation:
    """
    Payout reduction while wealth sits below `threshold` % of retirement wealth.

    The mode switches off again once wealth recovers to `threshold + recovery` %.
    """
    enabled: bool = False
    threshold: float = 80.0
    reduction: float = 25.0
    recovery: float = 10.0


@dataclass(frozen=True)
class Parameters:
    # Starting balances
    start_cash: float = 4000.0
    start_equity: float = 100.0
    start_equity_cost_basis: float = 0.0      # 0 = bought at current value

    # Contribution schedule (monthly, raised once a year)
    monthly_cash: float = 100.0
    monthly_equity: float = 150.0
    annual_raise_percent: float = 0.0
    cash_target: float = 5000.0

    # Annual rates in percent
    cash_rate_pa: float = 3.0
    equity_rate_pa: float = 6.0
    equity_ter_pa: float = 0.0
    inflation_rate_pa: float = 0.0

    # Phases
    accumulation_years: int = 36
    withdrawal_years: int = 30

    # Withdrawal
    payout: Payout = field(default_factory=lambda: FixedPayout(1000.0))
    withdrawal_min: float = 0.0
    withdrawal_max: float = 0.0
    inflation_adjust_withdrawal: bool = True
    payout_is_gross: bool = False
    accumulation_lump_sum: LumpSum = field(default_factory=LumpSum)
    withdrawal_lump_sum: LumpSum = field(default_factory=LumpSum)
    capital_preservation: CapitalPreservation = field(default_factory=CapitalPreservation)

    # Tax
    annual_allowance: float = cfg.ALLOWANCE_SINGLE
    church_tax: str = 'none'
    fund_type: str = 'equity'
    lot_selection: LotSelectionMethod = LotSelectionMethod.FIFO
    initial_loss_pot: float = 0.0
    tax_cash_interest: bool = True
    base_rate_pa: float = cfg.DEFAULT_BASE_RATE   # advance lump sum, years without a published rate
    start_year: Optional[int] = None              # calendar year of month 1; None = this year

    def __post_init__(self):
        validate_parameters(self)

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def accumulation_months(self) -> int:
        return self.accumulation_years * cfg.MONTHS_PER_YEAR

    @property
    def total_months(self) -> int:
        return (self.accumulation_years + self.withdrawal_years) * cfg.MONTHS_PER_YEAR

    @property
    def monthly_budget(self) -> float:
        return self.monthly_cash + self.monthly_equity

    @property
    def tax_rate(self) -> float:
        return calculate_tax_rate(cfg.CHURCH_TAX_RATES[self.church_tax])

    @property
    def exemption_factor(self) -> float:
        return cfg.EXEMPTION_FACTORS[self.fund_type]

    @property
    def fixed_payout_amount(self) -> float:
        """Monthly amount of a fixed payout, 0 for percentage payouts."""
        if isinstance(self.payout, FixedPayout):
            return self.payout.amount
        return 0.0

    def with_overrides(self, **overrides) -> 'Parameters':
        """Return a new validated Parameters with the given fields replaced."""
        return dataclasses.replace(self, **overrides)


@dataclass(frozen=True)
class MonteCarloOptions:
    iterations: int = cfg.MC_DEFAULT_ITERATIONS
    volatility: float = cfg.MC_DEFAULT_VOLATILITY
    seed: Optional[int] = None
    success_threshold: Optional[float] = None    # real terms; None = 12x fixed payout
    ruin_threshold_percent: float = cfg.DEFAULT_RUIN_THRESHOLD_PERCENT
    stress_scenario: str = 'none'
    chunk_size: int = cfg.MC_CHUNK_SIZE
    max_sample_paths: int = cfg.MAX_SAMPLE_PATHS  # full histories kept for charts

    def __post_init__(self):
        validate_monte_carlo_options(self)

    def with_overrides(self, **overrides) -> 'MonteCarloOptions':
        return dataclasses.replace(self, **overrides)


def parameters_from_dict(values: Dict) -> Parameters:
    """
    Build Parameters from a flat dict of plain values.

    Accepts `payout_amount` or `payout_percent` in place of a Payout object and
    `lot_selection` as a string ('fifo' / 'lifo').
    """
    values = dict(values)
    if 'payout' not in values:
        percent = values.pop('payout_percent', None)
        amount = values.pop('payout_amount', None)
        if percent is not None:
            values['payout'] = PercentOfWealthPayout(float(percent))
        elif amount is not None:
            values['payout'] = FixedPayout(float(amount))
    if isinstance(values.get('lot_selection'), str):
        values['lot_selection'] = LotSelectionMethod(values['lot_selection'].lower())
    for key in ('accumulation_lump_sum', 'withdrawal_lump_sum'):
        if isinstance(values.get(key), dict):
            values[key] = LumpSum(**values[key])
    if isinstance(values.get('capital_preservation'), dict):
        values['capital_preservation'] = CapitalPreservation(**values['capital_preservation'])
    return Parameters(**values)

"""
Month-stepped simulation of a two-phase wealth plan.

A run starts in the accumulation phase and switches exactly once, after
`accumulation_years * 12` months, to the withdrawal phase. Cash earns a fixed
rate; equity is tracked per tax lot in a TaxLedger owned by the run.
"""

import math
from collections.abc import Sequence
from dataclasses import asdict, dataclass, replace
from datetime import date
from enum import Enum
from typing import Iterator, List, Optional

import numpy as np
import pandas as pd

from wealthsim import config as cfg
from wealthsim.params import Parameters, PercentOfWealthPayout
from wealthsim.tax.engine import advance_lump_sum, cover_tax, get_base_rate, tax_on_income
from wealthsim.tax.ledger import AllowanceState, TaxLedger
from wealthsim.utils import to_monthly_rate, to_monthly_volatility


class Phase(Enum):
    ACCUMULATION = "accumulation"
    WITHDRAWAL = "withdrawal"


@dataclass(frozen=True)
class MonthRecord:
    month: int                    # 1-based
    year: int                     # 1-based
    phase: Phase
    cash: float
    equity: float
    total: float
    total_real: float
    cash_contrib: float
    equity_contrib: float
    cash_interest: float
    withdrawal_requested: float   # payout plus lump sum asked for this month
    withdrawal: float             # part of the request actually paid
    withdrawal_net: float         # amount received by the payee
    monthly_payout: float         # regular payout, scaled down on shortfall
    tax_paid: float
    shortfall: float
    tax_shortfall: float
    advance_tax: float            # tax on last year's advance lump sum, paid in January
    cumulative_inflation: float
    equity_price: float
    equity_shares: float
    equity_return: float          # price factor of the month, e.g. 1.005
    portfolio_return: float       # start-of-month weighted cash/equity factor
    return_gain: float
    allowance_used: float
    loss_pot: float
    capital_preservation_active: bool

    @property
    def withdrawal_real(self) -> float:
        return self.withdrawal / self.cumulative_inflation

    @property
    def withdrawal_net_real(self) -> float:
        return self.withdrawal_net / self.cumulative_inflation

    @property
    def monthly_payout_real(self) -> float:
        return self.monthly_payout / self.cumulative_inflation


class History(Sequence):
    """Immutable, fixed-length sequence of MonthRecords for one run."""

    def __init__(self, records: List[MonthRecord], accumulation_months: int,
                 start_total: float, capital_preservation_months: int = 0):
        self._records = tuple(records)
        self.accumulation_months = accumulation_months
        self.start_total = start_total
        self.capital_preservation_months = capital_preservation_months

    def __getitem__(self, index):
        return self._records[index]

    def __len__(self):
        return len(self._records)

    def __iter__(self) -> Iterator[MonthRecord]:
        return iter(self._records)

    def __eq__(self, other):
        if not isinstance(other, History):
            return NotImplemented
        return (self._records == other._records
                and self.capital_preservation_months == other.capital_preservation_months)

    @property
    def last(self) -> Optional[MonthRecord]:
        return self._records[-1] if self._records else None

    @property
    def retirement_record(self) -> Optional[MonthRecord]:
        """Last accumulation month; None when there is no accumulation phase."""
        if self.accumulation_months <= 0 or not self._records:
            return None
        return self._records[min(self.accumulation_months, len(self._records)) - 1]

    @property
    def retirement_total(self) -> float:
        record = self.retirement_record
        return record.total if record is not None else self.start_total

    @property
    def retirement_total_real(self) -> float:
        record = self.retirement_record
        return record.total_real if record is not None else self.start_total

    def to_frame(self) -> pd.DataFrame:
        """One row per month, indexed by month number."""
        rows = []
        for record in self._records:
            row = asdict(record)
            row['phase'] = record.phase.value
            row['withdrawal_real'] = record.withdrawal_real
            row['withdrawal_net_real'] = record.withdrawal_net_real
            row['monthly_payout_real'] = record.monthly_payout_real
            rows.append(row)
        return pd.DataFrame(rows).set_index('month') if rows else pd.DataFrame()


@dataclass(frozen=True)
class SimulationOptions:
    stress_scenario: str = 'none'
    seed: Optional[int] = None


def get_stress_return(stress_scenario: str, month: int, accumulation_months: int) -> Optional[float]:
    """
    Monthly price factor of a stress scenario, or None for a normal month.

    Scenarios only cover the first withdrawal years; annual returns are
    spread geometrically over the 12 months of each year.
    """
    scenario = cfg.STRESS_SCENARIOS.get(stress_scenario)
    if not scenario or not scenario['returns']:
        return None
    withdrawal_month = month - accumulation_months
    if withdrawal_month <= 0:
        return None
    year_idx = (withdrawal_month - 1) // cfg.MONTHS_PER_YEAR
    if year_idx < len(scenario['returns']):
        return (1 + scenario['returns'][year_idx]) ** (1 / cfg.MONTHS_PER_YEAR)
    return None


class _PlanState:
    """Mutable balances of one run. Never leaves simulate()."""

    def __init__(self, params: Parameters):
        self.params = params
        self.tax_rate = params.tax_rate
        self.exemption = params.exemption_factor
        self.cash = params.start_cash
        self.price = cfg.INITIAL_EQUITY_PRICE
        self.ledger = TaxLedger(loss_pot=params.initial_loss_pot)
        self.allowance = AllowanceState(year_index=0)
        self.cash_full = params.start_cash >= params.cash_target
        self.year_start_price = self.price
        self.pending_advance = 0.0     # taxable advance lump sum of the past year

        if params.start_equity > 0:
            shares = params.start_equity / self.price
            cost_basis = params.start_equity_cost_basis or params.start_equity
            self.ledger.add_lot(shares, cost_basis / shares, 0)

    @property
    def equity(self) -> float:
        return self.ledger.value(self.price)

    def _sell(self, amount: float, gross: bool):
        sell = self.ledger.sell_gross if gross else self.ledger.sell
        return sell(amount, self.price, self.allowance, self.params.annual_allowance,
                    self.exemption, self.tax_rate, self.params.lot_selection)

    def pay(self, needed: float, gross: bool = False):
        """
        Raise `needed` through the waterfall: cash above target, lot sale, cash drawdown.

        Returns (paid, received, tax). In gross mode the sale is sized on the
        gross amount and `received` is what is left after tax.
        """
        remaining = needed
        received = 0.0
        tax = 0.0

        extra_cash = max(0.0, self.cash - self.params.cash_target)
        if extra_cash > 0:
            use = min(extra_cash, remaining)
            self.cash -= use
            remaining -= use
            received += use

        if remaining > 0:
            sale = self._sell(remaining, gross)
            tax += sale.tax_paid
            if gross:
                received += sale.net_proceeds
                remaining = sale.shortfall
            else:
                received += sale.gross_proceeds - sale.tax_paid
                remaining = sale.remaining

        if remaining > cfg.SALE_TOLERANCE:
            draw = min(self.cash, remaining)
            self.cash -= draw
            remaining -= draw
            received += draw
            if self.cash < self.params.cash_target:
                self.cash_full = False

        # The last lot sale may overshoot; the excess stays in cash
        if remaining < 0:
            self.cash += -remaining
            received -= -remaining
            remaining = 0.0
        # Rounding dust left by the sale loop counts as paid
        elif remaining <= cfg.SALE_TOLERANCE:
            remaining = 0.0

        return needed - remaining, received, tax

    def cover_tax(self, amount: float):
        result = cover_tax(amount, self.cash, self.ledger, self.price, self.allowance,
                           self.params.annual_allowance, self.exemption, self.tax_rate,
                           self.params.lot_selection)
        self.cash = result.cash
        return result

    def settle_advance(self):
        """Tax the pending advance lump sum against the current year's allowance and pay it."""
        due = self.ledger.tax_on_gain(self.pending_advance, self.allowance,
                                      self.params.annual_allowance, self.tax_rate)
        self.pending_advance = 0.0
        return self.cover_tax(due)


def simulate(params: Parameters, volatility: float = 0.0,
             options: Optional[SimulationOptions] = None,
             rng: Optional[np.random.Generator] = None) -> History:
    """
    Run one path of the plan.

    Deterministic when `volatility` (annual, percent) is 0. Otherwise monthly
    equity factors are log-normal, exp(ln(1+r_m) - sigma_m^2/2 + sigma_m*z),
    with z drawn from `rng` (or a generator seeded from `options.seed`).
    """
    options = options or SimulationOptions()
    state = _PlanState(params)

    acc_months = params.accumulation_months
    total_months = params.total_months
    monthly_cash_rate = to_monthly_rate(params.cash_rate_pa)
    monthly_equity_rate = to_monthly_rate(params.equity_rate_pa - params.equity_ter_pa)
    monthly_inflation = to_monthly_rate(params.inflation_rate_pa)
    annual_raise = params.annual_raise_percent / 100
    preservation = params.capital_preservation

    shocks = None
    if volatility > 0:
        if rng is None:
            rng = np.random.default_rng(options.seed)
        sigma = to_monthly_volatility(volatility / 100)
        drift = math.log(1 + monthly_equity_rate) - 0.5 * sigma * sigma
        shocks = np.exp(drift + sigma * rng.standard_normal(total_months))

    records = []
    cumulative_inflation = 1.0
    yearly_interest = 0.0
    wealth_start = None
    base_payout = 0.0
    preservation_active = False
    preservation_months = 0
    start_year = params.start_year if params.start_year is not None else date.today().year

    for month in range(1, total_months + 1):
        accumulation = month <= acc_months
        year_idx = (month - 1) // cfg.MONTHS_PER_YEAR
        month_in_year = (month - 1) % cfg.MONTHS_PER_YEAR + 1

        cumulative_inflation *= 1 + monthly_inflation
        equity_start = state.equity
        portfolio_start = state.cash + equity_start
        tax_paid = 0.0
        tax_shortfall = 0.0
        advance_tax = 0.0

        # New tax year: fresh allowance, then last year's advance lump sum falls due
        if year_idx != state.allowance.year_index:
            state.allowance.reset(year_idx)
            yearly_interest = 0.0
            if state.pending_advance > 0:
                cover = state.settle_advance()
                advance_tax = cover.tax_paid
                tax_paid += cover.total_tax_recorded
                tax_shortfall += cover.shortfall
            state.year_start_price = state.price

        # Equity price
        stress = get_stress_return(options.stress_scenario, month, acc_months)
        if stress is not None:
            equity_return = stress
        elif shocks is not None:
            equity_return = float(shocks[month - 1])
        else:
            equity_return = 1 + monthly_equity_rate
        state.price *= equity_return
        equity_growth = equity_start * (equity_return - 1)

        interest = state.cash * monthly_cash_rate
        yearly_interest += interest
        state.cash += interest

        cash_contrib = 0.0
        equity_contrib = 0.0
        requested = 0.0
        paid = 0.0
        received = 0.0
        monthly_payout = 0.0
        preservation_this_month = False

        if accumulation:
            raise_factor = (1 + annual_raise) ** year_idx
            current_cash = params.monthly_cash * raise_factor
            current_equity = params.monthly_equity * raise_factor

            if state.cash_full:
                equity_contrib = current_equity + current_cash
            else:
                state.cash += current_cash
                cash_contrib = current_cash
                equity_contrib = current_equity

            if state.cash > params.cash_target:
                equity_contrib += state.cash - params.cash_target
                state.cash = params.cash_target
                state.cash_full = True

            state.ledger.buy(equity_contrib, state.price, month)

            lump_sum = params.accumulation_lump_sum
            if lump_sum.is_due(month):
                requested = lump_sum.amount_at(month, params.inflation_rate_pa)
                paid, received, tax = state.pay(requested)
                tax_paid += tax

        else:
            if wealth_start is None:
                wealth_start = state.cash + state.equity
                if isinstance(params.payout, PercentOfWealthPayout):
                    base_payout = wealth_start * params.payout.percent / 100 / cfg.MONTHS_PER_YEAR
                else:
                    base_payout = params.payout.amount

            payout = base_payout
            if params.inflation_adjust_withdrawal:
                withdrawal_year = year_idx - params.accumulation_years
                payout = base_payout * (1 + params.inflation_rate_pa / 100) ** withdrawal_year
            if params.withdrawal_min > 0 and payout < params.withdrawal_min:
                payout = params.withdrawal_min
            if params.withdrawal_max > 0 and payout > params.withdrawal_max:
                payout = params.withdrawal_max

            if preservation.enabled and wealth_start > 0:
                current_total = state.cash + state.equity
                if current_total < wealth_start * preservation.threshold / 100:
                    preservation_active = True
                elif current_total >= wealth_start * (preservation.threshold + preservation.recovery) / 100:
                    preservation_active = False
                if preservation_active:
                    payout *= 1 - preservation.reduction / 100
                    preservation_this_month = True
                    preservation_months += 1

            requested = payout
            lump_sum = params.withdrawal_lump_sum
            if lump_sum.is_due(month):
                requested += lump_sum.amount_at(month, params.inflation_rate_pa)

            if requested > 0:
                paid, received, tax = state.pay(requested, gross=params.payout_is_gross)
                tax_paid += tax

            if requested > 0 and paid < requested:
                monthly_payout = payout * paid / requested
            else:
                monthly_payout = payout

        # Year end: tax on cash interest, advance lump sum, then tidy up the lot list
        if month_in_year == cfg.MONTHS_PER_YEAR:
            if params.tax_cash_interest and yearly_interest > 0:
                interest_tax = tax_on_income(yearly_interest, state.ledger, state.allowance,
                                             params.annual_allowance, state.tax_rate)
                if interest_tax > cfg.SALE_TOLERANCE:
                    cover = state.cover_tax(interest_tax)
                    tax_paid += cover.total_tax_recorded
                    tax_shortfall += cover.shortfall
            base_rate = get_base_rate(start_year + year_idx, params.base_rate_pa)
            state.pending_advance = advance_lump_sum(
                state.ledger, state.price, state.year_start_price,
                year_idx * cfg.MONTHS_PER_YEAR, base_rate, state.exemption)
            if len(state.ledger) > cfg.LOT_CONSOLIDATION_THRESHOLD:
                state.ledger.consolidate()

        equity = state.equity
        total = state.cash + equity
        if portfolio_start > 0:
            equity_weight = equity_start / portfolio_start
            portfolio_return = (equity_weight * equity_return
                                + (1 - equity_weight) * (1 + monthly_cash_rate))
        else:
            portfolio_return = equity_return

        if accumulation or requested <= 0:
            withdrawal_net = 0.0
        elif params.payout_is_gross:
            withdrawal_net = received
        else:
            withdrawal_net = paid

        records.append(MonthRecord(
            month=month,
            year=year_idx + 1,
            phase=Phase.ACCUMULATION if accumulation else Phase.WITHDRAWAL,
            cash=state.cash,
            equity=equity,
            total=total,
            total_real=total / cumulative_inflation,
            cash_contrib=cash_contrib,
            equity_contrib=equity_contrib,
            cash_interest=interest,
            withdrawal_requested=requested,
            withdrawal=paid,
            withdrawal_net=withdrawal_net,
            monthly_payout=monthly_payout,
            tax_paid=tax_paid,
            shortfall=max(0.0, requested - paid) if requested > 0 else 0.0,
            tax_shortfall=tax_shortfall,
            advance_tax=advance_tax,
            cumulative_inflation=cumulative_inflation,
            equity_price=state.price,
            equity_shares=state.ledger.total_shares,
            equity_return=equity_return,
            portfolio_return=portfolio_return,
            return_gain=equity_growth + interest,
            allowance_used=state.allowance.used_amount,
            loss_pot=state.ledger.loss_pot,
            capital_preservation_active=preservation_this_month,
        ))

    # The last December's advance lump sum is settled after the run, booked on the final month
    if records and state.pending_advance > 0:
        state.allowance.reset(state.allowance.year_index + 1)
        cover = state.settle_advance()
        last = records[-1]
        equity = state.equity
        total = state.cash + equity
        records[-1] = replace(
            last,
            cash=state.cash,
            equity=equity,
            total=total,
            total_real=total / last.cumulative_inflation,
            tax_paid=last.tax_paid + cover.total_tax_recorded,
            tax_shortfall=last.tax_shortfall + cover.shortfall,
            advance_tax=last.advance_tax + cover.tax_paid,
            equity_shares=state.ledger.total_shares,
            loss_pot=state.ledger.loss_pot,
        )

    return History(
        records,
        accumulation_months=acc_months,
        start_total=params.start_cash + params.start_equity,
        capital_preservation_months=preservation_months,
    )


@dataclass(frozen=True)
class HistoryAnalysis:
    total_invested: float
    total_return: float
    total_tax: float
    total_advance_tax: float
    avg_withdrawal: float
    min_withdrawal: float
    max_withdrawal: float
    total_withdrawals: float
    has_shortfall: bool
    shortfall_months: int
    end_total: float
    end_total_real: float
    retirement_total: float
    retirement_total_real: float
    capital_preservation_months: int
    final_loss_pot: float
    cumulative_inflation: float


def analyze_history(history: History, params: Parameters) -> Optional[HistoryAnalysis]:
    """Summary figures of a single run; None for an empty history."""
    if history is None or len(history) == 0:
        return None

    last = history.last
    accumulation_rows = [r for r in history if r.phase == Phase.ACCUMULATION]
    withdrawal_rows = [r for r in history if r.phase == Phase.WITHDRAWAL]

    total_invested = (params.start_cash + params.start_equity
                      + sum(r.cash_contrib + r.equity_contrib for r in accumulation_rows))

    payouts = [r.monthly_payout for r in withdrawal_rows if r.monthly_payout > 0]
    shortfall_months = sum(1 for r in history if r.shortfall > 0)

    return HistoryAnalysis(
        total_invested=total_invested,
        total_return=sum(r.return_gain for r in history),
        total_tax=sum(r.tax_paid for r in history),
        total_advance_tax=sum(r.advance_tax for r in history),
        avg_withdrawal=sum(payouts) / len(payouts) if payouts else 0.0,
        min_withdrawal=min(payouts) if payouts else 0.0,
        max_withdrawal=max(payouts) if payouts else 0.0,
        total_withdrawals=sum(r.withdrawal for r in withdrawal_rows),
        has_shortfall=shortfall_months > 0,
        shortfall_months=shortfall_months,
        end_total=last.total,
        end_total_real=last.total_real,
        retirement_total=history.retirement_total,
        retirement_total_real=history.retirement_total_real,
        capital_preservation_months=history.capital_preservation_months,
        final_loss_pot=last.loss_pot,
        cumulative_inflation=last.cumulative_inflation,
    )

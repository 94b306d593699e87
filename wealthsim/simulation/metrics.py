"""
Per-path classification of a simulated History.

extract_path_metrics() is the single definition of success, ruin, shortfall,
capital preservation and emergency-fund fill used by both the in-process
analysis and the chunked workers.
"""

from dataclasses import dataclass
from typing import Optional

from wealthsim import config as cfg
from wealthsim.params import MonteCarloOptions, Parameters
from wealthsim.simulation.engine import History, Phase


@dataclass(frozen=True)
class PathMetrics:
    has_positive_end: bool
    has_accumulation_shortfall: bool
    has_withdrawal_shortfall: bool
    is_ruin: bool
    success: bool
    soft_success: bool
    capital_preserved: bool
    capital_preserved_real: bool
    first_fill_month: Optional[int]     # 0 = no target, None = never filled
    avg_withdrawal_net: float
    avg_withdrawal_net_real: float
    avg_withdrawal_gross: float
    avg_withdrawal_gross_real: float
    total_withdrawal_net: float
    total_withdrawal_net_real: float
    total_withdrawal_gross: float
    total_withdrawal_gross_real: float


@dataclass(frozen=True)
class SorrSample:
    start_wealth: float
    early_return: float     # annualised time-weighted return of the early window
    end_wealth: float


def success_threshold_real(params: Parameters, mc_options: Optional[MonteCarloOptions]) -> float:
    """Explicit override, else 12 fixed monthly payouts, else the 100 floor."""
    if mc_options is not None and mc_options.success_threshold is not None:
        return mc_options.success_threshold
    payout = params.fixed_payout_amount
    if payout > 0:
        return payout * cfg.SUCCESS_THRESHOLD_MONTHS
    return cfg.DEFAULT_SUCCESS_THRESHOLD_REAL


def shortfall_tolerance(requested: float) -> float:
    return max(cfg.SHORTFALL_TOLERANCE_ABS, requested * cfg.SHORTFALL_TOLERANCE_PERCENT)


def first_fill_month(history: History, cash_target: float) -> Optional[int]:
    if cash_target <= 0:
        return 0
    for record in history:
        if record.cash >= cash_target:
            return record.month
    return None


def extract_path_metrics(history: History, params: Parameters,
                         mc_options: Optional[MonteCarloOptions] = None) -> PathMetrics:
    ruin_percent = (mc_options.ruin_threshold_percent if mc_options is not None
                    else cfg.DEFAULT_RUIN_THRESHOLD_PERCENT)
    acc_months = params.accumulation_months

    last = history.last
    end_wealth = last.total if last else 0.0
    end_wealth_real = last.total_real if last else 0.0
    end_inflation = last.cumulative_inflation if last else 1.0
    has_positive_end = end_wealth > success_threshold_real(params, mc_options) * end_inflation

    has_accumulation_shortfall = any(
        r.shortfall > cfg.SHORTFALL_TOLERANCE_ABS or r.tax_shortfall > cfg.SHORTFALL_TOLERANCE_ABS
        for r in history[:acc_months]
    )

    retirement_wealth = history.retirement_total
    ruin_threshold = retirement_wealth * ruin_percent / 100
    has_withdrawal_shortfall = False
    is_ruin = False
    for record in history[acc_months:]:
        tolerance = shortfall_tolerance(record.withdrawal_requested)
        significant = record.shortfall > tolerance or record.tax_shortfall > tolerance
        if significant:
            has_withdrawal_shortfall = True
        if significant or record.total < ruin_threshold:
            is_ruin = True
        if is_ruin and has_withdrawal_shortfall:
            break

    paying_rows = [r for r in history
                   if r.phase == Phase.WITHDRAWAL and (r.withdrawal > 0 or r.withdrawal_net > 0)]
    if paying_rows:
        n = len(paying_rows)
        avg_gross = sum(r.withdrawal for r in paying_rows) / n
        avg_gross_real = sum(r.withdrawal_real for r in paying_rows) / n
        avg_net = sum(r.withdrawal_net for r in paying_rows) / n
        avg_net_real = sum(r.withdrawal_net_real for r in paying_rows) / n
        total_gross = sum(r.withdrawal for r in history)
        total_gross_real = sum(r.withdrawal_real for r in history)
        total_net = sum(r.withdrawal_net for r in history)
        total_net_real = sum(r.withdrawal_net_real for r in history)
    else:
        avg_gross = avg_gross_real = avg_net = avg_net_real = 0.0
        total_gross = total_gross_real = total_net = total_net_real = 0.0

    return PathMetrics(
        has_positive_end=has_positive_end,
        has_accumulation_shortfall=has_accumulation_shortfall,
        has_withdrawal_shortfall=has_withdrawal_shortfall,
        is_ruin=is_ruin,
        success=has_positive_end and not has_withdrawal_shortfall and not is_ruin,
        soft_success=has_positive_end and not is_ruin,
        capital_preserved=end_wealth >= retirement_wealth,
        capital_preserved_real=end_wealth_real >= history.retirement_total_real,
        first_fill_month=first_fill_month(history, params.cash_target),
        avg_withdrawal_net=avg_net,
        avg_withdrawal_net_real=avg_net_real,
        avg_withdrawal_gross=avg_gross,
        avg_withdrawal_gross_real=avg_gross_real,
        total_withdrawal_net=total_net,
        total_withdrawal_net_real=total_net_real,
        total_withdrawal_gross=total_gross,
        total_withdrawal_gross_real=total_gross_real,
    )


def extract_sorr_sample(history: History, params: Parameters) -> SorrSample:
    """Early withdrawal-window return of one path, paired with its start and end wealth."""
    acc_months = params.accumulation_months
    early_months = min(cfg.SORR_WINDOW_YEARS, params.withdrawal_years) * cfg.MONTHS_PER_YEAR
    window = history[acc_months:acc_months + early_months]

    twr = 1.0
    for record in window:
        twr *= record.portfolio_return
    early_return = twr ** (cfg.MONTHS_PER_YEAR / len(window)) - 1 if window else 0.0

    last = history.last
    return SorrSample(
        start_wealth=history.retirement_total,
        early_return=early_return,
        end_wealth=last.total if last else 0.0,
    )

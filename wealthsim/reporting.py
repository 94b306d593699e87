"""
Console reporting for single runs, Monte Carlo results and optimizer output.
"""

from typing import List, Optional

import pandas as pd

from wealthsim import config as cfg
from wealthsim.analysis import MonteCarloResult
from wealthsim.optimizer import OptimizationResult, ScoredCandidate
from wealthsim.params import Parameters, PercentOfWealthPayout
from wealthsim.simulation.engine import HistoryAnalysis


def _money(value: Optional[float]) -> str:
    if value is None:
        return "n/a"
    return f"{value:,.0f}"


def percentile_frame(result: MonteCarloResult, real: bool = True) -> pd.DataFrame:
    """Year-end wealth percentiles, one row per simulated year."""
    bands = result.percentiles_real if real else result.percentiles
    year_end = slice(cfg.MONTHS_PER_YEAR - 1, None, cfg.MONTHS_PER_YEAR)
    frame = pd.DataFrame({f"p{p}": values[year_end] for p, values in bands.items()})
    frame.index = pd.RangeIndex(1, len(frame) + 1, name="year")
    return frame


def summary_text(result: MonteCarloResult, params: Optional[Parameters] = None) -> str:
    """Multi-line plain-text summary of a Monte Carlo result."""
    lines = []
    if params is not None:
        lines.append(f"Plan:                        {params.accumulation_years}Y saving "
                     f"{params.monthly_budget:,.0f}/month, {params.withdrawal_years}Y withdrawal")
    lines += [
        f"Paths:                       {result.iterations:,}",
        f"Volatility:                  {result.volatility:.1f}% p.a.",
        f"Success rate:                {result.success_rate:.1f}%",
        f"Soft success rate:           {result.soft_success_rate:.1f}%",
        f"Ruin probability:            {result.ruin_probability:.1f}%",
        f"Capital preserved (nominal): {result.capital_preservation_rate:.1f}%",
        f"Capital preserved (real):    {result.capital_preservation_rate_real:.1f}%",
        f"Accumulation shortfalls:     {result.accumulation_shortfall_rate:.1f}%",
        f"Withdrawal shortfalls:       {result.withdrawal_shortfall_rate:.1f}%",
        "",
        f"Wealth at retirement (median): {_money(result.retirement_median)} "
        f"(real {_money(result.retirement_median_real)})",
        f"End wealth (median):           {_money(result.median_end)} "
        f"(real {_money(result.median_end_real)})",
        f"End wealth p10 / p90 (real):   {_money(result.end_percentiles_real[10])} / "
        f"{_money(result.end_percentiles_real[90])}",
        f"Median monthly payout (net):   {_money(result.median_avg_withdrawal_net)} "
        f"(real {_money(result.median_avg_withdrawal_net_real)})",
        "",
        f"Emergency fund filled:         {result.emergency_fill_probability:.1f}%",
    ]
    if result.emergency_median_fill_years is not None:
        lines.append(f"Median years to fill:          {result.emergency_median_fill_years:.1f}")
    sorr = result.sorr
    lines += [
        "",
        f"Sequence risk score:           {sorr.risk_score:.1f} "
        f"(first {sorr.vulnerability_window} years, correlation {sorr.correlation:+.2f})",
        f"Worst / best early quintile:   {_money(sorr.worst_sequence_end)} / "
        f"{_money(sorr.best_sequence_end)}",
    ]
    return "\n".join(lines)


def print_history_summary(summary: Optional[HistoryAnalysis], params: Parameters):
    print(f"\n{'='*80}")
    print(f"DETERMINISTIC RUN: {params.accumulation_years}Y saving + "
          f"{params.withdrawal_years}Y withdrawal")
    print(f"{'='*80}")
    if summary is None:
        print("  (empty history)")
        return
    print(f"  Total invested:         {_money(summary.total_invested)}")
    print(f"  Total return:           {_money(summary.total_return)}")
    print(f"  Total tax:              {_money(summary.total_tax)}")
    print(f"  of which advance tax:   {_money(summary.total_advance_tax)}")
    print(f"  Wealth at retirement:   {_money(summary.retirement_total)} "
          f"(real {_money(summary.retirement_total_real)})")
    print(f"  End wealth:             {_money(summary.end_total)} "
          f"(real {_money(summary.end_total_real)})")
    print(f"  Payout avg/min/max:     {_money(summary.avg_withdrawal)} / "
          f"{_money(summary.min_withdrawal)} / {_money(summary.max_withdrawal)}")
    if summary.has_shortfall:
        print(f"  WARNING: shortfall in {summary.shortfall_months} months")
    if summary.capital_preservation_months:
        print(f"  Capital preservation active: {summary.capital_preservation_months} months")


def print_monte_carlo_summary(result: MonteCarloResult, params: Optional[Parameters] = None,
                              every_n_years: int = 5):
    print(f"\n{'='*80}")
    print("MONTE CARLO RESULTS")
    print(f"{'='*80}")
    print(summary_text(result, params))

    frame = percentile_frame(result, real=True)
    shown = frame[(frame.index % every_n_years == 0) | (frame.index == frame.index[-1])]
    print(f"\nReal wealth percentiles by year:")
    print(shown.map(_money).to_string())
    print("=" * 80)


def describe_candidate(candidate: ScoredCandidate) -> str:
    params = candidate.params
    if isinstance(params.payout, PercentOfWealthPayout):
        payout = f"{params.payout.percent:.2f}% p.a."
    else:
        payout = f"{params.payout.amount:,.0f}/month"
    return (f"cash {params.monthly_cash:,.0f} + equity {params.monthly_equity:,.0f} "
            f"= {params.monthly_budget:,.0f}/month, payout {payout}")


def candidate_frame(candidates: List[ScoredCandidate]) -> pd.DataFrame:
    rows = []
    for c in candidates:
        rows.append({
            'index': c.index,
            'cash': c.params.monthly_cash,
            'equity': c.params.monthly_equity,
            'payout': (c.params.payout.percent if isinstance(c.params.payout, PercentOfWealthPayout)
                       else c.params.payout.amount),
            'success': c.summary['success_rate'],
            'ruin': c.summary['ruin_probability'],
            'median_end_real': c.summary['median_end_real'],
            'score': c.score,
        })
    return pd.DataFrame(rows).set_index('index') if rows else pd.DataFrame()


def print_optimization_result(result: OptimizationResult, top: int = 10):
    print(f"\n{'='*80}")
    print(f"OPTIMIZER RESULTS ({result.objective.value})")
    print(f"{'='*80}")
    print(f"  Evaluated: {len(result.evaluated)}, disqualified: {result.disqualified}")
    print(f"  {result.message}")
    if result.best is None:
        print("=" * 80)
        return

    print(f"  Best: {describe_candidate(result.best)}")
    viable = [c for c in result.evaluated if c.viable]
    frame = candidate_frame(viable).sort_values('score', ascending=False).head(top)
    print(f"\nTop {len(frame)} candidates:")
    print(frame.to_string(float_format=lambda v: f"{v:,.2f}"))
    print("=" * 80)

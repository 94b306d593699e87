"""
Monte Carlo aggregation.

Workers return ChunkResults holding raw per-path values. Chunks are merged by
concatenating those raw samples (ordered by start index, so the merge does not
depend on completion order) and every percentile is computed on the merged
sample. Per-chunk percentiles are never averaged.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
from scipy.stats import pearsonr

from wealthsim import config as cfg
from wealthsim.params import MonteCarloOptions, Parameters
from wealthsim.simulation.engine import History
from wealthsim.simulation.metrics import (
    PathMetrics, SorrSample, extract_path_metrics, extract_sorr_sample
)
from wealthsim.utils import median_or_none, percentile


@dataclass
class ChunkResult:
    """Raw per-path values of a contiguous block of iterations."""
    start_idx: int
    monthly_totals: np.ndarray          # shape (paths, months)
    monthly_totals_real: np.ndarray
    retirement_totals: np.ndarray
    retirement_totals_real: np.ndarray
    final_loss_pot: np.ndarray
    final_allowance_used: np.ndarray
    path_metrics: List[PathMetrics] = field(default_factory=list)
    sorr_samples: List[SorrSample] = field(default_factory=list)
    sample_paths: List[History] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.path_metrics)

    @classmethod
    def from_histories(cls, start_idx: int, histories: Sequence[History], params: Parameters,
                       mc_options: Optional[MonteCarloOptions] = None,
                       max_sample_paths: int = cfg.MAX_SAMPLE_PATHS_PER_CHUNK) -> 'ChunkResult':
        builder = ChunkBuilder(start_idx, params, mc_options, max_sample_paths)
        for history in histories:
            builder.add(history)
        return builder.build()

    def merge(self, other: 'ChunkResult') -> 'ChunkResult':
        """Concatenate two chunks; the result is the same whichever is merged into which."""
        return merge_chunks([self, other])


class ChunkBuilder:
    """Collects raw values path by path so histories can be dropped right away."""

    def __init__(self, start_idx: int, params: Parameters,
                 mc_options: Optional[MonteCarloOptions] = None,
                 max_sample_paths: int = cfg.MAX_SAMPLE_PATHS_PER_CHUNK):
        self.start_idx = start_idx
        self.params = params
        self.mc_options = mc_options
        self.max_sample_paths = max_sample_paths
        self.totals = []
        self.totals_real = []
        self.retirement = []
        self.retirement_real = []
        self.loss_pot = []
        self.allowance_used = []
        self.metrics = []
        self.sorr = []
        self.sample_paths = []

    def add(self, history: History):
        self.totals.append([r.total for r in history])
        self.totals_real.append([r.total_real for r in history])
        self.retirement.append(history.retirement_total)
        self.retirement_real.append(history.retirement_total_real)
        last = history.last
        self.loss_pot.append(last.loss_pot if last else 0.0)
        self.allowance_used.append(last.allowance_used if last else 0.0)
        self.metrics.append(extract_path_metrics(history, self.params, self.mc_options))
        self.sorr.append(extract_sorr_sample(history, self.params))
        if len(self.sample_paths) < self.max_sample_paths:
            self.sample_paths.append(history)

    def build(self) -> ChunkResult:
        months = self.params.total_months
        return ChunkResult(
            start_idx=self.start_idx,
            monthly_totals=np.asarray(self.totals, dtype=float).reshape(-1, months),
            monthly_totals_real=np.asarray(self.totals_real, dtype=float).reshape(-1, months),
            retirement_totals=np.asarray(self.retirement, dtype=float),
            retirement_totals_real=np.asarray(self.retirement_real, dtype=float),
            final_loss_pot=np.asarray(self.loss_pot, dtype=float),
            final_allowance_used=np.asarray(self.allowance_used, dtype=float),
            path_metrics=list(self.metrics),
            sorr_samples=list(self.sorr),
            sample_paths=list(self.sample_paths),
        )


def merge_chunks(chunks: Sequence[ChunkResult],
                 max_sample_paths: int = cfg.MAX_SAMPLE_PATHS) -> ChunkResult:
    """Concatenate raw samples of all chunks in start-index order."""
    if not chunks:
        raise ValueError("merge_chunks() needs at least one chunk")
    ordered = sorted(chunks, key=lambda c: c.start_idx)
    sample_paths = []
    for chunk in ordered:
        sample_paths.extend(chunk.sample_paths)
    return ChunkResult(
        start_idx=ordered[0].start_idx,
        monthly_totals=np.concatenate([c.monthly_totals for c in ordered], axis=0),
        monthly_totals_real=np.concatenate([c.monthly_totals_real for c in ordered], axis=0),
        retirement_totals=np.concatenate([c.retirement_totals for c in ordered]),
        retirement_totals_real=np.concatenate([c.retirement_totals_real for c in ordered]),
        final_loss_pot=np.concatenate([c.final_loss_pot for c in ordered]),
        final_allowance_used=np.concatenate([c.final_allowance_used for c in ordered]),
        path_metrics=[m for c in ordered for m in c.path_metrics],
        sorr_samples=[s for c in ordered for s in c.sorr_samples],
        sample_paths=sample_paths[:max_sample_paths],
    )


@dataclass(frozen=True)
class SorrSummary:
    risk_score: float
    early_bad_impact: float        # % of start wealth lost by the worst early quintile
    early_good_impact: float       # % of start wealth gained by the best early quintile
    correlation: float             # early return vs end wealth
    worst_sequence_end: float
    best_sequence_end: float
    vulnerability_window: int      # years


def analyze_sorr(samples: Sequence[SorrSample], withdrawal_years: int) -> SorrSummary:
    """Sequence-of-returns risk from early-window returns against end wealth."""
    window = min(cfg.SORR_WINDOW_YEARS, withdrawal_years)
    data = [s for s in samples if s.start_wealth > 0]
    if len(data) < cfg.SORR_MIN_SAMPLES:
        return SorrSummary(0.0, 0.0, 0.0, 0.0, 0.0, 0.0, window)

    data.sort(key=lambda s: s.early_return)
    quintile = len(data) // 5
    early = np.array([s.early_return for s in data])
    end = np.array([s.end_wealth for s in data])
    start = np.array([s.start_wealth for s in data])

    avg_all = end.mean()
    avg_worst = end[:quintile].mean()
    avg_best = end[-quintile:].mean()
    avg_start = start.mean()

    bad = (avg_all - avg_worst) / avg_start * 100 if avg_start > 0 else 0.0
    good = (avg_best - avg_all) / avg_start * 100 if avg_start > 0 else 0.0

    # pearsonr is undefined for a constant input
    if np.ptp(early) > 0 and np.ptp(end) > 0:
        correlation, _ = pearsonr(early, end)
    else:
        correlation = 0.0

    return SorrSummary(
        risk_score=abs(bad + good),
        early_bad_impact=float(bad),
        early_good_impact=float(good),
        correlation=float(correlation),
        worst_sequence_end=float(avg_worst),
        best_sequence_end=float(avg_best),
        vulnerability_window=window,
    )


@dataclass(frozen=True)
class MonteCarloResult:
    iterations: int
    months: np.ndarray
    accumulation_years: int
    percentiles: Dict[int, np.ndarray]
    percentiles_real: Dict[int, np.ndarray]

    median_end: float
    mean_end: float
    end_percentiles: Dict[int, float]
    median_end_real: float
    mean_end_real: float
    end_percentiles_real: Dict[int, float]

    retirement_median: float
    retirement_median_real: float

    median_avg_withdrawal_net: float
    median_avg_withdrawal_net_real: float
    median_avg_withdrawal_gross: float
    median_avg_withdrawal_gross_real: float
    median_total_withdrawal_net: float
    median_total_withdrawal_net_real: float
    median_total_withdrawal_gross: float
    median_total_withdrawal_gross_real: float

    success_rate: float
    soft_success_rate: float
    ruin_probability: float
    capital_preservation_rate: float
    capital_preservation_rate_real: float
    accumulation_shortfall_rate: float
    withdrawal_shortfall_rate: float

    emergency_fill_probability: float
    emergency_never_fill_probability: float
    emergency_median_fill_years: Optional[float]

    median_final_loss_pot: float
    median_final_allowance_used: float

    sorr: SorrSummary
    sample_paths: List[History]
    volatility: float = 0.0

    def summary(self) -> Dict:
        """Scalar figures kept for optimizer candidates."""
        return {
            'success_rate': self.success_rate,
            'ruin_probability': self.ruin_probability,
            'median_end': self.median_end,
            'median_end_real': self.median_end_real,
            'capital_preservation_rate': self.capital_preservation_rate,
            'capital_preservation_rate_real': self.capital_preservation_rate_real,
            'retirement_median': self.retirement_median,
            'retirement_median_real': self.retirement_median_real,
            'p10_end_real': self.end_percentiles_real[10],
            'p90_end_real': self.end_percentiles_real[90],
            'emergency_fill_probability': self.emergency_fill_probability,
            'emergency_never_fill_probability': self.emergency_never_fill_probability,
            'emergency_median_fill_years': self.emergency_median_fill_years,
        }


def _band(matrix: np.ndarray) -> Dict[int, np.ndarray]:
    if matrix.shape[0] == 0:
        return {p: np.zeros(matrix.shape[1]) for p in cfg.PERCENTILES}
    values = np.percentile(matrix, cfg.PERCENTILES, axis=0)
    return {p: values[i] for i, p in enumerate(cfg.PERCENTILES)}


def _sample_path_cap(mc_options: Optional[MonteCarloOptions]) -> int:
    return mc_options.max_sample_paths if mc_options is not None else cfg.MAX_SAMPLE_PATHS


def _rate(flags) -> float:
    flags = list(flags)
    return sum(1 for f in flags if f) / len(flags) * 100 if flags else 0.0


def aggregate_chunks(chunks: Sequence[ChunkResult], params: Parameters,
                     mc_options: Optional[MonteCarloOptions] = None) -> MonteCarloResult:
    """Final Monte Carlo statistics over the merged raw samples of all chunks."""
    merged = merge_chunks(chunks, _sample_path_cap(mc_options))
    n = merged.count
    metrics = merged.path_metrics

    final_totals = merged.monthly_totals[:, -1] if n else np.zeros(0)
    final_totals_real = merged.monthly_totals_real[:, -1] if n else np.zeros(0)

    paying = [m for m in metrics if m.total_withdrawal_gross > 0 or m.total_withdrawal_net > 0]

    def median_of(attr):
        return percentile([getattr(m, attr) for m in paying], 50) if paying else 0.0

    fill_years = [m.first_fill_month / cfg.MONTHS_PER_YEAR
                  for m in metrics if m.first_fill_month is not None]
    fill_probability = len(fill_years) / n * 100 if n else 0.0

    return MonteCarloResult(
        iterations=n,
        months=np.arange(1, params.total_months + 1),
        accumulation_years=params.accumulation_years,
        percentiles=_band(merged.monthly_totals),
        percentiles_real=_band(merged.monthly_totals_real),

        median_end=percentile(final_totals, 50),
        mean_end=float(final_totals.mean()) if n else 0.0,
        end_percentiles={p: percentile(final_totals, p) for p in cfg.PERCENTILES},
        median_end_real=percentile(final_totals_real, 50),
        mean_end_real=float(final_totals_real.mean()) if n else 0.0,
        end_percentiles_real={p: percentile(final_totals_real, p) for p in cfg.PERCENTILES},

        retirement_median=percentile(merged.retirement_totals, 50),
        retirement_median_real=percentile(merged.retirement_totals_real, 50),

        median_avg_withdrawal_net=median_of('avg_withdrawal_net'),
        median_avg_withdrawal_net_real=median_of('avg_withdrawal_net_real'),
        median_avg_withdrawal_gross=median_of('avg_withdrawal_gross'),
        median_avg_withdrawal_gross_real=median_of('avg_withdrawal_gross_real'),
        median_total_withdrawal_net=median_of('total_withdrawal_net'),
        median_total_withdrawal_net_real=median_of('total_withdrawal_net_real'),
        median_total_withdrawal_gross=median_of('total_withdrawal_gross'),
        median_total_withdrawal_gross_real=median_of('total_withdrawal_gross_real'),

        success_rate=_rate(m.success for m in metrics),
        soft_success_rate=_rate(m.soft_success for m in metrics),
        ruin_probability=_rate(m.is_ruin for m in metrics),
        capital_preservation_rate=_rate(m.capital_preserved for m in metrics),
        capital_preservation_rate_real=_rate(m.capital_preserved_real for m in metrics),
        accumulation_shortfall_rate=_rate(m.has_accumulation_shortfall for m in metrics),
        withdrawal_shortfall_rate=_rate(m.has_withdrawal_shortfall for m in metrics),

        emergency_fill_probability=fill_probability,
        emergency_never_fill_probability=100 - fill_probability,
        emergency_median_fill_years=median_or_none(fill_years),

        median_final_loss_pot=percentile(merged.final_loss_pot, 50),
        median_final_allowance_used=percentile(merged.final_allowance_used, 50),

        sorr=analyze_sorr(merged.sorr_samples, params.withdrawal_years),
        sample_paths=merged.sample_paths,
        volatility=mc_options.volatility if mc_options is not None else 0.0,
    )


def analyze_histories(histories: Sequence[History], params: Parameters,
                      mc_options: Optional[MonteCarloOptions] = None) -> MonteCarloResult:
    """Aggregate histories that are already in memory (single-process path)."""
    chunk = ChunkResult.from_histories(0, histories, params, mc_options,
                                       max_sample_paths=_sample_path_cap(mc_options))
    return aggregate_chunks([chunk], params, mc_options)

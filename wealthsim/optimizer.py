"""
Grid search over savings plans.

Two objectives:
  MAXIMIZE_PAYOUT  monthly budget fixed; search the cash/equity split and the
                   payout (fixed amount or percent of wealth)
  MINIMIZE_BUDGET  payout fixed; search the total budget and its cash share

Every candidate runs a full Monte Carlo. Candidate k always uses the base
seed candidate_seed(seed_base, k), so candidates are compared on common
random numbers and a rerun with the same seed_base reproduces every score,
whether candidates run serially or spread over the worker pool.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from tqdm import tqdm

from wealthsim import config as cfg
from wealthsim.mc_runner import resolve_seed, run_monte_carlo_serial
from wealthsim.params import (
    FixedPayout, MonteCarloOptions, Parameters, PercentOfWealthPayout,
)
from wealthsim.pool import ChunkProgress, ProgressUpdate, WorkerPool
from wealthsim.utils import clamp, round_half_up

NO_VIABLE_CANDIDATE = "no valid configuration found (all below target success)"

_GRID_EPS = 1e-9


class OptimizationObjective(Enum):
    MAXIMIZE_PAYOUT = "maximize_payout"
    MINIMIZE_BUDGET = "minimize_budget"


@dataclass(frozen=True)
class EmergencyConfig:
    """How the emergency cash goal enters the score."""
    weight: float = 4000.0
    max_fill_years: float = 10.0
    min_fill_probability: float = 0.0      # percent; 0 = no minimum
    hard_min_fill: bool = False            # True: below minimum disqualifies
    min_fill_penalty: float = 1e6


@dataclass(frozen=True)
class GridConfig:
    max_budget: Optional[float] = None     # None = current monthly budget
    cash_step: float = 50.0
    payout_step: float = 50.0
    payout_step_percent: float = 0.25
    payout_range: float = 0.5
    budget_step: float = 25.0
    budget_range: float = 0.5
    max_combinations: int = cfg.DEFAULT_MAX_COMBINATIONS
    target_success: float = cfg.DEFAULT_TARGET_SUCCESS
    emergency: EmergencyConfig = field(default_factory=EmergencyConfig)

    def budget_for(self, params: Parameters) -> float:
        if self.max_budget is not None:
            return self.max_budget
        return params.monthly_budget


@dataclass(frozen=True)
class Candidate:
    index: int
    params: Parameters
    overrides: Dict


@dataclass(frozen=True)
class ScoredCandidate:
    index: int
    params: Parameters
    overrides: Dict
    score: float
    summary: Dict

    @property
    def viable(self) -> bool:
        return self.score > -math.inf


@dataclass(frozen=True)
class EmergencyEvaluation:
    disqualify: bool
    contribution: float
    fill_probability: float
    median_fill_years: Optional[float]
    quality: Optional[float] = None


@dataclass(frozen=True)
class OptimizationResult:
    best: Optional[ScoredCandidate]
    evaluated: List[ScoredCandidate]
    disqualified: int
    message: str
    seed_base: int
    objective: OptimizationObjective


# ============================================================================
# CANDIDATES
# ============================================================================

class CandidateBuilder:
    """Collect candidates as overrides of a base Parameters, up to a cap."""

    def __init__(self, base: Parameters, max_combinations: int):
        self.base = base
        self.max_combinations = max_combinations
        self.candidates: List[Candidate] = []

    @property
    def full(self) -> bool:
        return len(self.candidates) >= self.max_combinations

    def add(self, **overrides) -> bool:
        """Add one candidate; returns False once the cap is reached."""
        if self.full:
            return False
        params = self.base.with_overrides(**overrides)
        self.candidates.append(Candidate(len(self.candidates), params, overrides))
        return not self.full


def _grid(start: float, stop: float, step: float) -> List[float]:
    values = []
    i = 0
    while start + i * step <= stop + _GRID_EPS:
        values.append(start + i * step)
        i += 1
    return values


def candidate_seed(seed_base: int, index: int) -> int:
    """Monte Carlo base seed of candidate `index`; deterministic and distinct per index."""
    state = np.random.SeedSequence([seed_base, index]).generate_state(1, dtype=np.uint64)
    return int(state[0])


# ============================================================================
# EMERGENCY GOAL
# ============================================================================

def evaluate_emergency(params: Parameters, summary: Dict,
                       emergency: Optional[EmergencyConfig] = None) -> EmergencyEvaluation:
    emergency = emergency or EmergencyConfig()
    has_goal = params.cash_target > 0
    fill_prob = summary.get('emergency_fill_probability') or 0.0
    median_years = summary.get('emergency_median_fill_years')

    if has_goal and fill_prob == 0:
        return EmergencyEvaluation(True, -math.inf, fill_prob, median_years)

    penalty = 0.0
    if has_goal and emergency.min_fill_probability > 0 and fill_prob < emergency.min_fill_probability:
        if emergency.hard_min_fill:
            return EmergencyEvaluation(True, -math.inf, fill_prob, median_years)
        penalty = emergency.min_fill_penalty

    prob_factor = clamp(fill_prob / 100, 0, 1) if has_goal else 1.0
    if not has_goal:
        t_norm = 1.0
    elif median_years is None:
        t_norm = 0.0
    else:
        max_years = emergency.max_fill_years
        t_norm = clamp((max_years - median_years) / max_years, 0, 1)

    quality = 0.6 * prob_factor + 0.4 * t_norm
    return EmergencyEvaluation(
        disqualify=False,
        contribution=quality * emergency.weight - penalty,
        fill_probability=fill_prob,
        median_fill_years=median_years,
        quality=quality,
    )


# ============================================================================
# STRATEGIES
# ============================================================================

class OptimizationStrategy:
    objective: OptimizationObjective

    def generate(self, params: Parameters, grid: GridConfig) -> List[Candidate]:
        raise NotImplementedError

    def objective_term(self, candidate: Candidate) -> float:
        raise NotImplementedError

    def score(self, candidate: Candidate, summary: Dict,
              target_success: float = cfg.DEFAULT_TARGET_SUCCESS,
              emergency: Optional[EmergencyConfig] = None) -> float:
        """
        -inf if the candidate misses the success target or the emergency goal;
        otherwise the objective term plus median real end wealth / 10000,
        minus 2 per percent of ruin probability, plus the emergency contribution.
        """
        if summary['success_rate'] < target_success:
            return -math.inf
        evaluation = evaluate_emergency(candidate.params, summary, emergency)
        if evaluation.disqualify:
            return -math.inf

        score = self.objective_term(candidate)
        score += (summary.get('median_end_real') or 0.0) / 10000
        score -= (summary.get('ruin_probability') or 0.0) * 2
        score += evaluation.contribution
        return score


class MaximizePayoutStrategy(OptimizationStrategy):
    objective = OptimizationObjective.MAXIMIZE_PAYOUT

    def generate(self, params: Parameters, grid: GridConfig) -> List[Candidate]:
        budget = grid.budget_for(params)
        builder = CandidateBuilder(params, grid.max_combinations)

        if isinstance(params.payout, PercentOfWealthPayout):
            current = params.payout.percent or 3.5
            low = max(1.0, current * (1 - grid.payout_range))
            high = min(8.0, current * (1 + grid.payout_range))
            payouts = [PercentOfWealthPayout(round_half_up(p, 2))
                       for p in _grid(low, high, grid.payout_step_percent)]
        else:
            current = params.fixed_payout_amount or 1000.0
            low = max(100.0, current * (1 - grid.payout_range))
            high = current * (1 + grid.payout_range)
            payouts = [FixedPayout(round_half_up(a))
                       for a in _grid(low, high, grid.payout_step)]

        for cash in _grid(0, budget, grid.cash_step):
            equity = budget - cash
            if equity < 0:
                continue
            for payout in payouts:
                if not builder.add(monthly_cash=cash, monthly_equity=equity, payout=payout):
                    return builder.candidates
        return builder.candidates

    def objective_term(self, candidate: Candidate) -> float:
        payout = candidate.params.payout
        if isinstance(payout, PercentOfWealthPayout):
            return payout.percent * 1000
        return payout.amount * 10


class MinimizeBudgetStrategy(OptimizationStrategy):
    objective = OptimizationObjective.MINIMIZE_BUDGET

    CASH_RATIOS = (0.0, 0.25, 0.5, 0.75, 1.0)

    def generate(self, params: Parameters, grid: GridConfig) -> List[Candidate]:
        reference = grid.budget_for(params)
        low = max(50.0, reference * (1 - grid.budget_range))
        high = reference * (1 + grid.budget_range)
        builder = CandidateBuilder(params, grid.max_combinations)

        for budget in _grid(low, high, grid.budget_step):
            for ratio in self.CASH_RATIOS:
                cash = round_half_up(budget * ratio)
                equity = round_half_up(budget - cash)
                if not builder.add(monthly_cash=cash, monthly_equity=equity):
                    return builder.candidates
        return builder.candidates

    def objective_term(self, candidate: Candidate) -> float:
        return -candidate.params.monthly_budget * 10


STRATEGIES = {
    OptimizationObjective.MAXIMIZE_PAYOUT: MaximizePayoutStrategy(),
    OptimizationObjective.MINIMIZE_BUDGET: MinimizeBudgetStrategy(),
}


def get_strategy(objective: OptimizationObjective) -> OptimizationStrategy:
    return STRATEGIES[OptimizationObjective(objective)]


# ============================================================================
# EVALUATION
# ============================================================================

def optimizer_mc_options(mc_options: Optional[MonteCarloOptions] = None) -> MonteCarloOptions:
    """Monte Carlo settings per candidate: user volatility, capped iteration count."""
    if mc_options is None:
        return MonteCarloOptions(iterations=cfg.OPTIMIZER_DEFAULT_ITERATIONS)
    iterations = min(mc_options.iterations or cfg.OPTIMIZER_DEFAULT_ITERATIONS,
                     cfg.OPTIMIZER_MAX_ITERATIONS)
    return mc_options.with_overrides(iterations=iterations)


def evaluate_candidate(candidate: Candidate, strategy: OptimizationStrategy,
                       grid: GridConfig, mc_options: MonteCarloOptions,
                       seed_base: int) -> ScoredCandidate:
    options = mc_options.with_overrides(seed=candidate_seed(seed_base, candidate.index))
    summary = run_monte_carlo_serial(candidate.params, options).summary()
    score = strategy.score(candidate, summary, grid.target_success, grid.emergency)
    return ScoredCandidate(candidate.index, candidate.params, candidate.overrides, score, summary)


def pick_best(scored: List[ScoredCandidate]) -> Optional[ScoredCandidate]:
    """Highest score among viable candidates; equal scores go to the lowest index."""
    best = None
    for candidate in scored:
        if not candidate.viable:
            continue
        if (best is None or candidate.score > best.score
                or (candidate.score == best.score and candidate.index < best.index)):
            best = candidate
    return best


def _result(objective, scored: List[ScoredCandidate], seed_base: int,
            best: Optional[ScoredCandidate] = None) -> OptimizationResult:
    scored = sorted(scored, key=lambda s: s.index)
    if best is None:
        best = pick_best(scored)
    disqualified = sum(1 for s in scored if not s.viable)
    if best is None:
        message = NO_VIABLE_CANDIDATE
    else:
        message = f"best of {len(scored)} candidates: #{best.index} (score {best.score:,.2f})"
    return OptimizationResult(best, scored, disqualified, message, seed_base,
                              OptimizationObjective(objective))


def optimize(params: Parameters,
             objective: OptimizationObjective = OptimizationObjective.MAXIMIZE_PAYOUT,
             mc_options: Optional[MonteCarloOptions] = None,
             grid: Optional[GridConfig] = None, seed_base: Optional[int] = None,
             show_progress: bool = True) -> OptimizationResult:
    """Evaluate every candidate in this process, in index order."""
    grid = grid or GridConfig()
    strategy = get_strategy(objective)
    mc_options = optimizer_mc_options(mc_options)
    seed_base = resolve_seed(seed_base)

    candidates = strategy.generate(params, grid)
    scored = []
    for candidate in tqdm(candidates, desc="Optimizer", unit="cand", disable=not show_progress):
        scored.append(evaluate_candidate(candidate, strategy, grid, mc_options, seed_base))
    return _result(objective, scored, seed_base)


# ============================================================================
# POOLED EVALUATION
# ============================================================================

@dataclass(frozen=True)
class CandidateChunkRequest:
    candidates: Tuple[Candidate, ...]
    objective: OptimizationObjective
    grid: GridConfig
    mc_options: MonteCarloOptions
    seed_base: int
    worker_id: int = 0

    @property
    def task_key(self) -> int:
        return self.candidates[0].index if self.candidates else -1


@dataclass(frozen=True)
class CandidateChunkResult:
    scored: List[ScoredCandidate]
    best: Optional[ScoredCandidate]


def run_candidate_chunk(request: CandidateChunkRequest, progress_queue=None) -> CandidateChunkResult:
    """Score one block of candidates; progress is posted after each candidate."""
    strategy = get_strategy(request.objective)
    scored = []
    for i, candidate in enumerate(request.candidates):
        scored.append(evaluate_candidate(candidate, strategy, request.grid,
                                         request.mc_options, request.seed_base))
        if progress_queue is not None:
            progress_queue.put(ChunkProgress(
                worker_id=request.worker_id,
                task_key=request.task_key,
                completed=i + 1,
                size=len(request.candidates),
            ))
    return CandidateChunkResult(scored, pick_best(scored))


def split_candidates(candidates: List[Candidate],
                     chunk_size: int = cfg.OPTIMIZER_CHUNK_SIZE) -> List[Tuple[Candidate, ...]]:
    return [tuple(candidates[i:i + chunk_size]) for i in range(0, len(candidates), chunk_size)]


def run_optimization(params: Parameters,
                     objective: OptimizationObjective = OptimizationObjective.MAXIMIZE_PAYOUT,
                     mc_options: Optional[MonteCarloOptions] = None,
                     grid: Optional[GridConfig] = None, seed_base: Optional[int] = None,
                     n_workers: Optional[int] = None,
                     progress: Optional[Callable[[ProgressUpdate], None]] = None,
                     cancel_event=None, executor=None,
                     show_progress: bool = True) -> OptimizationResult:
    """
    Evaluate the grid over the worker pool, a few candidates per task.

    Same candidates, seeds and scores as optimize(); the winner is picked from
    the per-chunk winners with the same lowest-index tie-break.
    """
    grid = grid or GridConfig()
    objective = OptimizationObjective(objective)
    strategy = get_strategy(objective)
    mc_options = optimizer_mc_options(mc_options)
    seed_base = resolve_seed(seed_base)
    pool_config = cfg.get_pool_config()
    n_workers = n_workers or pool_config.n_workers

    candidates = strategy.generate(params, grid)
    requests = [
        CandidateChunkRequest(chunk, objective, grid, mc_options, seed_base)
        for chunk in split_candidates(candidates, pool_config.optimizer_chunk_size)
    ]

    if show_progress:
        print(f"\n{'='*80}")
        print(f"OPTIMIZER: {objective.value}, {len(candidates)} candidates x "
              f"{mc_options.iterations:,} paths")
        print(f"{'='*80}")
        print(f"  Target success: {grid.target_success:.0f}%")
        print(f"  Workers: {n_workers}, seed base: {seed_base}")
        print()

    if not requests:
        return _result(objective, [], seed_base)

    with WorkerPool(n_workers, executor=executor, poll_seconds=pool_config.poll_seconds) as pool:
        chunk_results = pool.run(
            run_candidate_chunk, requests,
            task_size=lambda r: len(r.candidates),
            progress=progress,
            cancel_event=cancel_event,
            desc="Optimizer", unit="cand",
            show_progress=show_progress,
        )

    scored = [s for chunk in chunk_results for s in chunk.scored]
    best = pick_best([chunk.best for chunk in chunk_results if chunk.best is not None])
    return _result(objective, scored, seed_base, best)

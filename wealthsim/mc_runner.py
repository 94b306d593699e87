import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import numpy as np

from wealthsim import config as cfg
from wealthsim.analysis import ChunkBuilder, ChunkResult, MonteCarloResult, aggregate_chunks
from wealthsim.params import MonteCarloOptions, Parameters
from wealthsim.pool import ChunkProgress, ProgressUpdate, WorkerPool
from wealthsim.simulation.engine import SimulationOptions, simulate


@dataclass(frozen=True)
class ChunkRequest:
    """Work order for one block of iterations: paths start_idx .. start_idx + count - 1."""
    params: Parameters
    mc_options: MonteCarloOptions
    start_idx: int
    count: int
    base_seed: int
    worker_id: int = 0

    @property
    def task_key(self) -> int:
        return self.start_idx


def path_rng(base_seed: int, path_idx: int) -> np.random.Generator:
    """Independent generator for path `path_idx` of a run seeded with `base_seed`."""
    return np.random.default_rng(np.random.SeedSequence([base_seed, path_idx]))


def resolve_seed(seed: Optional[int]) -> int:
    """Keep an explicit seed; draw a fresh one from OS entropy otherwise."""
    if seed is not None:
        return seed
    return int(np.random.SeedSequence().generate_state(1)[0])


def split_chunks(iterations: int, chunk_size: int = cfg.MC_CHUNK_SIZE) -> List[Tuple[int, int]]:
    """Fixed-size (start_idx, count) blocks; the last one may be shorter."""
    chunks = []
    start = 0
    while start < iterations:
        count = min(chunk_size, iterations - start)
        chunks.append((start, count))
        start += count
    return chunks


def run_simulation_chunk(request: ChunkRequest, progress_queue=None) -> ChunkResult:
    """
    Simulate one chunk and return its raw per-path values.

    Path i is seeded from (base_seed, start_idx + i), so a path's draws do not
    depend on how iterations were split into chunks. Progress is posted every
    PROGRESS_BATCH_SIZE paths, at most once per PROGRESS_THROTTLE_SECONDS.
    """
    params = request.params
    mc_options = request.mc_options
    sim_options = SimulationOptions(stress_scenario=mc_options.stress_scenario)
    builder = ChunkBuilder(request.start_idx, params, mc_options,
                           min(cfg.MAX_SAMPLE_PATHS_PER_CHUNK, mc_options.max_sample_paths))
    last_post = 0.0

    for i in range(request.count):
        rng = path_rng(request.base_seed, request.start_idx + i)
        history = simulate(params, mc_options.volatility, sim_options, rng=rng)
        builder.add(history)

        last = i == request.count - 1
        if progress_queue is not None and ((i + 1) % cfg.PROGRESS_BATCH_SIZE == 0 or last):
            now = time.monotonic()
            if now - last_post >= cfg.PROGRESS_THROTTLE_SECONDS or last:
                last_post = now
                progress_queue.put(ChunkProgress(
                    worker_id=request.worker_id,
                    task_key=request.task_key,
                    completed=i + 1,
                    size=request.count,
                ))

    return builder.build()


def build_requests(params: Parameters, mc_options: MonteCarloOptions) -> List[ChunkRequest]:
    return [
        ChunkRequest(params, mc_options, start, count, mc_options.seed)
        for start, count in split_chunks(mc_options.iterations, mc_options.chunk_size)
    ]


def run_monte_carlo(params: Parameters, mc_options: Optional[MonteCarloOptions] = None,
                    n_workers: Optional[int] = None,
                    progress: Optional[Callable[[ProgressUpdate], None]] = None,
                    cancel_event=None, executor=None,
                    show_progress: bool = True) -> MonteCarloResult:
    """
    Parallel Monte Carlo over the worker pool.

    Raises WorkerError if any chunk fails and SimulationCancelled if
    `cancel_event` gets set; neither returns a partial result.
    """
    mc_options = mc_options or MonteCarloOptions()
    mc_options = mc_options.with_overrides(seed=resolve_seed(mc_options.seed))
    requests = build_requests(params, mc_options)
    pool_config = cfg.get_pool_config()
    n_workers = n_workers or pool_config.n_workers

    if show_progress:
        print(f"\n{'='*80}")
        print(f"MONTE CARLO: {mc_options.iterations:,} paths x "
              f"{params.accumulation_years}+{params.withdrawal_years}Y, "
              f"volatility {mc_options.volatility:.1f}%")
        print(f"{'='*80}")
        print(f"  Workers: {n_workers}, chunks: {len(requests)} x {mc_options.chunk_size}")
        print(f"  Seed: {mc_options.seed}")
        if mc_options.stress_scenario != 'none':
            print(f"  Stress scenario: {cfg.STRESS_SCENARIOS[mc_options.stress_scenario]['name']}")
        print()

    with WorkerPool(n_workers, executor=executor, poll_seconds=pool_config.poll_seconds) as pool:
        chunks = pool.run(
            run_simulation_chunk, requests,
            task_size=lambda r: r.count,
            progress=progress,
            cancel_event=cancel_event,
            desc="MC", unit="path",
            show_progress=show_progress,
        )

    return aggregate_chunks(chunks, params, mc_options)


def run_monte_carlo_serial(params: Parameters,
                           mc_options: Optional[MonteCarloOptions] = None) -> MonteCarloResult:
    """Same chunks and seeds as run_monte_carlo(), run in this process."""
    mc_options = mc_options or MonteCarloOptions()
    mc_options = mc_options.with_overrides(seed=resolve_seed(mc_options.seed))
    chunks = [run_simulation_chunk(r) for r in build_requests(params, mc_options)]
    return aggregate_chunks(chunks, params, mc_options)

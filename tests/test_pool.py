import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np
import pytest

from wealthsim.config import get_pool_size
from wealthsim.mc_runner import (
    ChunkRequest, resolve_seed, run_monte_carlo, run_monte_carlo_serial,
    run_simulation_chunk, split_chunks,
)
from wealthsim.params import MonteCarloOptions, Parameters
from wealthsim.pool import ChunkProgress, SimulationCancelled, WorkerError, WorkerPool
from wealthsim.utils import EtaTracker


@dataclass(frozen=True)
class _Task:
    key: int
    size: int = 1
    fail: bool = False
    delay: float = 0.0
    worker_id: int = 0

    @property
    def task_key(self):
        return self.key


def _work(task, progress_queue):
    time.sleep(task.delay)
    if task.fail:
        raise ValueError(f"task {task.key} broke")
    progress_queue.put(ChunkProgress(task.worker_id, task.task_key, task.size, task.size))
    return task.key, task.worker_id


def _stepped_work(task, progress_queue):
    for step in range(1, task.size + 1):
        time.sleep(task.delay)
        progress_queue.put(ChunkProgress(task.worker_id, task.task_key, step, task.size))
    return task.key, task.worker_id


SMALL = Parameters(accumulation_years=2, withdrawal_years=2)
SMALL_MC = MonteCarloOptions(iterations=30, volatility=15.0, seed=123, chunk_size=10)


@pytest.mark.parametrize("available, expected", [(1, 2), (2, 2), (4, 3), (9, 8), (64, 8)])
def test_pool_size_bounds(available, expected):
    assert get_pool_size(available) == expected


def test_split_chunks():
    assert split_chunks(25, 10) == [(0, 10), (10, 10), (20, 5)]
    assert split_chunks(10, 10) == [(0, 10)]
    assert split_chunks(0, 10) == []


def test_resolve_seed():
    assert resolve_seed(5) == 5
    assert isinstance(resolve_seed(None), int)


def test_all_tasks_complete_with_reassignment():
    tasks = [_Task(k, delay=0.01 * (k % 3)) for k in range(7)]
    seen = []
    with ThreadPoolExecutor(max_workers=2) as executor:
        with WorkerPool(2, executor=executor, poll_seconds=0.01) as pool:
            results = pool.run(_work, tasks, task_size=lambda t: t.size,
                               on_result=seen.append, show_progress=False)
    assert sorted(key for key, _ in results) == list(range(7))
    assert {slot for _, slot in results} <= {0, 1}
    assert len(seen) == 7


def test_progress_reaches_total():
    updates = []
    tasks = [_Task(k, size=5) for k in range(4)]
    with ThreadPoolExecutor(max_workers=2) as executor:
        with WorkerPool(2, executor=executor, poll_seconds=0.01) as pool:
            pool.run(_work, tasks, task_size=lambda t: t.size,
                     progress=updates.append, show_progress=False)
    assert updates
    assert updates[-1].current == 20
    assert updates[-1].total == 20
    assert updates[-1].percent == 100
    currents = [u.current for u in updates]
    assert currents == sorted(currents)


def test_worker_failure_aborts_run():
    tasks = [_Task(0), _Task(1, fail=True), _Task(2)]
    with ThreadPoolExecutor(max_workers=2) as executor:
        pool = WorkerPool(2, executor=executor, poll_seconds=0.01)
        with pytest.raises(WorkerError) as excinfo:
            pool.run(_work, tasks, task_size=lambda t: t.size, show_progress=False)
    assert isinstance(excinfo.value.__cause__, ValueError)
    with pytest.raises(RuntimeError):
        pool.run(_work, tasks, task_size=lambda t: t.size, show_progress=False)


def test_cancellation_discards_results():
    cancel = threading.Event()
    cancel.set()
    tasks = [_Task(k, delay=0.05) for k in range(4)]
    with ThreadPoolExecutor(max_workers=2) as executor:
        pool = WorkerPool(2, executor=executor, poll_seconds=0.01)
        with pytest.raises(SimulationCancelled):
            pool.run(_work, tasks, task_size=lambda t: t.size,
                     cancel_event=cancel, show_progress=False)


def test_chunk_posts_progress():
    class _Collector:
        def __init__(self):
            self.messages = []

        def put(self, message):
            self.messages.append(message)

    collector = _Collector()
    request = ChunkRequest(SMALL, SMALL_MC, start_idx=10, count=5, base_seed=1, worker_id=3)
    chunk = run_simulation_chunk(request, collector)
    assert chunk.count == 5
    assert chunk.start_idx == 10
    assert collector.messages[-1] == ChunkProgress(3, 10, 5, 5)


def test_paths_do_not_depend_on_chunking():
    whole = run_simulation_chunk(ChunkRequest(SMALL, SMALL_MC, 0, 20, base_seed=9))
    tail = run_simulation_chunk(ChunkRequest(SMALL, SMALL_MC, 10, 10, base_seed=9))
    np.testing.assert_array_equal(whole.monthly_totals[10:], tail.monthly_totals)


def test_pooled_run_matches_serial_run():
    serial = run_monte_carlo_serial(SMALL, SMALL_MC)
    with ThreadPoolExecutor(max_workers=3) as executor:
        pooled = run_monte_carlo(SMALL, SMALL_MC, n_workers=3, executor=executor,
                                 show_progress=False)
    assert pooled.iterations == serial.iterations == 30
    assert pooled.success_rate == serial.success_rate
    assert pooled.median_end == serial.median_end
    for p in serial.percentiles:
        np.testing.assert_array_equal(pooled.percentiles[p], serial.percentiles[p])


def test_process_pool_matches_serial_run():
    options = SMALL_MC.with_overrides(iterations=20)
    serial = run_monte_carlo_serial(SMALL, options)
    pooled = run_monte_carlo(SMALL, options, n_workers=2, show_progress=False)
    assert pooled.median_end == serial.median_end
    assert pooled.success_rate == serial.success_rate


def test_eta_tracker_samples_between_frequent_updates():
    now = [0.0]
    tracker = EtaTracker(min_samples=3, min_elapsed=1.5, min_delta=0.2, clock=lambda: now[0])
    tracker.start(100)
    # An update every 0.125 s, 40 paths/s; only every second one is far enough apart
    for step in range(1, 17):
        now[0] = step * 0.125
        tracker.update(step * 5)
    assert tracker.samples == 8
    assert tracker.eta_seconds() == pytest.approx(20 / 40)


def test_eta_tracker_waits_for_enough_samples():
    now = [0.0]
    tracker = EtaTracker(min_samples=3, min_elapsed=1.5, min_delta=0.2, clock=lambda: now[0])
    tracker.start(100)
    now[0] = 0.5
    tracker.update(10)
    assert tracker.eta_seconds() is None
    tracker.stop()
    assert tracker.eta_seconds() is None


def test_progress_updates_carry_eta():
    updates = []
    tasks = [_Task(k, size=25, delay=0.1) for k in range(2)]
    with ThreadPoolExecutor(max_workers=2) as executor:
        with WorkerPool(2, executor=executor, poll_seconds=0.05) as pool:
            pool.run(_stepped_work, tasks, task_size=lambda t: t.size,
                     progress=updates.append, show_progress=False)
    assert any(u.eta_seconds is not None for u in updates)
    assert any(u.eta for u in updates)


def test_injected_executor_survives_failure():
    tasks = [_Task(0), _Task(1, fail=True), _Task(2)]
    with ThreadPoolExecutor(max_workers=2) as executor:
        pool = WorkerPool(2, executor=executor, poll_seconds=0.01)
        with pytest.raises(WorkerError):
            pool.run(_work, tasks, task_size=lambda t: t.size, show_progress=False)
        # Still usable by its owner
        assert executor.submit(lambda: 7).result() == 7


def test_sample_paths_capped_across_chunks():
    result = run_monte_carlo_serial(SMALL, SMALL_MC.with_overrides(max_sample_paths=3))
    assert len(result.sample_paths) == 3

"""
Chunked worker pool.

One controller owns the task queue and the results; workers run
self-contained tasks and only talk back through a progress queue. A slot
that finishes a task immediately gets the next pending one. The first
failing task aborts the whole run; cancellation is checked between
await steps, so it takes effect within one task's runtime.
"""

import multiprocessing
import queue
import traceback
from collections import deque
from concurrent.futures import FIRST_COMPLETED, wait
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

from joblib.externals.loky import ProcessPoolExecutor as LokyExecutor
from tqdm import tqdm

from wealthsim import config as cfg
from wealthsim.utils import EtaTracker, format_eta


class WorkerError(RuntimeError):
    """A worker task failed; the run was aborted and no result is available."""


class SimulationCancelled(Exception):
    """The run was cancelled; finished but unmerged results were discarded."""


@dataclass(frozen=True)
class ChunkProgress:
    """Progress message posted by a worker while it runs one task."""
    worker_id: int
    task_key: int
    completed: int
    size: int


@dataclass(frozen=True)
class ProgressUpdate:
    current: int
    total: int
    percent: int
    eta_seconds: Optional[float]
    eta: str


class WorkerPool:
    """
    Run tasks on a pool of `n_workers` slots with continuous reassignment.

    By default tasks go to a loky process executor and progress travels over
    a manager queue. An executor can be injected instead (a thread pool in
    tests, for example); it then gets a plain in-process queue unless
    `progress_queue` is given.

    Tasks must be dataclasses with `worker_id` and `task_key` fields/properties;
    `fn(task, progress_queue)` returns the task's result.
    """

    def __init__(self, n_workers: Optional[int] = None, executor=None,
                 progress_queue=None, poll_seconds: float = cfg.POOL_POLL_SECONDS):
        self.n_workers = n_workers or cfg.N_WORKERS
        self.poll_seconds = poll_seconds
        self._executor = executor
        self._owns_executor = executor is None
        self._progress_queue = progress_queue
        self._manager = None
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def _ensure_started(self):
        if self._closed:
            raise RuntimeError("WorkerPool has been closed")
        if self._executor is None:
            self._executor = LokyExecutor(max_workers=self.n_workers)
        if self._progress_queue is None:
            if self._owns_executor:
                self._manager = multiprocessing.Manager()
                self._progress_queue = self._manager.Queue()
            else:
                self._progress_queue = queue.Queue()

    def terminate(self):
        """
        Stop all workers without waiting for running tasks.

        An injected executor belongs to the caller and is left running; only
        the futures this pool submitted get cancelled (see run()).
        """
        if self._executor is not None and self._owns_executor:
            self._executor.shutdown(wait=False, kill_workers=True)
        self._executor = None
        self._shutdown_manager()
        self._closed = True

    def close(self):
        if self._closed:
            return
        if self._executor is not None and self._owns_executor:
            self._executor.shutdown(wait=True)
        self._executor = None
        self._shutdown_manager()
        self._closed = True

    def _shutdown_manager(self):
        if self._manager is not None:
            self._manager.shutdown()
            self._manager = None

    def _drain_progress(self, slot_keys: Dict[int, int], in_flight: Dict[int, int]):
        while True:
            try:
                msg = self._progress_queue.get_nowait()
            except queue.Empty:
                return
            # Messages from a slot's previous task are stale
            if slot_keys.get(msg.worker_id) == msg.task_key:
                in_flight[msg.worker_id] = msg.completed

    def run(self, fn: Callable, tasks: List, task_size: Callable,
            on_result: Optional[Callable] = None,
            progress: Optional[Callable[[ProgressUpdate], None]] = None,
            cancel_event=None, desc: str = "Chunks", unit: str = "it",
            show_progress: bool = True) -> List:
        """
        Run every task and return the results in completion order.

        Raises WorkerError on the first failing task and SimulationCancelled
        when `cancel_event` is set; in both cases all workers are terminated
        and nothing is returned.
        """
        self._ensure_started()
        pending = deque(tasks)
        total = sum(task_size(t) for t in tasks)
        running = {}
        slot_keys = {}
        in_flight = {}
        results = []
        completed = 0
        last_reported = -1

        eta = EtaTracker()
        eta.start(total)
        bar = tqdm(total=total, desc=desc, unit=unit, disable=not show_progress)

        def submit(slot):
            task = replace(pending.popleft(), worker_id=slot)
            slot_keys[slot] = task.task_key
            in_flight[slot] = 0
            future = self._executor.submit(fn, task, self._progress_queue)
            running[future] = (slot, task)

        def report():
            nonlocal last_reported
            current = min(completed + sum(in_flight.values()), total)
            if current == last_reported:
                return
            last_reported = current
            eta.update(current)
            if current > bar.n:
                bar.update(current - bar.n)
            if progress is not None:
                eta_seconds = eta.eta_seconds()
                progress(ProgressUpdate(
                    current=current,
                    total=total,
                    percent=round(current / total * 100) if total else 100,
                    eta_seconds=eta_seconds,
                    eta=format_eta(eta_seconds),
                ))

        try:
            for slot in range(self.n_workers):
                if not pending:
                    break
                submit(slot)

            while running:
                if cancel_event is not None and cancel_event.is_set():
                    raise SimulationCancelled("run cancelled")

                done, _ = wait(list(running), timeout=self.poll_seconds,
                               return_when=FIRST_COMPLETED)
                self._drain_progress(slot_keys, in_flight)

                for future in done:
                    slot, task = running.pop(future)
                    exc = future.exception()
                    if exc is not None:
                        if cfg.DEBUG:
                            traceback.print_exception(type(exc), exc, exc.__traceback__)
                        raise WorkerError(
                            f"worker {slot} failed on task {task.task_key}: {exc}"
                        ) from exc
                    result = future.result()
                    results.append(result)
                    completed += task_size(task)
                    in_flight[slot] = 0
                    slot_keys.pop(slot, None)
                    if on_result is not None:
                        on_result(result)
                    if pending:
                        submit(slot)

                report()

            if cancel_event is not None and cancel_event.is_set():
                raise SimulationCancelled("run cancelled")
        except BaseException:
            for future in running:
                future.cancel()
            eta.stop()
            self.terminate()
            raise
        finally:
            bar.close()

        eta.stop()
        return results

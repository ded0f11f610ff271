from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional

import queue
import threading

from ..buffers import Trajectory
from ..errors import LearnerError, WorkerCrashedError
from ..networks import DiscretePolicy
from ..utils import Report
from .env_runner import EnvCreateFn, EnvRunner, StepCallback


@dataclass
class CollectionResult:
    """
    Output of one :meth:`AgentManager.collect_timesteps` call.

    Attributes
    ----------
    trajectories:
        Finished trajectory windows from every worker, in no particular order.
    reports:
        One collection report per worker.
    timesteps:
        Total environment steps contained in ``trajectories``.
    """

    trajectories: List[Trajectory] = field(default_factory=list)
    reports: List[Report] = field(default_factory=list)
    timesteps: int = 0


class AgentManager:
    """
    Pool of environment workers backed by Python threads.

    Each worker owns an :class:`EnvRunner`. Between collection calls every worker
    is paused, so the learner can update the master policy without locks. At the
    start of each :meth:`collect_timesteps` call the master parameters are copied
    into every replica before any worker takes a step.

    Parameters
    ----------
    env_create_fn : Callable[[int], Any]
        Environment factory receiving the worker index.
    policy : DiscretePolicy
        Master policy (read only from this class).
    num_workers : int
        Number of workers.
    seed : int, default=0
        Worker ``i`` seeds its first reset with ``seed + i``.
    deterministic : bool, default=False
        Argmax actions in every worker.
    max_consecutive_env_errors : int, default=10
        Forwarded to each :class:`EnvRunner`.
    step_callback : Callable, optional
        Forwarded to each :class:`EnvRunner`; runs on worker threads.
    poll_interval : float, default=0.05
        Seconds a paused worker or the waiting learner sleeps between checks.

    Notes
    -----
    Workers hand step notifications and errors to the learner through a
    ``queue.Queue``; trajectories are collected from the paused runners after
    the target is reached, so only the learner thread touches them.
    """

    def __init__(
        self,
        env_create_fn: EnvCreateFn,
        policy: DiscretePolicy,
        num_workers: int,
        *,
        seed: int = 0,
        deterministic: bool = False,
        max_consecutive_env_errors: int = 10,
        step_callback: Optional[StepCallback] = None,
        poll_interval: float = 0.05,
    ) -> None:
        if int(num_workers) <= 0:
            raise ValueError(f"num_workers must be positive, got {num_workers}")

        self.env_create_fn = env_create_fn
        self.policy = policy
        self.num_workers = int(num_workers)
        self.seed = int(seed)
        self.deterministic = bool(deterministic)
        self.max_consecutive_env_errors = int(max_consecutive_env_errors)
        self.step_callback = step_callback
        self.poll_interval = float(poll_interval)

        self.runners: List[EnvRunner] = []
        self.policy_version = 0

        self._threads: List[threading.Thread] = []
        self._idle: List[threading.Event] = []
        self._collecting = threading.Event()
        self._stop = threading.Event()
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """
        Build every runner, then start one daemon thread per runner.

        Raises
        ------
        WorkerInitError
            If any environment or replica cannot be created. No thread is started
            in that case and the runners built so far are closed.
        """
        if self._started:
            return

        arch = self.policy.architecture()
        try:
            for i in range(self.num_workers):
                self.runners.append(
                    EnvRunner(
                        self.env_create_fn,
                        arch,
                        i,
                        seed=self.seed + i,
                        deterministic=self.deterministic,
                        max_consecutive_env_errors=self.max_consecutive_env_errors,
                        step_callback=self.step_callback,
                    )
                )
        except LearnerError:
            self._close_runners()
            raise

        for i, runner in enumerate(self.runners):
            idle = threading.Event()
            idle.set()
            self._idle.append(idle)
            t = threading.Thread(
                target=self._worker_loop,
                args=(runner, idle),
                name=f"discrete_ppo-worker-{i}",
                daemon=True,
            )
            self._threads.append(t)
            t.start()

        self._started = True

    def _worker_loop(self, runner: EnvRunner, idle: threading.Event) -> None:
        try:
            while not self._stop.is_set():
                if not self._collecting.is_set():
                    idle.set()
                    self._collecting.wait(self.poll_interval)
                    continue

                idle.clear()
                # Re-check after announcing activity; the learner may have paused us.
                if not self._collecting.is_set() or self._stop.is_set():
                    continue

                n = runner.step()
                if n:
                    self._queue.put(("steps", runner.worker_index, n))
        except Exception as e:
            self._queue.put(("error", runner.worker_index, e))
        finally:
            idle.set()

    def stop(self) -> None:
        """Cooperative stop: workers exit after their current step."""
        self._stop.set()
        self._collecting.clear()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def close(self) -> None:
        """Stop workers, join threads and close every environment."""
        self.stop()
        for t in self._threads:
            t.join(timeout=5.0)
        self._threads = []
        for r in self.runners:
            r.close()

    def _close_runners(self) -> None:
        for r in self.runners:
            r.close()
        self.runners = []

    def __enter__(self) -> "AgentManager":
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------
    def _wait_idle(self) -> None:
        for ev in self._idle:
            ev.wait()

    def _raise_worker_error(self, worker_index: int, err: BaseException) -> None:
        self._collecting.clear()
        if isinstance(err, LearnerError):
            raise err
        raise WorkerCrashedError(
            f"worker {worker_index} crashed: {type(err).__name__}: {err}", worker_index=worker_index
        ) from err

    def sync_policies(self) -> None:
        """Copy the master policy into every (paused) replica."""
        self.policy_version += 1
        for runner in self.runners:
            runner.sync_policy(self.policy)

    def collect_timesteps(self, target: int) -> CollectionResult:
        """
        Block until at least ``target`` environment steps were produced.

        Parameters
        ----------
        target : int
            Minimum number of steps summed over all workers.

        Returns
        -------
        CollectionResult
            Trajectories, per-worker reports and the number of steps collected.
            After :meth:`stop`, whatever was produced so far is returned.

        Raises
        ------
        EnvRunnerError
            If a worker's environment keeps failing.
        WorkerCrashedError
            If a worker thread died on any other error.
        """
        if not self._started:
            self.start()
        if self._stop.is_set():
            return CollectionResult()

        self._wait_idle()
        self.sync_policies()

        produced = 0
        self._collecting.set()
        while produced < int(target) and not self._stop.is_set():
            try:
                kind, idx, payload = self._queue.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            if kind == "error":
                self._raise_worker_error(idx, payload)
            produced += int(payload)

        self._collecting.clear()
        self._wait_idle()

        # Late notifications only matter for errors; step counts come from the trajectories.
        while True:
            try:
                kind, idx, payload = self._queue.get_nowait()
            except queue.Empty:
                break
            if kind == "error":
                self._raise_worker_error(idx, payload)

        result = CollectionResult()
        for runner in self.runners:
            trajs, report = runner.take_results()
            result.trajectories.extend(trajs)
            result.reports.append(report)
        result.timesteps = int(sum(len(t) for t in result.trajectories))
        return result

    def get_all_game_metrics(self) -> List[Report]:
        """Lifetime metrics of every worker, in worker order."""
        return [r.game_metrics() for r in self.runners]

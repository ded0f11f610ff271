from __future__ import annotations

from typing import Any, List, Optional

import math

import ray
from ray.exceptions import RayActorError, RayTaskError

from ..errors import LearnerError, WorkerCrashedError, WorkerInitError
from ..networks import DiscretePolicy
from ..utils import Report
from .agent_manager import CollectionResult
from .env_runner import EnvCreateFn, EnvRunner, StepCallback


RayEnvWorker = ray.remote(EnvRunner)


class RayAgentManager:
    """
    Pool of environment workers backed by Ray actors.

    Same contract as :class:`AgentManager`, with one ``EnvRunner`` per actor
    process. Policy parameters are broadcast through the object store
    (``ray.put(policy.parameter_snapshot())``) at the start of each
    :meth:`collect_timesteps` call; the requested step count is split evenly
    across actors per round, and the stop flag is checked between rounds.

    Parameters
    ----------
    env_create_fn : Callable[[int], Any]
        Environment factory. Must be serializable by Ray.
    policy : DiscretePolicy
        Master policy (read only from this class).
    num_workers : int
        Number of actors.
    seed : int, default=0
        Actor ``i`` seeds its first reset with ``seed + i``.
    deterministic : bool, default=False
        Argmax actions in every actor.
    max_consecutive_env_errors : int, default=10
        Forwarded to each runner.
    step_callback : Callable, optional
        Forwarded to each runner; must be serializable by Ray.

    Notes
    -----
    Ray is initialized on :meth:`start` if it is not already running.
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

        self.workers: List[Any] = []
        self.policy_version = 0
        self._stopped = False
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """
        Create every actor and wait until all of them are constructed.

        Raises
        ------
        WorkerInitError
            If any actor fails during construction.
        """
        if self._started:
            return
        if not ray.is_initialized():
            ray.init(ignore_reinit_error=True, include_dashboard=False, log_to_driver=False)

        arch_ref = ray.put(self.policy.architecture())
        self.workers = [
            RayEnvWorker.remote(
                self.env_create_fn,
                arch_ref,
                i,
                seed=self.seed + i,
                deterministic=self.deterministic,
                max_consecutive_env_errors=self.max_consecutive_env_errors,
                step_callback=self.step_callback,
            )
            for i in range(self.num_workers)
        ]

        # Actor construction errors surface on the first method call.
        for i, w in enumerate(self.workers):
            try:
                ray.get(w.game_metrics.remote())
            except (RayActorError, RayTaskError) as e:
                self._kill_workers()
                raise WorkerInitError(f"ray worker {i} failed to start: {e}", worker_index=i) from e

        self._started = True

    def stop(self) -> None:
        """Cooperative stop, observed between collection rounds."""
        self._stopped = True

    @property
    def stopped(self) -> bool:
        return self._stopped

    def _kill_workers(self) -> None:
        for w in self.workers:
            ray.kill(w)
        self.workers = []

    def close(self) -> None:
        self.stop()
        if self.workers:
            ray.get([w.close.remote() for w in self.workers])
            self._kill_workers()

    def __enter__(self) -> "RayAgentManager":
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------
    def sync_policies(self) -> None:
        """Broadcast the master parameters to every actor."""
        self.policy_version += 1
        params_ref = ray.put(self.policy.parameter_snapshot())
        ray.get([w.load_policy_snapshot.remote(params_ref) for w in self.workers])

    def _gather(self, futures: List[Any]) -> List[Any]:
        try:
            return ray.get(futures)
        except RayTaskError as e:
            if isinstance(e, LearnerError):
                raise
            raise WorkerCrashedError(f"ray worker crashed: {e}") from e
        except RayActorError as e:
            raise WorkerCrashedError(f"ray worker died: {e}") from e

    def collect_timesteps(self, target: int) -> CollectionResult:
        """
        Collect at least ``target`` steps summed over all actors.

        Raises
        ------
        EnvRunnerError
            If an actor's environment keeps failing.
        WorkerCrashedError
            If an actor died or raised any other error.
        """
        if not self._started:
            self.start()
        if self._stopped:
            return CollectionResult()

        self.sync_policies()

        result = CollectionResult()
        merged = [Report() for _ in self.workers]
        produced = 0
        while produced < int(target) and not self._stopped:
            per_worker = max(1, int(math.ceil((int(target) - produced) / self.num_workers)))
            chunks = self._gather([w.rollout.remote(per_worker) for w in self.workers])
            for i, (trajs, report, n) in enumerate(chunks):
                result.trajectories.extend(trajs)
                for k, v in report.items():
                    merged[i].accum(k, v)
                produced += int(n)

        result.reports = merged
        result.timesteps = int(sum(len(t) for t in result.trajectories))
        return result

    def get_all_game_metrics(self) -> List[Report]:
        if not self.workers:
            return []
        return self._gather([w.game_metrics.remote() for w in self.workers])

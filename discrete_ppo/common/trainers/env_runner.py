from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import torch as th

from ..buffers import Trajectory, TrajectoryBuilder
from ..errors import EnvRunnerError, EnvStepError, WorkerInitError
from ..networks import DiscretePolicy
from ..utils import Report
from ..utils.train_utils import _env_reset, _unpack_step

EnvCreateFn = Callable[[int], Any]
StepCallback = Callable[["EnvRunner", Dict[str, Any], Report], None]


class EnvRunner:
    """
    Single-environment experience collector with a private policy replica.

    One runner exists per worker. It owns its environment (built with
    ``env_create_fn(worker_index)``) and a :class:`DiscretePolicy` replica that is
    only ever written through the policy copy contract (``copy_to`` or a
    parameter snapshot). The master policy is never touched from here.

    Parameters
    ----------
    env_create_fn : Callable[[int], Any]
        Environment factory receiving the worker index.
    policy_arch : Mapping[str, Any]
        Constructor kwargs of the replica (``DiscretePolicy.architecture()``).
    worker_index : int
        Index of this worker.
    seed : int, optional
        Seed passed to the first ``env.reset``.
    deterministic : bool, default=False
        Take argmax actions instead of sampling.
    max_consecutive_env_errors : int, default=10
        Env failures in a row tolerated before :class:`EnvRunnerError`.
    step_callback : Callable, optional
        ``fn(runner, info, report)`` called after every successful env step, on
        the worker's own thread. ``report`` is the runner's current collection
        report, so the callback can add custom per-worker metrics.
    device : str | torch.device, default="cpu"
        Device of the replica.

    Raises
    ------
    WorkerInitError
        If the environment factory or the replica construction fails.

    Notes
    -----
    Failure handling
    ----------------
    Any exception raised by ``env.reset``/``env.step`` (or a malformed step
    output) is wrapped as :class:`EnvStepError` and absorbed: the current window
    is closed as truncated, ``Env Errors`` is incremented and the next step starts
    a new episode. The counter of consecutive failures resets after a successful
    step.
    """

    def __init__(
        self,
        env_create_fn: EnvCreateFn,
        policy_arch: Mapping[str, Any],
        worker_index: int,
        *,
        seed: Optional[int] = None,
        deterministic: bool = False,
        max_consecutive_env_errors: int = 10,
        step_callback: Optional[StepCallback] = None,
        device: Union[str, th.device] = "cpu",
    ) -> None:
        self.worker_index = int(worker_index)
        self.deterministic = bool(deterministic)
        self.max_consecutive_env_errors = int(max_consecutive_env_errors)
        self.step_callback = step_callback
        self._seed = None if seed is None else int(seed)

        try:
            self.env = env_create_fn(self.worker_index)
        except Exception as e:
            raise WorkerInitError(
                f"worker {self.worker_index}: env_create_fn failed: {type(e).__name__}: {e}",
                worker_index=self.worker_index,
            ) from e

        try:
            self.policy = DiscretePolicy(device=device, **dict(policy_arch))
        except Exception as e:
            raise WorkerInitError(
                f"worker {self.worker_index}: policy replica construction failed: {e}",
                worker_index=self.worker_index,
            ) from e
        self.policy.eval()

        self._builder = TrajectoryBuilder(self.worker_index)
        self._ready: List[Trajectory] = []
        self._obs: Optional[np.ndarray] = None
        self._ep_return = 0.0
        self._ep_len = 0
        self._consecutive_errors = 0

        self.total_steps = 0
        self.total_episodes = 0
        self.total_env_errors = 0
        self._lifetime_return_sum = 0.0

        self.report = Report()

    # ------------------------------------------------------------------
    # Policy synchronization
    # ------------------------------------------------------------------
    def sync_policy(self, master: DiscretePolicy) -> None:
        """Copy the master parameters into the replica."""
        master.copy_to(self.policy)

    def load_policy_snapshot(self, params: Sequence[th.Tensor]) -> None:
        self.policy.load_parameter_snapshot(params)

    # ------------------------------------------------------------------
    # Environment calls
    # ------------------------------------------------------------------
    def _env_call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            raise EnvStepError(f"worker {self.worker_index}: {type(e).__name__}: {e}") from e

    def _reset_episode(self) -> None:
        kwargs: Dict[str, Any] = {}
        if self._seed is not None:
            kwargs["seed"] = self._seed
            self._seed = None
        self._obs, _ = self._env_call(_env_reset, self.env, **kwargs)
        self._ep_return = 0.0
        self._ep_len = 0

    def _close_window(self, *, truncated: bool) -> None:
        if truncated:
            self._builder.mark_truncated()
        traj = self._builder.flush()
        if traj is not None:
            self._ready.append(traj)

    def _handle_env_error(self, err: EnvStepError) -> None:
        self._consecutive_errors += 1
        self.total_env_errors += 1
        self.report.accum("Env Errors", 1.0)

        self._close_window(truncated=True)
        self._obs = None

        if self._consecutive_errors > self.max_consecutive_env_errors:
            raise EnvRunnerError(
                f"worker {self.worker_index}: environment failed {self._consecutive_errors} times in a row"
            ) from err

    def _finish_episode(self) -> None:
        self.total_episodes += 1
        self._lifetime_return_sum += self._ep_return
        self.report.accum("Episodes", 1.0)
        self.report.accum("Episode Reward Sum", self._ep_return)
        self.report.accum("Episode Length Sum", float(self._ep_len))

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------
    def step(self) -> int:
        """
        Advance the environment by one step.

        Returns
        -------
        n : int
            1 if a transition was recorded, 0 if the environment failed.

        Raises
        ------
        EnvRunnerError
            If more than ``max_consecutive_env_errors`` failures happened in a row.
        """
        try:
            if self._obs is None:
                self._reset_episode()
            obs = self._obs

            res = self.policy.get_action(obs, deterministic=self.deterministic)
            action = int(res.action[0])
            log_prob = float(res.log_prob[0])

            step_out = self._env_call(self.env.step, action)
            next_obs, reward, terminated, truncated, info = self._env_call(_unpack_step, step_out)
        except EnvStepError as e:
            self._handle_env_error(e)
            return 0

        self._consecutive_errors = 0
        self._builder.add(obs, action, log_prob, reward, terminated, truncated, next_obs)
        self._ep_return += reward
        self._ep_len += 1
        self.total_steps += 1
        self.report.accum("Steps", 1.0)

        if self.step_callback is not None:
            self.step_callback(self, info, self.report)

        if terminated or truncated:
            self._finish_episode()
            self._close_window(truncated=False)
            self._obs = None
        else:
            self._obs = next_obs
        return 1

    def rollout(self, n_steps: int) -> Tuple[List[Trajectory], Report, int]:
        """
        Step until ``n_steps`` transitions were recorded, then hand results over.

        Used by the Ray backend, where a whole chunk runs inside one actor call.
        """
        produced = 0
        while produced < int(n_steps):
            produced += self.step()
        trajectories, report = self.take_results()
        return trajectories, report, produced

    def take_results(self) -> Tuple[List[Trajectory], Report]:
        """
        Hand over finished trajectories and the collection report.

        The open window (if any) is closed as truncated so the learner bootstraps
        it from the critic; the episode itself continues on the next step.
        """
        self._close_window(truncated=True)
        trajectories, self._ready = self._ready, []

        report = self.report
        self.report = Report()
        return trajectories, report

    # ------------------------------------------------------------------
    # Metrics / lifecycle
    # ------------------------------------------------------------------
    def game_metrics(self) -> Report:
        """Lifetime totals of this worker."""
        r = Report()
        r["Worker Index"] = float(self.worker_index)
        r["Total Steps"] = float(self.total_steps)
        r["Total Episodes"] = float(self.total_episodes)
        r["Total Env Errors"] = float(self.total_env_errors)
        r["Mean Episode Reward"] = self._lifetime_return_sum / max(self.total_episodes, 1)
        return r

    def close(self) -> None:
        close_fn = getattr(self.env, "close", None)
        if callable(close_fn):
            close_fn()

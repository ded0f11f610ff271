from __future__ import annotations

from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

import os
import time

import numpy as np
import torch as th
from tqdm import tqdm

from ...ppo import PPOCore, ppo
from ..buffers import ExperienceBuffer, Trajectory
from ..callbacks import BaseCallback, CallbackList
from ..errors import WorkerInitError
from ..loggers import Logger, MetricSender, build_logger
from ..utils import Report, RunningStat
from ..utils.buffer_utils import clip_rewards, compute_gae, discounted_returns
from ..utils.logger_utils import _generate_run_id
from ..utils.train_utils import _make_pbar, _maybe_call, _set_random_seed, _warn
from .agent_manager import AgentManager, CollectionResult
from .env_runner import EnvCreateFn, StepCallback
from .learner_checkpoint import list_checkpoints, load_checkpoint, load_stats, save_checkpoint, save_stats
from .learner_config import LearnerConfig

IterationCallback = Callable[["Learner", Report], None]

REPORT_KEYS = (
    "Avg Episode Reward",
    "Return Std",
    "-",
    "Policy Entropy",
    "Mean KL Divergence",
    "Clip Fraction",
    "Value Function Loss",
    "-",
    "Collected Steps/Second",
    "Overall Steps/Second",
    "Total Iteration Time",
    "-",
    "Timesteps Collected",
    "Total Timesteps",
    "Total Iterations",
)


class LearnerStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"


def _infer_env_sizes(env_create_fn: EnvCreateFn) -> Tuple[int, int]:
    """
    Build one throwaway environment and read (flat observation size, number of actions).

    Raises
    ------
    WorkerInitError
        If the factory fails.
    ValueError
        If the action space is not discrete.
    """
    try:
        env = env_create_fn(0)
    except Exception as e:
        raise WorkerInitError(f"env_create_fn failed while reading env sizes: {type(e).__name__}: {e}", worker_index=0) from e

    try:
        obs_shape = tuple(env.observation_space.shape)
        action_space = env.action_space
        if not hasattr(action_space, "n"):
            raise ValueError(f"discrete action space required, got {type(action_space).__name__}")
        return int(np.prod(obs_shape)), int(action_space.n)
    finally:
        _maybe_call(env, "close")


class Learner:
    """
    PPO training loop orchestrator.

    Owns the PPO update engine, the experience buffer, the return statistics and
    the worker pool, and runs the collect -> process -> update cycle until the
    timestep limit is reached or a stop is requested.

    Parameters
    ----------
    env_create_fn : Callable[[int], Any]
        Environment factory receiving a worker index. Environments must expose a
        discrete ``action_space`` (``.n``) unless both sizes are given.
    config : LearnerConfig, optional
        Run configuration. Defaults to ``LearnerConfig()``.
    obs_size, action_amount : int, optional
        Network I/O sizes. When either is None a throwaway environment is built with
        ``env_create_fn(0)`` to read them, and closed right away.
    iteration_callback : Callable[[Learner, Report], None], optional
        Called once per iteration with the aggregate report, before callbacks.
    step_callback : Callable, optional
        Forwarded to every worker; see :class:`EnvRunner`.
    callbacks : BaseCallback | Sequence[BaseCallback], optional
        Hook objects; any hook returning False stops the run gracefully.
    metric_sender : MetricSender, optional
        Telemetry collaborator. If None and ``config.send_metrics`` is set, one is
        built on top of ``logger`` or of :func:`build_logger`.
    logger : Logger, optional
        Logger used for the metric sender and available to callbacks.

    Attributes
    ----------
    ppo : PPOCore
        Update engine; ``ppo.policy`` is the master policy, ``ppo.critic`` the critic.
    exp_buffer : ExperienceBuffer
        Processed experience consumed by :meth:`PPOCore.learn`.
    return_stats : RunningStat
        Running statistics of discounted returns (scales rewards when
        ``standardize_returns``).
    agent_mgr : AgentManager | RayAgentManager
        Worker pool. Workers are started lazily by the first :meth:`learn`.
    total_timesteps, total_epochs, total_iterations : int
        Persistent counters (saved in checkpoints).
    status : LearnerStatus
        ``IDLE`` outside of :meth:`learn`, ``RUNNING`` inside it.

    Raises
    ------
    WorkerInitError
        If the size-reading environment cannot be created.
    PolicyArchitectureError, DevicePlacementError
        If the networks cannot be built as configured.
    CheckpointFormatError
        If ``config.checkpoint_load_folder`` holds an unreadable checkpoint.
    """

    def __init__(
        self,
        env_create_fn: EnvCreateFn,
        config: Optional[LearnerConfig] = None,
        *,
        obs_size: Optional[int] = None,
        action_amount: Optional[int] = None,
        iteration_callback: Optional[IterationCallback] = None,
        step_callback: Optional[StepCallback] = None,
        callbacks: Optional[Union[BaseCallback, Sequence[BaseCallback]]] = None,
        metric_sender: Optional[MetricSender] = None,
        logger: Optional[Logger] = None,
    ) -> None:
        self.config = config if config is not None else LearnerConfig()
        self.env_create_fn = env_create_fn
        self.iteration_callback = iteration_callback
        self.step_callback = step_callback

        cfg = self.config
        _set_random_seed(cfg.random_seed, deterministic=cfg.deterministic)
        if cfg.deterministic_actions:
            _warn(
                "Learner",
                "deterministic_actions=True: workers act greedily and store log-prob 0, "
                "so PPO ratios are not meaningful",
            )

        if obs_size is None or action_amount is None:
            env_obs, env_act = _infer_env_sizes(env_create_fn)
            obs_size = env_obs if obs_size is None else obs_size
            action_amount = env_act if action_amount is None else action_amount
        self.obs_size = int(obs_size)
        self.action_amount = int(action_amount)

        p = cfg.ppo
        self.ppo: PPOCore = ppo(
            obs_size=self.obs_size,
            action_amount=self.action_amount,
            device=cfg.device,
            policy_layer_sizes=p.policy_layer_sizes,
            critic_layer_sizes=p.critic_layer_sizes,
            temperature=p.policy_temperature,
            action_prob_bonuses=p.action_prob_bonuses,
            action_entropy_scales=p.action_entropy_scales,
            epochs=p.epochs,
            batch_size=p.batch_size,
            mini_batch_size=p.mini_batch_size,
            clip_range=p.clip_range,
            ent_coef=p.ent_coef,
            policy_lr=p.policy_lr,
            critic_lr=p.critic_lr,
            optimizer=p.optimizer,
            max_grad_norm=p.max_grad_norm,
        )
        self.policy = self.ppo.policy
        self.critic = self.ppo.critic
        self.device = self.ppo.device

        self.exp_buffer = ExperienceBuffer(cfg.exp_buffer_size, device=self.device, seed=cfg.random_seed)
        self.return_stats = RunningStat()
        self.agent_mgr = self._build_agent_manager()

        self.run_id = cfg.run_id or _generate_run_id()
        self.total_timesteps = 0
        self.total_epochs = 0
        self.total_iterations = 0
        self.status = LearnerStatus.IDLE

        self._stop_requested = False
        self._last_save_timesteps = 0
        self._pending_returns: List[np.ndarray] = []

        if callbacks is None or isinstance(callbacks, CallbackList):
            self.callbacks = callbacks
        elif isinstance(callbacks, BaseCallback):
            self.callbacks = CallbackList([callbacks])
        else:
            self.callbacks = CallbackList(list(callbacks))

        if cfg.checkpoint_load_folder and list_checkpoints(cfg.checkpoint_load_folder):
            self.load(cfg.checkpoint_load_folder)

        self._owns_sender = False
        if metric_sender is None and (cfg.send_metrics or logger is not None):
            if logger is None:
                logger = self._build_logger()
            metric_sender = MetricSender(logger)
            self._owns_sender = True
        self.metric_sender = metric_sender
        self.logger = logger if logger is not None else getattr(metric_sender, "logger", None)

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------
    def _build_agent_manager(self) -> Any:
        cfg = self.config
        kwargs = dict(
            seed=cfg.random_seed,
            deterministic=cfg.deterministic_actions,
            max_consecutive_env_errors=cfg.max_consecutive_env_errors,
            step_callback=self.step_callback,
        )
        if cfg.backend == "ray":
            from .ray_agent_manager import RayAgentManager

            return RayAgentManager(self.env_create_fn, self.policy, cfg.num_workers, **kwargs)
        return AgentManager(self.env_create_fn, self.policy, cfg.num_workers, **kwargs)

    def _build_logger(self) -> Logger:
        cfg = self.config
        run_dir = os.path.join(cfg.log_dir, cfg.exp_name, self.run_id)
        logger = build_logger(
            log_dir=cfg.log_dir,
            exp_name=cfg.exp_name,
            run_id=self.run_id,
            resume=os.path.isdir(run_dir),
        )
        logger.bind_learner(self)
        logger.dump_config(cfg.to_dict())
        return logger

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def request_stop(self) -> None:
        """Ask :meth:`learn` to stop; an in-flight collection returns early."""
        self._stop_requested = True
        self.agent_mgr.stop()

    def close(self) -> None:
        """Stop the workers, close their environments and the owned metric sender."""
        self.agent_mgr.close()
        if self._owns_sender and self.metric_sender is not None:
            self.metric_sender.close()

    def __enter__(self) -> "Learner":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Training loop
    # ------------------------------------------------------------------
    def _limit_reached(self) -> bool:
        limit = int(self.config.timestep_limit)
        return limit > 0 and self.total_timesteps >= limit

    def learn(self) -> None:
        """
        Run training iterations until the timestep limit, a stop request, or a
        callback returning False.

        Each iteration collects ``timesteps_per_iteration`` steps, turns the
        trajectories into experience, runs one PPO update and reports.

        Raises
        ------
        RuntimeError
            If called while already running.
        LearnerError
            Fatal errors from workers, the update engine or checkpoint I/O are
            propagated unchanged; ``status`` is back to ``IDLE`` afterwards.
        """
        if self.status is LearnerStatus.RUNNING:
            raise RuntimeError("Learner.learn() is already running")

        if self.callbacks is not None and not self.callbacks.on_train_start(self):
            return

        cfg = self.config
        limit = int(cfg.timestep_limit)
        pbar = _make_pbar(
            total=limit if limit > 0 else None,
            initial=self.total_timesteps,
            desc="Training",
            unit="step",
            disable=not cfg.progress_bar,
        )
        sender_pbar = None
        if self.metric_sender is not None:
            sender_pbar, self.metric_sender.pbar = self.metric_sender.pbar, pbar

        self.status = LearnerStatus.RUNNING
        iterations = 0
        try:
            while not self._stop_requested and not self._limit_reached():
                before = self.total_timesteps
                if not self._run_iteration():
                    break
                iterations += 1
                pbar.update(self.total_timesteps - before)

            if cfg.save_on_finish and iterations > 0 and self.total_timesteps > self._last_save_timesteps:
                self.save()
        finally:
            pbar.close()
            if self.metric_sender is not None:
                self.metric_sender.pbar = sender_pbar
            self.status = LearnerStatus.IDLE
            if self.callbacks is not None:
                self.callbacks.on_train_end(self)

    def _run_iteration(self) -> bool:
        """One collect/process/update cycle. Returns False when the run should stop."""
        cfg = self.config
        iter_start = time.perf_counter()

        # 1) collect
        result: CollectionResult = self.agent_mgr.collect_timesteps(cfg.timesteps_per_iteration)
        collection_time = time.perf_counter() - iter_start
        if self._stop_requested:
            return False

        # 2) process trajectories into the experience buffer
        self._pending_returns = []
        for traj in result.trajectories:
            self.add_new_experience(traj)

        # 3) timesteps
        collected = int(result.timesteps)
        self.total_timesteps += collected

        # 4) PPO update
        consume_start = time.perf_counter()
        ppo_report = self.ppo.learn(self.exp_buffer)
        consumption_time = time.perf_counter() - consume_start

        # 5) epochs
        self.total_epochs += int(self.ppo.epochs)
        self.total_iterations += 1

        # 6) return statistics
        if cfg.standardize_returns and self._pending_returns:
            returns = np.concatenate(self._pending_returns)
            n = min(int(cfg.max_returns_per_stats_increment), int(returns.shape[0]))
            self.return_stats.increment(returns[:n])
        self._pending_returns = []

        # 7) aggregate report
        report = self._build_report(result, ppo_report, collected, collection_time, consumption_time, iter_start)

        # 8) callbacks
        if self.iteration_callback is not None:
            self.iteration_callback(self, report)
        keep_going = True
        if self.callbacks is not None:
            keep_going = bool(self.callbacks.on_update(self, report))

        # 9) metrics + periodic save
        if cfg.print_reports:
            tqdm.write(report.format(REPORT_KEYS))
        if self.metric_sender is not None:
            self.metric_sender.send(report, self.total_timesteps)

        per_save = int(cfg.timesteps_per_save)
        if per_save > 0 and self.total_timesteps - self._last_save_timesteps >= per_save:
            self.save()

        return keep_going

    def _build_report(
        self,
        result: CollectionResult,
        ppo_report: Report,
        collected: int,
        collection_time: float,
        consumption_time: float,
        iter_start: float,
    ) -> Report:
        episodes = sum(float(r.get("Episodes", 0.0)) for r in result.reports)
        reward_sum = sum(float(r.get("Episode Reward Sum", 0.0)) for r in result.reports)

        report = Report.average(result.reports)
        report.update_from(ppo_report)

        total_time = time.perf_counter() - iter_start
        if episodes > 0:
            report["Avg Episode Reward"] = reward_sum / episodes
        report["Timesteps Collected"] = float(collected)
        report["Total Timesteps"] = float(self.total_timesteps)
        report["Total Epochs"] = float(self.total_epochs)
        report["Total Iterations"] = float(self.total_iterations)
        report["Collected Steps/Second"] = collected / max(collection_time, 1e-9)
        report["Overall Steps/Second"] = collected / max(total_time, 1e-9)
        report["Collection Time"] = collection_time
        report["Consumption Time"] = consumption_time
        report["Total Iteration Time"] = total_time
        report["Return Std"] = float(self.return_stats.std)
        return report

    # ------------------------------------------------------------------
    # Experience processing
    # ------------------------------------------------------------------
    def add_new_experience(self, traj: Trajectory) -> None:
        """
        Turn one trajectory into experience rows and append them to the buffer.

        Values come from the critic (no grad). Rewards are divided by the return
        std when ``standardize_returns`` is on, then clipped to
        ``reward_clip_range``. Advantages use GAE; a window that ends without a
        terminal is bootstrapped from the critic at its final next state. The
        trajectory's discounted raw returns are kept for the return statistics
        update of this iteration.
        """
        n = len(traj)
        if n == 0:
            return
        cfg = self.config

        with th.no_grad():
            values = self.critic.predict(traj.states).numpy().astype(np.float32)
            last_value = 0.0 if traj.terminal else float(self.critic.predict(traj.final_next_state)[0])

        rewards = np.asarray(traj.rewards, dtype=np.float32)
        if cfg.standardize_returns:
            rewards = rewards / np.float32(self.return_stats.std)
        rewards = clip_rewards(rewards, cfg.reward_clip_range)

        advantages = compute_gae(
            rewards,
            values,
            traj.dones,
            last_value=last_value,
            last_done=traj.terminal,
            gamma=cfg.gae_gamma,
            gae_lambda=cfg.gae_lambda,
        )

        self.exp_buffer.submit_experience(
            states=traj.states,
            actions=traj.actions,
            log_probs=traj.log_probs,
            rewards=rewards,
            values=values,
            advantages=advantages,
        )
        self._pending_returns.append(discounted_returns(traj.rewards, cfg.gae_gamma))

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------
    def get_all_game_metrics(self) -> List[Report]:
        """Lifetime metrics of every worker (empty before workers were started)."""
        return self.agent_mgr.get_all_game_metrics()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def save(self, path: Optional[str] = None) -> str:
        """
        Write a checkpoint and notify callbacks.

        Parameters
        ----------
        path : str, optional
            Folder or ``.pt`` file; defaults to ``config.checkpoints_save_folder``.

        Returns
        -------
        saved_path : str
        """
        saved = save_checkpoint(self, path=path)
        self._last_save_timesteps = self.total_timesteps
        if self.callbacks is not None:
            self.callbacks.on_checkpoint(self, saved)
        return saved

    def load(self, path: str) -> str:
        """
        Restore weights, optimizer state, counters and return stats.

        Raises
        ------
        CheckpointFormatError
            If the checkpoint is missing or malformed.
        """
        loaded = load_checkpoint(self, path)
        self._last_save_timesteps = self.total_timesteps
        return loaded

    def save_stats(self, path: str) -> str:
        return save_stats(self.return_stats, path)

    def load_stats(self, path: str) -> None:
        load_stats(self.return_stats, path)

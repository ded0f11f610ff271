from __future__ import annotations

import io
import json
import os
from contextlib import redirect_stdout
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import torch as th

from discrete_ppo.common.buffers import TrajectoryBuilder
from discrete_ppo.common.callbacks import BaseCallback
from discrete_ppo.common.errors import CheckpointFormatError, WorkerInitError
from discrete_ppo.common.trainers import Learner, LearnerConfig, LearnerStatus, PPOConfig, list_checkpoints
from discrete_ppo.common.utils import Report
from discrete_ppo.common.testers.test_harness import RecordingSender, broken_env_fn, make_env_fn
from discrete_ppo.common.testers.test_utils import (
    assert_allclose,
    assert_eq,
    assert_ge,
    assert_in,
    assert_raises,
    assert_true,
    mk_tmp_dir,
    run_tests,
    seed_all,
)


def _config(**overrides: Any) -> LearnerConfig:
    kw: Dict[str, Any] = dict(
        num_workers=2,
        timesteps_per_iteration=100,
        timesteps_per_save=0,
        timestep_limit=300,
        exp_buffer_size=400,
        checkpoints_save_folder=os.path.join(mk_tmp_dir(), "checkpoints"),
        save_on_finish=False,
        progress_bar=False,
        random_seed=0,
        ppo=PPOConfig(
            policy_layer_sizes=(16,),
            critic_layer_sizes=(16,),
            batch_size=100,
            mini_batch_size=50,
            epochs=2,
        ),
    )
    kw.update(overrides)
    return LearnerConfig(**kw)


def _learner(config: Optional[LearnerConfig] = None, **kwargs: Any) -> Learner:
    return Learner(make_env_fn(horizon=10), config if config is not None else _config(), **kwargs)


def _flat(module: th.nn.Module) -> th.Tensor:
    return th.cat([p.detach().reshape(-1).clone() for p in module.parameters()])


# =============================================================================
# Construction
# =============================================================================
def test_sizes_are_read_from_env():
    with _learner() as learner:
        assert_eq(learner.obs_size, 4)
        assert_eq(learner.action_amount, 3)
        assert_eq(learner.status, LearnerStatus.IDLE)
        assert_eq((learner.total_timesteps, learner.total_epochs), (0, 0))


def test_env_factory_failure_is_worker_init_error():
    assert_raises(WorkerInitError, lambda: Learner(broken_env_fn, _config()))


def test_explicit_sizes_skip_env_creation():
    learner = Learner(broken_env_fn, _config(), obs_size=4, action_amount=3)
    try:
        assert_eq(learner.policy.action_amount, 3)
    finally:
        learner.close()


# =============================================================================
# Training loop
# =============================================================================
def test_iteration_counters_are_monotonic():
    seed_all(0)
    seen: List[Tuple[int, int, int, LearnerStatus]] = []
    reports: List[Report] = []

    def on_iter(learner: Learner, report: Report) -> None:
        seen.append((learner.total_timesteps, learner.total_epochs, learner.total_iterations, learner.status))
        reports.append(report)

    with _learner(iteration_callback=on_iter) as learner:
        learner.learn()
        assert_ge(learner.total_timesteps, 300)
        assert_eq(learner.status, LearnerStatus.IDLE)
        assert_eq(learner.total_iterations, len(seen))
        assert_eq(learner.total_epochs, 2 * len(seen))

    assert_ge(len(seen), 1)
    for prev, cur in zip(seen, seen[1:]):
        assert_true(cur[0] > prev[0] and cur[1] > prev[1] and cur[2] == prev[2] + 1, f"{prev} -> {cur}")
    assert_true(all(s[3] is LearnerStatus.RUNNING for s in seen))

    rep = reports[0]
    for k in (
        "Total Timesteps",
        "Total Epochs",
        "Timesteps Collected",
        "Collected Steps/Second",
        "Overall Steps/Second",
        "Collection Time",
        "Consumption Time",
        "Total Iteration Time",
        "Policy Loss",
        "Value Function Loss",
        "Steps",
        "Avg Episode Reward",
    ):
        assert_in(k, rep)
    assert_eq(rep["Total Timesteps"], float(seen[0][0]))
    assert_ge(rep["Timesteps Collected"], 100.0)


def test_game_metrics_cover_every_worker():
    with _learner(_config(timestep_limit=100)) as learner:
        assert_eq(learner.get_all_game_metrics(), [])
        learner.learn()
        metrics = learner.get_all_game_metrics()
        assert_eq([m["Worker Index"] for m in metrics], [0.0, 1.0])
        assert_eq(sum(m["Total Steps"] for m in metrics), float(learner.total_timesteps))


def test_callback_returning_false_stops_after_one_iteration():
    class StopNow(BaseCallback):
        def __init__(self) -> None:
            self.started = 0
            self.ended = 0

        def on_train_start(self, learner: Any) -> bool:
            self.started += 1
            return True

        def on_update(self, learner: Any, report: Optional[Dict[str, Any]] = None) -> bool:
            return False

        def on_train_end(self, learner: Any) -> bool:
            self.ended += 1
            return True

    cb = StopNow()
    with _learner(_config(timestep_limit=0), callbacks=cb) as learner:
        learner.learn()
        assert_eq(learner.total_iterations, 1)
    assert_eq((cb.started, cb.ended), (1, 1))


def test_request_stop_ends_run():
    def on_iter(learner: Learner, report: Report) -> None:
        learner.request_stop()

    with _learner(_config(timestep_limit=0), iteration_callback=on_iter) as learner:
        learner.learn()
        assert_eq(learner.total_iterations, 1)
        assert_true(learner.agent_mgr.stopped)


def test_reproducible_seeding_keeps_sampled_actions():
    with _learner(_config(timestep_limit=100, deterministic=True)) as learner:
        assert_true(not learner.agent_mgr.deterministic)
        learner.learn()
        assert_true(bool((learner.exp_buffer.log_probs < 0.0).any()), "sampled actions must carry log-probs")

    with _learner(_config(deterministic_actions=True)) as greedy:
        assert_true(greedy.agent_mgr.deterministic)


def test_metric_sender_receives_one_report_per_iteration():
    sender = RecordingSender()
    with _learner(metric_sender=sender) as learner:
        learner.learn()
        assert_eq(len(sender.sent), learner.total_iterations)
        assert_eq(sender.sent[-1][0], learner.total_timesteps)
        assert_in("Policy Entropy", sender.sent[-1][1])


def test_print_reports_writes_one_block_per_iteration():
    out = io.StringIO()
    with _learner(_config(print_reports=True)) as learner, redirect_stdout(out):
        learner.learn()
    text = out.getvalue()
    assert_eq(text.count("Total Iterations:"), learner.total_iterations)
    assert_in("Policy Entropy:", text)

    quiet = io.StringIO()
    with _learner() as learner, redirect_stdout(quiet):
        learner.learn()
    assert_true("Total Iterations:" not in quiet.getvalue())


def test_return_stats_are_updated_and_capped():
    with _learner(_config(timestep_limit=100, max_returns_per_stats_increment=7)) as learner:
        learner.learn()
        assert_eq(learner.total_iterations, 1)
        assert_eq(learner.return_stats.count, 7)


def test_periodic_and_final_saves():
    cfg = _config(timesteps_per_save=150, save_on_finish=True, checkpoints_to_keep=0)
    with _learner(cfg) as learner:
        learner.learn()
        ckpts = list_checkpoints(cfg.checkpoints_save_folder)
        assert_ge(len(ckpts), 2)
        assert_true(ckpts[-1].endswith(f"learner_{learner.total_timesteps:012d}.pt"))


# =============================================================================
# Experience processing
# =============================================================================
def test_add_new_experience_uses_critic_values():
    cfg = _config(standardize_returns=False, reward_clip_range=0.0, gae_gamma=0.0, gae_lambda=0.0)
    with _learner(cfg) as learner:
        b = TrajectoryBuilder()
        rng = np.random.default_rng(0)
        states = rng.normal(size=(5, 4)).astype(np.float32)
        rewards = np.array([1.0, -2.0, 0.5, 3.0, 20.0], dtype=np.float32)
        for t in range(5):
            b.add(states[t], 0, -1.0, rewards[t], t == 4, False, states[t] + 1.0)
        learner.add_new_experience(b.flush())

        values = learner.critic.predict(states)
        assert_eq(learner.exp_buffer.size, 5)
        # gamma = 0: advantage is r - V(s)
        assert_allclose(learner.exp_buffer.advantages, th.as_tensor(rewards) - values, atol=1e-5)
        assert_allclose(learner.exp_buffer.values, values, atol=1e-6)


def test_add_new_experience_scales_and_clips_rewards():
    cfg = _config(standardize_returns=True, reward_clip_range=1.0)
    with _learner(cfg) as learner:
        learner.return_stats.increment([0.0, 4.0])  # std = 2*sqrt(2)
        b = TrajectoryBuilder()
        for r in (1.0, 100.0):
            b.add(np.zeros(4), 1, -1.0, r, False, False, np.zeros(4))
        learner.add_new_experience(b.flush())
        assert_allclose(learner.exp_buffer.rewards, [1.0 / (2.0 * np.sqrt(2.0)), 1.0], atol=1e-6)


# =============================================================================
# Persistence
# =============================================================================
def test_save_load_round_trip():
    seed_all(1)
    cfg = _config(timestep_limit=200)
    with _learner(cfg) as a:
        a.learn()
        path = a.save()
        assert_true(os.path.isfile(path))

        with _learner(_config(random_seed=99)) as b:
            loaded = b.load(cfg.checkpoints_save_folder)
            assert_eq(loaded, path)
            assert_eq(b.run_id, a.run_id)
            assert_eq((b.total_timesteps, b.total_epochs, b.total_iterations),
                      (a.total_timesteps, a.total_epochs, a.total_iterations))
            assert_true(th.equal(_flat(a.policy), _flat(b.policy)))
            assert_true(th.equal(_flat(a.critic), _flat(b.critic)))
            assert_eq(b.return_stats.count, a.return_stats.count)
            assert_allclose(b.return_stats.mean, a.return_stats.mean)
            assert_eq(b.ppo.cumulative_model_updates, a.ppo.cumulative_model_updates)


def test_checkpoint_load_folder_is_loaded_on_construction():
    cfg = _config(timestep_limit=100)
    with _learner(cfg) as a:
        a.learn()
        a.save()
        with _learner(_config(checkpoint_load_folder=cfg.checkpoints_save_folder)) as b:
            assert_eq(b.total_timesteps, a.total_timesteps)
            assert_eq(b.run_id, a.run_id)


def test_checkpoint_pruning_keeps_newest():
    cfg = _config(checkpoints_to_keep=2)
    with _learner(cfg) as learner:
        for ts in (10, 20, 30):
            learner.total_timesteps = ts
            learner.save()
        names = [os.path.basename(p) for p in list_checkpoints(cfg.checkpoints_save_folder)]
        assert_eq(names, ["learner_000000000020.pt", "learner_000000000030.pt"])


def test_malformed_checkpoints_raise():
    folder = mk_tmp_dir()
    with _learner() as learner:
        assert_raises(CheckpointFormatError, lambda: learner.load(os.path.join(folder, "missing.pt")))
        assert_raises(CheckpointFormatError, lambda: learner.load(folder))

        garbage = os.path.join(folder, "learner_000000000001.pt")
        with open(garbage, "wb") as f:
            f.write(b"not a checkpoint")
        e = assert_raises(CheckpointFormatError, lambda: learner.load(garbage))
        assert_true(e.fatal)

        partial = os.path.join(folder, "partial.pt")
        th.save({"learner": {"run_id": "x"}}, partial)
        assert_raises(CheckpointFormatError, lambda: learner.load(partial))

        with _learner(_config(ppo=PPOConfig(policy_layer_sizes=(8,), critic_layer_sizes=(8,),
                                            batch_size=100, mini_batch_size=50))) as other:
            wrong = other.save(os.path.join(folder, "wrong_arch.pt"))
        assert_raises(CheckpointFormatError, lambda: learner.load(wrong))
        assert_eq(learner.total_timesteps, 0)


def test_checkpoint_version_and_failed_load_leave_learner_unchanged():
    folder = mk_tmp_dir()
    with _learner(_config(timestep_limit=100)) as source:
        source.learn()
        good = source.save(os.path.join(folder, "good.pt"))

    payload = th.load(good, map_location="cpu")
    payload["format_version"] = 999
    future = os.path.join(folder, "future.pt")
    th.save(payload, future)

    payload = th.load(good, map_location="cpu")
    payload["ppo_core"]["policy_opt"] = {"state": {}}
    broken_opt = os.path.join(folder, "broken_opt.pt")
    th.save(payload, broken_opt)

    with _learner() as learner:
        policy_before = _flat(learner.policy).clone()
        critic_before = _flat(learner.critic).clone()
        for bad in (future, broken_opt):
            assert_raises(CheckpointFormatError, lambda: learner.load(bad))
            assert_eq((learner.total_timesteps, learner.total_iterations), (0, 0))
            assert_eq(learner.return_stats.count, 0)
            assert_true(th.equal(_flat(learner.policy), policy_before))
            assert_true(th.equal(_flat(learner.critic), critic_before))

        learner.load(good)
        assert_true(learner.total_timesteps > 0)


def test_stats_save_load():
    folder = mk_tmp_dir()
    with _learner() as learner:
        learner.return_stats.increment([1.0, 2.0, 6.0])
        path = learner.save_stats(os.path.join(folder, "stats.json"))
        with open(path, "r", encoding="utf-8") as f:
            assert_eq(json.load(f)["count"], 3)

        with _learner() as other:
            other.load_stats(path)
            assert_eq(other.return_stats.count, 3)
            assert_allclose(other.return_stats.mean, 3.0)

            bad = os.path.join(folder, "bad.json")
            with open(bad, "w", encoding="utf-8") as f:
                f.write("{not json")
            assert_raises(CheckpointFormatError, lambda: other.load_stats(bad))
            assert_raises(CheckpointFormatError, lambda: other.load_stats(os.path.join(folder, "nope.json")))


TESTS: List[Tuple[str, Callable[[], Any]]] = [
    ("env_sizes", test_sizes_are_read_from_env),
    ("env_size_failure", test_env_factory_failure_is_worker_init_error),
    ("explicit_sizes", test_explicit_sizes_skip_env_creation),
    ("iteration_counters", test_iteration_counters_are_monotonic),
    ("callback_stop", test_callback_returning_false_stops_after_one_iteration),
    ("game_metrics", test_game_metrics_cover_every_worker),
    ("request_stop", test_request_stop_ends_run),
    ("seeding_keeps_sampling", test_reproducible_seeding_keeps_sampled_actions),
    ("metric_sender", test_metric_sender_receives_one_report_per_iteration),
    ("print_reports", test_print_reports_writes_one_block_per_iteration),
    ("return_stats_capped", test_return_stats_are_updated_and_capped),
    ("periodic_and_final_saves", test_periodic_and_final_saves),
    ("add_experience_values", test_add_new_experience_uses_critic_values),
    ("add_experience_scale_clip", test_add_new_experience_scales_and_clips_rewards),
    ("save_load_round_trip", test_save_load_round_trip),
    ("auto_load_folder", test_checkpoint_load_folder_is_loaded_on_construction),
    ("checkpoint_pruning", test_checkpoint_pruning_keeps_newest),
    ("malformed_checkpoints", test_malformed_checkpoints_raise),
    ("checkpoint_version_and_rollback", test_checkpoint_version_and_failed_load_leave_learner_unchanged),
    ("stats_save_load", test_stats_save_load),
]


def main(argv=None) -> int:
    return run_tests(TESTS, argv=argv, suite_name="learner")


if __name__ == "__main__":
    raise SystemExit(main())

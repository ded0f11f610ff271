from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Tuple

import torch as th

from discrete_ppo.common.errors import EnvRunnerError, WorkerCrashedError, WorkerInitError
from discrete_ppo.common.networks import DiscretePolicy
from discrete_ppo.common.trainers import AgentManager, EnvRunner
from discrete_ppo.common.utils import Report
from discrete_ppo.common.testers.test_harness import (
    AlwaysFailingEnv,
    DummyLineEnv,
    FlakyEnv,
    broken_env_fn,
    make_env_fn,
)
from discrete_ppo.common.testers.test_utils import (
    assert_eq,
    assert_ge,
    assert_in,
    assert_raises,
    assert_true,
    run_tests,
    seed_all,
)


def _policy() -> DiscretePolicy:
    return DiscretePolicy(4, 3, [8])


# =============================================================================
# EnvRunner
# =============================================================================
def test_runner_rollout_counts_steps_and_episodes():
    seed_all(0)
    runner = EnvRunner(make_env_fn(horizon=5), _policy().architecture(), 0, seed=42)
    trajs, report, produced = runner.rollout(12)
    assert_eq(produced, 12)
    assert_eq(sum(len(t) for t in trajs), 12)
    assert_eq(report["Steps"], 12.0)
    assert_eq(report["Episodes"], 2.0)
    # two finished episodes end on a terminal; the open window is cut
    assert_eq([t.terminal for t in trajs], [True, True, False])
    assert_eq(runner.env.reset_seeds[0], 42)
    assert_true(all(s is None for s in runner.env.reset_seeds[1:]))


def test_runner_take_results_resets_report():
    runner = EnvRunner(make_env_fn(horizon=50), _policy().architecture(), 1)
    for _ in range(3):
        runner.step()
    trajs, report = runner.take_results()
    assert_eq(len(trajs), 1)
    assert_eq(report["Steps"], 3.0)
    _, report2 = runner.take_results()
    assert_eq(len(report2), 0)


def test_runner_absorbs_env_errors():
    runner = EnvRunner(lambda i: FlakyEnv(fail_every=4, horizon=100), _policy().architecture(), 0)
    trajs, report, produced = runner.rollout(20)
    assert_eq(produced, 20)
    assert_ge(report["Env Errors"], 1.0)
    assert_true(all(not t.terminal for t in trajs))
    assert_eq(runner.game_metrics()["Total Env Errors"], report["Env Errors"])


def test_runner_gives_up_after_consecutive_errors():
    runner = EnvRunner(lambda i: AlwaysFailingEnv(), _policy().architecture(), 0, max_consecutive_env_errors=3)
    for _ in range(3):
        assert_eq(runner.step(), 0)
    e = assert_raises(EnvRunnerError, runner.step)
    assert_true(e.fatal)


def test_runner_step_callback_sees_info_and_report():
    seen: List[Dict[str, Any]] = []

    def cb(runner: EnvRunner, info: Dict[str, Any], report: Report) -> None:
        seen.append(info)
        report.accum("Custom", 1.0)

    runner = EnvRunner(make_env_fn(), _policy().architecture(), 0, step_callback=cb)
    _, report, _ = runner.rollout(5)
    assert_eq(len(seen), 5)
    assert_in("t", seen[0])
    assert_eq(report["Custom"], 5.0)


def test_runner_factory_failure_is_init_error():
    e = assert_raises(WorkerInitError, lambda: EnvRunner(broken_env_fn, _policy().architecture(), 2))
    assert_eq(e.worker_index, 2)


# =============================================================================
# AgentManager
# =============================================================================
def test_collect_reaches_target():
    seed_all(1)
    with AgentManager(make_env_fn(horizon=10), _policy(), num_workers=3, seed=7) as mgr:
        res = mgr.collect_timesteps(200)
        assert_ge(res.timesteps, 200)
        assert_eq(res.timesteps, sum(len(t) for t in res.trajectories))
        assert_eq(len(res.reports), 3)
        assert_eq(sum(r.get("Steps", 0.0) for r in res.reports), float(res.timesteps))

        res2 = mgr.collect_timesteps(50)
        assert_ge(res2.timesteps, 50)
        assert_eq(mgr.policy_version, 2)

        metrics = mgr.get_all_game_metrics()
        assert_eq([m["Worker Index"] for m in metrics], [0.0, 1.0, 2.0])
        assert_eq(sum(m["Total Steps"] for m in metrics), float(res.timesteps + res2.timesteps))


def test_collect_syncs_replicas_with_master():
    master = _policy()
    with AgentManager(make_env_fn(), master, num_workers=2) as mgr:
        mgr.collect_timesteps(10)
        with th.no_grad():
            for p in master.parameters():
                p.add_(1.0)
        mgr.collect_timesteps(10)
        for runner in mgr.runners:
            for a, b in zip(master.parameters(), runner.policy.parameters()):
                assert_true(bool(th.equal(a, b)))


def test_collect_survives_flaky_env():
    with AgentManager(lambda i: FlakyEnv(seed=i, fail_every=5), _policy(), num_workers=2) as mgr:
        res = mgr.collect_timesteps(100)
        assert_ge(res.timesteps, 100)
        assert_ge(sum(r.get("Env Errors", 0.0) for r in res.reports), 1.0)


def test_persistent_env_failure_is_fatal():
    mgr = AgentManager(lambda i: AlwaysFailingEnv(), _policy(), num_workers=2, max_consecutive_env_errors=2)
    try:
        assert_raises(EnvRunnerError, lambda: mgr.collect_timesteps(10))
    finally:
        mgr.close()


def test_non_env_worker_crash_is_reported():
    def bad_callback(runner: EnvRunner, info: Dict[str, Any], report: Report) -> None:
        raise KeyError("callback bug")

    mgr = AgentManager(make_env_fn(), _policy(), num_workers=1, step_callback=bad_callback)
    try:
        e = assert_raises(WorkerCrashedError, lambda: mgr.collect_timesteps(10))
        assert_eq(e.worker_index, 0)
    finally:
        mgr.close()


def test_broken_factory_fails_fast_and_closes_built_envs():
    built: List[DummyLineEnv] = []

    def factory(i: int) -> DummyLineEnv:
        if i == 2:
            raise OSError("no env")
        env = DummyLineEnv(seed=i)
        built.append(env)
        return env

    mgr = AgentManager(factory, _policy(), num_workers=3)
    e = assert_raises(WorkerInitError, mgr.start)
    assert_eq(e.worker_index, 2)
    assert_eq(len(built), 2)
    assert_true(all(env.closed for env in built))


def test_stop_returns_early():
    mgr = AgentManager(make_env_fn(), _policy(), num_workers=2)
    mgr.start()
    timer = threading.Timer(0.2, mgr.stop)
    timer.start()
    try:
        res = mgr.collect_timesteps(10**9)
        assert_true(mgr.stopped)
        assert_true(res.timesteps < 10**9)
        assert_eq(mgr.collect_timesteps(10).timesteps, 0)
    finally:
        timer.cancel()
        mgr.close()
    assert_true(all(r.env.closed for r in mgr.runners))


def test_invalid_worker_count():
    assert_raises(ValueError, lambda: AgentManager(make_env_fn(), _policy(), num_workers=0))


# =============================================================================
# Ray backend
# =============================================================================
def test_ray_manager_collects_and_reports_crashes():
    import ray

    from discrete_ppo.common.trainers.ray_agent_manager import RayAgentManager

    ray.init(num_cpus=4, include_dashboard=False, log_to_driver=False, ignore_reinit_error=True)
    try:
        with RayAgentManager(make_env_fn(horizon=10), _policy(), num_workers=2, seed=3) as mgr:
            res = mgr.collect_timesteps(60)
            assert_ge(res.timesteps, 60)
            assert_eq(len(res.reports), 2)
            assert_eq(mgr.policy_version, 1)
            metrics = mgr.get_all_game_metrics()
            assert_eq(sum(m["Total Steps"] for m in metrics), float(res.timesteps))
            mgr.stop()
            assert_eq(mgr.collect_timesteps(10).timesteps, 0)

        failing = RayAgentManager(lambda i: AlwaysFailingEnv(), _policy(), num_workers=1, max_consecutive_env_errors=2)
        try:
            assert_raises(EnvRunnerError, lambda: failing.collect_timesteps(10))
        finally:
            failing.close()

        assert_raises(WorkerInitError, RayAgentManager(broken_env_fn, _policy(), num_workers=1).start)
    finally:
        ray.shutdown()


TESTS: List[Tuple[str, Callable[[], Any]]] = [
    ("runner_rollout", test_runner_rollout_counts_steps_and_episodes),
    ("runner_take_results", test_runner_take_results_resets_report),
    ("runner_env_errors", test_runner_absorbs_env_errors),
    ("runner_gives_up", test_runner_gives_up_after_consecutive_errors),
    ("runner_step_callback", test_runner_step_callback_sees_info_and_report),
    ("runner_factory_failure", test_runner_factory_failure_is_init_error),
    ("collect_reaches_target", test_collect_reaches_target),
    ("collect_syncs_replicas", test_collect_syncs_replicas_with_master),
    ("collect_flaky_env", test_collect_survives_flaky_env),
    ("persistent_env_failure", test_persistent_env_failure_is_fatal),
    ("worker_crash", test_non_env_worker_crash_is_reported),
    ("broken_factory", test_broken_factory_fails_fast_and_closes_built_envs),
    ("stop_returns_early", test_stop_returns_early),
    ("invalid_worker_count", test_invalid_worker_count),
    ("ray_manager", test_ray_manager_collects_and_reports_crashes),
]


def main(argv=None) -> int:
    return run_tests(TESTS, argv=argv, suite_name="agent_manager")


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import os
from typing import Any, Callable, List, Tuple

import numpy as np
import torch as th

from discrete_ppo.common.buffers import ExperienceBuffer
from discrete_ppo.common.errors import CheckpointFormatError
from discrete_ppo.common.utils import Report
from discrete_ppo.ppo import PPOCore, PPOHead, ppo
from discrete_ppo.common.testers.test_utils import (
    assert_allclose,
    assert_eq,
    assert_finite,
    assert_in,
    assert_raises,
    assert_true,
    mk_tmp_dir,
    run_tests,
    seed_all,
)

PPO_REPORT_KEYS = (
    "PPO Batch Consumption Time",
    "Cumulative Model Updates",
    "Policy Entropy",
    "Mean KL Divergence",
    "Mean Ratio",
    "Clip Fraction",
    "SB3 Clip Fraction",
    "Policy Loss",
    "Value Function Loss",
    "Policy Update Magnitude",
    "Value Function Update Magnitude",
    "PPO Learn Time",
)


def _small_ppo(**kwargs: Any) -> PPOCore:
    kw = dict(
        obs_size=4,
        action_amount=3,
        policy_layer_sizes=(16,),
        critic_layer_sizes=(16,),
        epochs=2,
        batch_size=32,
        mini_batch_size=16,
        policy_lr=1e-2,
        critic_lr=1e-2,
    )
    kw.update(kwargs)
    return ppo(**kw)


def _filled_buffer(core: PPOCore, n: int = 64, seed: int = 0) -> ExperienceBuffer:
    rng = np.random.default_rng(seed)
    states = rng.normal(size=(n, 4)).astype(np.float32)
    res = core.policy.get_action(states)
    buf = ExperienceBuffer(1000, seed=seed)
    buf.submit_experience(
        states=states,
        actions=res.action,
        log_probs=res.log_prob,
        rewards=rng.normal(size=n).astype(np.float32),
        values=core.critic.predict(states),
        advantages=rng.normal(size=n).astype(np.float32),
    )
    return buf


def _flat(module: th.nn.Module) -> th.Tensor:
    return th.cat([p.detach().reshape(-1).clone() for p in module.parameters()])


# =============================================================================
# PPOCore
# =============================================================================
def test_learn_reports_every_key_and_updates_both_networks():
    seed_all(0)
    core = _small_ppo()
    buf = _filled_buffer(core)
    p0, c0 = _flat(core.policy), _flat(core.critic)

    report = core.learn(buf)
    for k in PPO_REPORT_KEYS:
        assert_in(k, report)
        assert_finite(report[k])

    # 2 epochs x (64 // 32) batches
    assert_eq(report["Cumulative Model Updates"], 4.0)
    assert_true(not th.equal(p0, _flat(core.policy)), "policy must change")
    assert_true(not th.equal(c0, _flat(core.critic)), "critic must change")
    assert_true(report["Policy Update Magnitude"] > 0.0)
    assert_true(report["Value Function Update Magnitude"] > 0.0)


def test_first_epoch_ratio_starts_at_one():
    seed_all(1)
    core = _small_ppo(epochs=1, batch_size=64, mini_batch_size=64)
    buf = _filled_buffer(core)
    report = core.learn(buf)
    # one optimizer step: the ratio is measured before the step, so it is exactly 1
    assert_allclose(report["Mean Ratio"], 1.0, atol=1e-5)
    assert_allclose(report["Clip Fraction"], 0.0)
    assert_allclose(report["Mean KL Divergence"], 0.0, atol=1e-6)


def test_learn_fills_given_report_and_counts_accumulate():
    seed_all(2)
    core = _small_ppo()
    buf = _filled_buffer(core)
    rep = Report({"Existing": 1.0})
    out = core.learn(buf, rep)
    assert_true(out is rep)
    assert_in("Existing", rep)
    core.learn(buf)
    assert_eq(core.cumulative_model_updates, 8)


def test_empty_buffer_is_rejected():
    core = _small_ppo()
    p0 = _flat(core.policy)
    assert_raises(ValueError, lambda: core.learn(ExperienceBuffer(10)))
    assert_eq(core.cumulative_model_updates, 0)
    assert_true(th.equal(p0, _flat(core.policy)))


def test_non_finite_loss_raises():
    seed_all(3)
    core = _small_ppo()
    buf = _filled_buffer(core)
    buf.advantages[0] = float("nan")
    assert_raises(FloatingPointError, lambda: core.learn(buf))


def test_invalid_hyperparameters_rejected():
    assert_raises(ValueError, lambda: _small_ppo(epochs=0))
    assert_raises(ValueError, lambda: _small_ppo(batch_size=8, mini_batch_size=16))
    assert_raises(ValueError, lambda: _small_ppo(clip_range=0.0))
    assert_raises(ValueError, lambda: _small_ppo(optimizer="does_not_exist"))


def test_set_learning_rates():
    core = _small_ppo()
    core.set_learning_rates(policy_lr=0.5, critic_lr=0.25)
    assert_eq(core.policy_opt.param_groups[0]["lr"], 0.5)
    assert_eq(core.critic_opt.param_groups[0]["lr"], 0.25)
    core.set_learning_rates(critic_lr=0.1)
    assert_eq(core.policy_opt.param_groups[0]["lr"], 0.5)
    assert_raises(ValueError, lambda: core.set_learning_rates(policy_lr=0.0))


# =============================================================================
# PPOHead persistence
# =============================================================================
def test_head_state_dict_round_trip_through_file():
    seed_all(4)
    src = _small_ppo().head
    dst = _small_ppo().head
    path = os.path.join(mk_tmp_dir(), "head.pt")
    th.save(src.state_dict(), path)
    dst.load_state_dict(th.load(path, map_location="cpu"))
    assert_true(th.equal(_flat(src.policy), _flat(dst.policy)))
    assert_true(th.equal(_flat(src.critic), _flat(dst.critic)))


def test_head_load_mismatch_raises_checkpoint_error():
    src = _small_ppo().head
    other = PPOHead(obs_size=4, action_amount=5, policy_layer_sizes=(16,), critic_layer_sizes=(16,))
    assert_raises(CheckpointFormatError, lambda: other.load_state_dict(src.state_dict()))
    assert_raises(CheckpointFormatError, lambda: other.load_state_dict({"policy": {}}))


def test_core_state_dict_round_trip():
    seed_all(5)
    core = _small_ppo()
    core.learn(_filled_buffer(core))
    other = _small_ppo()
    other.load_state_dict(core.state_dict())
    assert_eq(other.cumulative_model_updates, core.cumulative_model_updates)
    assert_true(len(other.policy_opt.state_dict()["state"]) > 0)


TESTS: List[Tuple[str, Callable[[], Any]]] = [
    ("learn_report_and_updates", test_learn_reports_every_key_and_updates_both_networks),
    ("first_ratio_is_one", test_first_epoch_ratio_starts_at_one),
    ("learn_fills_report", test_learn_fills_given_report_and_counts_accumulate),
    ("empty_buffer", test_empty_buffer_is_rejected),
    ("non_finite_loss", test_non_finite_loss_raises),
    ("invalid_hparams", test_invalid_hyperparameters_rejected),
    ("set_learning_rates", test_set_learning_rates),
    ("head_state_round_trip", test_head_state_dict_round_trip_through_file),
    ("head_load_mismatch", test_head_load_mismatch_raises_checkpoint_error),
    ("core_state_dict", test_core_state_dict_round_trip),
]


def main(argv=None) -> int:
    return run_tests(TESTS, argv=argv, suite_name="ppo")


if __name__ == "__main__":
    raise SystemExit(main())

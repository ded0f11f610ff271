from __future__ import annotations

from typing import Any, Callable, List, Tuple

import numpy as np
import torch as th

from discrete_ppo.common.buffers import ExperienceBuffer, TrajectoryBuilder
from discrete_ppo.common.utils.buffer_utils import clip_rewards, compute_gae, discounted_returns
from discrete_ppo.common.testers.test_utils import (
    assert_allclose,
    assert_eq,
    assert_raises,
    assert_shape,
    assert_true,
    run_tests,
)


def _rows(n: int, start: int = 0, obs_dim: int = 2) -> dict:
    idx = np.arange(start, start + n, dtype=np.float32)
    return dict(
        states=np.stack([idx] * obs_dim, axis=1),
        actions=np.zeros(n, dtype=np.int64),
        log_probs=np.zeros(n, dtype=np.float32),
        rewards=idx,
        values=np.zeros(n, dtype=np.float32),
        advantages=idx,
    )


# =============================================================================
# GAE / returns
# =============================================================================
def test_gae_matches_hand_computed_example():
    # gamma=0.5, lambda=0.5, values=[1, 2], rewards=[1, 1], bootstrap V=4
    # delta1 = 1 + 0.5*4 - 2 = 1.0           -> A1 = 1.0
    # delta0 = 1 + 0.5*2 - 1 = 1.0           -> A0 = 1.0 + 0.25*1.0 = 1.25
    adv = compute_gae(
        np.array([1.0, 1.0]),
        np.array([1.0, 2.0]),
        np.array([0.0, 0.0]),
        last_value=4.0,
        last_done=False,
        gamma=0.5,
        gae_lambda=0.5,
    )
    assert_allclose(adv, [1.25, 1.0])


def test_gae_terminal_ignores_bootstrap():
    adv = compute_gae(
        np.ones(3),
        np.zeros(3),
        np.array([0.0, 0.0, 1.0]),
        last_value=100.0,
        last_done=True,
        gamma=1.0,
        gae_lambda=1.0,
    )
    assert_allclose(adv, [3.0, 2.0, 1.0])


def test_gae_rejects_bad_shapes_and_params():
    assert_raises(ValueError, lambda: compute_gae(np.ones(3), np.ones(2), np.zeros(3), last_value=0.0, last_done=True, gamma=0.9, gae_lambda=0.9))
    assert_raises(ValueError, lambda: compute_gae(np.ones(2), np.ones(2), np.zeros(2), last_value=0.0, last_done=True, gamma=1.5, gae_lambda=0.9))


def test_discounted_returns_and_clip():
    assert_allclose(discounted_returns([1.0, 1.0, 1.0], 0.5), [1.75, 1.5, 1.0])
    assert_allclose(discounted_returns([0.0], 0.5, bootstrap=2.0), [1.0])
    assert_allclose(clip_rewards(np.array([-20.0, 0.5, 20.0]), 10.0), [-10.0, 0.5, 10.0])
    r = np.array([-20.0, 20.0])
    assert_allclose(clip_rewards(r, 0.0), r)


# =============================================================================
# TrajectoryBuilder
# =============================================================================
def test_trajectory_builder_flush_and_flags():
    b = TrajectoryBuilder(worker_index=3)
    assert_true(b.flush() is None)
    for t in range(4):
        b.add([t, t], t % 2, -0.5, 1.0, t == 3, False, [t + 1, t + 1])
    traj = b.flush()
    assert_eq(len(traj), 4)
    assert_eq(traj.worker_index, 3)
    assert_shape(traj.states, (4, 2))
    assert_true(traj.terminal)
    assert_allclose(traj.final_next_state, [4.0, 4.0])
    assert_eq(len(b), 0)


def test_trajectory_builder_mark_truncated():
    b = TrajectoryBuilder()
    b.add([0.0], 0, 0.0, 0.0, False, False, [1.0])
    b.mark_truncated()
    traj = b.flush()
    assert_true(not traj.terminal)
    assert_eq(float(traj.truncated[-1]), 1.0)


# =============================================================================
# ExperienceBuffer
# =============================================================================
def test_buffer_keeps_newest_rows_up_to_max_size():
    buf = ExperienceBuffer(10, seed=0)
    buf.submit_experience(**_rows(6, start=0))
    buf.submit_experience(**_rows(6, start=6))
    assert_eq(buf.size, 10)
    assert_allclose(buf.rewards, th.arange(2, 12, dtype=th.float32))


def test_buffer_rejects_mismatched_rows():
    buf = ExperienceBuffer(10)
    rows = _rows(4)
    rows["actions"] = np.zeros(3, dtype=np.int64)
    assert_raises(ValueError, lambda: buf.submit_experience(**rows))
    assert_raises(ValueError, lambda: ExperienceBuffer(0))


def test_shuffled_batches_cover_buffer_once():
    buf = ExperienceBuffer(100, seed=1)
    buf.submit_experience(**_rows(12))
    batches = list(buf.get_all_batches_shuffled(4))
    assert_eq(len(batches), 3)
    seen = th.cat([b.rewards for b in batches]).sort().values
    assert_allclose(seen, th.arange(12, dtype=th.float32))
    for b in batches:
        assert_allclose(b.returns, b.values + b.advantages)
        assert_allclose(b.states[:, 0], b.rewards)


def test_small_buffer_yields_single_batch():
    buf = ExperienceBuffer(100, seed=2)
    buf.submit_experience(**_rows(3))
    batches = list(buf.get_all_batches_shuffled(50))
    assert_eq(len(batches), 1)
    assert_eq(len(batches[0]), 3)
    assert_eq(list(ExperienceBuffer(5).get_all_batches_shuffled(2)), [])
    assert_raises(ValueError, lambda: list(buf.get_all_batches_shuffled(0)))


def test_batch_slice():
    buf = ExperienceBuffer(100, seed=3)
    buf.submit_experience(**_rows(8))
    batch = next(buf.get_all_batches_shuffled(8))
    mb = batch.slice(2, 5)
    assert_eq(len(mb), 3)
    assert_allclose(mb.rewards, batch.rewards[2:5])


TESTS: List[Tuple[str, Callable[[], Any]]] = [
    ("gae_hand_example", test_gae_matches_hand_computed_example),
    ("gae_terminal", test_gae_terminal_ignores_bootstrap),
    ("gae_validation", test_gae_rejects_bad_shapes_and_params),
    ("returns_and_clip", test_discounted_returns_and_clip),
    ("trajectory_flush", test_trajectory_builder_flush_and_flags),
    ("trajectory_truncated", test_trajectory_builder_mark_truncated),
    ("buffer_fifo_cap", test_buffer_keeps_newest_rows_up_to_max_size),
    ("buffer_mismatch", test_buffer_rejects_mismatched_rows),
    ("shuffled_batches", test_shuffled_batches_cover_buffer_once),
    ("single_small_batch", test_small_buffer_yields_single_batch),
    ("batch_slice", test_batch_slice),
]


def main(argv=None) -> int:
    return run_tests(TESTS, argv=argv, suite_name="buffers")


if __name__ == "__main__":
    raise SystemExit(main())

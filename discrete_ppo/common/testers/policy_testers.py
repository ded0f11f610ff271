from __future__ import annotations

from typing import Any, Callable, List, Tuple

import numpy as np
import torch as th

from discrete_ppo.common.errors import DevicePlacementError, PolicyArchitectureError
from discrete_ppo.common.networks import ACTION_MIN_PROB, DiscretePolicy, ValueNetwork
from discrete_ppo.common.testers.test_utils import (
    assert_allclose,
    assert_eq,
    assert_finite,
    assert_raises,
    assert_shape,
    assert_true,
    run_tests,
    seed_all,
)


def _policy(**kwargs: Any) -> DiscretePolicy:
    kw = dict(input_amount=4, action_amount=3, layer_sizes=[8], device="cpu")
    kw.update(kwargs)
    return DiscretePolicy(**kw)


# =============================================================================
# Construction
# =============================================================================
def test_empty_layer_sizes_is_architecture_error():
    e = assert_raises(PolicyArchitectureError, lambda: _policy(layer_sizes=[]))
    assert_true(e.fatal)


def test_bad_device_is_placement_error():
    assert_raises(DevicePlacementError, lambda: _policy(device="not_a_device"))


def test_non_positive_temperature_rejected():
    assert_raises(ValueError, lambda: _policy(temperature=0.0))
    assert_raises(ValueError, lambda: _policy(temperature=-1.0))


def test_bonus_vector_length_checked():
    assert_raises(ValueError, lambda: _policy(action_prob_bonuses=[0.1, 0.2]))
    assert_raises(ValueError, lambda: _policy(action_entropy_scales=[1.0] * 4))


def test_layer_count_matches_sizes():
    pol = _policy(layer_sizes=[16, 8])
    linears = [m for m in pol.modules() if isinstance(m, th.nn.Linear)]
    assert_eq([(m.in_features, m.out_features) for m in linears], [(4, 16), (16, 8), (8, 3)])


# =============================================================================
# Distribution
# =============================================================================
def test_action_probs_rows_sum_to_one_and_are_clamped():
    seed_all(0)
    pol = _policy(layer_sizes=[32, 32])
    obs = th.randn(64, 4) * 50.0
    probs = pol.get_action_probs(obs)
    assert_shape(probs, (64, 3))
    assert_allclose(probs.sum(dim=-1), th.ones(64), atol=1e-5)
    assert_true(bool((probs >= ACTION_MIN_PROB).all()), "entries below ACTION_MIN_PROB")
    assert_finite(probs.log())


def test_clamp_applies_without_bonus():
    pol = _policy()
    with th.no_grad():
        pol.head.weight.zero_()
        pol.head.bias.copy_(th.tensor([0.0, 0.0, 200.0]))
    probs = pol.get_action_probs(np.zeros((1, 4), dtype=np.float32))
    assert_allclose(float(probs[0, 0]), ACTION_MIN_PROB, rtol=1e-5, atol=0.0)
    assert_finite(probs.log())


def test_temperature_flattens_distribution():
    seed_all(1)
    obs = th.randn(1, 4)
    base = _policy(temperature=1.0)
    maxima = []
    for temp in (0.05, 0.5, 1.0, 2.0, 10.0, 1e4):
        pol = _policy(temperature=temp)
        base.copy_to(pol)
        with th.no_grad():
            maxima.append(float(pol.get_output(obs).max()))
    for lo, hi in zip(maxima[1:], maxima[:-1]):
        assert_true(lo < hi, f"max prob must decrease with temperature: {maxima}")
    assert_true(abs(maxima[-1] - 1.0 / 3.0) < 1e-3, f"high temperature should be ~uniform: {maxima[-1]}")


def test_low_temperature_approaches_one_hot():
    pol = _policy(temperature=1e-3)
    with th.no_grad():
        pol.head.weight.zero_()
        pol.head.bias.copy_(th.tensor([0.0, 0.1, 0.05]))
        probs = pol.get_output(th.zeros(1, 4))
    assert_true(float(probs[0, 1]) > 0.999, f"expected one-hot on action 1, got {probs}")


def test_probability_bonus_increases_bonused_action():
    seed_all(2)
    plain = _policy()
    bonused = _policy(action_prob_bonuses=[0.3, 0.0, 0.0])
    plain.copy_to(bonused)
    obs = th.randn(5, 4)
    with th.no_grad():
        p0 = plain.get_output(obs)
        p1 = bonused.get_output(obs)
    assert_true(bool((p1[:, 0] > p0[:, 0]).all()), "bonus must raise action-0 probability")
    assert_allclose(p1.sum(dim=-1), th.ones(5), atol=1e-6)


# =============================================================================
# Acting
# =============================================================================
def test_deterministic_action_is_argmax_with_zero_log_prob():
    seed_all(3)
    pol = _policy(layer_sizes=[16])
    obs = th.randn(20, 4)
    res = pol.get_action(obs, deterministic=True)
    assert_shape(res.action, (20,))
    assert_eq(res.action.dtype, th.int64)
    assert_true(bool(th.equal(res.action, pol.get_action_probs(obs).argmax(dim=-1).cpu())))
    assert_true(bool((res.log_prob == 0.0).all()))


def test_zero_obs_scenario_deterministic_and_sampled():
    seed_all(4)
    pol = _policy(layer_sizes=[8], temperature=1.0)
    obs = np.zeros((1, 4), dtype=np.float32)

    res = pol.get_action(obs, deterministic=True)
    assert_shape(res.action, (1,))
    assert_true(int(res.action[0]) in (0, 1, 2))
    assert_eq(float(res.log_prob[0]), 0.0)

    n = 10_000
    counts = np.zeros(3)
    for _ in range(n):
        counts[int(pol.get_action(obs).action[0])] += 1
    freq = counts / n
    expected = pol.get_action_probs(obs)[0].detach().numpy()
    assert_true(bool(np.all(np.abs(freq - expected) <= 0.02)), f"freq={freq} expected={expected}")
    assert_true(bool(np.all(np.abs(freq - 1.0 / 3.0) <= 0.02)), f"untrained policy should be ~uniform: {freq}")


def test_sampled_log_prob_matches_distribution():
    seed_all(5)
    pol = _policy()
    obs = th.randn(10, 4)
    res = pol.get_action(obs)
    expected = pol.get_action_probs(obs).log().gather(-1, res.action.view(-1, 1)).view(-1)
    assert_allclose(res.log_prob, expected, atol=1e-6)
    assert_true(not res.log_prob.requires_grad)


# =============================================================================
# Training path
# =============================================================================
def test_backprop_log_probs_match_and_carry_gradients():
    seed_all(6)
    pol = _policy(layer_sizes=[16])
    obs = th.randn(32, 4)
    acts = th.randint(0, 3, (32,))
    out = pol.get_backprop_data(obs, acts)

    expected = pol.get_action_probs(obs).log().gather(-1, acts.view(-1, 1)).view(-1)
    assert_allclose(out.action_log_probs, expected, atol=1e-6)
    assert_true(out.action_log_probs.requires_grad and out.entropy.requires_grad)

    before = [p.detach().clone() for p in pol.parameters()]
    opt = th.optim.SGD(pol.parameters(), lr=0.1)
    opt.zero_grad()
    (-out.action_log_probs.mean()).backward()
    opt.step()
    changed = any(not th.equal(a, b.detach()) for a, b in zip(before, pol.parameters()))
    assert_true(changed, "a gradient step must change the policy")


def test_entropy_non_negative_and_zero_for_one_hot():
    seed_all(7)
    pol = _policy()
    ent = pol.get_backprop_data(th.randn(16, 4), th.zeros(16)).entropy
    assert_true(float(ent) > 0.0)

    with th.no_grad():
        pol.head.weight.zero_()
        pol.head.bias.copy_(th.tensor([500.0, 0.0, 0.0]))
    ent = pol.get_backprop_data(th.zeros(4, 4), th.zeros(4)).entropy
    assert_true(0.0 <= float(ent) < 1e-6, f"one-hot entropy should be ~0, got {float(ent)}")


def test_entropy_scales_weight_per_action_terms():
    seed_all(8)
    plain = _policy()
    scaled = _policy(action_entropy_scales=[2.0, 2.0, 2.0])
    plain.copy_to(scaled)
    obs = th.randn(8, 4)
    acts = th.zeros(8)
    e0 = plain.get_backprop_data(obs, acts).entropy
    e1 = scaled.get_backprop_data(obs, acts).entropy
    assert_allclose(e1, 2.0 * e0, atol=1e-6)


# =============================================================================
# Synchronization
# =============================================================================
def test_copy_to_is_exact_and_idempotent():
    seed_all(9)
    src = _policy(layer_sizes=[16, 16])
    dst = _policy(layer_sizes=[16, 16])
    src.copy_to(dst)
    for a, b in zip(src.parameters(), dst.parameters()):
        assert_true(bool(th.equal(a, b)))
    snap = dst.parameter_snapshot()
    src.copy_to(dst)
    for a, b in zip(snap, dst.parameters()):
        assert_true(bool(th.equal(a, b.detach())))


def test_copy_to_mismatch_raises():
    src = _policy(layer_sizes=[16])
    assert_raises(PolicyArchitectureError, lambda: src.copy_to(_policy(layer_sizes=[8])))
    assert_raises(PolicyArchitectureError, lambda: src.copy_to(_policy(layer_sizes=[16, 16])))


def test_parameter_snapshot_round_trip_and_replica():
    seed_all(10)
    src = _policy(action_prob_bonuses=[0.1, 0.0, 0.0])
    other = _policy()
    other.load_parameter_snapshot(src.parameter_snapshot())
    for a, b in zip(src.parameters(), other.parameters()):
        assert_true(bool(th.equal(a, b)))

    replica = DiscretePolicy(**src.architecture())
    src.copy_to(replica)
    obs = th.randn(3, 4)
    assert_allclose(replica.get_output(obs), src.get_output(obs), atol=1e-7)


def test_value_network_predict_shape():
    v = ValueNetwork(4, [8, 8])
    out = v.predict(np.zeros((5, 4), dtype=np.float32))
    assert_shape(out, (5,))
    assert_true(not out.requires_grad)


# =============================================================================
# Main
# =============================================================================
TESTS: List[Tuple[str, Callable[[], Any]]] = [
    ("empty_layer_sizes", test_empty_layer_sizes_is_architecture_error),
    ("bad_device", test_bad_device_is_placement_error),
    ("non_positive_temperature", test_non_positive_temperature_rejected),
    ("bonus_vector_length", test_bonus_vector_length_checked),
    ("layer_count", test_layer_count_matches_sizes),
    ("probs_sum_and_clamp", test_action_probs_rows_sum_to_one_and_are_clamped),
    ("clamp_without_bonus", test_clamp_applies_without_bonus),
    ("temperature_flattens", test_temperature_flattens_distribution),
    ("low_temperature_one_hot", test_low_temperature_approaches_one_hot),
    ("probability_bonus", test_probability_bonus_increases_bonused_action),
    ("deterministic_argmax", test_deterministic_action_is_argmax_with_zero_log_prob),
    ("zero_obs_scenario", test_zero_obs_scenario_deterministic_and_sampled),
    ("sampled_log_prob", test_sampled_log_prob_matches_distribution),
    ("backprop_log_probs", test_backprop_log_probs_match_and_carry_gradients),
    ("entropy_non_negative", test_entropy_non_negative_and_zero_for_one_hot),
    ("entropy_scales", test_entropy_scales_weight_per_action_terms),
    ("copy_to_exact", test_copy_to_is_exact_and_idempotent),
    ("copy_to_mismatch", test_copy_to_mismatch_raises),
    ("snapshot_and_replica", test_parameter_snapshot_round_trip_and_replica),
    ("value_predict_shape", test_value_network_predict_shape),
]


def main(argv=None) -> int:
    return run_tests(TESTS, argv=argv, suite_name="policy")


if __name__ == "__main__":
    raise SystemExit(main())

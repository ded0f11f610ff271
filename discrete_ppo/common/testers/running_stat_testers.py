from __future__ import annotations

from typing import Any, Callable, List, Tuple

import json

import numpy as np

from discrete_ppo.common.utils import Report, RunningStat
from discrete_ppo.common.testers.test_utils import (
    assert_allclose,
    assert_eq,
    assert_raises,
    assert_true,
    run_tests,
)


# =============================================================================
# RunningStat
# =============================================================================
def test_mean_and_variance_match_closed_form():
    xs = np.array([1.0, 2.0, 4.0, 7.0, 11.0, -3.0])
    rs = RunningStat()
    for x in xs:
        rs.increment([x])
    assert_eq(rs.count, 6)
    assert_allclose(rs.mean, xs.mean())
    assert_allclose(rs.var, xs.var(ddof=1))
    assert_allclose(rs.std, xs.std(ddof=1))


def test_batch_grouping_does_not_change_result():
    rng = np.random.default_rng(0)
    xs = rng.normal(3.0, 2.0, size=101)

    a = RunningStat()
    a.increment(xs)

    b = RunningStat()
    for chunk in (xs[:7], xs[7:50], xs[50:51], xs[51:]):
        b.increment(chunk)

    assert_eq(a.count, b.count)
    assert_allclose(a.mean, b.mean, rtol=1e-12, atol=1e-12)
    assert_allclose(a.var, b.var, rtol=1e-10, atol=1e-12)


def test_std_defaults_to_one_until_two_samples():
    rs = RunningStat()
    assert_allclose(rs.std, 1.0)
    rs.increment([5.0])
    assert_allclose(rs.std, 1.0)
    rs.increment([5.0])
    assert_allclose(rs.std, 1.0, msg="zero variance must report std 1")


def test_scalar_stat_std_after_batch_increment():
    rs = RunningStat()
    rs.increment([1.0, 2.0, 3.0])
    assert_true(isinstance(rs.std, np.ndarray) and rs.std.shape == ())
    assert_allclose(rs.std, 1.0)
    assert_allclose(float(rs.std), 1.0)
    rs.increment([2.0])
    assert_allclose(rs.var, 2.0 / 3.0)

    flat = RunningStat()
    flat.increment([4.0, 4.0, 4.0])
    assert_allclose(flat.std, 1.0, msg="zero variance must report std 1")


def test_vector_stat_and_shape_check():
    rs = RunningStat(shape=(2,))
    rs.increment(np.array([[1.0, 10.0], [3.0, 30.0]]))
    assert_allclose(rs.mean, [2.0, 20.0])
    assert_raises(ValueError, lambda: rs.increment(np.ones((4, 3))))


def test_merge_equals_single_pass():
    xs = np.arange(20, dtype=np.float64)
    left, right, full = RunningStat(), RunningStat(), RunningStat()
    left.increment(xs[:8])
    right.increment(xs[8:])
    full.increment(xs)
    left.merge(right)
    assert_allclose(left.mean, full.mean)
    assert_allclose(left.var, full.var)


def test_state_dict_is_json_and_round_trips():
    rs = RunningStat()
    rs.increment([1.0, 2.0, 3.0])
    payload = json.loads(json.dumps(rs.state_dict()))
    other = RunningStat()
    other.load_state_dict(payload)
    assert_eq(other.count, 3)
    assert_allclose(other.mean, rs.mean)
    assert_allclose(other.var, rs.var)

    assert_raises(ValueError, lambda: RunningStat(shape=(2,)).load_state_dict(payload))
    assert_raises(KeyError, lambda: RunningStat().load_state_dict({"count": 1}))


# =============================================================================
# Report
# =============================================================================
def test_report_accum_and_average():
    a, b = Report(), Report()
    a.accum("Episodes", 1)
    a.accum("Episodes", 2)
    a["Only A"] = 5.0
    b["Episodes"] = 1.0
    b["Vec"] = [1.0, 3.0]

    assert_eq(a["Episodes"], 3.0)
    merged = Report.average([a, b])
    assert_allclose(merged["Episodes"], 2.0)
    assert_allclose(merged["Only A"], 5.0)
    assert_eq(merged["Vec"], [1.0, 3.0])


def test_report_scalars_expand_vectors():
    r = Report({"Loss": 0.5, "Probs": [0.2, 0.8]})
    assert_eq(r.scalars(), {"Loss": 0.5, "Probs/0": 0.2, "Probs/1": 0.8})
    assert_raises(TypeError, lambda: r.__setitem__("Bad", "text"))


def test_report_format_skips_missing_and_separates():
    r = Report({"A": 1.0, "B": 2.0})
    text = r.format(["A", "-", "Missing", "B"])
    lines = text.split("\n")
    assert_eq(len(lines), 3)
    assert_true(lines[1] == "")


TESTS: List[Tuple[str, Callable[[], Any]]] = [
    ("closed_form", test_mean_and_variance_match_closed_form),
    ("batch_grouping", test_batch_grouping_does_not_change_result),
    ("std_default_one", test_std_defaults_to_one_until_two_samples),
    ("scalar_std_batch", test_scalar_stat_std_after_batch_increment),
    ("vector_stat", test_vector_stat_and_shape_check),
    ("merge", test_merge_equals_single_pass),
    ("state_dict", test_state_dict_is_json_and_round_trips),
    ("report_accum_average", test_report_accum_and_average),
    ("report_scalars", test_report_scalars_expand_vectors),
    ("report_format", test_report_format_skips_missing_and_separates),
]


def main(argv=None) -> int:
    return run_tests(TESTS, argv=argv, suite_name="running_stat")


if __name__ == "__main__":
    raise SystemExit(main())

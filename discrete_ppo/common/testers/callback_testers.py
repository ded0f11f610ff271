from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Tuple

from discrete_ppo.common.callbacks import BaseCallback, CallbackList, NaNGuardCallback
from discrete_ppo.common.testers.test_utils import (
    assert_eq,
    assert_raises,
    assert_true,
    run_tests,
)


class RecordingLogger:
    def __init__(self) -> None:
        self.calls: List[Tuple[Dict[str, Any], int, str]] = []

    def log(self, metrics: Dict[str, Any], step: Optional[int] = None, *, prefix: str = "") -> None:
        self.calls.append((dict(metrics), int(step), prefix))


class FakeLearner:
    def __init__(self, logger: Optional[RecordingLogger] = None) -> None:
        self.total_timesteps = 500
        self.logger = logger


class CountingCallback(BaseCallback):
    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.updates = 0

    def on_update(self, learner: Any, report: Optional[Dict[str, Any]] = None) -> bool:
        self.updates += 1
        return self.result


# =============================================================================
# Composition
# =============================================================================
def test_base_callback_hooks_default_to_continue():
    cb = BaseCallback()
    learner = FakeLearner()
    assert_true(cb.on_train_start(learner))
    assert_true(cb.on_update(learner, {"x": 1.0}))
    assert_true(cb.on_checkpoint(learner, "/tmp/x.pt"))
    assert_true(cb.on_train_end(learner))


def test_callback_list_short_circuits_on_false():
    first = CountingCallback(result=False)
    second = CountingCallback()
    cbs = CallbackList([first, None, second])
    assert_eq(len(cbs.callbacks), 2)
    assert_true(not cbs.on_update(FakeLearner(), {}))
    assert_eq((first.updates, second.updates), (1, 0))

    ok = CallbackList([CountingCallback(), CountingCallback()])
    assert_true(ok.on_update(FakeLearner(), {}))
    assert_eq([c.updates for c in ok.callbacks], [1, 1])


def test_callback_list_rejects_non_callbacks():
    e = assert_raises(TypeError, lambda: CallbackList([CountingCallback(), object()]))
    assert_true("callbacks[1]" in str(e), str(e))


def test_callback_exceptions_propagate():
    class Exploding(BaseCallback):
        def on_update(self, learner: Any, report: Optional[Dict[str, Any]] = None) -> bool:
            raise KeyError("missing")

    assert_raises(KeyError, lambda: CallbackList([Exploding()]).on_update(FakeLearner(), {}))


def test_log_forwards_to_learner_logger():
    logger = RecordingLogger()
    BaseCallback().log(FakeLearner(logger), {"a": 1.0}, step=3, prefix="cb/")
    assert_eq(logger.calls, [({"a": 1.0}, 3, "cb/")])
    BaseCallback().log(FakeLearner(None), {"a": 1.0}, step=3)


# =============================================================================
# NaN guard
# =============================================================================
def test_nan_guard_triggers_on_nan():
    logger = RecordingLogger()
    cb = NaNGuardCallback()
    ok = cb.on_update(FakeLearner(logger), {"Policy Loss": 0.1, "Value Loss": float("nan")})
    assert_true(not ok)
    assert_eq(cb.triggered_key, "Value Loss")
    assert_eq(logger.calls, [({"nan_guard/triggered": 1.0}, 500, "sys/")])


def test_nan_guard_triggers_on_nested_list():
    cb = NaNGuardCallback()
    assert_true(not cb.on_update(FakeLearner(), {"Action Frequencies": [0.5, [float("inf")]]}))
    assert_eq(cb.triggered_key, "Action Frequencies")


def test_nan_guard_ignores_finite_values():
    cb = NaNGuardCallback()
    assert_true(cb.on_update(FakeLearner(), {"a": 1.0, "b": [0.0, 2.0], "label": "text"}))
    assert_true(cb.on_update(FakeLearner(), None))
    assert_true(cb.triggered_key is None)


def test_nan_guard_keys_filter():
    cb = NaNGuardCallback(keys=["Policy Loss", "Absent"])
    assert_true(cb.on_update(FakeLearner(), {"Policy Loss": 0.2, "Avg Episode Reward": float("nan")}))
    assert_true(not cb.on_update(FakeLearner(), {"Policy Loss": float("-inf")}))
    assert_eq(cb.triggered_key, "Policy Loss")


# =============================================================================
# Main
# =============================================================================
TESTS: List[Tuple[str, Callable[[], Any]]] = [
    ("base_callback_defaults", test_base_callback_hooks_default_to_continue),
    ("callback_list_short_circuit", test_callback_list_short_circuits_on_false),
    ("callback_list_type_check", test_callback_list_rejects_non_callbacks),
    ("callback_exceptions_propagate", test_callback_exceptions_propagate),
    ("log_forwards_to_logger", test_log_forwards_to_learner_logger),
    ("nan_guard_nan", test_nan_guard_triggers_on_nan),
    ("nan_guard_nested_list", test_nan_guard_triggers_on_nested_list),
    ("nan_guard_finite", test_nan_guard_ignores_finite_values),
    ("nan_guard_keys_filter", test_nan_guard_keys_filter),
]


def main(argv=None) -> int:
    return run_tests(TESTS, argv=argv, suite_name="callback")


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import json
import math
import os
from typing import Any, Callable, Dict, List, Mapping, Tuple

import numpy as np

import discrete_ppo.common.loggers.tensorboard_writer as tb_module
from discrete_ppo.common.loggers import (
    JSONLWriter,
    Logger,
    MetricSender,
    SafeWriter,
    TensorBoardWriter,
    Writer,
    build_logger,
)
from discrete_ppo.common.utils import Report
from discrete_ppo.common.testers.test_utils import (
    TestSkip,
    assert_eq,
    assert_file_exists,
    assert_in,
    assert_raises,
    assert_true,
    mk_tmp_dir,
    read_text,
    run_tests,
)


class MemoryWriter(Writer):
    def __init__(self) -> None:
        self.rows: List[Dict[str, float]] = []
        self.flushes = 0
        self.closed = False

    def write(self, row: Mapping[str, float]) -> None:
        self.rows.append(dict(row))

    def flush(self) -> None:
        self.flushes += 1

    def close(self) -> None:
        self.closed = True


class BrokenWriter(Writer):
    def write(self, row: Mapping[str, float]) -> None:
        raise RuntimeError("boom")

    def flush(self) -> None:
        raise RuntimeError("flush boom")

    def close(self) -> None:
        raise RuntimeError("close boom")


def _logger(**kwargs: Any) -> Logger:
    kw = dict(log_dir=mk_tmp_dir(), exp_name="unit", run_id="run", console_every=0, flush_every=0)
    kw.update(kwargs)
    return Logger(**kw)


# =============================================================================
# Writers
# =============================================================================
def test_jsonl_writer_writes_lines():
    run_dir = mk_tmp_dir()
    w = JSONLWriter(run_dir)
    w.write({"step": 1.0, "wall_time": 0.1, "timestamp": 0.0, "Policy Entropy": 1.5})
    w.write({"step": 2.0, "wall_time": 0.2, "timestamp": 0.0, "Value Loss": 0.25})
    w.close()
    w.close()

    lines = read_text(w.path).strip().splitlines()
    assert_eq(len(lines), 2)
    assert_eq(json.loads(lines[0])["Policy Entropy"], 1.5)
    assert_eq(json.loads(lines[1])["Value Loss"], 0.25)
    assert_raises(ValueError, lambda: w.write({"step": 3.0}))


def test_safe_writer_swallows_exceptions():
    w = SafeWriter(BrokenWriter(), name="broken")
    w.write({"step": 0.0, "x": 1.0})
    w.flush()
    w.close()
    assert_eq(len(w.errors), 3)
    assert_true(w.errors[0].startswith("broken.write: RuntimeError"), w.errors[0])


def test_tensorboard_writer_stub_smoke():
    calls: List[Tuple[str, float, int]] = []

    class StubSummaryWriter:
        def __init__(self, log_dir: str) -> None:
            self.log_dir = log_dir
            self.closed = False

        def add_scalar(self, tag: str, value: float, global_step: int) -> None:
            calls.append((tag, value, global_step))

        def flush(self) -> None:
            pass

        def close(self) -> None:
            self.closed = True

    original = tb_module.SummaryWriter
    tb_module.SummaryWriter = StubSummaryWriter
    try:
        w = TensorBoardWriter(mk_tmp_dir())
        w.write({"step": 7.0, "wall_time": 0.0, "timestamp": 0.0, "Value Loss": 0.5, "Clip Fraction": 0.1})
        w.flush()
        w.close()
        w.close()
    finally:
        tb_module.SummaryWriter = original

    assert_eq(sorted(calls), [("Clip Fraction", 0.1, 7), ("Value Loss", 0.5, 7)])


def test_wandb_writer_disabled_smoke():
    try:
        import wandb  # noqa: F401
    except ImportError:
        raise TestSkip("wandb not installed")

    from discrete_ppo.common.loggers import WandBWriter

    w = WandBWriter(run_dir=mk_tmp_dir(), project="discrete_ppo_tests", mode="disabled")
    w.write({"step": 1.0, "wall_time": 0.0, "timestamp": 0.0, "Policy Loss": 0.1})
    w.flush()
    w.close()
    w.write({"step": 2.0, "Policy Loss": 0.2})


# =============================================================================
# Logger
# =============================================================================
def test_logger_core_semantics():
    mem = MemoryWriter()
    logger = _logger(writers=[mem], drop_non_finite=True)
    assert_file_exists(os.path.join(logger.run_dir, "metadata.json"))

    row = logger.log({"loss": 1.0, "bad": float("nan"), "vec": np.ones(3), "n": np.float32(2.0)}, step=5, prefix="/train/")
    assert_eq(row["step"], 5.0)
    assert_in("train/loss", row)
    assert_in("train/n", row)
    assert_true("train/bad" not in row, "non-finite values must be dropped")
    assert_true("train/vec" not in row, "multi-element arrays are not scalars")
    for k in ("step", "wall_time", "timestamp"):
        assert_in(k, mem.rows[0])


def test_logger_step_inference_from_bound_learner():
    class FakeLearner:
        total_timesteps = 1234

    mem = MemoryWriter()
    logger = _logger(writers=[mem])
    logger.log({"x": 1.0})
    logger.bind_learner(FakeLearner())
    logger.log({"x": 2.0})
    logger.log({"x": 3.0}, step=9)
    assert_eq([r["step"] for r in mem.rows], [0.0, 1234.0, 9.0])

    logger.set_step_fn(None)
    logger.log({"x": 4.0})
    assert_eq(mem.rows[-1]["step"], 0.0)


def test_logger_keeps_non_finite_by_default():
    mem = MemoryWriter()
    _logger(writers=[mem]).log({"bad": float("inf")}, step=0)
    assert_true(math.isinf(mem.rows[0]["bad"]))


def test_logger_records_writer_errors_unless_strict():
    logger = _logger(writers=[BrokenWriter()])
    logger.log({"x": 1.0}, step=0)
    logger.close()
    assert_eq(len(logger.errors), 3)

    strict = _logger(writers=[BrokenWriter()], strict=True)
    assert_raises(RuntimeError, lambda: strict.log({"x": 1.0}, step=0))


def test_logger_flush_every_and_close():
    mem = MemoryWriter()
    logger = _logger(writers=[mem], flush_every=2)
    for i in range(4):
        logger.log({"x": float(i)}, step=i)
    assert_eq(mem.flushes, 2)
    with logger:
        pass
    assert_true(mem.closed)


def test_logger_console_line_goes_to_pbar():
    class FakeBar:
        def __init__(self) -> None:
            self.desc = ""

        def set_description_str(self, s: str, refresh: bool = True) -> None:
            self.desc = s

    bar = FakeBar()
    _logger(console_every=1).log({"Policy Entropy": 1.25}, step=42, pbar=bar)
    assert_true(bar.desc.startswith("[step=42"), bar.desc)
    assert_in("Policy Entropy=1.25", bar.desc)


def test_logger_dump_config_and_fresh_run_dir():
    log_dir = mk_tmp_dir()
    a = Logger(log_dir=log_dir, exp_name="e", run_id="r", console_every=0)
    a.dump_config({"gamma": 0.99, "layers": (64, 64)})
    cfg = json.loads(read_text(os.path.join(a.run_dir, "config.json")))
    assert_eq(cfg["gamma"], 0.99)

    b = Logger(log_dir=log_dir, exp_name="e", run_id="r", console_every=0)
    assert_eq(b.run_dir, a.run_dir + "_1")
    c = Logger(log_dir=log_dir, exp_name="e", run_id="r", resume=True, console_every=0)
    assert_eq(c.run_dir, a.run_dir)
    assert_raises(FileNotFoundError, lambda: Logger(log_dir=log_dir, exp_name="e", run_id="missing", resume=True))


def test_build_logger_jsonl_only():
    logger = build_logger(log_dir=mk_tmp_dir(), exp_name="e", run_id="r", use_tensorboard=False, console_every=0)
    assert_eq(len(logger.writers), 1)
    assert_true(isinstance(logger.writers[0], SafeWriter))
    logger.log({"Total Timesteps": 100.0}, step=100)
    logger.close()
    lines = read_text(os.path.join(logger.run_dir, "metrics.jsonl")).strip().splitlines()
    assert_eq(json.loads(lines[0])["Total Timesteps"], 100.0)


def test_build_logger_wandb_requires_project():
    assert_raises(ValueError, lambda: build_logger(log_dir=mk_tmp_dir(), use_wandb=True, use_tensorboard=False))


# =============================================================================
# MetricSender
# =============================================================================
def test_metric_sender_expands_vectors():
    mem = MemoryWriter()
    sender = MetricSender(_logger(writers=[mem]), prefix="train")
    rep = Report({"Policy Entropy": 0.9})
    rep["Action Frequencies"] = [0.25, 0.75]
    row = sender.send(rep, step=300)
    sender.send({"Value Loss": 0.1}, step=400)

    assert_eq(sender.sent, 2)
    assert_eq(row["step"], 300.0)
    assert_eq(row["train/Action Frequencies/0"], 0.25)
    assert_eq(row["train/Action Frequencies/1"], 0.75)
    assert_eq(mem.rows[1]["train/Value Loss"], 0.1)
    sender.close()
    assert_true(mem.closed)


# =============================================================================
# Main
# =============================================================================
TESTS: List[Tuple[str, Callable[[], Any]]] = [
    ("jsonl_writer_writes_lines", test_jsonl_writer_writes_lines),
    ("safe_writer_swallows_exceptions", test_safe_writer_swallows_exceptions),
    ("tensorboard_writer_stub_smoke", test_tensorboard_writer_stub_smoke),
    ("wandb_writer_disabled_smoke", test_wandb_writer_disabled_smoke),
    ("logger_core_semantics", test_logger_core_semantics),
    ("logger_step_inference", test_logger_step_inference_from_bound_learner),
    ("logger_keeps_non_finite", test_logger_keeps_non_finite_by_default),
    ("logger_writer_errors", test_logger_records_writer_errors_unless_strict),
    ("logger_flush_and_close", test_logger_flush_every_and_close),
    ("logger_console_pbar", test_logger_console_line_goes_to_pbar),
    ("logger_config_and_run_dir", test_logger_dump_config_and_fresh_run_dir),
    ("build_logger_jsonl_only", test_build_logger_jsonl_only),
    ("build_logger_wandb_project", test_build_logger_wandb_requires_project),
    ("metric_sender_vectors", test_metric_sender_expands_vectors),
]


def main(argv=None) -> int:
    return run_tests(TESTS, argv=argv, suite_name="logger")


if __name__ == "__main__":
    raise SystemExit(main())

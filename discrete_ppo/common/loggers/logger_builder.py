from __future__ import annotations

from typing import Any, Dict, List, Optional

from .base_writer import SafeWriter
from .jsonl_writer import JSONLWriter
from .logger import Logger
from .tensorboard_writer import TensorBoardWriter
from .wandb_writer import WandBWriter


def build_logger(
    *,
    log_dir: str = "./runs",
    exp_name: str = "exp",
    run_id: Optional[str] = None,
    overwrite: bool = False,
    resume: bool = False,
    # backend enable flags
    use_tensorboard: bool = True,
    use_jsonl: bool = True,
    use_wandb: bool = False,
    # backend kwargs
    jsonl_kwargs: Optional[Dict[str, Any]] = None,
    wandb_kwargs: Optional[Dict[str, Any]] = None,
    # logger behavior
    safe_writers: bool = True,
    console_every: int = 1,
    flush_every: int = 10,
    drop_non_finite: bool = False,
    strict: bool = False,
) -> Logger:
    """
    Construct a :class:`Logger` and attach the selected writer backends.

    The logger is created first because it resolves ``run_dir``; writers are then
    built inside that directory.

    Parameters
    ----------
    use_tensorboard, use_jsonl, use_wandb : bool
        Backends to attach.
    jsonl_kwargs : dict, optional
        Forwarded to ``JSONLWriter(run_dir, **jsonl_kwargs)``.
    wandb_kwargs : dict, optional
        Forwarded to ``WandBWriter(run_dir=..., **wandb_kwargs)``; must contain a
        non-empty ``"project"`` when ``use_wandb=True``.
    safe_writers : bool, default=True
        Wrap each writer in :class:`SafeWriter` so sink failures never stop training.

    Raises
    ------
    ValueError
        If ``use_wandb=True`` without a project.
    """
    jsonl_kwargs = dict(jsonl_kwargs or {})
    wandb_kwargs = dict(wandb_kwargs or {})

    if use_wandb and not wandb_kwargs.get("project"):
        raise ValueError("wandb_kwargs must include non-empty 'project' when use_wandb=True.")

    logger = Logger(
        log_dir=str(log_dir),
        exp_name=str(exp_name),
        run_id=run_id,
        overwrite=bool(overwrite),
        resume=bool(resume),
        console_every=int(console_every),
        flush_every=int(flush_every),
        drop_non_finite=bool(drop_non_finite),
        strict=bool(strict),
    )

    writers: List[Any] = []
    if use_tensorboard:
        writers.append(TensorBoardWriter(logger.run_dir))
    if use_jsonl:
        writers.append(JSONLWriter(logger.run_dir, **jsonl_kwargs))
    if use_wandb:
        writers.append(WandBWriter(run_dir=logger.run_dir, **wandb_kwargs))

    if safe_writers:
        writers = [SafeWriter(w) for w in writers]
    logger.add_writers(writers)
    return logger

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Sequence

from .base_writer import Writer
from ..utils.logger_utils import _get_step, _split_meta


class WandBWriter(Writer):
    """
    Forward rows to Weights & Biases with ``wandb.log``.

    ``wandb`` is an optional extra (``pip install discrete-ppo[wandb]``) and is
    imported when the writer is constructed.

    Parameters
    ----------
    run_dir : str
        Local directory for W&B files (``wandb.init(dir=...)``).
    project : str
        W&B project name.
    entity, group, name : str, optional
        Passed to ``wandb.init``.
    tags : Sequence[str], optional
        Run tags.
    mode : str, optional
        "online", "offline" or "disabled".
    config : Mapping[str, Any], optional
        Run configuration shown in the W&B UI.

    Raises
    ------
    RuntimeError
        If ``wandb`` is not installed.
    """

    def __init__(
        self,
        *,
        run_dir: str,
        project: str,
        entity: Optional[str] = None,
        group: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        name: Optional[str] = None,
        mode: Optional[str] = None,
        config: Optional[Mapping[str, Any]] = None,
    ) -> None:
        try:
            import wandb
        except ImportError as e:
            raise RuntimeError("wandb is not available. Install with `pip install wandb`.") from e

        init_kwargs: Dict[str, Any] = {
            "project": str(project),
            "entity": entity,
            "group": group,
            "tags": list(tags) if tags is not None else None,
            "name": name,
            "mode": mode,
            "config": dict(config) if config is not None else None,
            "dir": str(run_dir),
        }
        init_kwargs = {k: v for k, v in init_kwargs.items() if v is not None}

        self._wandb = wandb
        self._run = wandb.init(**init_kwargs)
        self._enabled = True

    def write(self, row: Mapping[str, float]) -> None:
        if not self._enabled:
            return
        _, metrics = _split_meta(row)
        self._wandb.log(metrics, step=int(_get_step(row)))

    def flush(self) -> None:
        # W&B buffers and syncs on its own.
        return

    def close(self) -> None:
        if self._enabled:
            self._run.finish()
        self._enabled = False

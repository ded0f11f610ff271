from .base_writer import SafeWriter, Writer
from .jsonl_writer import JSONLWriter
from .logger import Logger
from .logger_builder import build_logger
from .metric_sender import MetricSender
from .tensorboard_writer import TensorBoardWriter
from .wandb_writer import WandBWriter

__all__ = [
    "Writer",
    "SafeWriter",
    "JSONLWriter",
    "TensorBoardWriter",
    "WandBWriter",
    "Logger",
    "build_logger",
    "MetricSender",
]

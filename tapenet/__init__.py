from tapenet.config import LayerConfig, ScheduleConfig
from tapenet.errors import ConfigurationError, ShapeError, TapenetError
from tapenet.graph import Graph, Node
from tapenet.guard import StabilityGuard
from tapenet.network import Network, build_network
from tapenet.optimizer import SGD, Schedule
from tapenet.trainer import (
    BatchMetrics,
    EpochMetrics,
    Examples,
    Trainer,
    TrainerState,
    TrainingReport,
    evaluate,
    iter_training,
    train,
)

__version__ = "0.1.0"

from dataclasses import dataclass, fields
from typing import Optional

import torch

from tapenet.errors import ConfigurationError

ACTIVATION_KINDS = ("relu", "leaky_relu")
LOSS_KINDS = ("cross_entropy", "squared_error")


def _from_dict(cls, options):
    known = {f.name for f in fields(cls)}
    unknown = set(options) - known
    if unknown:
        raise ConfigurationError("Unknown options for %s: %s" % (cls.__name__, ", ".join(sorted(unknown))))
    return cls(**options)


def _check_integers(config, names):
    # bool is a subclass of int but never a meaningful count.
    for name in names:
        value = getattr(config, name)
        if not isinstance(value, int) or isinstance(value, bool):
            raise ConfigurationError("%s must be an integer, got %r" % (name, value))


@dataclass
class LayerConfig:
    """
    Shape and behaviour of the two-layer network built by build_network.

    input_size and class_count come from the data; the rest are tunable.
    leaky_slope only matters when activation_kind is "leaky_relu".
    With loss_kind "squared_error" the network is trained on the squared
    distance between its softmax probabilities and the one-hot targets.
    """
    input_size: int
    class_count: int
    hidden_unit_count: int = 32
    dropout_rate: float = 0.5
    activation_kind: str = "relu"
    leaky_slope: float = 0.01
    hidden_use_bias: bool = True
    output_use_bias: bool = True
    loss_kind: str = "cross_entropy"
    seed: Optional[int] = None
    dtype: torch.dtype = torch.float32

    @classmethod
    def from_dict(cls, options):
        return _from_dict(cls, options)

    def validate(self):
        _check_integers(self, ("input_size", "class_count", "hidden_unit_count"))
        if self.input_size < 1:
            raise ConfigurationError("input_size must be at least 1, got %r" % self.input_size)
        if self.class_count < 2:
            raise ConfigurationError("class_count must be at least 2, got %r" % self.class_count)
        if self.hidden_unit_count < 1:
            raise ConfigurationError("hidden_unit_count must be at least 1, got %r" % self.hidden_unit_count)
        if not 0.0 <= self.dropout_rate < 1.0:
            raise ConfigurationError("dropout_rate must be in [0, 1), got %r" % self.dropout_rate)
        if self.activation_kind not in ACTIVATION_KINDS:
            raise ConfigurationError("Unsupported activation_kind %r, expected one of %s"
                                     % (self.activation_kind, ", ".join(ACTIVATION_KINDS)))
        if not self.leaky_slope >= 0.0:
            raise ConfigurationError("leaky_slope must not be negative, got %r" % self.leaky_slope)
        if self.loss_kind not in LOSS_KINDS:
            raise ConfigurationError("Unsupported loss_kind %r, expected one of %s"
                                     % (self.loss_kind, ", ".join(LOSS_KINDS)))
        if not self.dtype.is_floating_point:
            raise ConfigurationError("dtype must be a floating point type, got %r" % self.dtype)
        return self


@dataclass
class ScheduleConfig:
    """
    Mini-batch SGD schedule.

    Batch size and learning rate both start at their initial value and shrink
    by a decay factor per batch until they reach their floor.
    batch_size_decay_rate defaults to decay_rate.
    """
    initial_batch_size: int = 80
    batch_size_floor: int = 30
    decay_rate: float = 0.9999
    initial_learning_rate: float = 0.01
    learning_rate_floor: float = 0.00001
    epoch_count: int = 5
    batch_size_decay_rate: Optional[float] = None
    weight_decay: float = 0.0
    shuffle: bool = True
    seed: Optional[int] = None

    @classmethod
    def from_dict(cls, options):
        return _from_dict(cls, options)

    @property
    def effective_batch_size_decay_rate(self):
        if self.batch_size_decay_rate is None:
            return self.decay_rate
        return self.batch_size_decay_rate

    def validate(self):
        _check_integers(self, ("initial_batch_size", "batch_size_floor", "epoch_count"))
        if self.epoch_count < 1:
            raise ConfigurationError("epoch_count must be at least 1, got %r" % self.epoch_count)
        if self.batch_size_floor < 1:
            raise ConfigurationError("batch_size_floor must be at least 1, got %r" % self.batch_size_floor)
        if self.batch_size_floor > self.initial_batch_size:
            raise ConfigurationError(
                "batch_size_floor (%r) exceeds initial_batch_size (%r)"
                % (self.batch_size_floor, self.initial_batch_size))
        if self.learning_rate_floor < 0:
            raise ConfigurationError("learning_rate_floor must not be negative, got %r" % self.learning_rate_floor)
        if self.learning_rate_floor > self.initial_learning_rate:
            raise ConfigurationError(
                "learning_rate_floor (%r) exceeds initial_learning_rate (%r)"
                % (self.learning_rate_floor, self.initial_learning_rate))
        for name, rate in (("decay_rate", self.decay_rate),
                           ("batch_size_decay_rate", self.effective_batch_size_decay_rate)):
            if not 0.0 < rate <= 1.0:
                raise ConfigurationError("%s must be in (0, 1], got %r" % (name, rate))
        if self.weight_decay < 0:
            raise ConfigurationError("weight_decay must not be negative, got %r" % self.weight_decay)
        return self

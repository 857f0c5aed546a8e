import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import numpy as np
import torch

from tapenet.config import ScheduleConfig
from tapenet.errors import ShapeError
from tapenet.guard import StabilityGuard
from tapenet.optimizer import SGD, Schedule

logger = logging.getLogger(__name__)


class Examples:
    """
    A labelled data set already in memory.

    inputs is a (n, features) float tensor, targets the matching (n, classes)
    one-hot tensor and labels the (n,) class indices.
    """
    def __init__(self, inputs, targets, labels):
        self.inputs = inputs
        self.targets = targets
        self.labels = labels

    def __len__(self):
        return self.inputs.shape[0]

    @classmethod
    def from_arrays(cls, inputs, labels, class_count, dtype=torch.float32):
        """
        :param inputs: Normalized inputs, one example per row. A numpy array,
                       nested list or torch tensor.
        :param labels: Integer class indices of shape (n,) or one-hot rows of
                       shape (n, class_count).
        """
        if isinstance(inputs, torch.Tensor):
            inputs = inputs.detach().to(dtype)
        else:
            inputs = torch.as_tensor(np.asarray(inputs, dtype=np.float64)).to(dtype)
        if inputs.dim() != 2:
            raise ShapeError("Inputs must have one example per row, got shape %s" % (tuple(inputs.shape),))

        labels = labels.detach().cpu().numpy() if isinstance(labels, torch.Tensor) else np.asarray(labels)
        if labels.ndim == 2:
            if labels.shape[1] != class_count:
                raise ShapeError("One-hot labels have %d columns, expected %d" % (labels.shape[1], class_count))
            labels = labels.argmax(axis=1)
        elif labels.ndim != 1:
            raise ShapeError("Labels must be class indices or one-hot rows, got shape %s" % (labels.shape,))
        if labels.size and not np.all(np.equal(np.mod(labels, 1), 0)):
            raise ShapeError("Class labels must be integers")
        labels = torch.as_tensor(labels.astype(np.int64))

        if labels.shape[0] != inputs.shape[0]:
            raise ShapeError("Got %d inputs but %d labels" % (inputs.shape[0], labels.shape[0]))
        if labels.numel() and (labels.min() < 0 or labels.max() >= class_count):
            raise ShapeError("Class labels must be in [0, %d)" % class_count)

        targets = torch.eye(class_count, dtype=dtype)[labels]
        return cls(inputs, targets, labels)


def as_examples(network, examples):
    """
    Accept either an Examples instance or an (inputs, labels) pair.
    """
    if isinstance(examples, Examples):
        result = examples
    else:
        inputs, labels = examples
        result = Examples.from_arrays(inputs, labels, network.class_count, network.dtype)
    network.check_inputs(result.inputs)
    if result.targets.shape[1] != network.class_count:
        raise ShapeError("Examples have %d classes, network has %d" % (result.targets.shape[1], network.class_count))
    return result


@dataclass
class BatchMetrics:
    epoch_index: int
    batch_index: int
    loss: float
    error_rate: float
    batch_size: int
    learning_rate: float


@dataclass
class EpochMetrics:
    epoch_index: int
    accuracy: Optional[float]
    mean_loss: float


@dataclass
class TrainingReport:
    epoch_accuracies: List[Optional[float]] = field(default_factory=list)
    epoch_losses: List[float] = field(default_factory=list)
    batch_count: int = 0
    final_batch_size: int = 0
    final_learning_rate: float = 0.0
    inf_substitutions: int = 0
    nan_substitutions: int = 0

    @property
    def final_accuracy(self):
        return self.epoch_accuracies[-1] if self.epoch_accuracies else None


class TrainerState(Enum):
    NOT_STARTED = "not_started"
    EPOCH_RUNNING = "epoch_running"
    BETWEEN_EPOCHS = "between_epochs"
    FINISHED = "finished"


class Trainer:
    def __init__(self, network, training_examples, schedule_config, test_examples=None, guard=None):
        """
        Everything is validated here, before any training work starts.

        :param schedule_config: A ScheduleConfig or a dict of its fields.
        :param test_examples: Held-out examples evaluated after every epoch.
        """
        if isinstance(schedule_config, dict):
            schedule_config = ScheduleConfig.from_dict(schedule_config)
        self.config = schedule_config.validate()
        self.network = network
        self.training = as_examples(network, training_examples)
        if len(self.training) == 0:
            raise ShapeError("Training set is empty")
        self.test = as_examples(network, test_examples) if test_examples is not None else None
        self.guard = guard if guard is not None else StabilityGuard(seed=self.config.seed)
        self.schedule = Schedule(self.config)
        self.optimizer = SGD(self.guard)
        self.generator = torch.Generator()
        if self.config.seed is not None:
            self.generator.manual_seed(self.config.seed)
        else:
            self.generator.seed()
        self.state = TrainerState.NOT_STARTED

    def train_batch(self, epoch_index, batch_index, indices):
        """
        One forward pass, one backward pass and one parameter update over the
        examples at indices.
        """
        inputs = self.training.inputs[indices]
        targets = self.training.targets[indices]
        labels = self.training.labels[indices]

        step = self.network.loss_pass(inputs, targets, self.config.weight_decay, self.guard)
        step.graph.backward(step.objective)
        self.optimizer.step(step.graph.parameter_gradients(), self.schedule)

        predicted = step.probabilities.argmax(dim=1)
        metrics = BatchMetrics(
            epoch_index=epoch_index,
            batch_index=batch_index,
            loss=step.loss_value / len(indices),
            error_rate=float((predicted != labels).double().mean()),
            batch_size=len(indices),
            learning_rate=self.schedule.learning_rate,
        )
        self.schedule.advance(len(indices))
        logger.debug("Epoch %d batch %d: loss %.4f, error rate %.3f, batch size %d, learning rate %g",
                     epoch_index, batch_index, metrics.loss, metrics.error_rate,
                     metrics.batch_size, metrics.learning_rate)
        return metrics

    def run(self):
        """
        Train for the configured number of epochs.

        This is a generator: it yields a BatchMetrics after every batch and an
        EpochMetrics after every epoch, and can only be consumed once.
        """
        if self.state != TrainerState.NOT_STARTED:
            raise RuntimeError("Trainer has already been run")

        count = len(self.training)
        for epoch_index in range(self.config.epoch_count):
            self.state = TrainerState.EPOCH_RUNNING
            self.network.train()
            if self.config.shuffle:
                order = torch.randperm(count, generator=self.generator)
            else:
                order = torch.arange(count)

            start = 0
            batch_index = 0
            loss_total = 0.0
            while start < count:
                # The batch size is read again for every batch since it decays.
                indices = order[start:start + self.schedule.current_batch_size]
                metrics = self.train_batch(epoch_index, batch_index, indices)
                loss_total += metrics.loss * metrics.batch_size
                start += len(indices)
                batch_index += 1
                yield metrics

            self.state = TrainerState.BETWEEN_EPOCHS
            accuracy = None
            if self.test is not None:
                accuracy = evaluate(self.network, self.test, self.guard)
            self.schedule.next_epoch()
            epoch = EpochMetrics(epoch_index=epoch_index, accuracy=accuracy, mean_loss=loss_total / count)
            if accuracy is None:
                logger.info("Epoch %d: mean loss %.4f", epoch_index, epoch.mean_loss)
            else:
                logger.info("Epoch %d: mean loss %.4f, test accuracy %.2f%%",
                            epoch_index, epoch.mean_loss, 100 * accuracy)
            yield epoch

        self.state = TrainerState.FINISHED

    def report(self, records):
        """
        Drain records into a TrainingReport. Batch records are only counted.
        """
        result = TrainingReport()
        for record in records:
            if isinstance(record, EpochMetrics):
                result.epoch_accuracies.append(record.accuracy)
                result.epoch_losses.append(record.mean_loss)
            else:
                result.batch_count += 1
        result.final_batch_size = self.schedule.current_batch_size
        result.final_learning_rate = self.schedule.learning_rate
        result.inf_substitutions = self.guard.inf_substitutions
        result.nan_substitutions = self.guard.nan_substitutions
        return result


def iter_training(network, training_examples, schedule_config, test_examples=None, guard=None):
    """
    Validate the configuration now and return the lazy stream of metric records.
    """
    return Trainer(network, training_examples, schedule_config, test_examples, guard).run()


def train(network, training_examples, schedule_config, test_examples=None, guard=None):
    """
    Train network in place.

    :param training_examples: An Examples instance or an (inputs, labels) pair.
    :param schedule_config: A ScheduleConfig or a dict of its fields.
    :param test_examples: Optional held-out set evaluated after every epoch.
    :return: A TrainingReport.
    """
    trainer = Trainer(network, training_examples, schedule_config, test_examples, guard)
    return trainer.report(trainer.run())


def evaluate(network, test_examples, guard=None):
    """
    :return: The fraction of test_examples the network classifies correctly,
             with dropout bypassed.
    """
    examples = as_examples(network, test_examples)
    if len(examples) == 0:
        raise ShapeError("Test set is empty")
    with network.evaluation():
        predicted = network.probabilities(examples.inputs, guard).argmax(dim=1)
    return float((predicted == examples.labels).double().mean())

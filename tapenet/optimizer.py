import logging

from tapenet.guard import StabilityGuard

logger = logging.getLogger(__name__)


class Schedule:
    """
    Batch size and learning rate for the current point of a training run.

    After every batch both values shrink toward their floor:
        x <- max(x * decay ** (examples_in_batch / current_batch_size), floor)
    A short final batch therefore decays proportionally less. With a decay
    rate in (0, 1] neither value can ever grow.
    """
    def __init__(self, config):
        self.config = config
        self.step = 0
        self.epoch = 0
        self.learning_rate = float(config.initial_learning_rate)
        self.batch_size = float(config.initial_batch_size)
        self.history = []

    @property
    def current_batch_size(self):
        return max(1, int(self.batch_size))

    def advance(self, examples_in_batch):
        """
        Move the schedule past a batch of examples_in_batch examples.
        """
        self.history.append((self.step, self.current_batch_size, self.learning_rate))
        fraction = examples_in_batch / self.current_batch_size
        self.learning_rate = max(self.learning_rate * self.config.decay_rate ** fraction,
                                 self.config.learning_rate_floor)
        self.batch_size = max(self.batch_size * self.config.effective_batch_size_decay_rate ** fraction,
                              float(self.config.batch_size_floor))
        self.step += 1

    def next_epoch(self):
        self.epoch += 1

    def __repr__(self):
        return "Schedule(step=%d, epoch=%d, batch_size=%d, learning_rate=%g)" % (
            self.step, self.epoch, self.current_batch_size, self.learning_rate)


class SGD:
    """
    Plain stochastic gradient descent driven by a Schedule.

    After each update the stored parameter is passed through the guard, so a
    parameter that is (or becomes) non-finite is repaired in place instead of
    staying corrupted for the rest of the run.
    """
    def __init__(self, guard=None):
        self.guard = guard if guard is not None else StabilityGuard()

    def step(self, parameter_gradients, schedule):
        """
        Update every parameter in place: param -= learning_rate * gradient.

        :param parameter_gradients: (Parameter, gradient) pairs, as returned
                                    by Graph.parameter_gradients.
        :param schedule: Supplies the learning rate for this update.
        """
        alpha = schedule.learning_rate
        for parameter, grad in parameter_gradients:
            parameter.step(alpha, grad)
            repaired = self.guard.sanitize(parameter.value, where="parameter %s after update" % parameter.name)
            if repaired is not parameter.value:
                parameter.value.copy_(repaired)
        logger.debug("SGD step %d with learning rate %g over %d parameters",
                     schedule.step, alpha, len(parameter_gradients))

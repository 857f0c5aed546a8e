import math

import torch

from tapenet import ops
from tapenet.errors import ShapeError

# Layers in this file are arranged in roughly the order they
# would appear in a network.


class Parameter:
    """
    A named tensor that persists across the whole training run.
    Only the optimizer changes it, and only between passes.
    """
    def __init__(self, name, value):
        self.name = name
        self.value = value

    @property
    def shape(self):
        return tuple(self.value.shape)

    def step(self, alpha, grad):
        """
        Perform one step of stochastic gradient descent in place.
        :param alpha: The learning rate.
        :param grad: The gradient of the loss with respect to this parameter.
        """
        if tuple(grad.shape) != self.shape:
            raise ShapeError("Gradient of shape %s does not match parameter %s of shape %s"
                             % (tuple(grad.shape), self.name, self.shape))
        self.value.sub_(alpha * grad.to(self.value.dtype))

    def __repr__(self):
        return "Parameter(%r, shape=%r)" % (self.name, self.shape)


class Layer:
    """
    Every layer builds its piece of the forward graph on top of the node that
    feeds into it and returns the index of its output node.
    """
    training = True

    def build(self, graph, x):
        raise NotImplementedError

    def parameters(self):
        return []

    def train(self, mode=True):
        self.training = mode


class Dense(Layer):
    def __init__(self, name, in_features, out_features, generator, dtype=torch.float32, use_bias=True):
        """
        Weights and biases are drawn from U(-1/sqrt(in_features), 1/sqrt(in_features)),
        so no two hidden units start out identical.

        :param use_bias: Without a bias the layer computes x·W and has a single
                         parameter.
        """
        bound = 1.0 / math.sqrt(in_features)
        weight = torch.empty(in_features, out_features, dtype=dtype).uniform_(-bound, bound, generator=generator)
        self.name = name
        self.in_features = in_features
        self.out_features = out_features
        self.W = Parameter(name + ".W", weight)
        self.b = None
        if use_bias:
            bias = torch.empty(out_features, dtype=dtype).uniform_(-bound, bound, generator=generator)
            self.b = Parameter(name + ".b", bias)

    def build(self, graph, x):
        if graph.value_of(x).shape[-1] != self.in_features:
            raise ShapeError("%s expects %d input features, got shape %s"
                             % (self.name, self.in_features, tuple(graph.value_of(x).shape)))
        W = graph.parameter(self.W)
        if self.b is None:
            return graph.record(ops.Linear(), (x, W))
        b = graph.parameter(self.b)
        return graph.record(ops.Linear(), (x, W, b))

    def parameters(self):
        return [self.W] if self.b is None else [self.W, self.b]


class ReLU(Layer):
    def build(self, graph, x):
        return graph.record(ops.ReLU(), (x,))


class LeakyReLU(Layer):
    def __init__(self, slope=0.01):
        assert slope >= 0.0, "Slope must not be negative"
        self.slope = slope

    def build(self, graph, x):
        return graph.record(ops.LeakyReLU(self.slope), (x,))


class Dropout(Layer):
    def __init__(self, rate, generator):
        """
        :param rate: Probability of zeroing each unit during training.
        """
        assert 0.0 <= rate < 1.0, "Dropout rate must be in [0, 1)"
        self.rate = rate
        self.generator = generator

    def build(self, graph, x):
        """
        In evaluation mode, or with a zero rate, this layer is an identity and
        records nothing.
        """
        if not self.training or self.rate == 0.0:
            return x
        value = graph.value_of(x)
        mask = torch.rand(value.shape, generator=self.generator) >= self.rate
        return graph.record(ops.Dropout(mask, 1.0 / (1.0 - self.rate)), (x,))


class Softmax(Layer):
    def build(self, graph, x):
        return graph.record(ops.Softmax(), (x,))


class CrossEntropyLoss(Layer):
    """
    This layer is an unusual layer. It combines the Softmax activation and the
    cross-entropy loss into a single operation, because the derivative of the
    pair is much simpler (and safer) than either derivative on its own.

    It takes two inputs, the logits and the one-hot targets, and its output
    node holds the loss summed over the batch. The class probabilities are
    available from probabilities() after the node has been built.
    """
    def build(self, graph, x, y):
        return graph.record(ops.SoftmaxCrossEntropy(), (x, y))

    @staticmethod
    def probabilities(graph, loss):
        return graph.node(loss).op.probabilities


class MSELoss(Layer):
    """
    Squared-error loss for networks that regress onto the one-hot targets
    instead of scoring them with cross-entropy.

    It takes two inputs, the predictions (usually softmax probabilities) and
    the one-hot targets, and its output node holds the squared euclidean
    distance between them, summed over the batch.
    """
    def build(self, graph, v, y):
        if graph.value_of(v).shape != graph.value_of(y).shape:
            raise ShapeError("Shapes do not match: %s and %s"
                             % (tuple(graph.value_of(v).shape), tuple(graph.value_of(y).shape)))
        return graph.record(ops.SquaredError(), (v, y))


class Regularization(Layer):
    def __init__(self, lam):
        """
        L2 penalty lam * ||W||^2 over the weight matrices of a network.
        """
        self.lam = lam

    def build(self, graph, W):
        return graph.record(ops.L2Penalty(self.lam), (W,))

from contextlib import contextmanager

import torch

from tapenet.config import LayerConfig
from tapenet.errors import ShapeError
from tapenet.graph import Graph
from tapenet.layers import CrossEntropyLoss, Dense, Dropout, LeakyReLU, MSELoss, Regularization, ReLU, Softmax
from tapenet.ops import Sum


class Pass:
    """
    The graph of one forward pass together with the nodes callers care about.

    objective is the node backward starts from: the loss itself, or the loss
    plus the weight penalty. loss_value always reports the data loss.
    scores is the softmax node when the loss was computed on probabilities
    rather than on the logits.
    """
    def __init__(self, graph, logits, loss, objective=None, scores=None):
        self.graph = graph
        self.logits = logits
        self.loss = loss
        self.objective = loss if objective is None else objective
        self.scores = scores

    @property
    def loss_value(self):
        return float(self.graph.value_of(self.loss))

    @property
    def probabilities(self):
        if self.scores is not None:
            return self.graph.value_of(self.scores)
        return CrossEntropyLoss.probabilities(self.graph, self.loss)


class Network:
    def __init__(self, config):
        """
        Build the two-layer classifier
        input -> dense -> activation -> dropout -> dense -> softmax (+ loss).

        :param config: A validated LayerConfig.
        """
        self.config = config
        self.generator = torch.Generator()
        if config.seed is not None:
            self.generator.manual_seed(config.seed)
        else:
            self.generator.seed()

        self.layers = []
        self.training = True
        self.add(Dense("hidden", config.input_size, config.hidden_unit_count, self.generator, config.dtype,
                       use_bias=config.hidden_use_bias))
        if config.activation_kind == "leaky_relu":
            self.add(LeakyReLU(config.leaky_slope))
        else:
            self.add(ReLU())
        self.add(Dropout(config.dropout_rate, self.generator))
        self.add(Dense("output", config.hidden_unit_count, config.class_count, self.generator, config.dtype,
                       use_bias=config.output_use_bias))
        self.softmax = Softmax()
        if config.loss_kind == "squared_error":
            self.loss_layer = MSELoss()
        else:
            self.loss_layer = CrossEntropyLoss()

    def add(self, layer):
        """
        Adds a new layer to the network.

        Layers are applied in the order they were added.
        :param layer: The layer to be added
        """
        self.layers.append(layer)

    @property
    def input_size(self):
        return self.config.input_size

    @property
    def class_count(self):
        return self.config.class_count

    @property
    def dtype(self):
        return self.config.dtype

    def parameters(self):
        return [p for layer in self.layers for p in layer.parameters()]

    def weights(self):
        return [layer.W for layer in self.layers if isinstance(layer, Dense)]

    def train(self, mode=True):
        self.training = mode
        for layer in self.layers:
            layer.train(mode)
        return self

    def eval(self):
        return self.train(False)

    @contextmanager
    def evaluation(self):
        """
        Switch every layer to evaluation mode for the duration of the block,
        then restore whatever mode the network was in.
        """
        previous = self.training
        self.eval()
        try:
            yield self
        finally:
            self.train(previous)

    def check_inputs(self, inputs):
        if inputs.dim() != 2 or inputs.shape[1] != self.input_size:
            raise ShapeError("Expected inputs of shape (n, %d), got %s" % (self.input_size, tuple(inputs.shape)))

    def forward(self, graph, x):
        """
        Record the layers on top of node x and return the logits node.
        """
        for layer in self.layers:
            x = layer.build(graph, x)
        return x

    def loss_pass(self, inputs, targets, weight_decay=0.0, guard=None):
        """
        Build a graph computing the loss of a batch, summed over its examples,
        plus the L2 penalty of the weights when weight_decay > 0.

        :param inputs: Tensor of shape (n, input_size).
        :param targets: One-hot tensor of shape (n, class_count).
        """
        self.check_inputs(inputs)
        if targets.shape != (inputs.shape[0], self.class_count):
            raise ShapeError("Expected targets of shape (%d, %d), got %s"
                             % (inputs.shape[0], self.class_count, tuple(targets.shape)))
        graph = Graph(guard)
        x = graph.input(inputs.to(self.dtype), name="x")
        y = graph.input(targets.to(self.dtype), name="y")
        logits = self.forward(graph, x)
        scores = None
        if isinstance(self.loss_layer, MSELoss):
            scores = self.softmax.build(graph, logits)
            loss = self.loss_layer.build(graph, scores, y)
        else:
            loss = self.loss_layer.build(graph, logits, y)
        objective = None
        if weight_decay > 0:
            penalty = Regularization(weight_decay)
            terms = [loss] + [penalty.build(graph, graph.parameter(W)) for W in self.weights()]
            objective = graph.record(Sum(), terms)
        return Pass(graph, logits, loss, objective, scores)

    def probabilities(self, inputs, guard=None):
        """
        Class probabilities for every row of inputs, as a (n, class_count) tensor.
        Uses whatever mode the network is currently in.
        """
        self.check_inputs(inputs)
        graph = Graph(guard)
        x = graph.input(inputs.to(self.dtype), name="x")
        return graph.value_of(self.softmax.build(graph, self.forward(graph, x)))

    def predict(self, inputs, guard=None):
        with self.evaluation():
            return self.probabilities(inputs, guard).argmax(dim=1)

    def snapshot(self):
        """
        :return: A copy of every parameter, keyed by name.
        """
        return {p.name: p.value.clone() for p in self.parameters()}

    def restore(self, snapshot):
        for p in self.parameters():
            if p.name not in snapshot:
                raise KeyError("Snapshot has no value for %s" % p.name)
            value = snapshot[p.name]
            if tuple(value.shape) != p.shape:
                raise ShapeError("Snapshot value for %s has shape %s, expected %s"
                                 % (p.name, tuple(value.shape), p.shape))
            p.value.copy_(value)


def build_network(layer_config):
    """
    :param layer_config: A LayerConfig or a dict of its fields.
    :return: A Network in training mode.
    """
    if isinstance(layer_config, dict):
        layer_config = LayerConfig.from_dict(layer_config)
    return Network(layer_config.validate())

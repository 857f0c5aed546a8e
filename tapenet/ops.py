import torch

from tapenet.errors import ShapeError

# Each operation kind knows how to compute its output from its operand values
# and how to turn the gradient of its output into one gradient per operand.
# An op instance is created per recorded node, so per-call state (a dropout
# mask, the probabilities of a softmax) can live on the instance.


class Op:
    kind = "op"

    def forward(self, *values):
        raise NotImplementedError

    def backward(self, grad, output, *values):
        """
        Compute the gradient with respect to each operand.

        :param grad: Gradient of the loss with respect to this op's output.
        :param output: The value this op produced during the forward pass.
        :param values: The operand values, in the order they were recorded.
        :return: A tuple with one entry per operand. None means the operand
                 receives no gradient.
        """
        raise NotImplementedError

    def __repr__(self):
        return "%s()" % type(self).__name__


class Leaf(Op):
    """
    A value that enters the graph from outside: an input batch, a target or a
    parameter bound for this pass.
    """
    def __init__(self, kind="input", name=None):
        self.kind = kind
        self.name = name

    def forward(self, *values):
        raise TypeError("Leaf values are supplied when they are recorded")

    def backward(self, grad, output, *values):
        return ()

    def __repr__(self):
        return "Leaf(%r, %r)" % (self.kind, self.name)


class Linear(Op):
    """
    Affine transform x·W + b, or x·W when recorded without a bias operand.
    x is a single example (in,) or a batch with one example per row (n, in).
    """
    kind = "affine"

    def forward(self, x, W, b=None):
        if W.dim() != 2:
            raise ShapeError("Weight must be a matrix, got shape %s" % (tuple(W.shape),))
        if x.dim() not in (1, 2) or x.shape[-1] != W.shape[0]:
            raise ShapeError("Input of shape %s does not match weight of shape %s"
                             % (tuple(x.shape), tuple(W.shape)))
        if b is None:
            return x @ W
        if b.shape != (W.shape[1],):
            raise ShapeError("Bias of shape %s does not match weight of shape %s"
                             % (tuple(b.shape), tuple(W.shape)))
        return x @ W + b

    def backward(self, grad, output, x, W, b=None):
        if x.dim() == 1:
            grads = (grad @ W.T, torch.outer(x, grad), grad)
        else:
            # Sum of the per-example outer products.
            grads = (grad @ W.T, x.T @ grad, grad.sum(dim=0))
        return grads if b is not None else grads[:2]


class ReLU(Op):
    kind = "relu"

    def forward(self, x):
        return torch.clamp(x, min=0)

    def backward(self, grad, output, x):
        # The kink at exactly 0 gets derivative 0.
        return (grad * (x > 0).to(grad.dtype),)


class LeakyReLU(Op):
    """
    x where x > 0, slope * x elsewhere.
    """
    kind = "leaky_relu"

    def __init__(self, slope=0.01):
        self.slope = slope

    def forward(self, x):
        return torch.where(x > 0, x, x * self.slope)

    def backward(self, grad, output, x):
        return (torch.where(x > 0, grad, grad * self.slope),)


class Dropout(Op):
    """
    Inverted dropout with a mask fixed when the op is created.
    """
    kind = "dropout"

    def __init__(self, mask, scale):
        self.mask = mask
        self.scale = scale

    def forward(self, x):
        if self.mask.shape != x.shape:
            raise ShapeError("Dropout mask of shape %s does not match input of shape %s"
                             % (tuple(self.mask.shape), tuple(x.shape)))
        return x * self.mask.to(x.dtype) * self.scale

    def backward(self, grad, output, x):
        return (grad * self.mask.to(grad.dtype) * self.scale,)


def _shifted(z):
    return z - z.max(dim=-1, keepdim=True).values


class Softmax(Op):
    """
    Softmax over the last dimension, stabilized by subtracting the row maximum.
    """
    kind = "softmax"

    def forward(self, z):
        z_exp = torch.exp(_shifted(z))
        return z_exp / z_exp.sum(dim=-1, keepdim=True)

    def backward(self, grad, output, z):
        return (output * (grad - (grad * output).sum(dim=-1, keepdim=True)),)


class SoftmaxCrossEntropy(Op):
    """
    This op combines the Softmax activation and the cross-entropy loss.

    Its operands are the logits and the one-hot targets. The output is the
    loss summed over every example of the batch, and the probabilities are
    kept in self.probabilities.

    Differentiating the two together collapses to probabilities - targets,
    which never goes through log(0). The log-probabilities in the forward
    pass are computed as a log-softmax for the same reason.

    The targets do not receive a gradient.
    """
    kind = "cross_entropy"

    def __init__(self):
        self.probabilities = None

    def forward(self, z, y):
        if z.shape != y.shape:
            raise ShapeError("Logits of shape %s do not match targets of shape %s"
                             % (tuple(z.shape), tuple(y.shape)))
        shifted = _shifted(z)
        log_p = shifted - torch.log(torch.exp(shifted).sum(dim=-1, keepdim=True))
        self.probabilities = torch.exp(log_p)
        return -(y * log_p).sum()

    def backward(self, grad, output, z, y):
        return grad * (self.probabilities - y), None


class Sum(Op):
    """
    Elementwise sum of any number of operands of the same shape.
    """
    kind = "sum"

    def forward(self, *values):
        for value in values[1:]:
            if value.shape != values[0].shape:
                raise ShapeError("All operand shapes must match, got %s and %s"
                                 % (tuple(values[0].shape), tuple(value.shape)))
        return sum(values[1:], values[0])

    def backward(self, grad, output, *values):
        return tuple(grad for _ in values)


class WeightedTotal(Op):
    """
    Reduce a tensor to the scalar sum(weights * x) for constant weights.
    """
    kind = "weighted_total"

    def __init__(self, weights):
        self.weights = weights

    def forward(self, x):
        if self.weights.shape != x.shape:
            raise ShapeError("Weights of shape %s do not match input of shape %s"
                             % (tuple(self.weights.shape), tuple(x.shape)))
        return (self.weights.to(x.dtype) * x).sum()

    def backward(self, grad, output, x):
        return (grad * self.weights.to(x.dtype),)


class L2Penalty(Op):
    """
    Weight decay term lam * ||W||^2.
    """
    kind = "l2"

    def __init__(self, lam):
        self.lam = lam

    def forward(self, W):
        return self.lam * (W * W).sum()

    def backward(self, grad, output, W):
        return (grad * 2 * self.lam * W,)


class SquaredError(Op):
    """
    Squared euclidean distance between predictions and targets, summed over
    every example of the batch. The targets do not receive a gradient.
    """
    kind = "squared_error"

    def forward(self, v, y):
        if v.shape != y.shape:
            raise ShapeError("Predictions of shape %s do not match targets of shape %s"
                             % (tuple(v.shape), tuple(y.shape)))
        return ((v - y) ** 2).sum()

    def backward(self, grad, output, v, y):
        return grad * 2 * (v - y), None

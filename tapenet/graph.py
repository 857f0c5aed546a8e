import torch

from tapenet.errors import ShapeError
from tapenet.guard import StabilityGuard
from tapenet.ops import Leaf


class Node:
    """
    One entry of the gradient tape.

    A node refers to its operands by their index in the graph, never directly,
    so a graph can hold no reference cycles.
    """
    __slots__ = ("index", "op", "operands", "value", "grad")

    def __init__(self, index, op, operands, value):
        self.index = index
        self.op = op
        self.operands = operands
        self.value = value
        self.grad = None

    @property
    def shape(self):
        return tuple(self.value.shape)

    def accumulate_grad(self, grad):
        """
        Add grad to this node's gradient, starting from zero the first time.
        """
        if tuple(grad.shape) != self.shape:
            raise ShapeError("Gradient of shape %s does not match node %d of shape %s"
                             % (tuple(grad.shape), self.index, self.shape))
        if self.grad is None:
            self.grad = torch.zeros_like(self.value)
        self.grad = self.grad + grad

    def __repr__(self):
        return "Node(%d, %r, operands=%r, shape=%r)" % (self.index, self.op, self.operands, self.shape)


class Graph:
    """
    Records a forward pass so it can be differentiated.

    Nodes can *only* be added after their operands have been added, so the
    insertion order is already topological and the backward pass simply walks
    it in reverse.

    A graph is built for one pass and discarded after the parameter update.
    Parameters live outside the graph and are bound to a fresh leaf each pass.
    """
    def __init__(self, guard=None):
        self.nodes = []
        self.guard = guard if guard is not None else StabilityGuard()
        self.bindings = []

    def __len__(self):
        return len(self.nodes)

    def _append(self, op, operands, value):
        node = Node(len(self.nodes), op, operands, value)
        self.nodes.append(node)
        return node.index

    def input(self, value, name=None):
        """
        Record a constant leaf such as an input batch or a target.
        """
        value = self.guard.sanitize(value, where="input %s" % (name or len(self.nodes)))
        return self._append(Leaf("input", name), (), value)

    def parameter(self, parameter):
        """
        Record a leaf bound to a Parameter. Its gradient is reported by
        parameter_gradients after the backward pass.
        """
        value = self.guard.sanitize(parameter.value, where="parameter %s" % parameter.name)
        index = self._append(Leaf("parameter", parameter.name), (), value)
        self.bindings.append((parameter, index))
        return index

    def record(self, op, operands):
        """
        Compute op over the values of the operand nodes and append the result.

        :param op: An Op instance.
        :param operands: Indices of nodes already in this graph.
        :return: The index of the new node.
        """
        operands = tuple(operands)
        for i in operands:
            if not 0 <= i < len(self.nodes):
                raise ShapeError("Operand index %r does not refer to an earlier node" % (i,))
        value = op.forward(*(self.nodes[i].value for i in operands))
        value = self.guard.sanitize(value, where="%s output of node %d" % (op.kind, len(self.nodes)))
        return self._append(op, operands, value)

    def node(self, index):
        return self.nodes[index]

    def value_of(self, index):
        return self.nodes[index].value

    def gradient_of(self, index):
        """
        The gradient of the last backward loss with respect to this node.
        Nodes the loss does not depend on have a zero gradient.
        """
        node = self.nodes[index]
        if node.grad is None:
            return torch.zeros_like(node.value)
        return node.grad

    def clear_grads(self):
        for node in self.nodes:
            node.grad = None

    def backward(self, loss_index):
        """
        Compute the gradient of the loss node with respect to every node it
        depends on, working through the tape backward.

        Gradients are accumulated, so a node consumed by several later nodes
        holds the sum of every contribution before it passes its own gradient on.
        """
        loss = self.nodes[loss_index]
        if loss.value.numel() != 1:
            raise ShapeError("Loss node %d must hold a scalar, got shape %s" % (loss_index, loss.shape))

        self.clear_grads()
        loss.grad = torch.ones_like(loss.value)

        for node in reversed(self.nodes[:loss_index + 1]):
            if node.grad is None or not node.operands:
                continue
            operand_values = [self.nodes[i].value for i in node.operands]
            grads = node.op.backward(node.grad, node.value, *operand_values)
            for i, grad in zip(node.operands, grads):
                if grad is None:
                    continue
                grad = self.guard.sanitize(grad, where="gradient from node %d to node %d" % (node.index, i))
                target = self.nodes[i]
                target.accumulate_grad(grad)
                # Two finite contributions can still overflow once summed.
                target.grad = self.guard.sanitize(target.grad, where="accumulated gradient of node %d" % i)

    def parameter_gradients(self):
        """
        :return: (parameter, gradient) pairs. A parameter bound more than once
                 gets the sum of the gradients of its leaves.
        """
        totals = {}
        order = []
        for parameter, index in self.bindings:
            key = id(parameter)
            if key not in totals:
                order.append(parameter)
                totals[key] = self.gradient_of(index)
            else:
                totals[key] = self.guard.sanitize(totals[key] + self.gradient_of(index),
                                                  where="gradient of parameter %s" % parameter.name)
        return [(parameter, totals[id(parameter)]) for parameter in order]

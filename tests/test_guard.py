import logging

import torch

from tapenet import ops
from tapenet.graph import Graph
from tapenet.guard import StabilityGuard
from tapenet.layers import Parameter
from tapenet.network import build_network


def test_clean_tensor_is_returned_untouched():
    guard = StabilityGuard(seed=0)
    value = torch.tensor([1.0, -2.0])
    assert guard.sanitize(value) is value
    assert guard.inf_substitutions == guard.nan_substitutions == 0


def test_infinities_become_signed_sentinels(caplog):
    guard = StabilityGuard(sentinel=1e6, seed=0)
    value = torch.tensor([float("inf"), 1.0, float("-inf")])
    with caplog.at_level(logging.WARNING, logger="tapenet.guard"):
        result = guard.sanitize(value, where="test")
    assert torch.equal(result, torch.tensor([1e6, 1.0, -1e6]))
    assert torch.isinf(value).sum() == 2
    assert guard.inf_substitutions == 2
    assert "2 infinite entries in test" in caplog.text


def test_nans_become_small_random_values(caplog):
    guard = StabilityGuard(nan_low=-1e-3, nan_high=1e-3, seed=0)
    value = torch.full((100,), float("nan"))
    with caplog.at_level(logging.WARNING, logger="tapenet.guard"):
        result = guard.sanitize(value)
    assert torch.isfinite(result).all()
    assert (result.abs() <= 1e-3).all()
    assert len(result.unique()) > 1
    assert guard.nan_substitutions == 100
    assert "NaN" in caplog.text
    guard.reset_counts()
    assert guard.nan_substitutions == 0


def test_overflowing_operation_is_sanitized_on_record():
    graph = Graph(StabilityGuard(seed=0))
    x = graph.input(torch.tensor([[1e30]]))
    W = graph.input(torch.tensor([[1e30]]))
    b = graph.input(torch.tensor([0.0]))
    out = graph.record(ops.Linear(), (x, W, b))
    assert torch.equal(graph.value_of(out), torch.tensor([[1e6]]))


def injected_gradients(bad_value, caplog):
    network = build_network(dict(input_size=2, class_count=2, hidden_unit_count=8, dropout_rate=0.0, seed=0))
    guard = StabilityGuard(seed=0)
    inputs = torch.tensor([[bad_value, 1.0], [0.5, -0.5]])
    targets = torch.tensor([[1.0, 0.0], [0.0, 1.0]])
    with caplog.at_level(logging.WARNING, logger="tapenet.guard"):
        step = network.loss_pass(inputs, targets, guard=guard)
        step.graph.backward(step.objective)
    return step, guard


def test_injected_infinity_gives_finite_gradients(caplog):
    step, guard = injected_gradients(float("inf"), caplog)
    assert guard.inf_substitutions >= 1
    assert caplog.records
    gradients = step.graph.parameter_gradients()
    assert len(gradients) == 4
    for _, grad in gradients:
        assert torch.isfinite(grad).all()
    for node in step.graph.nodes:
        assert torch.isfinite(node.value).all()


def test_injected_nan_gives_finite_gradients(caplog):
    step, guard = injected_gradients(float("nan"), caplog)
    assert guard.nan_substitutions >= 1
    for _, grad in step.graph.parameter_gradients():
        assert torch.isfinite(grad).all()


def test_sentinel_fits_in_half_precision():
    guard = StabilityGuard(seed=0)
    result = guard.sanitize(torch.tensor([float("inf"), 1.0, float("-inf")], dtype=torch.float16))
    assert result.dtype == torch.float16
    assert torch.isfinite(result).all()
    sentinel = torch.tensor(guard.sentinel_for(torch.float16), dtype=torch.float16)
    assert result[0] == sentinel and result[2] == -sentinel
    assert guard.sentinel_for(torch.float32) == 1e6
    assert guard.sentinel_for(torch.float64) == 1e6


def test_injected_infinity_in_half_precision_network():
    network = build_network(dict(input_size=2, class_count=2, hidden_unit_count=8, dropout_rate=0.0,
                                 seed=0, dtype=torch.float16))
    guard = StabilityGuard(seed=0)
    inputs = torch.tensor([[float("inf"), 1.0], [0.5, -0.5]])
    targets = torch.tensor([[1.0, 0.0], [0.0, 1.0]])
    step = network.loss_pass(inputs, targets, guard=guard)
    step.graph.backward(step.objective)
    assert guard.inf_substitutions >= 1
    for _, grad in step.graph.parameter_gradients():
        assert grad.dtype == torch.float16
        assert torch.isfinite(grad).all()


def test_accumulated_gradient_overflow_is_sanitized(caplog):
    graph = Graph(StabilityGuard(seed=0))
    x = graph.input(torch.tensor([1.0]))
    first = graph.record(ops.WeightedTotal(torch.tensor([3e38])), (x,))
    second = graph.record(ops.WeightedTotal(torch.tensor([3e38])), (x,))
    loss = graph.record(ops.Sum(), (first, second))
    with caplog.at_level(logging.WARNING, logger="tapenet.guard"):
        graph.backward(loss)
    # Each path contributes 3e38, their sum does not fit in float32.
    assert torch.equal(graph.gradient_of(x), torch.tensor([1e6]))
    assert "accumulated gradient of node %d" % x in caplog.text


def test_summed_parameter_gradient_overflow_is_sanitized():
    graph = Graph(StabilityGuard(seed=0))
    p = Parameter("p", torch.tensor([1.0]))
    first = graph.record(ops.WeightedTotal(torch.tensor([3e38])), (graph.parameter(p),))
    second = graph.record(ops.WeightedTotal(torch.tensor([3e38])), (graph.parameter(p),))
    graph.backward(graph.record(ops.Sum(), (first, second)))
    [(parameter, grad)] = graph.parameter_gradients()
    assert parameter is p
    assert torch.equal(grad, torch.tensor([1e6]))

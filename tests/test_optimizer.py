import pytest
import torch

from tapenet.config import LayerConfig, ScheduleConfig
from tapenet.errors import ConfigurationError, ShapeError
from tapenet.guard import StabilityGuard
from tapenet.layers import Parameter
from tapenet.optimizer import SGD, Schedule


def test_schedule_is_non_increasing():
    config = ScheduleConfig(initial_batch_size=20, batch_size_floor=5, decay_rate=0.95,
                            initial_learning_rate=0.5, learning_rate_floor=0.01).validate()
    schedule = Schedule(config)
    sizes = []
    rates = []
    for step in range(200):
        sizes.append(schedule.current_batch_size)
        rates.append(schedule.learning_rate)
        # An occasional short batch, like the last one of an epoch.
        schedule.advance(3 if step % 7 == 6 else schedule.current_batch_size)
    assert all(later <= earlier for earlier, later in zip(sizes, sizes[1:]))
    assert all(later <= earlier for earlier, later in zip(rates, rates[1:]))
    assert sizes[0] == 20 and rates[0] == 0.5
    assert schedule.current_batch_size == 5
    assert schedule.learning_rate == 0.01
    assert [s for _, s, _ in schedule.history] == sizes


def test_short_batch_decays_proportionally_less():
    config = ScheduleConfig(initial_batch_size=10, batch_size_floor=1, decay_rate=0.5,
                            initial_learning_rate=1.0, learning_rate_floor=0.0)
    schedule = Schedule(config)
    schedule.advance(5)
    assert schedule.learning_rate == pytest.approx(0.5 ** 0.5)
    assert schedule.batch_size == pytest.approx(10 * 0.5 ** 0.5)
    assert schedule.step == 1


def test_separate_batch_size_decay():
    config = ScheduleConfig(initial_batch_size=10, batch_size_floor=1, decay_rate=0.5, batch_size_decay_rate=1.0,
                            initial_learning_rate=1.0, learning_rate_floor=0.0)
    schedule = Schedule(config)
    schedule.advance(10)
    assert schedule.learning_rate == 0.5
    assert schedule.current_batch_size == 10


def test_sgd_updates_in_place():
    value = torch.tensor([1.0, 2.0])
    p = Parameter("p", value)
    schedule = Schedule(ScheduleConfig(initial_learning_rate=0.1, learning_rate_floor=0.0))
    SGD().step([(p, torch.tensor([0.5, -0.5]))], schedule)
    assert p.value is value
    assert torch.allclose(value, torch.tensor([0.95, 2.05]))


def test_sgd_rejects_mismatched_gradient():
    p = Parameter("p", torch.zeros(2, 2))
    with pytest.raises(ShapeError):
        SGD().step([(p, torch.zeros(2))], Schedule(ScheduleConfig()))


@pytest.mark.parametrize("bad_value", [float("inf"), float("-inf"), float("nan")])
def test_sgd_repairs_non_finite_parameter(bad_value):
    value = torch.tensor([bad_value, 2.0])
    p = Parameter("p", value)
    guard = StabilityGuard(seed=0)
    SGD(guard).step([(p, torch.zeros(2))], Schedule(ScheduleConfig()))
    assert p.value is value
    assert torch.isfinite(value).all()
    assert value[1] == 2.0
    assert guard.inf_substitutions + guard.nan_substitutions == 1


@pytest.mark.parametrize("options", [
    dict(initial_batch_size=10, batch_size_floor=20),
    dict(initial_learning_rate=0.01, learning_rate_floor=0.1),
    dict(epoch_count=0),
    dict(decay_rate=0.0),
    dict(decay_rate=1.5),
    dict(batch_size_decay_rate=-1.0),
    dict(batch_size_floor=0),
    dict(weight_decay=-0.1),
    dict(epoch_count=2.0),
    dict(initial_batch_size=80.5),
    dict(batch_size_floor="30"),
])
def test_invalid_schedule_config(options):
    with pytest.raises(ConfigurationError):
        ScheduleConfig(**options).validate()


def test_schedule_config_from_dict():
    config = ScheduleConfig.from_dict(dict(epoch_count=3, decay_rate=0.9))
    assert config.epoch_count == 3
    assert config.effective_batch_size_decay_rate == 0.9
    with pytest.raises(ConfigurationError):
        ScheduleConfig.from_dict(dict(epochs=3))


@pytest.mark.parametrize("options", [
    dict(hidden_unit_count=0),
    dict(dropout_rate=1.0),
    dict(dropout_rate=-0.1),
    dict(activation_kind="tanh"),
    dict(class_count=1),
    dict(dtype=torch.int64),
    dict(hidden_unit_count=2.5),
    dict(hidden_unit_count=True),
    dict(class_count=2.0),
    dict(activation_kind="leaky_relu", leaky_slope=-0.1),
    dict(loss_kind="hinge"),
])
def test_invalid_layer_config(options):
    with pytest.raises(ConfigurationError):
        LayerConfig(input_size=2, class_count=options.pop("class_count", 2), **options).validate()


def test_layer_config_accepts_extra_options():
    config = LayerConfig.from_dict(dict(input_size=2, class_count=3, activation_kind="leaky_relu",
                                        leaky_slope=0.2, hidden_use_bias=False, loss_kind="squared_error"))
    assert config.validate() is config
    assert config.output_use_bias

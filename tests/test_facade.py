"""
Tests for the shared optimiser machinery: param groups, the learning-rate
accessor, per-parameter failures, validation and config loading.
"""

import logging

import pytest
import torch
from torch import nn

from optimisers import (
    LBFGS,
    SGD,
    Adadelta,
    Adagrad,
    Adam,
    AdamConfig,
    AdamW,
    InvalidHyperparameter,
    NAdam,
    NonFiniteGradient,
    OptimiserError,
    RMSprop,
    SGDConfig,
    ShapeMismatch,
    UnsupportedOperation,
    WeightDecayMode,
    build_optimiser,
    config_from_dict,
    load_config,
)


def _params(*shapes):
    return [nn.Parameter(torch.ones(shape)) for shape in shapes]


# ---------------------------------------------------------------------------
# Construction and lifecycle
# ---------------------------------------------------------------------------


def test_state_allocated_at_construction():
    (p,) = _params((3, 2))
    optimiser = Adam([p], amsgrad=True)

    state = optimiser.state[p]
    for key in ("exp_avg", "exp_avg_sq", "max_exp_avg_sq"):
        assert state[key].shape == p.shape
        assert state[key].device == p.device
        assert torch.count_nonzero(state[key]) == 0
    assert state["step"] == 0
    assert optimiser.step_count == 0
    assert not optimiser.initialized


def test_first_step_enters_stepping():
    (p,) = _params(4)
    optimiser = SGD([p], lr=0.1)
    p.grad = torch.ones(4)
    optimiser.step()
    optimiser.step()

    assert optimiser.initialized
    assert optimiser.step_count == 2
    assert optimiser.state[p]["step"] == 2


def test_parameter_without_gradient_is_skipped():
    a, b = _params(2, 2)
    optimiser = Adam([a, b], lr=0.1)
    a.grad = torch.ones(2)
    optimiser.step()

    assert torch.equal(b.detach(), torch.ones(2))
    assert optimiser.state[b]["step"] == 0
    assert optimiser.state[a]["step"] == 1
    assert optimiser.step_count == 1


def test_step_returns_closure_loss():
    (p,) = _params(3)
    optimiser = SGD([p], lr=0.1)

    def closure():
        optimiser.zero_grad()
        loss = (p**2).sum()
        loss.backward()
        return loss

    loss = optimiser.step(closure)
    assert loss.item() == pytest.approx(3.0)
    torch.testing.assert_close(p.detach(), torch.full((3,), 0.8))


def test_weight_decay_mode_accepts_strings():
    (p,) = _params(2)
    optimiser = Adam([p], weight_decay_mode="decoupled")
    assert optimiser.config.weight_decay_mode is WeightDecayMode.DECOUPLED
    assert optimiser.param_groups[0]["weight_decay_mode"] is WeightDecayMode.DECOUPLED


def test_adamw_defaults_to_decoupled_decay():
    (p,) = _params(2)
    assert Adam([p]).config.weight_decay_mode is WeightDecayMode.COUPLED
    config = AdamW([p]).config
    assert config.weight_decay_mode is WeightDecayMode.DECOUPLED
    assert config.weight_decay == 0.01


# ---------------------------------------------------------------------------
# Param groups and learning rate
# ---------------------------------------------------------------------------


def test_per_group_overrides():
    a, b = _params(2, 2)
    optimiser = SGD([{"params": [a], "lr": 0.5}, {"params": [b]}], lr=0.1)
    a.grad = torch.ones(2)
    b.grad = torch.ones(2)
    optimiser.step()

    torch.testing.assert_close(a.detach(), torch.full((2,), 0.5))
    torch.testing.assert_close(b.detach(), torch.full((2,), 0.9))


def test_group_override_allocates_matching_state():
    a, b = _params(2, 2)
    optimiser = RMSprop([{"params": [a], "momentum": 0.9, "centered": True}, {"params": [b]}])

    assert set(optimiser.state[a]) == {"square_avg", "grad_avg", "momentum_buffer", "step"}
    assert set(optimiser.state[b]) == {"square_avg", "step"}


def test_invalid_group_override_rejected():
    a, b = _params(2, 2)
    with pytest.raises(InvalidHyperparameter) as excinfo:
        SGD([{"params": [a]}, {"params": [b], "momentum": -0.5}])
    assert excinfo.value.name == "momentum"


def test_unknown_group_key_rejected():
    (a,) = _params(2)
    with pytest.raises(InvalidHyperparameter, match="betas"):
        SGD([{"params": [a], "betas": (0.9, 0.99)}])


def test_duplicate_parameters_rejected():
    (a,) = _params(2)
    with pytest.raises(ValueError, match="duplicate"):
        Adam([a, a])


def test_add_param_group_after_construction():
    a, b = _params(2, 3)
    optimiser = Adam([a], lr=0.1)
    optimiser.add_param_group({"params": b, "lr": 0.01})

    assert optimiser.param_groups[1]["lr"] == 0.01
    assert optimiser.param_groups[1]["betas"] == (0.9, 0.999)
    assert optimiser.state[b]["exp_avg"].shape == (3,)


def test_lr_accessor():
    a, b = _params(2, 2)
    optimiser = Adagrad([{"params": [a], "lr": 0.3}, {"params": [b]}], lr=0.1)
    assert optimiser.lr == 0.3

    optimiser.lr = 0.05
    assert [group["lr"] for group in optimiser.param_groups] == [0.05, 0.05]
    assert optimiser.lr == 0.05


@pytest.mark.parametrize("value", [-1e-3, float("nan")])
def test_lr_setter_validates(value):
    (p,) = _params(2)
    optimiser = SGD([p], lr=0.1)
    with pytest.raises(InvalidHyperparameter):
        optimiser.lr = value
    assert optimiser.lr == 0.1


def test_lr_change_applies_to_next_step():
    (p,) = _params(1)
    optimiser = SGD([p], lr=0.1)
    p.grad = torch.ones(1)
    optimiser.step()
    optimiser.lr = 0.01
    optimiser.step()
    assert p.item() == pytest.approx(1.0 - 0.1 - 0.01)


def test_works_with_torch_lr_scheduler():
    (p,) = _params(1)
    optimiser = Adam([p], lr=0.1)
    scheduler = torch.optim.lr_scheduler.StepLR(optimiser, step_size=1, gamma=0.5)
    p.grad = torch.ones(1)
    optimiser.step()
    scheduler.step()
    assert optimiser.lr == pytest.approx(0.05)


# ---------------------------------------------------------------------------
# Per-parameter failures
# ---------------------------------------------------------------------------


def test_shape_mismatch_leaves_parameter_untouched(caplog):
    a, b, c = _params((2, 2), 3, 3)
    optimiser = Adam([a, b, c], lr=0.1)
    grads = [torch.ones(4), torch.ones(3), torch.ones(3)]

    with caplog.at_level(logging.WARNING, logger="optimisers.base"):
        with pytest.raises(ShapeMismatch) as excinfo:
            optimiser.step(grads=grads)

    err = excinfo.value
    assert err.index == 0
    assert err.expected == (2, 2)
    assert err.actual == (4,)
    assert "parameter 0" in caplog.text

    assert torch.equal(a.detach(), torch.ones(2, 2))
    assert torch.count_nonzero(optimiser.state[a]["exp_avg"]) == 0
    assert optimiser.state[a]["step"] == 0
    for p in (b, c):
        assert (p.detach() < 1.0).all()
        assert optimiser.state[p]["step"] == 1
    assert optimiser.step_count == 1


def test_first_failure_is_raised():
    a, b, c = _params(2, 2, 2)
    optimiser = SGD([a, b, c], lr=0.1)
    with pytest.raises(ShapeMismatch) as excinfo:
        optimiser.step(grads=[torch.ones(2), torch.ones(5), torch.ones(7)])
    assert excinfo.value.index == 1
    assert excinfo.value.actual == (5,)
    torch.testing.assert_close(a.detach(), torch.full((2,), 0.9))


def test_grads_length_must_match():
    a, b = _params(2, 2)
    optimiser = SGD([a, b], lr=0.1)
    with pytest.raises(ValueError, match="expected 2 gradients"):
        optimiser.step(grads=[torch.ones(2)])
    assert optimiser.step_count == 0


def test_grads_argument_replaces_param_grad():
    (p,) = _params(2)
    optimiser = SGD([p], lr=0.1)
    p.grad = torch.full((2,), 100.0)
    optimiser.step(grads=[torch.ones(2)])
    torch.testing.assert_close(p.detach(), torch.full((2,), 0.9))


def test_non_finite_gradient_propagates_by_default():
    (p,) = _params(2)
    optimiser = Adam([p], lr=0.1)
    optimiser.step(grads=[torch.tensor([float("nan"), 1.0])])
    assert torch.isnan(p.detach()[0])
    assert torch.isfinite(p.detach()[1])


def test_check_finite_fails_the_parameter():
    a, b = _params(2, 2)
    optimiser = NAdam([a, b], lr=0.1, check_finite=True)
    with pytest.raises(NonFiniteGradient) as excinfo:
        optimiser.step(grads=[torch.tensor([float("inf"), 1.0]), torch.ones(2)])

    assert excinfo.value.index == 0
    assert torch.equal(a.detach(), torch.ones(2))
    assert optimiser.state[a]["mu_product"] == 1.0
    assert (b.detach() < 1.0).all()


def test_sparse_gradient_unsupported():
    (p,) = _params(3)
    optimiser = Adagrad([p])
    with pytest.raises(UnsupportedOperation):
        optimiser.step(grads=[torch.ones(3).to_sparse()])


def test_sparse_parameter_unsupported():
    with pytest.raises(UnsupportedOperation):
        SGD([torch.zeros(3).to_sparse()])


@pytest.mark.parametrize("dtype", [torch.int64, torch.bool])
def test_non_float_parameter_unsupported(dtype):
    with pytest.raises(UnsupportedOperation, match="floating point"):
        Adam([torch.zeros(3, dtype=dtype)])


def test_error_hierarchy():
    assert issubclass(InvalidHyperparameter, ValueError)
    assert issubclass(UnsupportedOperation, NotImplementedError)
    for cls in (InvalidHyperparameter, UnsupportedOperation, ShapeMismatch, NonFiniteGradient):
        assert issubclass(cls, OptimiserError)


# ---------------------------------------------------------------------------
# Hyperparameter validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "optimiser_cls,kwargs,name",
    [
        (SGD, {"lr": -0.1}, "learning rate"),
        (SGD, {"momentum": -0.9}, "momentum"),
        (SGD, {"momentum": 0.9, "dampening": 1.5}, "dampening"),
        (SGD, {"nesterov": True}, "nesterov"),
        (SGD, {"momentum": 0.9, "dampening": 0.1, "nesterov": True}, "nesterov"),
        (Adagrad, {"weight_decay": -1.0}, "weight_decay"),
        (Adagrad, {"lr_decay": -0.1}, "lr_decay"),
        (Adadelta, {"rho": 1.0}, "rho"),
        (Adam, {"betas": (1.0, 0.999)}, "beta1"),
        (Adam, {"betas": (0.9, -0.1)}, "beta2"),
        (Adam, {"betas": (0.9,)}, "betas"),
        (Adam, {"weight_decay_mode": "sideways"}, "weight_decay_mode"),
        (NAdam, {"momentum_decay": -1.0}, "momentum_decay"),
        (RMSprop, {"alpha": 1.0}, "alpha"),
        (RMSprop, {"momentum": -0.1}, "momentum"),
        (LBFGS, {"history_size": 0}, "history_size"),
        (LBFGS, {"line_search": "backtracking"}, "line_search"),
        (LBFGS, {"wolfe_c1": 0.9, "wolfe_c2": 0.1}, "wolfe constants"),
        (LBFGS, {"grad_norm": "l1"}, "grad_norm"),
    ],
)
def test_invalid_hyperparameters(optimiser_cls, kwargs, name):
    with pytest.raises(InvalidHyperparameter) as excinfo:
        optimiser_cls(_params(2), **kwargs)
    assert excinfo.value.name == name
    assert str(excinfo.value).startswith(f"Invalid {name}")


# ---------------------------------------------------------------------------
# Config objects and YAML
# ---------------------------------------------------------------------------


def test_build_optimiser_from_config():
    (p,) = _params(2)
    optimiser = build_optimiser([p], AdamConfig(lr=0.02, amsgrad=True), check_finite=True)

    assert type(optimiser) is Adam
    assert optimiser.lr == 0.02
    assert optimiser.check_finite
    assert "max_exp_avg_sq" in optimiser.state[p]


def test_build_optimiser_rejects_unknown_config():
    with pytest.raises(TypeError):
        build_optimiser(_params(2), {"lr": 0.1})


def test_config_is_frozen_and_validated():
    config = SGDConfig(lr=0.1, momentum=0.9)
    with pytest.raises(AttributeError):
        config.lr = 0.2
    with pytest.raises(InvalidHyperparameter):
        SGDConfig(lr=float("nan"))


def test_config_from_dict_applies_named_defaults():
    config = config_from_dict("adamw", {"lr": 3e-4, "betas": [0.9, 0.95]})
    assert isinstance(config, AdamConfig)
    assert config.betas == (0.9, 0.95)
    assert config.weight_decay == 0.01
    assert config.weight_decay_mode is WeightDecayMode.DECOUPLED


def test_config_from_dict_rejects_unknown_keys():
    with pytest.raises(InvalidHyperparameter, match="momentum"):
        config_from_dict("adam", {"momentum": 0.9})
    with pytest.raises(ValueError, match="Unknown optimiser"):
        config_from_dict("lion", {})


def test_load_config_from_yaml(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text(
        "optimiser: rmsprop\n"
        "lr: 1.0e-3\n"
        "optimiser_kwargs:\n"
        "  centered: true\n"
        "  momentum: 0.9\n"
    )
    config = load_config(path)
    assert config["optimiser"] == "rmsprop"

    rms = config_from_dict(config["optimiser"], {"lr": config["lr"], **config["optimiser_kwargs"]})
    assert rms.lr == 1e-3
    assert rms.centered is True
    assert rms.momentum == 0.9


def test_load_empty_yaml(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(path) == {}

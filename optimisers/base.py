"""
Optimiser Facade
================

``ConfiguredOptimiser`` is the torch ``Optimizer`` subclass every optimiser
in this package derives from. It owns:

    - the validated hyperparameter config (one frozen dataclass per algorithm),
    - per-group validation of hyperparameter overrides,
    - rejection of tensors the algorithms cannot handle (sparse, non-float),
    - the global step counter and the learning-rate accessor.

``ParamOptimiser`` adds the per-parameter machinery shared by the
first-order algorithms. A subclass binds exactly two module-level
functions:

    init_state(param, **hyper) -> dict
        Zero-initialised buffers for one parameter, allocated at
        construction time on the parameter's device.

    update_rule(param, grad, state, *, step, **hyper) -> (new_param, new_state)
        Pure update. It must not mutate ``param`` or ``state``; the facade
        commits the returned tensors in place only after the rule returned,
        so a parameter that fails keeps its value and state.

Lifecycle:
    Uninitialized: state allocated, ``step_count == 0``.
    Stepping:      after the first ``step()`` call, for the rest of the
                   instance's life.
"""

import logging
from collections.abc import Callable, Sequence

import torch
from torch import Tensor
from torch.optim.optimizer import Optimizer

from optimisers.errors import (
    InvalidHyperparameter,
    NonFiniteGradient,
    ParameterError,
    ShapeMismatch,
    UnsupportedOperation,
)

logger = logging.getLogger(__name__)


class ConfiguredOptimiser(Optimizer):
    """torch Optimizer driven by a validated config dataclass.

    Args:
        params: Iterable of tensors or param-group dicts. Group dicts may
            override any hyperparameter of the config.
        config: Instance of ``config_cls``.
        check_finite: If True, a NaN/Inf gradient fails its parameter with
            ``NonFiniteGradient`` instead of propagating into the state.
    """

    config_cls: type = None

    def __init__(self, params, config, *, check_finite: bool = False):
        if not isinstance(config, self.config_cls):
            raise TypeError(
                f"{type(self).__name__} expects a {self.config_cls.__name__}, "
                f"got {type(config).__name__}"
            )
        self.config = config
        self.check_finite = check_finite
        self.step_count = 0
        super().__init__(params, config.to_defaults())
        logger.debug(
            "Constructed %s with %d parameter group(s), %d parameter(s)",
            type(self).__name__,
            len(self.param_groups),
            sum(len(group["params"]) for group in self.param_groups),
        )

    @property
    def initialized(self) -> bool:
        """True once the first step has been taken."""
        return self.step_count > 0

    @property
    def lr(self) -> float:
        """Current learning rate of the first param group."""
        return self.param_groups[0]["lr"]

    @lr.setter
    def lr(self, value: float) -> None:
        if not value >= 0.0:
            raise InvalidHyperparameter("learning rate", value)
        for group in self.param_groups:
            group["lr"] = value

    def add_param_group(self, param_group: dict) -> None:
        """Validate a param group's overrides and tensors, then register it."""
        params = param_group["params"]
        if isinstance(params, Tensor):
            params = [params]
        elif not isinstance(params, set):
            # torch rejects sets itself; anything else is materialised once
            params = list(params)
        param_group = {**param_group, "params": params}

        overrides = {k: v for k, v in param_group.items() if k != "params"}
        unknown = sorted(set(overrides) - set(self.config_cls.field_names()))
        if unknown:
            raise InvalidHyperparameter(
                "hyperparameter name", unknown[0], f"not accepted by {type(self).__name__}"
            )
        merged = {**self.defaults, **overrides}
        self.config_cls(**{name: merged[name] for name in self.config_cls.field_names()})

        if not isinstance(params, set):
            if len({id(p) for p in params}) != len(params):
                raise ValueError("parameter group contains duplicate parameters")
            for p in params:
                self._check_supported(p)

        super().add_param_group(param_group)
        self._init_group(self.param_groups[-1])

    def _init_group(self, group: dict) -> None:
        """Allocate state for a freshly added group (no-op by default)."""

    @staticmethod
    def _check_supported(p: Tensor) -> None:
        if not isinstance(p, Tensor):
            return  # torch reports the type error
        if p.is_sparse:
            raise UnsupportedOperation("sparse parameters are not supported")
        if not p.is_floating_point():
            raise UnsupportedOperation(
                f"parameters must be real floating point, got dtype {p.dtype}"
            )

    def _enter_stepping(self) -> None:
        if self.step_count == 0:
            logger.debug("%s: first step", type(self).__name__)
        self.step_count += 1


class ParamOptimiser(ConfiguredOptimiser):
    """Facade for optimisers whose update is independent per parameter."""

    init_state: Callable[..., dict] = None
    update_rule: Callable[..., tuple[Tensor, dict]] = None

    def _init_group(self, group: dict) -> None:
        hyper = self._hyperparameters(group)
        for p in group["params"]:
            state = self.init_state(p, **hyper)
            state["step"] = 0
            self.state[p] = state

    def _hyperparameters(self, group: dict) -> dict:
        return {name: group[name] for name in self.config_cls.field_names()}

    @torch.no_grad()
    def step(self, closure=None, grads: Sequence[Tensor | None] | None = None):
        """Perform a single optimization step.

        Args:
            closure: Optional callable that re-evaluates the model and
                returns the loss.
            grads: Optional gradients in param-group order, used instead of
                ``param.grad``. ``None`` entries skip that parameter.

        Returns:
            The closure's loss, or None.

        Raises:
            ShapeMismatch / NonFiniteGradient: for the first parameter that
                failed. All other parameters have still been updated.
            UnsupportedOperation: for sparse gradients.
        """
        loss = None
        if closure is not None:
            with torch.enable_grad():
                loss = closure()

        params = [p for group in self.param_groups for p in group["params"]]
        if grads is not None:
            grads = list(grads)
            if len(grads) != len(params):
                raise ValueError(
                    f"expected {len(params)} gradients, got {len(grads)}"
                )

        self._enter_stepping()
        failures: list[ParameterError] = []
        index = 0
        for group in self.param_groups:
            hyper = self._hyperparameters(group)
            for p in group["params"]:
                grad = p.grad if grads is None else grads[index]
                if grad is not None:
                    try:
                        self._update_param(index, p, grad, hyper)
                    except ParameterError as err:
                        logger.warning("%s: %s", type(self).__name__, err)
                        failures.append(err)
                index += 1

        if failures:
            raise failures[0]
        return loss

    def _update_param(self, index: int, p: Tensor, grad: Tensor, hyper: dict) -> None:
        if grad.is_sparse:
            raise UnsupportedOperation(
                f"{type(self).__name__} does not support sparse gradients"
            )
        if grad.shape != p.shape:
            raise ShapeMismatch(index, p.shape, grad.shape)
        if self.check_finite and not torch.isfinite(grad).all():
            raise NonFiniteGradient(index)

        state = self.state[p]
        new_param, new_state = self.update_rule(
            p, grad, state, step=self.step_count, **hyper
        )

        p.copy_(new_param)
        for key, value in new_state.items():
            if isinstance(value, Tensor):
                state[key].copy_(value)
            else:
                state[key] = value
        state["step"] += 1

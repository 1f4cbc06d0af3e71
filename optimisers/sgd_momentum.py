"""
SGD with Momentum (and Nesterov)
================================
The foundational optimizer.

References:
    - Polyak (1964): "Some methods of speeding up the convergence of iteration methods"
    - Sutskever et al. (2013): "On the importance of initialization and momentum in deep learning"
      https://proceedings.mlr.press/v28/sutskever13.html

Update rule:
    grad_t  = grad_t + wd * param_{t-1}                       # coupled weight decay
    v_1     = grad_1                                          # first observed gradient
    v_t     = mu * v_{t-1} + (1 - dampening) * grad_t         # t > 1
    update  = grad_t + mu * v_t   if nesterov   else   v_t
    param_t = param_{t-1} - lr * update

    With mu == 0 there is no buffer and update = grad_t.

Hyperparameters:
    lr:           Learning rate (typical: 0.01 - 0.1)
    momentum:     Momentum factor (typical: 0.9 - 0.99)
    dampening:    Fraction of the gradient withheld from the buffer
    nesterov:     Whether to use Nesterov momentum (default: False)
    weight_decay: Coupled (L2) weight decay
"""

import torch
from torch import Tensor

from optimisers.base import ParamOptimiser
from optimisers.config import SGDConfig


def sgd_init(param: Tensor, *, momentum: float, **_) -> dict:
    if momentum == 0.0:
        return {}
    return {"momentum_buffer": torch.zeros_like(param, memory_format=torch.preserve_format)}


def sgd_update(
    param: Tensor,
    grad: Tensor,
    state: dict,
    *,
    step: int,
    lr: float,
    momentum: float,
    dampening: float,
    nesterov: bool,
    weight_decay: float,
) -> tuple[Tensor, dict]:
    if weight_decay != 0.0:
        grad = grad.add(param, alpha=weight_decay)

    if momentum == 0.0:
        return param.add(grad, alpha=-lr), {}

    if state["step"] == 0:
        buf = grad.clone()
    else:
        buf = state["momentum_buffer"].mul(momentum).add_(grad, alpha=1.0 - dampening)

    update = grad.add(buf, alpha=momentum) if nesterov else buf
    return param.add(update, alpha=-lr), {"momentum_buffer": buf}


class SGD(ParamOptimiser):
    """SGD with (optionally Nesterov) momentum and coupled weight decay.

    Args:
        params: Iterable of parameters or param groups.
        lr: Learning rate.
        momentum: Momentum factor.
        dampening: Dampening for momentum.
        nesterov: If True, use Nesterov momentum.
        weight_decay: Coupled weight decay coefficient.
    """

    config_cls = SGDConfig
    init_state = staticmethod(sgd_init)
    update_rule = staticmethod(sgd_update)

    def __init__(
        self,
        params,
        lr: float = 0.01,
        momentum: float = 0.0,
        dampening: float = 0.0,
        nesterov: bool = False,
        weight_decay: float = 0.0,
        *,
        check_finite: bool = False,
    ):
        config = SGDConfig(
            lr=lr, momentum=momentum, dampening=dampening,
            nesterov=nesterov, weight_decay=weight_decay,
        )
        super().__init__(params, config, check_finite=check_finite)

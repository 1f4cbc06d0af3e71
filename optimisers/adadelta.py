"""
AdaDelta
========
Paper: "ADADELTA: An Adaptive Learning Rate Method" (Zeiler, 2012)
       https://arxiv.org/abs/1212.5701

Update rule:
    s_t     = rho * s_{t-1} + (1 - rho) * grad_t^2
    u_t     = grad_t * sqrt(delta_{t-1} + eps) / sqrt(s_t + eps)
    delta_t = rho * delta_{t-1} + (1 - rho) * u_t^2
    param_t = param_{t-1} - lr * u_t

    No bias correction: the ratio of the two accumulators sets the step
    size, so lr is usually left at 1.0.
"""

import torch
from torch import Tensor

from optimisers.base import ParamOptimiser
from optimisers.config import AdadeltaConfig


def adadelta_init(param: Tensor, **_) -> dict:
    return {
        "square_avg": torch.zeros_like(param, memory_format=torch.preserve_format),
        "acc_delta": torch.zeros_like(param, memory_format=torch.preserve_format),
    }


def adadelta_update(
    param: Tensor,
    grad: Tensor,
    state: dict,
    *,
    step: int,
    lr: float,
    rho: float,
    eps: float,
    weight_decay: float,
) -> tuple[Tensor, dict]:
    if weight_decay != 0.0:
        grad = grad.add(param, alpha=weight_decay)

    square_avg = state["square_avg"].mul(rho).addcmul_(grad, grad, value=1.0 - rho)
    std = square_avg.add(eps).sqrt_()
    delta = state["acc_delta"].add(eps).sqrt_().div_(std).mul_(grad)
    acc_delta = state["acc_delta"].mul(rho).addcmul_(delta, delta, value=1.0 - rho)
    return param.add(delta, alpha=-lr), {"square_avg": square_avg, "acc_delta": acc_delta}


class Adadelta(ParamOptimiser):
    """AdaDelta with coupled weight decay.

    Args:
        params: Iterable of parameters or param groups.
        lr: Scale applied to the computed update (1.0 in the paper).
        rho: Decay rate of both running averages.
        eps: Added inside both square roots.
        weight_decay: Coupled weight decay coefficient.
    """

    config_cls = AdadeltaConfig
    init_state = staticmethod(adadelta_init)
    update_rule = staticmethod(adadelta_update)

    def __init__(
        self,
        params,
        lr: float = 1.0,
        rho: float = 0.9,
        eps: float = 1e-6,
        weight_decay: float = 0.0,
        *,
        check_finite: bool = False,
    ):
        config = AdadeltaConfig(lr=lr, rho=rho, eps=eps, weight_decay=weight_decay)
        super().__init__(params, config, check_finite=check_finite)

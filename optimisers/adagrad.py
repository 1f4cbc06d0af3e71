"""
AdaGrad
=======
Paper: "Adaptive Subgradient Methods for Online Learning and Stochastic
        Optimization" (Duchi, Hazan & Singer, 2011)
       https://jmlr.org/papers/v12/duchi11a.html

Core idea:
    Scale every coordinate by the inverse root of its accumulated squared
    gradients. Rarely-updated coordinates keep a large step size.

Update rule:
    s_t     = s_{t-1} + grad_t^2
    lr_t    = lr / (1 + (t - 1) * lr_decay)
    param_t = param_{t-1} - lr_t * grad_t / (sqrt(s_t) + eps)

    s_t never decreases, so the effective step size only shrinks.
"""

import torch
from torch import Tensor

from optimisers.base import ParamOptimiser
from optimisers.config import AdagradConfig


def adagrad_init(param: Tensor, **_) -> dict:
    return {"sum": torch.zeros_like(param, memory_format=torch.preserve_format)}


def adagrad_update(
    param: Tensor,
    grad: Tensor,
    state: dict,
    *,
    step: int,
    lr: float,
    lr_decay: float,
    weight_decay: float,
    eps: float,
) -> tuple[Tensor, dict]:
    if weight_decay != 0.0:
        grad = grad.add(param, alpha=weight_decay)

    clr = lr / (1.0 + (step - 1) * lr_decay)
    sum_ = state["sum"].addcmul(grad, grad)
    std = sum_.sqrt().add_(eps)
    return param.addcdiv(grad, std, value=-clr), {"sum": sum_}


class Adagrad(ParamOptimiser):
    """AdaGrad with optional learning-rate decay and coupled weight decay."""

    config_cls = AdagradConfig
    init_state = staticmethod(adagrad_init)
    update_rule = staticmethod(adagrad_update)

    def __init__(
        self,
        params,
        lr: float = 0.01,
        lr_decay: float = 0.0,
        weight_decay: float = 0.0,
        eps: float = 1e-10,
        *,
        check_finite: bool = False,
    ):
        config = AdagradConfig(lr=lr, lr_decay=lr_decay, weight_decay=weight_decay, eps=eps)
        super().__init__(params, config, check_finite=check_finite)

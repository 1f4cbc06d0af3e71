"""
RMSprop
=======
Lecture: "Neural Networks for Machine Learning", lecture 6e (Hinton, 2012)
Centered variant: "Generating Sequences With Recurrent Neural Networks" (Graves, 2013)
       https://arxiv.org/abs/1308.0850

Update rule:
    s_t     = alpha * s_{t-1} + (1 - alpha) * grad_t^2
    centered:
        g_t   = alpha * g_{t-1} + (1 - alpha) * grad_t
        denom = sqrt(s_t - g_t^2 + eps)
    else:
        denom = sqrt(s_t + eps)

    momentum > 0:
        v_t     = momentum * v_{t-1} + grad_t / denom
        param_t = param_{t-1} - lr * v_t
    else:
        param_t = param_{t-1} - lr * grad_t / denom
"""

import torch
from torch import Tensor

from optimisers.base import ParamOptimiser
from optimisers.config import RMSpropConfig


def rmsprop_init(param: Tensor, *, momentum: float = 0.0, centered: bool = False, **_) -> dict:
    state = {"square_avg": torch.zeros_like(param, memory_format=torch.preserve_format)}
    if centered:
        state["grad_avg"] = torch.zeros_like(param, memory_format=torch.preserve_format)
    if momentum > 0.0:
        state["momentum_buffer"] = torch.zeros_like(param, memory_format=torch.preserve_format)
    return state


def rmsprop_update(
    param: Tensor,
    grad: Tensor,
    state: dict,
    *,
    step: int,
    lr: float,
    alpha: float,
    eps: float,
    weight_decay: float,
    momentum: float,
    centered: bool,
) -> tuple[Tensor, dict]:
    if weight_decay != 0.0:
        grad = grad.add(param, alpha=weight_decay)

    square_avg = state["square_avg"].mul(alpha).addcmul_(grad, grad, value=1.0 - alpha)
    new_state = {"square_avg": square_avg}

    if centered:
        grad_avg = state["grad_avg"].lerp(grad, 1.0 - alpha)
        new_state["grad_avg"] = grad_avg
        avg = square_avg.addcmul(grad_avg, grad_avg, value=-1.0).add_(eps).sqrt_()
    else:
        avg = square_avg.add(eps).sqrt_()

    if momentum > 0.0:
        buf = state["momentum_buffer"].mul(momentum).addcdiv_(grad, avg)
        new_state["momentum_buffer"] = buf
        return param.add(buf, alpha=-lr), new_state
    return param.addcdiv(grad, avg, value=-lr), new_state


class RMSprop(ParamOptimiser):
    """RMSprop with optional centering, momentum and coupled weight decay.

    Note that eps sits inside the square root.
    """

    config_cls = RMSpropConfig
    init_state = staticmethod(rmsprop_init)
    update_rule = staticmethod(rmsprop_update)

    def __init__(
        self,
        params,
        lr: float = 0.01,
        alpha: float = 0.99,
        eps: float = 1e-8,
        weight_decay: float = 0.0,
        momentum: float = 0.0,
        centered: bool = False,
        *,
        check_finite: bool = False,
    ):
        config = RMSpropConfig(
            lr=lr, alpha=alpha, eps=eps, weight_decay=weight_decay,
            momentum=momentum, centered=centered,
        )
        super().__init__(params, config, check_finite=check_finite)

"""
AdaMax
======
Paper: "Adam: A Method for Stochastic Optimization" (Kingma & Ba, 2014), section 7.1
       https://arxiv.org/abs/1412.6980

Core idea:
    Adam with the L2 norm of past gradients replaced by the infinity norm.
    The infinity-norm accumulator needs no bias correction.

Update rule:
    grad_t  = grad_t + wd * param_{t-1}                      # coupled weight decay
    m_t     = beta1 * m_{t-1} + (1 - beta1) * grad_t
    u_t     = max(beta2 * u_{t-1}, |grad_t| + eps)
    param_t = param_{t-1} - (lr / (1 - beta1^t)) * m_t / u_t
"""

import torch
from torch import Tensor

from optimisers.base import ParamOptimiser
from optimisers.config import AdamaxConfig


def adamax_init(param: Tensor, **_) -> dict:
    return {
        "exp_avg": torch.zeros_like(param, memory_format=torch.preserve_format),
        "exp_inf": torch.zeros_like(param, memory_format=torch.preserve_format),
    }


def adamax_update(
    param: Tensor,
    grad: Tensor,
    state: dict,
    *,
    step: int,
    lr: float,
    betas: tuple[float, float],
    eps: float,
    weight_decay: float,
) -> tuple[Tensor, dict]:
    beta1, beta2 = betas
    if weight_decay != 0.0:
        grad = grad.add(param, alpha=weight_decay)

    exp_avg = state["exp_avg"].lerp(grad, 1.0 - beta1)
    exp_inf = torch.maximum(state["exp_inf"].mul(beta2), grad.abs().add_(eps))
    clr = lr / (1.0 - beta1**step)
    return param.addcdiv(exp_avg, exp_inf, value=-clr), {"exp_avg": exp_avg, "exp_inf": exp_inf}


class Adamax(ParamOptimiser):
    """AdaMax (Adam with an infinity-norm second moment).

    Args:
        params: Iterable of parameters or param groups.
        lr: Learning rate.
        betas: (beta1, beta2) decay rates of the first moment and of the
               infinity-norm accumulator.
        eps: Added to |grad| before taking the maximum.
        weight_decay: Coupled weight decay coefficient.
    """

    config_cls = AdamaxConfig
    init_state = staticmethod(adamax_init)
    update_rule = staticmethod(adamax_update)

    def __init__(
        self,
        params,
        lr: float = 2e-3,
        betas: tuple[float, float] = (0.9, 0.999),
        eps: float = 1e-8,
        weight_decay: float = 0.0,
        *,
        check_finite: bool = False,
    ):
        config = AdamaxConfig(lr=lr, betas=betas, eps=eps, weight_decay=weight_decay)
        super().__init__(params, config, check_finite=check_finite)

"""
NAdam
=====
Paper: "Incorporating Nesterov Momentum into Adam" (Dozat, 2016)
       https://openreview.net/forum?id=OM0jvwB8jIp57ZJjtNEZ

Core idea:
    Replace Adam's first moment by a Nesterov look-ahead: the update mixes
    the current gradient with the momentum expected at the *next* step.
    beta1 is warmed up by a momentum schedule.

Update rule:
    mu_t       = beta1 * (1 - 0.5 * 0.96^(t * momentum_decay))
    mu_{t+1}   = beta1 * (1 - 0.5 * 0.96^((t + 1) * momentum_decay))
    prod_t     = mu_1 * ... * mu_t
    m_t        = beta1 * m_{t-1} + (1 - beta1) * grad_t
    v_t        = beta2 * v_{t-1} + (1 - beta2) * grad_t^2
    denom      = sqrt(v_t / (1 - beta2^t)) + eps
    param_t    = param_{t-1}
                 - lr * (1 - mu_t) / (1 - prod_t) * grad_t / denom
                 - lr * mu_{t+1} / (1 - prod_t * mu_{t+1}) * m_t / denom

    The first moment is bias-corrected by the running product of mu, the
    second moment by the usual 1 - beta2^t.
"""

import torch
from torch import Tensor

from optimisers.base import ParamOptimiser
from optimisers.config import NAdamConfig, WeightDecayMode


def momentum_schedule(beta1: float, step: int, momentum_decay: float) -> float:
    """mu_t of the NAdam momentum warm-up."""
    return beta1 * (1.0 - 0.5 * 0.96 ** (step * momentum_decay))


def nadam_init(param: Tensor, **_) -> dict:
    return {
        "exp_avg": torch.zeros_like(param, memory_format=torch.preserve_format),
        "exp_avg_sq": torch.zeros_like(param, memory_format=torch.preserve_format),
        "mu_product": 1.0,
    }


def nadam_update(
    param: Tensor,
    grad: Tensor,
    state: dict,
    *,
    step: int,
    lr: float,
    betas: tuple[float, float],
    eps: float,
    weight_decay: float,
    momentum_decay: float,
    weight_decay_mode: WeightDecayMode,
) -> tuple[Tensor, dict]:
    beta1, beta2 = betas
    decoupled = weight_decay_mode == WeightDecayMode.DECOUPLED
    if weight_decay != 0.0 and not decoupled:
        grad = grad.add(param, alpha=weight_decay)

    mu = momentum_schedule(beta1, step, momentum_decay)
    mu_next = momentum_schedule(beta1, step + 1, momentum_decay)
    mu_product = state["mu_product"] * mu

    exp_avg = state["exp_avg"].lerp(grad, 1.0 - beta1)
    exp_avg_sq = state["exp_avg_sq"].mul(beta2).addcmul_(grad, grad, value=1.0 - beta2)
    denom = exp_avg_sq.div(1.0 - beta2**step).sqrt_().add_(eps)

    new_param = param.addcdiv(grad, denom, value=-lr * (1.0 - mu) / (1.0 - mu_product))
    new_param.addcdiv_(exp_avg, denom, value=-lr * mu_next / (1.0 - mu_product * mu_next))
    if weight_decay != 0.0 and decoupled:
        new_param.add_(param, alpha=-lr * weight_decay)
    return new_param, {"exp_avg": exp_avg, "exp_avg_sq": exp_avg_sq, "mu_product": mu_product}


class NAdam(ParamOptimiser):
    """Adam with Nesterov momentum.

    Args:
        params: Iterable of parameters or param groups.
        lr: Learning rate.
        betas: (beta1, beta2) moment decay rates.
        eps: Term added to the denominator.
        weight_decay: Weight decay coefficient.
        momentum_decay: psi in the momentum schedule.
        weight_decay_mode: "coupled" (default) or "decoupled".
    """

    config_cls = NAdamConfig
    init_state = staticmethod(nadam_init)
    update_rule = staticmethod(nadam_update)

    def __init__(
        self,
        params,
        lr: float = 2e-3,
        betas: tuple[float, float] = (0.9, 0.999),
        eps: float = 1e-8,
        weight_decay: float = 0.0,
        momentum_decay: float = 4e-3,
        weight_decay_mode: WeightDecayMode | str = WeightDecayMode.COUPLED,
        *,
        check_finite: bool = False,
    ):
        config = NAdamConfig(
            lr=lr, betas=betas, eps=eps, weight_decay=weight_decay,
            momentum_decay=momentum_decay, weight_decay_mode=weight_decay_mode,
        )
        super().__init__(params, config, check_finite=check_finite)

"""
RAdam
=====
Paper: "On the Variance of the Adaptive Learning Rate and Beyond" (Liu et al., 2019)
       https://arxiv.org/abs/1908.03265

Core idea:
    In the first steps the second-moment estimate is built from very few
    samples and its variance is huge. RAdam measures that with the length
    of the approximated simple moving average, rho_t, and either rectifies
    the adaptive step or falls back to plain momentum SGD.

Update rule:
    m_t, v_t, m_hat, v_hat       as in Adam
    rho_inf = 2 / (1 - beta2) - 1
    rho_t   = rho_inf - 2 * t * beta2^t / (1 - beta2^t)

    rho_t > 4:
        r_t     = sqrt((rho_t - 4)(rho_t - 2) rho_inf / ((rho_inf - 4)(rho_inf - 2) rho_t))
        param_t = param_{t-1} - lr * r_t * m_hat / (sqrt(v_hat) + eps)
    rho_t <= 4:
        param_t = param_{t-1} - lr * m_hat

    r_t is 0 at rho_t == 4 and grows continuously from there. The step size
    does not: the last fallback step is lr * m_hat, the first rectified step
    is close to 0, so the step size drops sharply when rho_t crosses 4.
"""

import math

import torch
from torch import Tensor

from optimisers.base import ParamOptimiser
from optimisers.config import RAdamConfig, WeightDecayMode

RECTIFICATION_THRESHOLD = 4.0


def sma_length(beta2: float, step: int) -> tuple[float, float]:
    """Return (rho_t, rho_inf) for the given step."""
    rho_inf = 2.0 / (1.0 - beta2) - 1.0
    beta2_t = beta2**step
    rho_t = rho_inf - 2.0 * step * beta2_t / (1.0 - beta2_t)
    return rho_t, rho_inf


def rectification_term(rho_t: float, rho_inf: float) -> float:
    """Variance rectification r_t; only defined for rho_t >= 4."""
    if rho_t < RECTIFICATION_THRESHOLD:
        raise ValueError(f"rectification undefined for rho_t={rho_t} < 4")
    numerator = (rho_t - 4.0) * (rho_t - 2.0) * rho_inf
    denominator = (rho_inf - 4.0) * (rho_inf - 2.0) * rho_t
    return math.sqrt(numerator / denominator)


def radam_init(param: Tensor, **_) -> dict:
    return {
        "exp_avg": torch.zeros_like(param, memory_format=torch.preserve_format),
        "exp_avg_sq": torch.zeros_like(param, memory_format=torch.preserve_format),
    }


def radam_update(
    param: Tensor,
    grad: Tensor,
    state: dict,
    *,
    step: int,
    lr: float,
    betas: tuple[float, float],
    eps: float,
    weight_decay: float,
    weight_decay_mode: WeightDecayMode,
) -> tuple[Tensor, dict]:
    beta1, beta2 = betas
    decoupled = weight_decay_mode == WeightDecayMode.DECOUPLED
    if weight_decay != 0.0 and not decoupled:
        grad = grad.add(param, alpha=weight_decay)

    exp_avg = state["exp_avg"].lerp(grad, 1.0 - beta1)
    exp_avg_sq = state["exp_avg_sq"].mul(beta2).addcmul_(grad, grad, value=1.0 - beta2)

    bias_correction1 = 1.0 - beta1**step
    bias_correction2 = 1.0 - beta2**step
    m_hat = exp_avg.div(bias_correction1)

    rho_t, rho_inf = sma_length(beta2, step)
    if rho_t > RECTIFICATION_THRESHOLD:
        rect = rectification_term(rho_t, rho_inf)
        denom = exp_avg_sq.div(bias_correction2).sqrt_().add_(eps)
        new_param = param.addcdiv(m_hat, denom, value=-lr * rect)
    else:
        new_param = param.add(m_hat, alpha=-lr)

    if weight_decay != 0.0 and decoupled:
        new_param.add_(param, alpha=-lr * weight_decay)
    return new_param, {"exp_avg": exp_avg, "exp_avg_sq": exp_avg_sq}


class RAdam(ParamOptimiser):
    """Rectified Adam.

    Args:
        params: Iterable of parameters or param groups.
        lr: Learning rate.
        betas: (beta1, beta2) moment decay rates.
        eps: Term added to the denominator.
        weight_decay: Weight decay coefficient.
        weight_decay_mode: "coupled" (default) or "decoupled".
    """

    config_cls = RAdamConfig
    init_state = staticmethod(radam_init)
    update_rule = staticmethod(radam_update)

    def __init__(
        self,
        params,
        lr: float = 1e-3,
        betas: tuple[float, float] = (0.9, 0.999),
        eps: float = 1e-8,
        weight_decay: float = 0.0,
        weight_decay_mode: WeightDecayMode | str = WeightDecayMode.COUPLED,
        *,
        check_finite: bool = False,
    ):
        config = RAdamConfig(
            lr=lr, betas=betas, eps=eps, weight_decay=weight_decay,
            weight_decay_mode=weight_decay_mode,
        )
        super().__init__(params, config, check_finite=check_finite)

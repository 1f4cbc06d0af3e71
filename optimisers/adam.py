"""
Adam / AdamW Optimizer
======================
Paper: "Adam: A Method for Stochastic Optimization" (Kingma & Ba, 2014)
       https://arxiv.org/abs/1412.6980
       "Decoupled Weight Decay Regularization" (Loshchilov & Hutter, 2017)
       https://arxiv.org/abs/1711.05101
       "On the Convergence of Adam and Beyond" (Reddi et al., 2018)  -- AMSGrad
       https://openreview.net/forum?id=ryQu7f-RZ

Core idea:
    Maintain per-parameter first moment (mean) and second moment (variance)
    estimates of the gradient. Use bias-corrected moments to compute an
    adaptive learning rate for each parameter.

    AdamW decouples weight decay from the gradient-based update, applying
    it directly to the parameters instead of through the gradient.

Update rule:
    grad_t = grad_t + wd * param_{t-1}                      # coupled mode only
    m_t = beta1 * m_{t-1} + (1 - beta1) * grad_t            # first moment
    v_t = beta2 * v_{t-1} + (1 - beta2) * grad_t^2          # second moment
    m_hat = m_t / (1 - beta1^t)                             # bias correction
    v_hat = v_t / (1 - beta2^t)                             # bias correction
    param_t = param_{t-1} - lr * m_hat / (sqrt(v_hat) + eps)

    Decoupled mode (AdamW) leaves the gradient untouched and adds
    param_t = param_t - lr * wd * param_{t-1}

    AMSGrad replaces v_t in the denominator by max(v_1, ..., v_t).

Key insight:
    - The second moment v_t acts as a per-parameter learning rate scaler.
    - Parameters with large/noisy gradients get smaller effective lr.
    - Parameters with small/consistent gradients get larger effective lr.

Hyperparameters:
    lr:                Learning rate (typical: 1e-3 to 3e-4)
    betas:             (beta1, beta2) moment decay rates (typical: (0.9, 0.999))
    eps:               Numerical stability (typical: 1e-8)
    weight_decay:      Weight decay coefficient
    weight_decay_mode: "coupled" (Adam default) or "decoupled" (AdamW default)
    amsgrad:           Use the running maximum of v_t
"""

import torch
from torch import Tensor

from optimisers.base import ParamOptimiser
from optimisers.config import AdamConfig, WeightDecayMode


def adam_init(param: Tensor, *, amsgrad: bool = False, **_) -> dict:
    state = {
        "exp_avg": torch.zeros_like(param, memory_format=torch.preserve_format),
        "exp_avg_sq": torch.zeros_like(param, memory_format=torch.preserve_format),
    }
    if amsgrad:
        state["max_exp_avg_sq"] = torch.zeros_like(param, memory_format=torch.preserve_format)
    return state


def adam_update(
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
    amsgrad: bool,
) -> tuple[Tensor, dict]:
    beta1, beta2 = betas
    decoupled = weight_decay_mode == WeightDecayMode.DECOUPLED
    if weight_decay != 0.0 and not decoupled:
        grad = grad.add(param, alpha=weight_decay)

    exp_avg = state["exp_avg"].lerp(grad, 1.0 - beta1)
    exp_avg_sq = state["exp_avg_sq"].mul(beta2).addcmul_(grad, grad, value=1.0 - beta2)
    new_state = {"exp_avg": exp_avg, "exp_avg_sq": exp_avg_sq}

    second_moment = exp_avg_sq
    if amsgrad:
        second_moment = torch.maximum(state["max_exp_avg_sq"], exp_avg_sq)
        new_state["max_exp_avg_sq"] = second_moment

    bias_correction1 = 1.0 - beta1**step
    bias_correction2 = 1.0 - beta2**step

    denom = second_moment.div(bias_correction2).sqrt_().add_(eps)
    new_param = param.addcdiv(exp_avg, denom, value=-lr / bias_correction1)
    if weight_decay != 0.0 and decoupled:
        new_param.add_(param, alpha=-lr * weight_decay)
    return new_param, new_state


class Adam(ParamOptimiser):
    """Adam optimizer with selectable weight-decay mode.

    Weight decay is coupled (L2 through the gradient) by default; pass
    ``weight_decay_mode="decoupled"`` or use ``AdamW`` for the decoupled
    variant.

    Args:
        params: Iterable of parameters or param groups.
        lr: Learning rate.
        betas: Coefficients for computing running averages of gradient
               and its square (beta1, beta2).
        eps: Term added to denominator for numerical stability.
        weight_decay: Weight decay coefficient.
        weight_decay_mode: "coupled" or "decoupled".
        amsgrad: Whether to use the AMSGrad variant.
    """

    config_cls = AdamConfig
    init_state = staticmethod(adam_init)
    update_rule = staticmethod(adam_update)

    def __init__(
        self,
        params,
        lr: float = 1e-3,
        betas: tuple[float, float] = (0.9, 0.999),
        eps: float = 1e-8,
        weight_decay: float = 0.0,
        weight_decay_mode: WeightDecayMode | str = WeightDecayMode.COUPLED,
        amsgrad: bool = False,
        *,
        check_finite: bool = False,
    ):
        config = AdamConfig(
            lr=lr, betas=betas, eps=eps, weight_decay=weight_decay,
            weight_decay_mode=weight_decay_mode, amsgrad=amsgrad,
        )
        super().__init__(params, config, check_finite=check_finite)


class AdamW(Adam):
    """AdamW optimizer (Adam with decoupled weight decay).

    Same as ``Adam`` with ``weight_decay_mode="decoupled"`` and a non-zero
    default weight decay.
    """

    def __init__(
        self,
        params,
        lr: float = 1e-3,
        betas: tuple[float, float] = (0.9, 0.999),
        eps: float = 1e-8,
        weight_decay: float = 0.01,
        weight_decay_mode: WeightDecayMode | str = WeightDecayMode.DECOUPLED,
        amsgrad: bool = False,
        *,
        check_finite: bool = False,
    ):
        super().__init__(
            params, lr=lr, betas=betas, eps=eps, weight_decay=weight_decay,
            weight_decay_mode=weight_decay_mode, amsgrad=amsgrad,
            check_finite=check_finite,
        )

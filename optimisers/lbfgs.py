"""
L-BFGS
======
Paper: "On the limited memory BFGS method for large scale optimization"
       (Liu & Nocedal, 1989) https://link.springer.com/article/10.1007/BF01589116

Core idea:
    Approximate the inverse Hessian from the last ``history_size`` pairs
    s_k = x_{k+1} - x_k and y_k = grad_{k+1} - grad_k, and apply it to the
    gradient with the two-loop recursion. All parameters are treated as one
    flat vector, so L-BFGS needs a closure that re-evaluates the loss and
    does not support several param groups.

One call to ``step(closure)`` runs up to ``max_iter`` inner iterations:
    d     = -H_k grad                          # two-loop recursion
    t     = min(1, 1/|grad|_1) * lr  on the very first iteration, else lr
    t     = strong Wolfe search from t         # if line_search == "strong_wolfe"
    x    += t * d

and stops early when
    - the gradient norm drops below tolerance_grad  (grad_norm: max | rms)
    - the step t * d is below tolerance_change      (step_norm: max | rms)
    - the loss changes by less than tolerance_change
    - d is not a descent direction
    - max_eval closure evaluations were used.

The strong Wolfe search itself is torch's (``torch.optim.lbfgs._strong_wolfe``);
this module feeds it a loss and gradient that include the decay term.

Weight decay is coupled: weight_decay * x is added to the gradient and
0.5 * weight_decay * |x|^2 to the loss used by the line search.

A step that fails (non-finite or mis-shaped gradient) restores the
parameters, the history and the counters to what they were before the call.
"""

import logging
from collections import deque

import torch
from torch import Tensor
from torch.optim.lbfgs import _strong_wolfe

from optimisers.base import ConfiguredOptimiser
from optimisers.config import ConvergenceNorm, LBFGSConfig
from optimisers.errors import (
    NonFiniteGradient,
    OptimiserError,
    ParameterError,
    ShapeMismatch,
    UnsupportedOperation,
)

logger = logging.getLogger(__name__)

# Curvature pairs with y.s below this are dropped to keep H positive definite.
CURVATURE_EPS = 1e-10


def _vector_norm(vec: Tensor, kind: ConvergenceNorm) -> float:
    if kind == ConvergenceNorm.RMS:
        return float(vec.pow(2).mean().sqrt())
    return float(vec.abs().max())


def two_loop_recursion(flat_grad: Tensor, history, hessian_scale: float) -> Tensor:
    """Return -H * flat_grad.

    Args:
        flat_grad: Current flat gradient.
        history: Curvature pairs ``(s, y, 1 / y.s)``, oldest first.
        hessian_scale: Initial inverse Hessian H_0 = hessian_scale * I.
    """
    q = flat_grad.neg()
    alphas = []
    for s, y, rho in reversed(history):
        alpha = rho * float(s.dot(q))
        q.add_(y, alpha=-alpha)
        alphas.append(alpha)

    r = q.mul_(hessian_scale)
    for (s, y, rho), alpha in zip(history, reversed(alphas)):
        beta = rho * float(y.dot(r))
        r.add_(s, alpha=alpha - beta)
    return r


class LBFGS(ConfiguredOptimiser):
    """Limited-memory BFGS over all parameters of a single param group.

    Args:
        params: Iterable of parameters (one group only).
        lr: Step size; 1.0 is the natural choice.
        max_iter: Maximum inner iterations per ``step()``.
        max_eval: Maximum closure evaluations per ``step()``
            (default ``max_iter * 5 // 4``).
        tolerance_grad: Gradient convergence threshold.
        tolerance_change: Step / loss change convergence threshold.
        history_size: Number of curvature pairs kept.
        line_search: None or "strong_wolfe".
        wolfe_c1, wolfe_c2: Sufficient decrease and curvature constants.
        grad_norm: "max" or "rms" norm for the gradient test.
        step_norm: "max" or "rms" norm for the step test.
        weight_decay: Coupled weight decay coefficient.

    ``step()`` returns the loss from the first closure evaluation. After
    each call ``converged`` tells whether a convergence test fired.
    """

    config_cls = LBFGSConfig

    def __init__(
        self,
        params,
        lr: float = 1.0,
        max_iter: int = 20,
        max_eval: int | None = None,
        tolerance_grad: float = 1e-7,
        tolerance_change: float = 1e-9,
        history_size: int = 100,
        line_search: str | None = None,
        wolfe_c1: float = 1e-4,
        wolfe_c2: float = 0.9,
        grad_norm: ConvergenceNorm | str = ConvergenceNorm.MAX,
        step_norm: ConvergenceNorm | str = ConvergenceNorm.MAX,
        weight_decay: float = 0.0,
        *,
        check_finite: bool = False,
    ):
        config = LBFGSConfig(
            lr=lr, max_iter=max_iter, max_eval=max_eval,
            tolerance_grad=tolerance_grad, tolerance_change=tolerance_change,
            history_size=history_size, line_search=line_search,
            wolfe_c1=wolfe_c1, wolfe_c2=wolfe_c2,
            grad_norm=grad_norm, step_norm=step_norm, weight_decay=weight_decay,
        )
        super().__init__(params, config, check_finite=check_finite)
        self._params = self.param_groups[0]["params"]
        self.converged = False

    def add_param_group(self, param_group: dict) -> None:
        if self.param_groups:
            raise UnsupportedOperation("LBFGS doesn't support per-parameter options (parameter groups)")
        super().add_param_group(param_group)

    def _gather_flat_grad(self) -> Tensor:
        weight_decay = self.param_groups[0]["weight_decay"]
        views = []
        for index, p in enumerate(self._params):
            grad = p.grad
            if grad is None:
                view = p.new_zeros(p.numel())
            else:
                if grad.is_sparse:
                    raise UnsupportedOperation("LBFGS does not support sparse gradients")
                if grad.shape != p.shape:
                    raise ShapeMismatch(index, p.shape, grad.shape)
                if self.check_finite and not torch.isfinite(grad).all():
                    raise NonFiniteGradient(index)
                view = grad.reshape(-1)
            if weight_decay != 0.0:
                view = view.add(p.reshape(-1), alpha=weight_decay)
            views.append(view)
        return torch.cat(views, 0)

    def _decay_penalty(self) -> float:
        weight_decay = self.param_groups[0]["weight_decay"]
        if weight_decay == 0.0:
            return 0.0
        return 0.5 * weight_decay * sum(float(p.pow(2).sum()) for p in self._params)

    def _evaluate(self, closure) -> float:
        return float(closure()) + self._decay_penalty()

    def _add_grad(self, step_size: float, update: Tensor) -> None:
        offset = 0
        for p in self._params:
            numel = p.numel()
            p.add_(update[offset:offset + numel].view_as(p), alpha=step_size)
            offset += numel

    def _clone_params(self) -> list[Tensor]:
        return [p.clone(memory_format=torch.contiguous_format) for p in self._params]

    def _set_params(self, params_data: list[Tensor]) -> None:
        for p, pdata in zip(self._params, params_data):
            p.copy_(pdata)

    def _directional_evaluate(self, closure, x, t, d: Tensor):
        self._add_grad(float(t), d)
        try:
            loss = self._evaluate(closure)
            flat_grad = self._gather_flat_grad()
        finally:
            self._set_params(x)
        return loss, flat_grad

    def _search_direction(self, state: dict, flat_grad: Tensor) -> Tensor:
        if "prev_grad" not in state:
            return flat_grad.neg()

        y = flat_grad.sub(state["prev_grad"])
        s = state["direction"].mul(state["step_size"])
        ys = float(y.dot(s))
        if ys > CURVATURE_EPS:
            state["history"].append((s, y, 1.0 / ys))
            state["hessian_scale"] = ys / float(y.dot(y))
        return two_loop_recursion(flat_grad, state["history"], state["hessian_scale"])

    @torch.no_grad()
    def step(self, closure=None):
        """Run up to ``max_iter`` L-BFGS iterations.

        Args:
            closure: Callable that zeroes gradients, recomputes the loss,
                calls ``backward()`` and returns the loss. Required.

        Raises:
            ShapeMismatch / NonFiniteGradient: a gradient could not be used.
                Parameters and optimiser state are left as they were.
        """
        if closure is None:
            raise UnsupportedOperation("LBFGS requires a closure that re-evaluates the loss")
        closure = torch.enable_grad()(closure)

        state = self.state[self._params[0]]
        snapshot = self._clone_params()
        saved_state = {
            key: value.copy() if isinstance(value, deque) else value
            for key, value in state.items()
        }
        saved_counters = (self.step_count, self.converged)
        try:
            return self._minimise(closure, state)
        except OptimiserError as err:
            if isinstance(err, ParameterError):
                logger.warning("LBFGS: %s; step rolled back", err)
            self._set_params(snapshot)
            state.clear()
            state.update(saved_state)
            self.step_count, self.converged = saved_counters
            raise

    def _minimise(self, closure, state: dict):
        group = self.param_groups[0]
        lr = group["lr"]
        max_iter = group["max_iter"]
        max_eval = group["max_eval"]
        tolerance_grad = group["tolerance_grad"]
        tolerance_change = group["tolerance_change"]
        grad_norm = group["grad_norm"]
        step_norm = group["step_norm"]

        self._enter_stepping()
        self.converged = False
        if "history" not in state:
            state.update(
                n_iter=0, func_evals=0, hessian_scale=1.0,
                history=deque(maxlen=group["history_size"]),
            )

        orig_loss = closure()
        loss = float(orig_loss) + self._decay_penalty()
        flat_grad = self._gather_flat_grad()
        evals = 1
        state["func_evals"] += 1
        if _vector_norm(flat_grad, grad_norm) <= tolerance_grad:
            self.converged = True
            return orig_loss

        for iteration in range(1, max_iter + 1):
            first = "prev_grad" not in state
            direction = self._search_direction(state, flat_grad)
            t = min(1.0, 1.0 / float(flat_grad.abs().sum())) * lr if first else lr
            state["n_iter"] += 1
            state["direction"] = direction
            state["step_size"] = t
            state["prev_grad"] = flat_grad
            prev_loss = loss

            gtd = flat_grad.dot(direction)
            if gtd > -tolerance_change:
                logger.debug("LBFGS: direction is not a descent direction, stopping")
                break

            if group["line_search"] == "strong_wolfe":
                origin = self._clone_params()

                def obj_func(x, t, d):
                    return self._directional_evaluate(closure, x, t, d)

                loss, flat_grad, t, new_evals = _strong_wolfe(
                    obj_func, origin, t, direction, loss, flat_grad, gtd,
                    c1=group["wolfe_c1"], c2=group["wolfe_c2"],
                    tolerance_change=tolerance_change,
                )
                t = float(t)
                self._add_grad(t, direction)
            else:
                self._add_grad(t, direction)
                new_evals = 0
                # the last iteration leaves evaluation to the next call
                if iteration < max_iter:
                    loss = self._evaluate(closure)
                    flat_grad = self._gather_flat_grad()
                    new_evals = 1
            state["step_size"] = t
            evals += new_evals
            state["func_evals"] += new_evals

            if iteration == max_iter or evals >= max_eval:
                break
            if (
                _vector_norm(flat_grad, grad_norm) <= tolerance_grad
                or _vector_norm(direction.mul(t), step_norm) <= tolerance_change
                or abs(loss - prev_loss) < tolerance_change
            ):
                self.converged = True
                break

        return orig_loss

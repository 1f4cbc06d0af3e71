"""
L-BFGS tests: convex quadratics, the Rosenbrock function and the
convergence bookkeeping.
"""

import pytest
import torch

from optimisers import LBFGS, ConvergenceNorm, NonFiniteGradient, UnsupportedOperation
from optimisers.lbfgs import two_loop_recursion

EIGENVALUES = torch.tensor([1.0, 1.1, 1.2, 1.3, 1.5], dtype=torch.float64)
RHS = torch.tensor([1.0, -2.0, 0.5, 3.0, -1.0], dtype=torch.float64)


def _quadratic_problem(**kwargs):
    """f(x) = 0.5 x^T A x - b^T x with A diagonal; minimiser A^-1 b."""
    x = torch.zeros(5, dtype=torch.float64, requires_grad=True)
    optimiser = LBFGS([x], **kwargs)

    def closure():
        optimiser.zero_grad()
        loss = 0.5 * (EIGENVALUES * x * x).sum() - (RHS * x).sum()
        loss.backward()
        return loss

    return x, optimiser, closure


def _rosenbrock_problem(**kwargs):
    x = torch.tensor([-1.5], dtype=torch.float64, requires_grad=True)
    y = torch.tensor([2.0], dtype=torch.float64, requires_grad=True)
    optimiser = LBFGS([x, y], **kwargs)

    def closure():
        optimiser.zero_grad()
        loss = ((1 - x) ** 2 + 100 * (y - x**2) ** 2).sum()
        loss.backward()
        return loss

    return (x, y), optimiser, closure


def test_quadratic_without_line_search():
    x, optimiser, closure = _quadratic_problem(
        max_iter=100, tolerance_grad=1e-9, tolerance_change=1e-14,
    )
    for _ in range(3):
        optimiser.step(closure)
    torch.testing.assert_close(x.detach(), RHS / EIGENVALUES, atol=1e-5, rtol=0)


def test_quadratic_with_strong_wolfe():
    x, optimiser, closure = _quadratic_problem(
        line_search="strong_wolfe", max_iter=100, tolerance_grad=1e-9, tolerance_change=1e-14,
    )
    for _ in range(3):
        optimiser.step(closure)
    torch.testing.assert_close(x.detach(), RHS / EIGENVALUES, atol=1e-5, rtol=0)


def test_rms_convergence_norms():
    x, optimiser, closure = _quadratic_problem(
        max_iter=100, tolerance_grad=1e-9, tolerance_change=1e-14,
        grad_norm="rms", step_norm="rms",
    )
    assert optimiser.config.grad_norm is ConvergenceNorm.RMS
    for _ in range(3):
        optimiser.step(closure)
    torch.testing.assert_close(x.detach(), RHS / EIGENVALUES, atol=1e-5, rtol=0)


def test_rosenbrock_with_strong_wolfe():
    (x, y), optimiser, closure = _rosenbrock_problem(
        line_search="strong_wolfe", max_iter=200, tolerance_grad=1e-10, tolerance_change=1e-14,
    )
    for _ in range(5):
        optimiser.step(closure)
    assert x.item() == pytest.approx(1.0, abs=1e-4)
    assert y.item() == pytest.approx(1.0, abs=1e-4)


def test_weight_decay_shifts_minimiser():
    centre = torch.tensor([2.0, -1.0, 0.5], dtype=torch.float64)
    x = torch.zeros(3, dtype=torch.float64, requires_grad=True)
    optimiser = LBFGS(
        [x], line_search="strong_wolfe", weight_decay=0.5,
        max_iter=50, tolerance_grad=1e-10, tolerance_change=1e-14,
    )

    def closure():
        optimiser.zero_grad()
        loss = 0.5 * ((x - centre) ** 2).sum()
        loss.backward()
        return loss

    for _ in range(3):
        optimiser.step(closure)
    # grad (x - c) + 0.5 x = 0
    torch.testing.assert_close(x.detach(), centre / 1.5, atol=1e-6, rtol=0)


def test_converged_flag_and_counters():
    x, optimiser, closure = _quadratic_problem(
        max_iter=100, tolerance_grad=1e-6, tolerance_change=1e-14,
    )
    loss = optimiser.step(closure)

    assert optimiser.converged
    assert optimiser.step_count == 1
    assert loss.item() == 0.0  # first evaluation, at x = 0
    state = optimiser.state[x]
    assert 1 < state["n_iter"] < 100
    assert state["func_evals"] >= state["n_iter"]


def test_already_converged_returns_immediately():
    x = torch.zeros(3, dtype=torch.float64, requires_grad=True)
    optimiser = LBFGS([x])

    def closure():
        optimiser.zero_grad()
        loss = (x**2).sum()
        loss.backward()
        return loss

    optimiser.step(closure)
    assert optimiser.converged
    assert torch.equal(x.detach(), torch.zeros(3, dtype=torch.float64))
    assert optimiser.state[x]["func_evals"] == 1


def test_history_size_bounds_memory():
    x, optimiser, closure = _quadratic_problem(
        history_size=2, line_search="strong_wolfe",
        max_iter=100, tolerance_grad=1e-9, tolerance_change=1e-14,
    )
    optimiser.step(closure)
    assert len(optimiser.state[x]["history"]) <= 2
    torch.testing.assert_close(x.detach(), RHS / EIGENVALUES, atol=1e-5, rtol=0)


def test_max_eval_limits_closure_calls():
    calls = 0
    x = torch.tensor([3.0, -4.0], dtype=torch.float64, requires_grad=True)
    optimiser = LBFGS([x], max_iter=50, max_eval=4, lr=0.1)

    def closure():
        nonlocal calls
        calls += 1
        optimiser.zero_grad()
        loss = (x**4).sum()
        loss.backward()
        return loss

    optimiser.step(closure)
    assert calls == 4


def test_closure_required():
    x = torch.zeros(2, requires_grad=True)
    optimiser = LBFGS([x])
    with pytest.raises(UnsupportedOperation, match="closure"):
        optimiser.step()


def test_single_param_group_only():
    a = torch.zeros(2, requires_grad=True)
    b = torch.zeros(2, requires_grad=True)
    with pytest.raises(UnsupportedOperation):
        LBFGS([{"params": [a]}, {"params": [b]}])


def _poisoned_problem(**kwargs):
    """0.5 p^2 from p = 3; gradients turn to inf below 2.5 while poisoned."""
    p = torch.tensor([3.0], dtype=torch.float64, requires_grad=True)
    optimiser = LBFGS([p], check_finite=True, **kwargs)
    poisoned = [True]

    def closure():
        optimiser.zero_grad()
        loss = 0.5 * (p**2).sum()
        loss.backward()
        if poisoned[0] and p.item() < 2.5:
            p.grad.fill_(float("inf"))
        return loss

    return p, optimiser, closure, poisoned


@pytest.mark.parametrize("line_search", [None, "strong_wolfe"])
def test_non_finite_gradient_rolls_back_step(line_search, caplog):
    p, optimiser, closure, poisoned = _poisoned_problem(line_search=line_search)

    with pytest.raises(NonFiniteGradient):
        optimiser.step(closure)

    assert p.item() == 3.0
    assert optimiser.state[p] == {}
    assert optimiser.step_count == 0
    assert not optimiser.converged
    assert any("rolled back" in record.getMessage() for record in caplog.records)

    poisoned[0] = False
    optimiser.step(closure)
    assert optimiser.converged
    assert abs(p.item()) < 1e-6


def test_failed_step_keeps_earlier_history():
    p, optimiser, closure, poisoned = _poisoned_problem(max_iter=1)
    poisoned[0] = False
    optimiser.step(closure)  # 3.0 -> 2.0 without re-evaluation
    assert p.item() == pytest.approx(2.0)
    state_before = dict(optimiser.state[p])

    poisoned[0] = True
    with pytest.raises(NonFiniteGradient):
        optimiser.step(closure)

    state = optimiser.state[p]
    assert p.item() == pytest.approx(2.0)
    assert optimiser.step_count == 1
    assert state["n_iter"] == state_before["n_iter"] == 1
    assert state["func_evals"] == state_before["func_evals"] == 1
    assert state["prev_grad"] is state_before["prev_grad"]
    assert len(state["history"]) == 0

    poisoned[0] = False
    optimiser.step(closure)
    assert state["n_iter"] == 2
    assert len(state["history"]) == 1


def test_max_eval_defaults_from_max_iter():
    x = torch.zeros(2, requires_grad=True)
    assert LBFGS([x], max_iter=8).config.max_eval == 10


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


def test_two_loop_recursion_without_history_scales_gradient():
    grad = torch.tensor([1.0, -2.0], dtype=torch.float64)
    d = two_loop_recursion(grad, [], 0.5)
    torch.testing.assert_close(d, torch.tensor([-0.5, 1.0], dtype=torch.float64))


def test_two_loop_recursion_satisfies_secant_equation():
    # with a single pair the approximate inverse Hessian maps y to s
    s = torch.tensor([0.4, -0.1, 0.2], dtype=torch.float64)
    y = torch.tensor([0.8, -0.3, 0.5], dtype=torch.float64)
    rho = 1.0 / float(y.dot(s))
    h_diag = float(y.dot(s)) / float(y.dot(y))
    d = two_loop_recursion(y, [(s, y, rho)], h_diag)
    torch.testing.assert_close(d, -s)

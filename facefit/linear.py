r"""
Solvers for the Gauss-Newton normal equations

.. math:: (\alpha\mathbf{J}^T\mathbf{J})\mathbf{x} = s\mathbf{J}^T\mathbf{r}

where :math:`\alpha` (`lhs_scale`) and :math:`s` (`rhs_scale`) are given
by the caller. The iterative solvers never form
:math:`\mathbf{J}^T\mathbf{J}`: every iteration applies it as two
matrix-vector products.
"""
import logging
from typing import Callable, NamedTuple

import torch
from torch import Tensor

from .common import wrong_shape_msg as ws_msg
from .preconditioner import elementwise_multiplication, jacobi_preconditioner

logger = logging.getLogger(__name__)


class SolveInfo(NamedTuple):
    iterations: int
    converged: bool
    residual: float


def _check_system(jacobian: Tensor, residuals: Tensor, x: Tensor):
    if jacobian.ndim != 2:
        raise ValueError(ws_msg(jacobian, "jacobian", "(R, U)"))
    n_residuals, n_unknowns = jacobian.shape
    if residuals.shape != (n_residuals,):
        raise ValueError(ws_msg(residuals, "residuals", (n_residuals,)))
    if x.shape != (n_unknowns,):
        raise ValueError(ws_msg(x, "x", (n_unknowns,)))


def solve_pcg(
    jacobian: Tensor,
    residuals: Tensor,
    x: Tensor,
    *,
    lhs_scale: float = 2.0,
    rhs_scale: float = 2.0,
    max_iterations: int = 200,
    tolerance: float = 1e-6,
    near_zero: float = 1e-8
) -> SolveInfo:
    r"""
    Matrix-free Jacobi-preconditioned conjugate gradient.

    The iterations stop when :math:`\mathbf{z}^T\mathbf{r}` drops below
    `tolerance`, or after min(U, `max_iterations`) iterations.

    :param jacobian: The Jacobian. Its shape must be (R, U).
    :type jacobian: Tensor
    :param residuals: The residuals. Its shape must be (R,).
    :type residuals: Tensor
    :param x: The output solution, overwritten. Its shape must be (U,).
    :type x: Tensor
    :param lhs_scale: Scale of the normal equations matrix. Defaults to
        2.0.
    :type lhs_scale: float, optional
    :param rhs_scale: Scale (and sign) of the right-hand side. Defaults
        to 2.0.
    :type rhs_scale: float, optional
    :param max_iterations: Iteration cap. Defaults to 200.
    :type max_iterations: int, optional
    :param tolerance: Convergence threshold on the preconditioned
        residual. Defaults to 1e-6.
    :type tolerance: float, optional
    :param near_zero: Floor of the step-size denominators. Defaults to
        1e-8.
    :type near_zero: float, optional
    :return: Number of iterations, convergence flag and final
        :math:`\mathbf{z}^T\mathbf{r}`.
    :rtype: SolveInfo
    """
    _check_system(jacobian, residuals, x)
    n_unknowns = jacobian.shape[1]

    x.zero_()
    M = jacobi_preconditioner(jacobian, scale=lhs_scale)
    r = torch.mv(jacobian.T, residuals).mul_(rhs_scale)  # current residual
    z = elementwise_multiplication(M, r)  # preconditioned residual
    p = z.clone()  # search direction
    Jp = torch.empty_like(residuals)
    JtJp = torch.empty_like(x)

    zr_old = torch.dot(z, r).item()
    zr = zr_old
    iterations, converged = 0, False
    for _ in range(min(n_unknowns, max_iterations)):
        iterations += 1
        # Apply JTJ
        torch.mv(jacobian, p, out=Jp).mul_(lhs_scale)
        torch.mv(jacobian.T, Jp, out=JtJp)

        curvature = torch.dot(p, JtJp).item()
        step = zr_old / max(curvature, near_zero)
        x.add_(p, alpha=step)
        r.sub_(JtJp, alpha=step)

        elementwise_multiplication(M, r, out=z)
        zr = torch.dot(z, r).item()
        if zr < tolerance:
            converged = True
            break

        beta = zr / max(zr_old, near_zero)
        # p = z + beta * p
        p.mul_(beta).add_(z)
        zr_old = zr

    logger.debug("PCG iterations: %d (zTr = %.3g)", iterations, zr)
    return SolveInfo(iterations, converged, zr)


def solve_cg(
    jacobian: Tensor,
    residuals: Tensor,
    x: Tensor,
    *,
    lhs_scale: float = 2.0,
    rhs_scale: float = 2.0,
    max_iterations: int = 200,
    tolerance: float = 1e-6,
    near_zero: float = 1e-8
) -> SolveInfo:
    r"""
    Matrix-free conjugate gradient without preconditioning. Same
    arguments and stopping rule as :func:`solve_pcg`, applied to
    :math:`\mathbf{r}^T\mathbf{r}`.
    """
    _check_system(jacobian, residuals, x)
    n_unknowns = jacobian.shape[1]

    x.zero_()
    r = torch.mv(jacobian.T, residuals).mul_(rhs_scale)
    p = r.clone()
    Jp = torch.empty_like(residuals)
    JtJp = torch.empty_like(x)

    rr = torch.dot(r, r).item()
    iterations, converged = 0, False
    for _ in range(min(n_unknowns, max_iterations)):
        iterations += 1
        torch.mv(jacobian, p, out=Jp).mul_(lhs_scale)
        torch.mv(jacobian.T, Jp, out=JtJp)
        rr_old = rr

        curvature = torch.dot(p, JtJp).item()
        step = rr / max(curvature, near_zero)
        x.add_(p, alpha=step)
        r.sub_(JtJp, alpha=step)

        rr = torch.dot(r, r).item()
        if rr < tolerance:
            converged = True
            break

        beta = rr / max(rr_old, near_zero)
        p.mul_(beta).add_(r)

    logger.debug("CG iterations: %d (rTr = %.3g)", iterations, rr)
    return SolveInfo(iterations, converged, rr)


def solve_direct(
    jacobian: Tensor,
    residuals: Tensor,
    x: Tensor,
    *,
    lhs_scale: float = 2.0,
    rhs_scale: float = 2.0,
    **kwargs
) -> SolveInfo:
    r"""
    Form :math:`\alpha\mathbf{J}^T\mathbf{J}` explicitly, invert it and
    multiply. Explicit inversion amplifies ill-conditioning: this variant
    is kept as a reference for the iterative solvers. Iteration settings
    are accepted and ignored.
    """
    _check_system(jacobian, residuals, x)
    JtJ = lhs_scale * (jacobian.T @ jacobian)
    Jtf = rhs_scale * torch.mv(jacobian.T, residuals)
    JtJ_inv = torch.linalg.inv(JtJ)
    torch.mv(JtJ_inv, Jtf, out=x)
    residual = torch.linalg.vector_norm(JtJ @ x - Jtf).item()
    return SolveInfo(0, True, residual)


LINEAR_SOLVERS: dict[str, Callable[..., SolveInfo]] = {
    "pcg": solve_pcg,
    "cg": solve_cg,
    "direct": solve_direct,
}

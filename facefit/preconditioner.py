import torch
from torch import Tensor

from .common import wrong_shape_msg as ws_msg
from .math import floored_reciprocal

PRECONDITIONER_FLOOR = 1e-8


def jacobi_preconditioner(
    jacobian: Tensor,
    *,
    scale: float = 2.0,
    floor: float = PRECONDITIONER_FLOOR,
    out: Tensor = None
) -> Tensor:
    r"""
    Diagonal (Jacobi) preconditioner of the normal equations matrix
    :math:`s\mathbf{J}^T\mathbf{J}`, computed column by column without
    forming the product:

    .. math:: M_c = \frac{1}{\max(s\sum_r J_{rc}^2, \varepsilon)}

    :param jacobian: The Jacobian. Its shape must be (R, U).
    :type jacobian: Tensor
    :param scale: The scale :math:`s` of the normal equations matrix.
        Defaults to 2.0.
    :type scale: float, optional
    :param floor: The numerical floor :math:`\varepsilon`. Defaults to
        1e-8.
    :type floor: float, optional
    :param out: Optional output tensor. Its shape must be (U,).
    :type out: Tensor, optional
    :return: The preconditioner diagonal. Its shape is (U,).
    :rtype: Tensor
    """
    if jacobian.ndim != 2:
        raise ValueError(ws_msg(jacobian, "jacobian", "(R, U)"))
    diagonal = scale * jacobian.square().sum(dim=0)
    M = floored_reciprocal(diagonal, floor)
    if out is None:
        return M
    if out.shape != M.shape:
        raise ValueError(ws_msg(out, "out", M.shape))
    return out.copy_(M)


def elementwise_multiplication(a: Tensor, b: Tensor, out: Tensor = None) -> Tensor:
    r"""
    Hadamard product, used to apply the diagonal preconditioner.
    """
    if a.shape != b.shape:
        raise ValueError(ws_msg(b, "b", a.shape))
    return torch.mul(a, b, out=out)

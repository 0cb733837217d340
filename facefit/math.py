import torch
from torch import Tensor


def minmax(x: Tensor) -> Tensor:
    r"""
    Rescale linearly the input's values between 0 and 1:

    .. math:: \mathit{x[i]} =
        \frac{x[i] - \min(x)}{\max(\max(x) - \min(x), \varepsilon)}

    :param x: The input tensor.
    :type x: Tensor
    :return: The rescaled version between 0 and 1.
    :rtype: Tensor
    """
    if x.numel() == 0:
        return x
    xmin, xmax = torch.aminmax(x)
    return (x - xmin) / max(xmax - xmin, torch.finfo(x.dtype).eps)


def floored_reciprocal(x: Tensor, floor: float) -> Tensor:
    r"""
    Elementwise reciprocal with a lower bound on the denominator:

    .. math:: \mathit{y[i]} = \frac{1}{\max(x[i], \varepsilon)}

    :param x: The input tensor.
    :type x: Tensor
    :param floor: The numerical floor :math:`\varepsilon`.
    :type floor: float
    :return: The floored reciprocal, always finite for finite inputs.
    :rtype: Tensor
    """
    return x.clamp(min=floor).reciprocal()

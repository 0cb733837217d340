import torch
from torch import Tensor
from torch.nn.functional import pad

from .common import wrong_shape_msg as ws_msg


def transform_mat(R: Tensor, T: Tensor) -> Tensor:
    r"""
    Creates a batch of affine transformation matrices from batches
    of rotations and translations.

    :param R: Batch of rotation matrices. Its shape must be (..., 3, 3).
    :type R: Tensor
    :param T: Batch of translation vectors. Its shape must be
        (..., 3, 1).
    :type T: Tensor
    :return: The correspondent batch of transformation matrices.
    :rtype: Tensor
    """
    if R.shape[-2:] != (3, 3):
        raise ValueError(ws_msg(R, "R", "(..., 3, 3)"))
    if T.shape[-2:] != (3, 1):
        raise ValueError(ws_msg(T, "T", "(..., 3, 1)"))
    if R.shape[:-2] != T.shape[:-2]:
        raise ValueError(
            f"R and t must have the same batch shape, but the current "
            f"shapes are {tuple(R.shape)} and {tuple(T.shape)} "
            f"respectively."
        )

    # Pad R on the bottom with zeros
    R_padded = pad(R, pad=[0, 0, 0, 1])
    # Pad T on the bottom with a single one
    t_padded = pad(T, pad=[0, 0, 0, 1], value=1.0)
    return torch.cat([R_padded, t_padded], dim=-1)


def _axis_rotations(angles: Tensor) -> tuple[Tensor, Tensor]:
    r"""
    Elementary rotations about the X, Y and Z axes and their derivatives
    wrt the respective angle.

    :param angles: The three angles (rx, ry, rz). Its shape must be (3,).
    :type angles: Tensor
    :return: Two tensors of shape (3, 3, 3): the rotation matrices
        Rx, Ry, Rz and their derivatives dRx, dRy, dRz.
    :rtype: tuple[Tensor, Tensor]
    """
    if angles.shape != (3,):
        raise ValueError(ws_msg(angles, "angles", "(3,)"))
    c, s = torch.cos(angles), torch.sin(angles)
    zero, one = torch.zeros_like(c), torch.ones_like(c)
    # Each row lists the nine entries (row-major) of one elementary matrix
    rotations = torch.stack([
        torch.stack([one[0], zero[0], zero[0], zero[0], c[0], -s[0], zero[0], s[0], c[0]]),
        torch.stack([c[1], zero[1], s[1], zero[1], one[1], zero[1], -s[1], zero[1], c[1]]),
        torch.stack([c[2], -s[2], zero[2], s[2], c[2], zero[2], zero[2], zero[2], one[2]]),
    ]).view(3, 3, 3)
    derivatives = torch.stack([
        torch.stack([zero[0], zero[0], zero[0], zero[0], -s[0], -c[0], zero[0], c[0], -s[0]]),
        torch.stack([-s[1], zero[1], c[1], zero[1], zero[1], zero[1], -c[1], zero[1], -s[1]]),
        torch.stack([-s[2], -c[2], zero[2], c[2], -s[2], zero[2], zero[2], zero[2], zero[2]]),
    ]).view(3, 3, 3)
    return rotations, derivatives


def euler_to_matrix(angles: Tensor) -> Tensor:
    r"""
    Rotation matrix from Euler angles, applied in X, Y, Z order:

    .. math:: \mathbf{R} = \mathbf{R}_z(r_z)\mathbf{R}_y(r_y)
        \mathbf{R}_x(r_x)

    :param angles: The three angles (rx, ry, rz), in radians. Its shape
        must be (3,).
    :type angles: Tensor
    :return: The rotation matrix. Its shape is (3, 3).
    :rtype: Tensor
    """
    (Rx, Ry, Rz), _ = _axis_rotations(angles)
    return Rz @ Ry @ Rx


def euler_derivatives(angles: Tensor) -> tuple[Tensor, Tensor, Tensor]:
    r"""
    Partial derivatives of :func:`euler_to_matrix` wrt each angle.

    :param angles: The three angles (rx, ry, rz). Its shape must be (3,).
    :type angles: Tensor
    :return: The three (3, 3) matrices dR/drx, dR/dry, dR/drz.
    :rtype: tuple[Tensor, Tensor, Tensor]
    """
    (Rx, Ry, Rz), (dRx, dRy, dRz) = _axis_rotations(angles)
    return Rz @ Ry @ dRx, Rz @ dRy @ Rx, dRz @ Ry @ Rx


def perspective(
    focal: float,
    aspect: float = 1.0,
    near: float = 0.1,
    far: float = 100.0,
    **kwargs
) -> Tensor:
    r"""
    Symmetric-frustum perspective projection (OpenGL convention, camera
    looking down the negative Z-axis). Only the focal terms, the depth
    terms and the depth flip :math:`P_{32} = -1` are nonzero, which is
    the camera form assumed by the analytic Jacobians.

    :param focal: Horizontal focal scale, stored in P[0, 0].
    :type focal: float
    :param aspect: Ratio P[1, 1] / P[0, 0]. Defaults to 1.0.
    :type aspect: float, optional
    :param near: Near plane distance. Defaults to 0.1.
    :type near: float, optional
    :param far: Far plane distance. Defaults to 100.0.
    :type far: float, optional
    :param kwargs: PyTorch Tensor parameters.
    :return: The projection matrix. Its shape is (4, 4).
    :rtype: Tensor
    """
    if not 0 < near < far:
        raise ValueError(f"Expected 0 < near < far, got near={near}, far={far}.")
    P = torch.zeros(4, 4, **kwargs)
    P[0, 0] = focal
    P[1, 1] = focal * aspect
    P[2, 2] = -(far + near) / (far - near)
    P[2, 3] = -2.0 * far * near / (far - near)
    P[3, 2] = -1.0
    return P


def project(
    points: Tensor,
    model: Tensor,
    projection: Tensor
) -> tuple[Tensor, Tensor]:
    r"""
    Transform local points to clip space and apply the perspective
    division.

    :param points: Local coordinates. Its shape must be (N, 3).
    :type points: Tensor
    :param model: The pose (model) matrix. Its shape must be (4, 4).
    :type model: Tensor
    :param projection: The projection matrix. Its shape must be (4, 4).
    :type projection: Tensor
    :return: A tuple containing the screen coordinates (N, 2) and the
        clip coordinates (N, 4).
    :rtype: tuple[Tensor, Tensor]
    """
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(ws_msg(points, "points", "(N, 3)"))
    if model.shape != (4, 4):
        raise ValueError(ws_msg(model, "model", (4, 4)))
    if projection.shape != (4, 4):
        raise ValueError(ws_msg(projection, "projection", (4, 4)))
    points_homo = pad(points, pad=[0, 1], value=1.0)  # (N, 4)
    clip = points_homo @ (projection @ model).T  # (N, 4)
    return clip[:, :2] / clip[:, 3:], clip

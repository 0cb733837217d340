r"""
Analytic residuals and Jacobians of the sparse landmark fitting problem.

The unknowns are ordered as

    [focal, rx, ry, rz, tx, ty, tz, shape_0..k-1, expression_0..m-1]

and the residuals as

    [x_0, y_0, ..., x_{n-1}, y_{n-1}, shape_reg_0..k-1, expression_reg_0..m-1]

Feature residuals are predicted minus observed screen coordinates. The
basis unknowns are the std-scaled coefficients (see :class:`Face`), so
their Jacobian blocks are plain rows of the basis matrices.

Two implementations are provided: a vectorized one, which processes all
the features at once on the tensors' device, and a sequential NumPy
reference used to cross-check it.
"""
import math

import numpy as np
import torch
from numpy import ndarray
from torch import LongTensor, Tensor
from torch.nn.functional import pad

from .common import wrong_shape_msg as ws_msg

POSE_UNKNOWNS = 7


def _check_system(
    jacobian: Tensor | ndarray,
    residuals: Tensor | ndarray,
    num_rows: int,
    num_cols: int
):
    if jacobian.ndim != 2 or jacobian.shape[0] < num_rows or jacobian.shape[1] != num_cols:
        raise ValueError(
            ws_msg(jacobian, "jacobian", "(R, U)", f"R >= {num_rows}, U = {num_cols}")
        )
    if residuals.shape != (jacobian.shape[0],):
        raise ValueError(ws_msg(residuals, "residuals", (jacobian.shape[0],)))


def build_sparse_features(
    jacobian: Tensor,
    residuals: Tensor,
    vertices: Tensor,
    ids: LongTensor,
    points: Tensor,
    model: Tensor,
    rotation_derivatives: tuple[Tensor, Tensor, Tensor],
    projection: Tensor,
    shape_basis: Tensor,
    expression_basis: Tensor,
    num_shape: int,
    num_expression: int
):
    r"""
    Fill the first 2N residuals and Jacobian rows, two for each feature.
    Every feature only writes its own row pair, the other entries are
    left untouched (they are expected to be zero).

    For each feature the chain rule is applied through four stages: the
    perspective division (2x3), the projection (3x3, only the focal and
    depth-flip entries are nonzero), the pose (3x6: rotation derivatives
    and identity for translation) and the basis rows of the vertex.

    :param jacobian: Output Jacobian. Its shape must be (R, 7 + k + m),
        with R >= 2N.
    :type jacobian: Tensor
    :param residuals: Output residuals. Its shape must be (R,).
    :type residuals: Tensor
    :param vertices: Local vertex positions. Its shape must be (V, 3).
    :type vertices: Tensor
    :param ids: Vertex id of each feature. Its shape must be (N,).
    :type ids: LongTensor
    :param points: Observed screen coordinates. Its shape must be (N, 2).
    :type points: Tensor
    :param model: Pose (model) matrix. Its shape must be (4, 4).
    :type model: Tensor
    :param rotation_derivatives: The three (3, 3) derivatives of the
        rotation wrt the rotation coefficients.
    :type rotation_derivatives: tuple[Tensor, Tensor, Tensor]
    :param projection: Projection matrix. Its shape must be (4, 4).
    :type projection: Tensor
    :param shape_basis: Shape basis. Its shape must be (3V, K), K >= k.
    :type shape_basis: Tensor
    :param expression_basis: Expression basis. Its shape must be (3V, M),
        M >= m.
    :type expression_basis: Tensor
    :param num_shape: Number k of optimized shape coefficients.
    :type num_shape: int
    :param num_expression: Number m of optimized expression coefficients.
    :type num_expression: int
    """
    n, k, m = ids.shape[0], num_shape, num_expression
    _check_system(jacobian, residuals, 2 * n, POSE_UNKNOWNS + k + m)
    if points.shape != (n, 2):
        raise ValueError(ws_msg(points, "points", (n, 2)))
    if model.shape != (4, 4):
        raise ValueError(ws_msg(model, "model", (4, 4)))
    if projection.shape != (4, 4):
        raise ValueError(ws_msg(projection, "projection", (4, 4)))
    if n == 0:
        return

    # Forward pass: local -> world -> clip -> screen
    local = vertices[ids]  # (n, 3)
    R = model[:3, :3]
    world = local @ R.T + model[:3, 3]  # (n, 3)
    clip = pad(world, pad=[0, 1], value=1.0) @ projection.T  # (n, 4)
    inv_w = clip[:, 3].reciprocal()
    uv = clip[:, :2] * inv_w[:, None]
    residuals[:2 * n] = (uv - points).reshape(-1)

    # (a) Perspective division, d(u, v)/d(x, y, w)
    j_proj = clip.new_zeros(n, 2, 3)
    j_proj[:, 0, 0] = inv_w
    j_proj[:, 0, 2] = -clip[:, 0] * inv_w * inv_w
    j_proj[:, 1, 1] = inv_w
    j_proj[:, 1, 2] = -clip[:, 1] * inv_w * inv_w

    # (b) Projection, d(x, y, w)/d(world)
    j_world = torch.diag(torch.stack([
        projection[0, 0], projection[1, 1], -torch.ones_like(projection[0, 0])
    ]))  # (3, 3)

    # Focal term, d(x, y, w)/d(P[0, 0])
    j_intrinsics = clip.new_zeros(n, 3, 1)
    j_intrinsics[:, 0, 0] = world[:, 0]

    # (c) Pose, d(world)/d(rx, ry, rz, tx, ty, tz)
    j_pose = clip.new_zeros(n, 3, 6)
    j_pose[:, :, :3] = torch.stack([local @ d.T for d in rotation_derivatives], dim=-1)
    j_pose[:, :, 3:] = torch.eye(3, dtype=clip.dtype, device=clip.device)

    rows = jacobian[:2 * n].view(n, 2, -1)  # row pair of each feature
    rows[:, :, :1] = j_proj @ j_intrinsics
    j_proj_world = j_proj @ j_world  # (n, 2, 3)
    rows[:, :, 1:POSE_UNKNOWNS] = j_proj_world @ j_pose

    # (d) Basis, d(local)/d(coefficients) are the 3 rows of the vertex
    j_proj_local = j_proj_world @ R  # (n, 2, 3)
    num_vertices = vertices.shape[0]
    shape_rows = shape_basis.reshape(num_vertices, 3, shape_basis.shape[1])[ids, :, :k]
    rows[:, :, POSE_UNKNOWNS:POSE_UNKNOWNS + k] = j_proj_local @ shape_rows
    expression_rows = expression_basis.reshape(num_vertices, 3, expression_basis.shape[1])[ids, :, :m]
    rows[:, :, POSE_UNKNOWNS + k:] = j_proj_local @ expression_rows


def build_regularizer(
    jacobian: Tensor,
    residuals: Tensor,
    row_offset: int,
    shape_coefficients: Tensor,
    shape_std: Tensor,
    expression_coefficients: Tensor,
    expression_std: Tensor,
    weight: float
):
    r"""
    Fill the regularization rows, one for each optimized coefficient,
    starting at `row_offset`. Each row encodes a weighted L2 prior on the
    standardized coefficient :math:`c_i`:

    .. math:: r_i = \sqrt{w}\,c_i, \qquad
        \frac{\partial r_i}{\partial (\sigma_i c_i)} =
        \frac{\sqrt{w}}{\sigma_i}

    so that its only nonzero Jacobian entry lies on the column of its own
    coefficient.

    :param jacobian: Output Jacobian. Its shape must be (R, 7 + k + m).
    :type jacobian: Tensor
    :param residuals: Output residuals. Its shape must be (R,).
    :type residuals: Tensor
    :param row_offset: First regularization row (2N).
    :type row_offset: int
    :param shape_coefficients: The k optimized shape coefficients.
    :type shape_coefficients: Tensor
    :param shape_std: Their standard deviations. Its shape must be (k,).
    :type shape_std: Tensor
    :param expression_coefficients: The m optimized expression
        coefficients.
    :type expression_coefficients: Tensor
    :param expression_std: Their standard deviations. Its shape must be
        (m,).
    :type expression_std: Tensor
    :param weight: The regularization weight w.
    :type weight: float
    """
    k, m = shape_coefficients.shape[0], expression_coefficients.shape[0]
    _check_system(jacobian, residuals, row_offset + k + m, POSE_UNKNOWNS + k + m)
    if shape_std.shape != (k,):
        raise ValueError(ws_msg(shape_std, "shape_std", (k,)))
    if expression_std.shape != (m,):
        raise ValueError(ws_msg(expression_std, "expression_std", (m,)))

    sqrt_w = math.sqrt(weight)
    index = torch.arange(k + m, device=jacobian.device)
    coefficients = torch.cat([shape_coefficients, expression_coefficients])
    std = torch.cat([shape_std, expression_std])
    jacobian[row_offset + index, POSE_UNKNOWNS + index] = sqrt_w / std
    residuals[row_offset + index] = sqrt_w * coefficients


def build_sparse_features_reference(
    jacobian: ndarray,
    residuals: ndarray,
    vertices: ndarray,
    ids: ndarray,
    points: ndarray,
    model: ndarray,
    rotation_derivatives: tuple[ndarray, ndarray, ndarray],
    projection: ndarray,
    shape_basis: ndarray,
    expression_basis: ndarray,
    num_shape: int,
    num_expression: int
):
    r"""
    Sequential counterpart of :func:`build_sparse_features`, processing
    one feature at a time with NumPy. Same arguments, as arrays.
    """
    n, k, m = ids.shape[0], num_shape, num_expression
    _check_system(jacobian, residuals, 2 * n, POSE_UNKNOWNS + k + m)
    c_shape, c_expr = POSE_UNKNOWNS, POSE_UNKNOWNS + k

    # Constant entries are set here only once, the loop never touches them
    j_proj = np.zeros((2, 3))
    j_world = np.zeros((3, 3))
    j_world[0, 0] = projection[0, 0]
    j_world[1, 1] = projection[1, 1]
    j_world[2, 2] = -1.0
    j_intrinsics = np.zeros((3, 1))
    j_pose = np.zeros((3, 6))
    j_pose[:, 3:] = np.eye(3)
    j_local = model[:3, :3]
    drx, dry, drz = rotation_derivatives

    for i in range(n):
        vertex_id = int(ids[i])
        local = vertices[vertex_id]
        world = model @ np.append(local, 1.0)
        clip = projection @ world
        one_over_w = 1.0 / clip[3]

        r = slice(2 * i, 2 * i + 2)
        residuals[r] = clip[:2] * one_over_w - points[i]

        j_proj[0, 0] = one_over_w
        j_proj[0, 2] = -clip[0] * one_over_w * one_over_w
        j_proj[1, 1] = one_over_w
        j_proj[1, 2] = -clip[1] * one_over_w * one_over_w

        j_intrinsics[0, 0] = world[0]
        jacobian[r, :1] = j_proj @ j_intrinsics

        j_pose[:, 0] = drx @ local
        j_pose[:, 1] = dry @ local
        j_pose[:, 2] = drz @ local
        j_proj_world = j_proj @ j_world
        jacobian[r, 1:POSE_UNKNOWNS] = j_proj_world @ j_pose

        j_proj_local = j_proj_world @ j_local
        basis_rows = slice(3 * vertex_id, 3 * vertex_id + 3)
        jacobian[r, c_shape:c_expr] = j_proj_local @ shape_basis[basis_rows, :k]
        jacobian[r, c_expr:c_expr + m] = j_proj_local @ expression_basis[basis_rows, :m]


def build_regularizer_reference(
    jacobian: ndarray,
    residuals: ndarray,
    row_offset: int,
    shape_coefficients: ndarray,
    shape_std: ndarray,
    expression_coefficients: ndarray,
    expression_std: ndarray,
    weight: float
):
    r"""
    Sequential counterpart of :func:`build_regularizer`.
    """
    k, m = shape_coefficients.shape[0], expression_coefficients.shape[0]
    _check_system(jacobian, residuals, row_offset + k + m, POSE_UNKNOWNS + k + m)
    sqrt_w = math.sqrt(weight)
    for i in range(k):
        jacobian[row_offset + i, POSE_UNKNOWNS + i] = sqrt_w / shape_std[i]
        residuals[row_offset + i] = sqrt_w * shape_coefficients[i]
    for i in range(m):
        row, col = row_offset + k + i, POSE_UNKNOWNS + k + i
        jacobian[row, col] = sqrt_w / expression_std[i]
        residuals[row] = sqrt_w * expression_coefficients[i]

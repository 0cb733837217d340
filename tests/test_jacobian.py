import math

import numpy as np
import pytest
import torch

from facefit.jacobian import (
    POSE_UNKNOWNS, build_regularizer, build_regularizer_reference,
    build_sparse_features, build_sparse_features_reference
)

from conftest import DTYPE

WEIGHT = 1e-2


def build(face, features, projection, k, m):
    n = len(features)
    jacobian = torch.zeros(2 * n + k + m, POSE_UNKNOWNS + k + m, dtype=DTYPE)
    residuals = torch.zeros(2 * n + k + m, dtype=DTYPE)
    build_sparse_features(
        jacobian, residuals,
        vertices=face.compute_face(),
        ids=features.ids,
        points=features.points,
        model=face.compute_model_matrix(),
        rotation_derivatives=face.compute_rotation_derivatives(),
        projection=projection,
        shape_basis=face.shape_basis,
        expression_basis=face.expression_basis,
        num_shape=k,
        num_expression=m,
    )
    build_regularizer(
        jacobian, residuals,
        row_offset=2 * n,
        shape_coefficients=face.shape_coefficients[:k],
        shape_std=face.shape_std[:k],
        expression_coefficients=face.expression_coefficients[:m],
        expression_std=face.expression_std[:m],
        weight=WEIGHT,
    )
    return jacobian, residuals


def build_reference(face, features, projection, k, m):
    n = len(features)
    jacobian = np.zeros((2 * n + k + m, POSE_UNKNOWNS + k + m))
    residuals = np.zeros(2 * n + k + m)
    build_sparse_features_reference(
        jacobian, residuals,
        vertices=face.compute_face().numpy(),
        ids=features.ids.numpy(),
        points=features.points.numpy(),
        model=face.compute_model_matrix().numpy(),
        rotation_derivatives=tuple(d.numpy() for d in face.compute_rotation_derivatives()),
        projection=projection.numpy(),
        shape_basis=face.shape_basis.numpy(),
        expression_basis=face.expression_basis.numpy(),
        num_shape=k,
        num_expression=m,
    )
    build_regularizer_reference(
        jacobian, residuals,
        row_offset=2 * n,
        shape_coefficients=face.shape_coefficients[:k].numpy(),
        shape_std=face.shape_std[:k].numpy(),
        expression_coefficients=face.expression_coefficients[:m].numpy(),
        expression_std=face.expression_std[:m].numpy(),
        weight=WEIGHT,
    )
    return torch.from_numpy(jacobian), torch.from_numpy(residuals)


@pytest.fixture
def posed_face(face):
    face.rotation_coefficients[:] = torch.tensor([0.2, -0.1, 0.3], dtype=DTYPE)
    face.shape_coefficients[:] = torch.tensor([0.5, -0.4, 0.3, 0.0, 0.2], dtype=DTYPE)
    face.expression_coefficients[:] = torch.tensor([0.1, 0.7, 0.0, 0.4], dtype=DTYPE)
    return face


@pytest.mark.parametrize("k, m", [(5, 4), (2, 1), (0, 0)])
def test_system_layout(posed_face, features, projection, k, m):
    n = len(features)
    jacobian, residuals = build(posed_face, features, projection, k, m)
    assert residuals.shape == (2 * n + k + m,)
    assert jacobian.shape == (2 * n + k + m, POSE_UNKNOWNS + k + m)
    assert torch.isfinite(jacobian).all()


def test_feature_residuals_are_predicted_minus_observed(posed_face, features, projection):
    _, residuals = build(posed_face, features, projection, 5, 4)
    shifted = features.points + 0.25
    shifted_features = type(features)(features.ids, shifted)
    _, shifted_residuals = build(posed_face, shifted_features, projection, 5, 4)
    n = len(features)
    torch.testing.assert_close(
        shifted_residuals[:2 * n], residuals[:2 * n] - 0.25
    )


@pytest.mark.parametrize("k, m", [(5, 4), (3, 2)])
def test_parallel_matches_reference(posed_face, features, projection, k, m):
    jacobian, residuals = build(posed_face, features, projection, k, m)
    jacobian_ref, residuals_ref = build_reference(posed_face, features, projection, k, m)
    torch.testing.assert_close(jacobian, jacobian_ref)
    torch.testing.assert_close(residuals, residuals_ref)


def test_jacobian_matches_finite_differences(posed_face, features, projection):
    k, m = 5, 4
    jacobian, _ = build(posed_face, features, projection, k, m)
    eps = 1e-6

    def perturbed(column: int, delta: float) -> torch.Tensor:
        face, P = posed_face, projection.clone()
        saved = [
            face.rotation_coefficients.clone(),
            face.translation_coefficients.clone(),
            face.shape_coefficients.clone(),
            face.expression_coefficients.clone(),
        ]
        if column == 0:
            P[0, 0] += delta
        elif column < 4:
            face.rotation_coefficients[column - 1] += delta
        elif column < POSE_UNKNOWNS:
            face.translation_coefficients[column - 4] += delta
        elif column < POSE_UNKNOWNS + k:
            i = column - POSE_UNKNOWNS
            # Unknowns are the std-scaled coefficients
            face.shape_coefficients[i] += delta / face.shape_std[i]
        else:
            i = column - POSE_UNKNOWNS - k
            face.expression_coefficients[i] += delta / face.expression_std[i]
        _, residuals = build(face, features, P, k, m)
        for buffer, value in zip([
            face.rotation_coefficients,
            face.translation_coefficients,
            face.shape_coefficients,
            face.expression_coefficients,
        ], saved):
            buffer.copy_(value)
        return residuals

    numeric = torch.stack([
        (perturbed(c, eps) - perturbed(c, -eps)) / (2 * eps)
        for c in range(jacobian.shape[1])
    ], dim=1)
    torch.testing.assert_close(jacobian, numeric, atol=1e-6, rtol=1e-5)


def test_regularizer_rows(posed_face, features, projection):
    k, m = 5, 4
    n = len(features)
    jacobian, residuals = build(posed_face, features, projection, k, m)
    block = jacobian[2 * n:]
    assert torch.all(block.ne(0).sum(dim=1) == 1)
    torch.testing.assert_close(block[:, :POSE_UNKNOWNS], torch.zeros(k + m, POSE_UNKNOWNS, dtype=DTYPE))

    sqrt_w = math.sqrt(WEIGHT)
    std = torch.cat([posed_face.shape_std, posed_face.expression_std])
    coefficients = torch.cat([
        posed_face.shape_coefficients, posed_face.expression_coefficients
    ])
    torch.testing.assert_close(torch.diagonal(block[:, POSE_UNKNOWNS:]), sqrt_w / std)
    torch.testing.assert_close(residuals[2 * n:], sqrt_w * coefficients)


def test_feature_rows_leave_the_rest_untouched(posed_face, features, projection):
    n, k, m = len(features), 2, 1
    jacobian = torch.full((2 * n + 5, POSE_UNKNOWNS + k + m), 7.0, dtype=DTYPE)
    residuals = torch.full((2 * n + 5,), 7.0, dtype=DTYPE)
    build_sparse_features(
        jacobian, residuals,
        vertices=posed_face.compute_face(),
        ids=features.ids,
        points=features.points,
        model=posed_face.compute_model_matrix(),
        rotation_derivatives=posed_face.compute_rotation_derivatives(),
        projection=projection,
        shape_basis=posed_face.shape_basis,
        expression_basis=posed_face.expression_basis,
        num_shape=k,
        num_expression=m,
    )
    assert torch.all(jacobian[2 * n:] == 7.0)
    assert torch.all(residuals[2 * n:] == 7.0)


def test_wrong_system_shape(posed_face, features, projection):
    n = len(features)
    with pytest.raises(ValueError):
        build_sparse_features(
            torch.zeros(2 * n, POSE_UNKNOWNS + 1, dtype=DTYPE),
            torch.zeros(2 * n, dtype=DTYPE),
            vertices=posed_face.compute_face(),
            ids=features.ids,
            points=features.points,
            model=posed_face.compute_model_matrix(),
            rotation_derivatives=posed_face.compute_rotation_derivatives(),
            projection=projection,
            shape_basis=posed_face.shape_basis,
            expression_basis=posed_face.expression_basis,
            num_shape=2,
            num_expression=0,
        )

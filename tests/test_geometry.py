import pytest
import torch

from facefit.geometry import (
    euler_derivatives, euler_to_matrix, perspective, project, transform_mat
)

ANGLES = torch.tensor([0.3, -0.2, 0.7], dtype=torch.float64)


def test_euler_to_matrix_is_a_rotation():
    R = euler_to_matrix(ANGLES)
    torch.testing.assert_close(R @ R.T, torch.eye(3, dtype=torch.float64))
    assert torch.linalg.det(R).item() == pytest.approx(1.0)


def test_euler_to_matrix_single_axis():
    angle = 0.4
    R = euler_to_matrix(torch.tensor([0.0, 0.0, angle], dtype=torch.float64))
    c, s = torch.cos(torch.tensor(angle)).item(), torch.sin(torch.tensor(angle)).item()
    expected = torch.tensor(
        [[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]], dtype=torch.float64
    )
    torch.testing.assert_close(R, expected)


@pytest.mark.parametrize("axis", [0, 1, 2])
def test_euler_derivatives_match_finite_differences(axis):
    eps = 1e-6
    step = torch.zeros(3, dtype=torch.float64)
    step[axis] = eps
    numeric = (euler_to_matrix(ANGLES + step) - euler_to_matrix(ANGLES - step)) / (2 * eps)
    torch.testing.assert_close(euler_derivatives(ANGLES)[axis], numeric, atol=1e-8, rtol=1e-6)


def test_euler_wrong_shape():
    with pytest.raises(ValueError):
        euler_to_matrix(torch.zeros(4))


def test_transform_mat():
    R = euler_to_matrix(ANGLES)
    T = torch.tensor([[1.0], [2.0], [3.0]], dtype=torch.float64)
    M = transform_mat(R, T)
    assert M.shape == (4, 4)
    torch.testing.assert_close(M[:3, :3], R)
    torch.testing.assert_close(M[:3, 3], T[:, 0])
    torch.testing.assert_close(M[3], torch.tensor([0.0, 0.0, 0.0, 1.0], dtype=torch.float64))


def test_perspective_form():
    P = perspective(2.0, aspect=1.5, near=1.0, far=3.0)
    expected = torch.tensor([
        [2.0, 0.0, 0.0, 0.0],
        [0.0, 3.0, 0.0, 0.0],
        [0.0, 0.0, -2.0, -3.0],
        [0.0, 0.0, -1.0, 0.0],
    ])
    torch.testing.assert_close(P, expected)


@pytest.mark.parametrize("near, far", [(0.0, 10.0), (5.0, 1.0), (-1.0, 1.0)])
def test_perspective_invalid_planes(near, far):
    with pytest.raises(ValueError):
        perspective(1.0, near=near, far=far)


def test_project():
    points = torch.tensor([[0.0, 0.0, -5.0], [1.0, -2.0, -5.0]], dtype=torch.float64)
    model = torch.eye(4, dtype=torch.float64)
    P = perspective(1.5, dtype=torch.float64)
    uv, clip = project(points, model, P)
    torch.testing.assert_close(clip[:, 3], torch.tensor([5.0, 5.0], dtype=torch.float64))
    torch.testing.assert_close(
        uv, torch.tensor([[0.0, 0.0], [0.3, -0.6]], dtype=torch.float64)
    )

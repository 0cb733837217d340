import pytest
import torch

from facefit.face import Face

from conftest import DTYPE, NUM_EXPRESSION, NUM_SHAPE, NUM_VERTICES


def test_counts(face):
    assert face.number_of_vertices == NUM_VERTICES
    assert face.num_shape_coefficients == NUM_SHAPE
    assert face.num_expression_coefficients == NUM_EXPRESSION


def test_zero_coefficients_give_the_mean(face):
    torch.testing.assert_close(face.compute_face(), face.mean)


def test_compute_face_scales_by_std(face):
    face.shape_coefficients[1] = 2.0
    face.expression_coefficients[3] = 0.5
    vertices = face.compute_face()
    expected = (
        face.mean
        + (face.shape_basis[:, 1] * face.shape_std[1] * 2.0).view(-1, 3)
        + (face.expression_basis[:, 3] * face.expression_std[3] * 0.5).view(-1, 3)
    )
    torch.testing.assert_close(vertices, expected)
    torch.testing.assert_close(face.current_face, expected)


def test_model_matrix(face):
    model = face.compute_model_matrix()
    assert model.shape == (4, 4)
    torch.testing.assert_close(model[:3, :3], torch.eye(3, dtype=DTYPE))
    torch.testing.assert_close(model[:3, 3], face.translation_coefficients)


def test_invalid_model_data():
    with pytest.raises(ValueError):
        Face(
            mean=torch.zeros(4, 3),
            shape_basis=torch.zeros(11, 2),
            shape_std=torch.ones(2),
            expression_basis=torch.zeros(12, 1),
            expression_std=torch.ones(1),
        )
    with pytest.raises(ValueError):
        Face(
            mean=torch.zeros(4, 3),
            shape_basis=torch.zeros(12, 2),
            shape_std=torch.ones(3),
            expression_basis=torch.zeros(12, 1),
            expression_std=torch.ones(1),
        )


def test_save_and_load(face, tmp_path):
    path = tmp_path / "model.pt"
    face.save(path)
    loaded = Face.load(path, dtype=torch.float32)
    assert loaded.mean.dtype == torch.float32
    assert loaded.faces.dtype == torch.long
    torch.testing.assert_close(loaded.shape_basis, face.shape_basis.float())
    torch.testing.assert_close(loaded.faces, face.faces)
    assert torch.all(loaded.shape_coefficients == 0)


def test_load_missing_entries(tmp_path):
    path = tmp_path / "broken.pt"
    torch.save({"mean": torch.zeros(3, 3)}, path)
    with pytest.raises(KeyError):
        Face.load(path)

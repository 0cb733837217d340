import pytest
import torch

from facefit.face import Face
from facefit.features import SparseFeatures
from facefit.geometry import perspective, project

DTYPE = torch.float64
NUM_VERTICES = 30
NUM_SHAPE = 5
NUM_EXPRESSION = 4


def make_face(seed: int = 0) -> Face:
    generator = torch.Generator().manual_seed(seed)

    def rand(*size: int) -> torch.Tensor:
        return torch.rand(*size, generator=generator, dtype=DTYPE)

    mean = rand(NUM_VERTICES, 3) - 0.5
    faces = torch.tensor(
        [[i, i + 1, i + 2] for i in range(0, NUM_VERTICES - 2, 3)],
        dtype=torch.long
    )
    face = Face(
        mean=mean,
        shape_basis=0.1 * (rand(3 * NUM_VERTICES, NUM_SHAPE) - 0.5),
        shape_std=0.5 + rand(NUM_SHAPE),
        expression_basis=0.1 * (rand(3 * NUM_VERTICES, NUM_EXPRESSION) - 0.5),
        expression_std=0.5 + rand(NUM_EXPRESSION),
        faces=faces,
    )
    face.translation_coefficients[:] = torch.tensor([0.0, 0.0, -5.0], dtype=DTYPE)
    return face


def observe(face: Face, ids: torch.Tensor, projection: torch.Tensor) -> torch.Tensor:
    uv, _ = project(face.compute_face()[ids], face.compute_model_matrix(), projection)
    return uv


@pytest.fixture
def face() -> Face:
    return make_face()


@pytest.fixture
def projection() -> torch.Tensor:
    return perspective(1.5, dtype=DTYPE)


@pytest.fixture
def target_face() -> Face:
    r"""
    The same model as `face`, moved to a nearby pose with nonzero
    coefficients.
    """
    target = make_face()
    target.rotation_coefficients[:] = torch.tensor([0.05, 0.1, -0.02], dtype=DTYPE)
    target.translation_coefficients[:] = torch.tensor([0.05, -0.03, -5.2], dtype=DTYPE)
    target.shape_coefficients[:] = torch.tensor([0.4, -0.3, 0.2, 0.1, -0.2], dtype=DTYPE)
    target.expression_coefficients[:] = torch.tensor([0.3, 0.6, 0.2, 0.5], dtype=DTYPE)
    return target


@pytest.fixture
def features(target_face: Face, projection: torch.Tensor) -> SparseFeatures:
    ids = torch.arange(0, NUM_VERTICES, 2)
    return SparseFeatures(ids, observe(target_face, ids, projection))

r"""
Sparse landmark fitting of linear blendshape face models: analytic
Jacobians of the projection chain, matrix-free (preconditioned) conjugate
gradient solvers and the Gauss-Newton loop that ties them together.

The vedo-based :mod:`facefit.plot` module is not imported here, since it
needs a display.
"""

from . import (
    backend, common, face, features, geometry, io, jacobian, linear, math,
    preconditioner, solver
)
from .face import Face
from .features import SparseFeatures, draw_feature_ids
from .solver import GaussNewtonParams, GaussNewtonSolver, NumericalError

__all__ = [
    "Face",
    "GaussNewtonParams",
    "GaussNewtonSolver",
    "NumericalError",
    "SparseFeatures",
    "draw_feature_ids",
]

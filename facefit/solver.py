import json
import logging
import sys
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Callable

import numpy as np
import torch
from torch import Tensor
from tqdm import trange

from .backend import ComputeContext
from .common import Device, wrong_shape_msg as ws_msg
from .face import Face
from .features import SparseFeatures
from .jacobian import (
    POSE_UNKNOWNS, build_regularizer, build_regularizer_reference,
    build_sparse_features, build_sparse_features_reference
)
from .linear import LINEAR_SOLVERS, SolveInfo

logger = logging.getLogger(__name__)


class NumericalError(RuntimeError):
    r"""
    The linear backend produced a non-finite parameter update.
    """


@dataclass
class GaussNewtonParams:
    r"""
    Solver hyperparameters.

    :param num_shape_coefficients: Number of optimized (leading) shape
        coefficients. None means all of the model's.
    :param num_expression_coefficients: Number of optimized (leading)
        expression coefficients. None means all of the model's.
    :param regularisation_weight_exponent: The regularization weight is
        10 raised to this exponent.
    :param num_gn_iterations: Outer Gauss-Newton iterations, always all
        performed.
    :param num_pcg_iterations: Cap on the linear solver iterations.
    :param tolerance: Linear solver convergence threshold.
    :param near_zero: Floor of the linear solver denominators.
    :param linear_solver: One of "pcg", "cg", "direct".
    """
    num_shape_coefficients: int | None = None
    num_expression_coefficients: int | None = None
    regularisation_weight_exponent: float = -3.0
    num_gn_iterations: int = 5
    num_pcg_iterations: int = 200
    tolerance: float = 1e-6
    near_zero: float = 1e-8
    linear_solver: str = "pcg"

    def __post_init__(self):
        if self.linear_solver not in LINEAR_SOLVERS:
            raise ValueError(
                f"Unknown linear solver {self.linear_solver!r}, expected one "
                f"of {sorted(LINEAR_SOLVERS)}."
            )
        if self.num_gn_iterations < 0 or self.num_pcg_iterations < 0:
            raise ValueError("Iteration counts must be non-negative.")
        for name in ["num_shape_coefficients", "num_expression_coefficients"]:
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}.")

    @property
    def regularisation_weight(self) -> float:
        return 10.0 ** self.regularisation_weight_exponent

    @classmethod
    def from_dict(cls, options: dict[str, Any]) -> "GaussNewtonParams":
        r"""
        Build the parameters from a dictionary. Unknown keys are an error,
        missing ones take their default value.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(options) - known
        if unknown:
            raise KeyError(f"Unknown solver options: {sorted(unknown)}.")
        return cls(**options)

    @classmethod
    def from_json(cls, path: str | Path) -> "GaussNewtonParams":
        with open(path, "r", encoding="utf-8") as file:
            return cls.from_dict(json.load(file))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class GaussNewtonSolver:
    r"""
    Fit the pose, the focal term and the blendshape coefficients of a
    face model to sparse 2D landmarks. Every call runs a fixed number of
    Gauss-Newton iterations; each of them regenerates the geometry,
    builds the analytic Jacobian, solves the normal equations and applies
    the update in place.

    The solver owns a :class:`ComputeContext`, which is reused across
    calls and released by :meth:`close`.
    """

    # (2 JTJ) x = 2 JTf: x is the full Gauss-Newton step, to be subtracted
    lhs_scale = 2.0
    rhs_scale = 2.0

    def __init__(
        self,
        params: GaussNewtonParams = None,
        *,
        device: Device = None,
        dtype: torch.dtype = torch.float32,
        show_progress: bool = False
    ):
        self.params = params if params is not None else GaussNewtonParams()
        self.context = ComputeContext(device=device, dtype=dtype)
        self.show_progress = show_progress
        self.loss_history: list[float] = []
        self.solve_history: list[SolveInfo] = []

    def solve(self, features: SparseFeatures, face: Face, projection: Tensor):
        r"""
        Optimize `face` and the focal term in `projection[0, 0]` in place,
        building the systems with the vectorized builder.

        :param features: The observed landmarks and their vertex ids. An
            empty set leaves everything unchanged.
        :type features: SparseFeatures
        :param face: The face model, updated in place.
        :type face: Face
        :param projection: The projection matrix, updated in place. Its
            shape must be (4, 4).
        :type projection: Tensor
        """
        self._run(features, face, projection, self._build_parallel, "Gauss-Newton")

    def solve_reference(self, features: SparseFeatures, face: Face, projection: Tensor):
        r"""
        Same as :meth:`solve`, but the systems are built sequentially on
        the host by the NumPy reference builder.
        """
        self._run(features, face, projection, self._build_reference, "Gauss-Newton (reference)")

    def solve_update(self, jacobian: Tensor, residuals: Tensor, result: Tensor) -> SolveInfo:
        r"""
        Solve the normal equations of one linearization with the
        configured linear solver. `result` receives the step that must be
        subtracted from the unknowns.

        :param jacobian: The Jacobian. Its shape must be (R, U).
        :type jacobian: Tensor
        :param residuals: The residuals. Its shape must be (R,).
        :type residuals: Tensor
        :param result: The output step. Its shape must be (U,).
        :type result: Tensor
        :return: The linear solver statistics.
        :rtype: SolveInfo
        """
        solver = LINEAR_SOLVERS[self.params.linear_solver]
        try:
            return solver(
                jacobian, residuals, result,
                lhs_scale=self.lhs_scale,
                rhs_scale=self.rhs_scale,
                max_iterations=self.params.num_pcg_iterations,
                tolerance=self.params.tolerance,
                near_zero=self.params.near_zero,
            )
        except torch.linalg.LinAlgError as e:
            logger.error("Linear solver %r failed: %s", self.params.linear_solver, e)
            raise NumericalError(str(e)) from e

    def close(self):
        self.context.close()

    def __enter__(self) -> "GaussNewtonSolver":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _coefficient_counts(self, face: Face) -> tuple[int, int]:
        k = self.params.num_shape_coefficients
        m = self.params.num_expression_coefficients
        k = face.num_shape_coefficients if k is None else k
        m = face.num_expression_coefficients if m is None else m
        if k > face.num_shape_coefficients:
            raise ValueError(
                f"Cannot optimize {k} shape coefficients, the model has only "
                f"{face.num_shape_coefficients}."
            )
        if m > face.num_expression_coefficients:
            raise ValueError(
                f"Cannot optimize {m} expression coefficients, the model has "
                f"only {face.num_expression_coefficients}."
            )
        return k, m

    def _run(
        self,
        features: SparseFeatures,
        face: Face,
        projection: Tensor,
        build: Callable[..., None],
        desc: str
    ):
        self.loss_history = []
        self.solve_history = []
        # Nothing to track: the linear backend cannot handle empty systems
        if len(features) == 0:
            logger.debug("No features to track, skipping the optimization.")
            return
        if projection.shape != (4, 4):
            raise ValueError(ws_msg(projection, "projection", (4, 4)))
        features.check_vertex_count(face.number_of_vertices)

        ctx = self.context
        n = len(features)
        k, m = self._coefficient_counts(face)
        n_unknowns = POSE_UNKNOWNS + k + m
        n_residuals = 2 * n + k + m
        logger.debug(
            "Solving %d unknowns from %d residuals (%d features) on %s",
            n_unknowns, n_residuals, n, ctx.device
        )

        with ctx.scope():
            # Per-call buffers, reused by every iteration
            jacobian = ctx.zeros(n_residuals, n_unknowns)
            residuals = ctx.zeros(n_residuals)
            result = ctx.zeros(n_unknowns)
            system = {
                "ids": features.ids.to(device=ctx.device),
                "points": ctx.tensor(features.points),
                "shape_basis": ctx.tensor(face.shape_basis),
                "expression_basis": ctx.tensor(face.expression_basis),
                "k": k,
                "m": m,
            }

            for iteration in trange(
                self.params.num_gn_iterations,
                desc=desc,
                file=sys.stdout,
                disable=not self.show_progress
            ):
                face.compute_face()
                jacobian.zero_()
                residuals.zero_()
                build(jacobian, residuals, system, face, projection)

                info = self.solve_update(jacobian, residuals, result)
                loss = residuals.square().sum().item()
                ctx.synchronize()
                self._apply_update(result, face, projection, k, m)

                self.loss_history.append(loss)
                self.solve_history.append(info)
                logger.debug(
                    "Iteration %d: loss %.6g, %s iterations %d",
                    iteration, loss, self.params.linear_solver, info.iterations
                )

    def _build_parallel(
        self,
        jacobian: Tensor,
        residuals: Tensor,
        system: dict[str, Any],
        face: Face,
        projection: Tensor
    ):
        ctx = self.context
        k, m = system["k"], system["m"]
        n = system["ids"].shape[0]
        build_sparse_features(
            jacobian, residuals,
            vertices=ctx.tensor(face.current_face),
            ids=system["ids"],
            points=system["points"],
            model=ctx.tensor(face.compute_model_matrix()),
            rotation_derivatives=tuple(
                ctx.tensor(d) for d in face.compute_rotation_derivatives()
            ),
            projection=ctx.tensor(projection),
            shape_basis=system["shape_basis"],
            expression_basis=system["expression_basis"],
            num_shape=k,
            num_expression=m,
        )
        build_regularizer(
            jacobian, residuals,
            row_offset=2 * n,
            shape_coefficients=ctx.tensor(face.shape_coefficients[:k]),
            shape_std=ctx.tensor(face.shape_std[:k]),
            expression_coefficients=ctx.tensor(face.expression_coefficients[:m]),
            expression_std=ctx.tensor(face.expression_std[:m]),
            weight=self.params.regularisation_weight,
        )

    def _build_reference(
        self,
        jacobian: Tensor,
        residuals: Tensor,
        system: dict[str, Any],
        face: Face,
        projection: Tensor
    ):
        def host(x: Tensor) -> np.ndarray:
            return x.numpy(force=True).astype(np.float64)

        k, m = system["k"], system["m"]
        ids = system["ids"].numpy(force=True)
        jacobian_host = np.zeros(tuple(jacobian.shape))
        residuals_host = np.zeros(tuple(residuals.shape))
        build_sparse_features_reference(
            jacobian_host, residuals_host,
            vertices=host(face.current_face),
            ids=ids,
            points=host(system["points"]),
            model=host(face.compute_model_matrix()),
            rotation_derivatives=tuple(
                host(d) for d in face.compute_rotation_derivatives()
            ),
            projection=host(projection),
            shape_basis=host(face.shape_basis),
            expression_basis=host(face.expression_basis),
            num_shape=k,
            num_expression=m,
        )
        build_regularizer_reference(
            jacobian_host, residuals_host,
            row_offset=2 * ids.shape[0],
            shape_coefficients=host(face.shape_coefficients[:k]),
            shape_std=host(face.shape_std[:k]),
            expression_coefficients=host(face.expression_coefficients[:m]),
            expression_std=host(face.expression_std[:m]),
            weight=self.params.regularisation_weight,
        )
        jacobian.copy_(torch.from_numpy(jacobian_host))
        residuals.copy_(torch.from_numpy(residuals_host))

    @torch.no_grad()
    def _apply_update(
        self,
        result: Tensor,
        face: Face,
        projection: Tensor,
        k: int,
        m: int
    ):
        if not torch.isfinite(result).all():
            logger.error(
                "Non-finite Gauss-Newton update, the model state is left unchanged."
            )
            raise NumericalError("The linear solver returned a non-finite update.")

        delta = result.to(device=projection.device, dtype=projection.dtype)
        projection[0, 0] -= delta[0]

        delta = result.to(face.rotation_coefficients)
        face.rotation_coefficients -= delta[1:4]
        face.translation_coefficients -= delta[4:7]

        c_shape, c_expr = POSE_UNKNOWNS, POSE_UNKNOWNS + k
        face.shape_coefficients[:k] -= delta[c_shape:c_expr] / face.shape_std[:k]
        face.expression_coefficients[:m] = (
            face.expression_coefficients[:m]
            - delta[c_expr:c_expr + m] / face.expression_std[:m]
        ).clamp(0.0, 1.0)

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
r"""
Fit a linear blendshape face model to sparse 2D landmarks.

Example:

    python fit.py model.pt landmarks.txt ids.txt -o results/ --solver pcg
"""
import argparse
import logging
import sys
import traceback
from argparse import Namespace
from pathlib import Path

import cv2
import numpy as np
import torch
from tabulate import tabulate
from torch import Tensor

from facefit.common import StyledTerminal as ts, setup_logging
from facefit.face import Face
from facefit.features import SparseFeatures, draw_feature_ids
from facefit.geometry import perspective, project
from facefit.io import (
    draw_features, load_feature_ids, load_landmarks, save_obj, save_params
)
from facefit.solver import GaussNewtonParams, GaussNewtonSolver

_dtypes = {"float32": torch.float32, "float64": torch.float64}
# Command line flags overriding the configuration file
_param_flags = [
    "num_shape_coefficients", "num_expression_coefficients",
    "regularisation_weight_exponent", "num_gn_iterations",
    "num_pcg_iterations", "tolerance", "near_zero", "linear_solver",
]


def reprojection_rmse(features: SparseFeatures, face: Face, projection: Tensor) -> float:
    uv, _ = project(
        face.compute_face()[features.ids],
        face.compute_model_matrix(),
        projection
    )
    errors = torch.linalg.vector_norm(uv - features.points.to(uv), dim=-1)
    return errors.square().mean().sqrt().item()


def load_params(args: Namespace) -> GaussNewtonParams:
    options = (
        GaussNewtonParams.from_json(args.config).to_dict()
        if args.config is not None
        else {}
    )
    options.update({
        name: getattr(args, name)
        for name in _param_flags
        if getattr(args, name) is not None
    })
    return GaussNewtonParams.from_dict(options)


def fit_pipeline(args: Namespace):
    dtype = _dtypes[args.dtype]
    args.output.mkdir(exist_ok=True, parents=True)

    print("(1/3) Loading model and landmarks...", flush=True)
    face = Face.load(args.model, dtype=dtype)
    face.rotation_coefficients[:] = torch.tensor(args.rotation, dtype=dtype)
    face.translation_coefficients[:] = torch.tensor(args.translation, dtype=dtype)
    projection = perspective(args.focal, args.aspect, args.near, args.far, dtype=dtype)

    ids = load_feature_ids(args.ids)
    points = load_landmarks(args.landmarks, dtype=dtype)
    if args.num_features is not None:
        chosen = draw_feature_ids(torch.arange(ids.shape[0]), args.num_features, seed=args.seed)
        ids, points = ids[chosen], points[chosen]
    features = SparseFeatures(ids, points)
    if len(features) == 0:
        ts.sprint("Warning: no landmarks given, nothing to fit!", ts.YELLOW)
    params = load_params(args)
    focal_before = projection[0, 0].item()
    rmse_before = reprojection_rmse(features, face, projection) if len(features) else 0.0

    print("(2/3) Fitting...", flush=True)
    with GaussNewtonSolver(
        params,
        device=args.device,
        dtype=dtype,
        show_progress=True
    ) as solver:
        if args.reference:
            solver.solve_reference(features, face, projection)
        else:
            solver.solve(features, face, projection)
        loss_history = solver.loss_history
        solve_history = solver.solve_history
    rmse_after = reprojection_rmse(features, face, projection) if len(features) else 0.0

    content = [
        ["Focal", focal_before, projection[0, 0].item()],
        ["Reprojection RMSE", rmse_before, rmse_after],
    ]
    print(f"\n{tabulate(content, headers=['Quantity', 'Initial', 'Fitted'])}")
    if loss_history:
        rows = [
            [i, loss, info.iterations, info.converged]
            for i, (loss, info) in enumerate(zip(loss_history, solve_history))
        ]
        print(f"\n{tabulate(rows, headers=['Iteration', 'Loss', 'Solver its', 'Converged'])}\n")

    print("(3/3) Saving results...", flush=True)
    save_params(args.output / "params.json", face, projection)
    vertices = None
    if face.faces is not None:
        model = face.compute_model_matrix()
        vertices = face.compute_face() @ model[:3, :3].T + model[:3, 3]
        save_obj(args.output / "mesh.obj", vertices, face.faces)
    if args.debug and len(features):
        predicted, _ = project(
            face.compute_face()[features.ids], face.compute_model_matrix(), projection
        )
        canvas = np.zeros((args.image_size, args.image_size, 3), dtype=np.uint8)
        overlay = draw_features(canvas, features.points, predicted)
        cv2.imwrite(str(args.output / "landmarks.png"), overlay)

    if args.interactive:
        from facefit.plot import plot_face, plot_landmarks, plot_loss

        plot_loss(loss_history)
        if len(features):
            predicted, _ = project(
                face.compute_face()[features.ids], face.compute_model_matrix(), projection
            )
            plot_landmarks(features.points, predicted)
        if vertices is not None:
            plot_face(vertices, face.faces)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fit",
        description="Gauss-Newton fitting of a face model to 2D landmarks."
    )
    parser.add_argument("model", type=Path, help="Face model (.pt).")
    parser.add_argument("landmarks", type=Path, help="2D landmarks (.npy, .pp, .txt, .csv).")
    parser.add_argument("ids", type=Path, help="Vertex ids of the landmarks (compact list).")
    parser.add_argument("-o", "--output", type=Path, default=Path("results"))
    parser.add_argument("-c", "--config", type=Path, help="Solver options (JSON).")
    parser.add_argument("--reference", action="store_true",
                        help="Build the systems with the sequential reference builder.")
    parser.add_argument("--device", default=None)
    parser.add_argument("--dtype", choices=sorted(_dtypes), default="float32")
    # Camera and initial pose
    parser.add_argument("--focal", type=float, default=1.5)
    parser.add_argument("--aspect", type=float, default=1.0)
    parser.add_argument("--near", type=float, default=0.1)
    parser.add_argument("--far", type=float, default=100.0)
    parser.add_argument("--rotation", type=float, nargs=3, default=[0.0, 0.0, 0.0])
    parser.add_argument("--translation", type=float, nargs=3, default=[0.0, 0.0, -5.0])
    # Landmarks subset
    parser.add_argument("--num-features", type=int, default=None)
    parser.add_argument("--seed", type=int, default=None)
    # Solver options
    parser.add_argument("--num-shape-coefficients", type=int)
    parser.add_argument("--num-expression-coefficients", type=int)
    parser.add_argument("--regularisation-weight-exponent", type=float)
    parser.add_argument("--num-gn-iterations", type=int)
    parser.add_argument("--num-pcg-iterations", type=int)
    parser.add_argument("--tolerance", type=float)
    parser.add_argument("--near-zero", type=float)
    parser.add_argument("--solver", dest="linear_solver", choices=["pcg", "cg", "direct"])
    # Outputs
    parser.add_argument("--debug", action="store_true", help="Save a landmarks overlay image.")
    parser.add_argument("--image-size", type=int, default=512)
    parser.add_argument("--interactive", action="store_true")
    parser.add_argument("--log-file", type=Path, default=None)
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: list[str] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_file, logging.DEBUG if args.verbose else logging.INFO)
    try:
        with torch.no_grad():
            fit_pipeline(args)
    except Exception:
        print(traceback.format_exc(), file=sys.stderr, flush=True)
        print(
            "\nAn error occurred during the fitting process. Please see "
            "log files for more details.",
            flush=True
        )
        return 1
    print("Fitting completed!", flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())

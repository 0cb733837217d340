import json

import numpy as np
import pytest
import torch

import fit
from facefit.geometry import project

from conftest import make_face


@pytest.fixture
def inputs(tmp_path, target_face, projection):
    model_path = tmp_path / "model.pt"
    make_face().save(model_path)

    ids = torch.arange(0, 30, 2)
    uv, _ = project(
        target_face.compute_face()[ids], target_face.compute_model_matrix(), projection
    )
    landmarks_path = tmp_path / "landmarks.npy"
    np.save(landmarks_path, uv.numpy())
    ids_path = tmp_path / "ids.txt"
    ids_path.write_text(", ".join(str(i) for i in ids.tolist()))
    return model_path, landmarks_path, ids_path


def test_fit(tmp_path, inputs):
    output = tmp_path / "out"
    code = fit.main([
        *map(str, inputs),
        "-o", str(output),
        "--dtype", "float64",
        "--device", "cpu",
        "--num-gn-iterations", "4",
        "--solver", "direct",
        "--debug",
        "--log-file", str(tmp_path / "fit.log"),
    ])
    assert code == 0
    params = json.loads((output / "params.json").read_text())
    assert len(params["shape"]) == 5
    assert (output / "mesh.obj").exists()
    assert (output / "landmarks.png").exists()


def test_fit_with_config(tmp_path, inputs):
    config = tmp_path / "solver.json"
    config.write_text(json.dumps({"num_gn_iterations": 2, "num_shape_coefficients": 2}))
    args = fit.build_parser().parse_args([*map(str, inputs), "-c", str(config), "--solver", "cg"])
    params = fit.load_params(args)
    assert params.num_gn_iterations == 2
    assert params.num_shape_coefficients == 2
    assert params.linear_solver == "cg"


def test_fit_failure(tmp_path, inputs, capsys):
    _, landmarks_path, ids_path = inputs
    code = fit.main([
        str(tmp_path / "missing.pt"), str(landmarks_path), str(ids_path),
        "-o", str(tmp_path / "out"),
    ])
    assert code == 1
    assert "Traceback" in capsys.readouterr().err

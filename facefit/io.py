import json
import logging
from pathlib import Path
from xml.etree.ElementTree import parse

import cv2
import numpy as np
import torch
from numpy import ndarray
from torch import LongTensor, Tensor

from .common import to_full_list, wrong_shape_msg as ws_msg
from .face import Face
from .math import minmax

logger = logging.getLogger(__name__)


def load_pp(filepath: str | Path) -> ndarray:
    r"""
    Load points from a MeshLab PickedPoints file.

    :param filepath: The file path.
    :type filepath: Path | str
    :return: A NumPy array containing the coordinates of the points.
    :rtype: ndarray
    """
    filepath = Path(filepath)
    if filepath.suffix.lower() != ".pp":
        raise ValueError("Unknown file type.")
    root = parse(filepath.resolve()).getroot()
    points = [
        [float(p.attrib[a]) for a in "xyz"]
        for p in root.findall("point")
    ]
    return np.array(points, dtype=np.float32).reshape(-1, 3)


def load_landmarks(filepath: str | Path, **kwargs) -> Tensor:
    r"""
    Load 2D landmarks (screen coordinates) from a NumPy file (.npy), a
    MeshLab PickedPoints file (.pp, the z coordinate is dropped) or a
    text file with two columns separated by spaces or commas.

    :param filepath: The file path.
    :type filepath: str | Path
    :param kwargs: PyTorch Tensor parameters.
    :return: The landmarks. Its shape is (N, 2).
    :rtype: Tensor
    """
    filepath = Path(filepath)
    suffix = filepath.suffix.lower()
    if suffix == ".npy":
        points = np.load(filepath)
    elif suffix == ".pp":
        points = load_pp(filepath)[:, :2]
    else:
        delimiter = "," if suffix == ".csv" else None
        points = np.loadtxt(filepath, delimiter=delimiter, ndmin=2)
    points = torch.tensor(points, **kwargs)
    if points.ndim != 2 or points.shape[1] != 2:
        raise ValueError(ws_msg(points, f"the landmarks in {filepath.name}", "(N, 2)"))
    return points


def load_feature_ids(filepath: str | Path) -> LongTensor:
    r"""
    Load the vertex ids of the landmarks. The file contains a compact
    list, e.g. "0-4, 9, 12" (commas and newlines both separate items).

    :param filepath: The file path.
    :type filepath: str | Path
    :return: The vertex ids. Its shape is (N,).
    :rtype: LongTensor
    """
    with open(filepath, "r", encoding="utf-8") as file:
        return torch.tensor(to_full_list(file.read()), dtype=torch.long)


def save_obj(filepath: str | Path, vertices: Tensor, faces: LongTensor):
    r"""
    Save the mesh to Wavefront OBJ file.

    :param filepath: The output file path.
    :type filepath: str | Path
    :param vertices: The mesh vertices. Its shape must be (V, 3).
    :type vertices: Tensor
    :param faces: The mesh faces. Its shape must be (F, 3).
    :type faces: LongTensor
    """
    filepath = Path(filepath)
    if filepath.suffix != ".obj":
        raise ValueError("Unknown file extension.")
    if vertices.ndim != 2 or vertices.shape[1] != 3:
        raise ValueError(ws_msg(vertices, "vertices", "(V, 3)"))
    if faces.ndim != 2 or faces.shape[1] != 3:
        raise ValueError(ws_msg(faces, "faces", "(F, 3)"))
    if torch.any(faces.lt(0)) or torch.any(faces.ge(vertices.shape[0])):
        raise IndexError(
            f"Some faces indices are out of the range [0, {vertices.shape[0]})."
        )
    with open(filepath, "w") as file:
        file.writelines([
            f"v {v[0]} {v[1]} {v[2]}\n"
            for v in vertices.tolist()
        ])
        file.writelines([
            f"f {f[0]} {f[1]} {f[2]}\n"
            for f in (faces + 1).tolist()
        ])


def save_params(filepath: str | Path, face: Face, projection: Tensor):
    r"""
    Save the fitted coefficients and focal term to a JSON file.

    :param filepath: The output file path.
    :type filepath: str | Path
    :param face: The fitted face model.
    :type face: Face
    :param projection: The fitted projection matrix.
    :type projection: Tensor
    """
    content = {
        "focal": projection[0, 0].item(),
        "projection": projection.tolist(),
        "rotation": face.rotation_coefficients.tolist(),
        "translation": face.translation_coefficients.tolist(),
        "shape": face.shape_coefficients.tolist(),
        "expression": face.expression_coefficients.tolist(),
    }
    with open(filepath, "w", encoding="utf-8") as file:
        json.dump(content, file, indent=2)


def _to_image(buffer: Tensor) -> ndarray:
    # Float [0, 1] RGB buffer to 8-bit BGR image
    image = (buffer.clamp(0, 1) * 255).round().to(torch.uint8).numpy(force=True)
    if image.ndim == 3 and image.shape[2] == 3:
        image = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
    return image


def dump_debug_buffers(
    output_dir: str | Path,
    color: Tensor,
    vertex_ids: LongTensor,
    albedo: Tensor,
    *,
    prefix: str = ""
) -> list[Path]:
    r"""
    Write the intermediate rendered buffers to PNG files: the color
    buffer, the vertex-id buffer (rescaled to gray levels) and the
    vertex-id buffer resolved to per-vertex albedo. This has no effect on
    the optimizer state.

    :param output_dir: The output folder, created if missing.
    :type output_dir: str | Path
    :param color: RGB color buffer with values in [0, 1]. Its shape must
        be (H, W, 3).
    :type color: Tensor
    :param vertex_ids: Vertex id of each pixel, negative for background.
        Its shape must be (H, W).
    :type vertex_ids: LongTensor
    :param albedo: Per-vertex RGB albedo in [0, 1]. Its shape must be
        (V, 3).
    :type albedo: Tensor
    :param prefix: File name prefix. Defaults to "".
    :type prefix: str, optional
    :return: The written file paths.
    :rtype: list[Path]
    """
    if color.ndim != 3 or color.shape[2] != 3:
        raise ValueError(ws_msg(color, "color", "(H, W, 3)"))
    if vertex_ids.shape != color.shape[:2]:
        raise ValueError(ws_msg(vertex_ids, "vertex_ids", color.shape[:2]))
    if albedo.ndim != 2 or albedo.shape[1] != 3:
        raise ValueError(ws_msg(albedo, "albedo", "(V, 3)"))
    if torch.any(vertex_ids.ge(albedo.shape[0])):
        raise IndexError(f"Some vertex ids are out of the range [0, {albedo.shape[0]}).")

    output_dir = Path(output_dir)
    output_dir.mkdir(exist_ok=True, parents=True)
    mask = vertex_ids.ge(0)

    ids_image = torch.zeros(vertex_ids.shape, dtype=albedo.dtype, device=albedo.device)
    ids_image[mask] = minmax(vertex_ids[mask].to(albedo))
    albedo_image = torch.zeros(*vertex_ids.shape, 3, dtype=albedo.dtype, device=albedo.device)
    albedo_image[mask] = albedo[vertex_ids[mask]]

    paths = []
    for name, buffer in [
        ("color", color),
        ("vertex_ids", ids_image),
        ("albedo", albedo_image),
    ]:
        path = output_dir / f"{prefix}{name}.png"
        if not cv2.imwrite(str(path), _to_image(buffer)):
            raise OSError(f"Cannot write {path}")
        paths.append(path)
    logger.debug("Debug buffers written to %s", output_dir)
    return paths


def draw_features(
    image: ndarray,
    observed: Tensor,
    predicted: Tensor,
    *,
    radius: int = 3
) -> ndarray:
    r"""
    Draw the observed (green) and predicted (red) landmarks on a copy of
    an image, joined by a line.

    :param image: 8-bit BGR image. Its shape must be (H, W, 3).
    :type image: ndarray
    :param observed: Observed landmarks in normalized device coordinates
        ([-1, 1], y-up). Its shape must be (N, 2).
    :type observed: Tensor
    :param predicted: Predicted landmarks, same convention. Its shape must
        be (N, 2).
    :type predicted: Tensor
    :param radius: Circle radius in pixels. Defaults to 3.
    :type radius: int, optional
    :return: The annotated image.
    :rtype: ndarray
    """
    if observed.ndim != 2 or observed.shape[1] != 2:
        raise ValueError(ws_msg(observed, "observed", "(N, 2)"))
    if predicted.shape != observed.shape:
        raise ValueError(ws_msg(predicted, "predicted", observed.shape))
    h, w = image.shape[:2]

    def to_pixels(points: Tensor) -> list[tuple[int, int]]:
        points = points.numpy(force=True)
        px = (points[:, 0] + 1) * 0.5 * (w - 1)
        py = (1 - points[:, 1]) * 0.5 * (h - 1)
        return [(int(round(x)), int(round(y))) for x, y in zip(px, py)]

    canvas = image.copy()
    for obs, pred in zip(to_pixels(observed), to_pixels(predicted)):
        cv2.line(canvas, obs, pred, (255, 255, 255), 1)
        cv2.circle(canvas, obs, radius, (0, 255, 0), -1)
        cv2.circle(canvas, pred, radius, (0, 0, 255), -1)
    return canvas

from typing import Any

import vedo
from torch import LongTensor, Tensor
from torch.nn.functional import pad
from vedo import Lines, Mesh, Points, Text2D
from vedo.pyplot import plot

from .common import wrong_shape_msg as ws_msg


def _lift(points: Tensor) -> Tensor:
    # Screen coordinates live on the z = 0 plane
    if points.ndim != 2 or points.shape[1] not in (2, 3):
        raise ValueError(ws_msg(points, "points", "(N, 2)", "or (N, 3)"))
    return pad(points, pad=[0, 1]) if points.shape[1] == 2 else points


def create_points(points: Tensor, *, scale: float = 1.0, **kwargs) -> Points:
    r"""
    Create a Vedo Points mesh for the given 2D or 3D points.

    :param points: The input points. Its shape must be (N, 2) or (N, 3).
    :type points: Tensor
    :param scale: Relative scale of the points. Defaults to 1.0.
    :type scale: float, optional
    :return: The corresponding Vedo Points mesh.
    :rtype: Points
    """
    kwargs = {"r": scale * 8, **kwargs}
    return Points(_lift(points).numpy(force=True), **kwargs)


def _show(*actors: Any, msg: str, size: tuple[int, int], **kwargs):
    (
        vedo.Plotter(axes=kwargs.pop("axes", 8), bg=kwargs.pop("bg", "#555555"), **kwargs)
        .parallel_projection(True)
        .look_at("xy")
        .add(actors, Text2D(msg, pos="top-mid"))
        .show(viewup="y", size=size)
        .close()
    )


def plot_landmarks(
    observed: Tensor,
    predicted: Tensor,
    *,
    title: str = "Observed (green) vs predicted (red) landmarks",
    size: tuple[int, int] = (800, 800),
    **kwargs
):
    r"""
    Show the observed and the predicted screen coordinates, each pair
    joined by a segment (the reprojection error).

    :param observed: Observed landmarks. Its shape must be (N, 2).
    :type observed: Tensor
    :param predicted: Predicted landmarks. Its shape must be (N, 2).
    :type predicted: Tensor
    :param title: Window message.
    :type title: str, optional
    :param size: Plot window size. Defaults to (800, 800).
    :type size: tuple[int, int], optional
    :param kwargs: Vedo Plotter parameters.
    """
    if predicted.shape != observed.shape:
        raise ValueError(ws_msg(predicted, "predicted", observed.shape))
    start, end = _lift(observed).numpy(force=True), _lift(predicted).numpy(force=True)
    _show(
        create_points(observed, c="lime"),
        create_points(predicted, c="red"),
        Lines(start, end, c="white"),
        msg=title,
        size=size,
        **kwargs
    )


def plot_face(
    vertices: Tensor,
    faces: LongTensor = None,
    *,
    landmarks: Tensor = None,
    title: str = "Fitted face",
    size: tuple[int, int] = (800, 800),
    **kwargs
):
    r"""
    Show the fitted face (mesh, or point cloud when the model has no
    faces), optionally with its landmark vertices highlighted.

    :param vertices: World coordinates of the vertices. Its shape must be
        (V, 3).
    :type vertices: Tensor
    :param faces: Mesh triangles. Its shape must be (F, 3). Defaults to
        None.
    :type faces: LongTensor, optional
    :param landmarks: Landmark vertices. Its shape must be (N, 3).
        Defaults to None.
    :type landmarks: Tensor, optional
    :param title: Window message.
    :type title: str, optional
    :param size: Plot window size. Defaults to (800, 800).
    :type size: tuple[int, int], optional
    :param kwargs: Vedo Plotter parameters.
    """
    if vertices.ndim != 2 or vertices.shape[1] != 3:
        raise ValueError(ws_msg(vertices, "vertices", "(V, 3)"))
    if faces is not None:
        actors = [Mesh([vertices.numpy(force=True), faces.numpy(force=True)], c="white")]
    else:
        actors = [create_points(vertices, scale=0.5, c="white")]
    if landmarks is not None:
        actors.append(create_points(landmarks, c="yellow"))
    _show(*actors, msg=title, size=size, **kwargs)


def plot_loss(
    loss_history: list[float],
    *,
    size: tuple[int, int] = (900, 650),
    fmt: str = "-r",
    lw: int = 1,
    **kwargs
):
    r"""
    Plot the loss (sum of squared residuals) of each Gauss-Newton
    iteration.

    :param loss_history: One value per iteration.
    :type loss_history: list[float]
    :param size: Plot window size. Defaults to (900, 650).
    :type size: tuple[int, int], optional
    :param fmt: Line format. Defaults to "-r" (red solid line).
    :type fmt: str, optional
    :param lw: The line width in pts. Defaults to 1.
    :type lw: int, optional
    :param kwargs: Other Vedo plot parameters.
    """
    if len(loss_history) < 2:
        return
    x = list(range(len(loss_history)))
    (
        plot(x, loss_history, fmt, lw=lw, title="Gauss-Newton loss", **kwargs)
        .show(size=size, zoom="tight")
        .close()
    )

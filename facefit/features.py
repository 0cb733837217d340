from typing import Iterator

import torch
from torch import LongTensor, Tensor

from .common import wrong_shape_msg as ws_msg


def draw_feature_ids(
    prior_ids: LongTensor | list[int],
    num: int = None,
    *,
    seed: int = None
) -> LongTensor:
    r"""
    Draw, once per tracking session, the vertex ids of the tracked
    landmarks from a prior set of candidate vertices. The drawn ids only
    depend on the prior set and the seed, never on the current geometry.

    :param prior_ids: The candidate vertex ids.
    :type prior_ids: LongTensor | list[int]
    :param num: How many ids to draw. Defaults to None (all of them, in
        their original order).
    :type num: int, optional
    :param seed: Seed of the random draw. Defaults to None
        (non-deterministic).
    :type seed: int, optional
    :return: The drawn vertex ids. Its shape is (num,).
    :rtype: LongTensor
    """
    prior_ids = torch.as_tensor(prior_ids, dtype=torch.long)
    if prior_ids.ndim != 1:
        raise ValueError(ws_msg(prior_ids, "prior_ids", "(N,)"))
    if num is None:
        return prior_ids.clone()
    if not 0 <= num <= prior_ids.shape[0]:
        raise ValueError(
            f"Cannot draw {num} ids from a prior set of {prior_ids.shape[0]}."
        )
    generator = torch.Generator()
    if seed is not None:
        generator.manual_seed(seed)
    else:
        generator.seed()
    perm = torch.randperm(prior_ids.shape[0], generator=generator)
    return prior_ids[perm[:num]]


class SparseFeatures:
    r"""
    Ordered sequence of (vertex id, observed 2D point) correspondences,
    one for each tracked landmark.
    """

    def __init__(self, ids: LongTensor | list[int], points: Tensor):
        r"""
        :param ids: The model vertex id of each landmark. Its shape must
            be (N,).
        :type ids: LongTensor | list[int]
        :param points: The observed screen coordinates. Its shape must be
            (N, 2).
        :type points: Tensor
        """
        ids = torch.as_tensor(ids, dtype=torch.long)
        points = torch.as_tensor(points)
        if ids.ndim != 1:
            raise ValueError(ws_msg(ids, "ids", "(N,)"))
        if points.ndim != 2 or points.shape[1] != 2:
            raise ValueError(ws_msg(points, "points", "(N, 2)"))
        if ids.shape[0] != points.shape[0]:
            raise ValueError(
                f"ids and points must have the same length, but their "
                f"current lengths are {ids.shape[0]} and {points.shape[0]} "
                f"respectively."
            )
        if torch.any(ids.lt(0)):
            raise IndexError("Vertex ids must be non-negative.")
        self.ids = ids
        self.points = points

    @classmethod
    def empty(cls) -> "SparseFeatures":
        return cls(torch.zeros(0, dtype=torch.long), torch.zeros(0, 2))

    def __len__(self) -> int:
        return self.ids.shape[0]

    def __iter__(self) -> Iterator[tuple[int, Tensor]]:
        for vertex_id, point in zip(self.ids.tolist(), self.points):
            yield vertex_id, point

    def __repr__(self) -> str:
        return f"{type(self).__name__}(n={len(self)})"

    def check_vertex_count(self, number_of_vertices: int):
        r"""
        Verify that every id refers to an existing vertex.

        :param number_of_vertices: The vertex count of the face model.
        :type number_of_vertices: int
        """
        if len(self) and self.ids.max().item() >= number_of_vertices:
            raise IndexError(
                f"Some vertex ids are out of the range [0, {number_of_vertices})."
            )

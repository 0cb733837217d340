from pathlib import Path

import torch
from torch import LongTensor, Tensor
from torch.nn import Module

from .common import wrong_shape_msg as ws_msg
from .geometry import euler_derivatives, euler_to_matrix, transform_mat


class Face(Module):
    r"""
    Linear blendshape face model. Given its current coefficients, this
    module generates the face vertices in local (model) space:

    .. math:: \mathbf{v} = \bar{\mathbf{v}} +
        \mathbf{S}(\sigma_s \odot \mathbf{\alpha}) +
        \mathbf{E}(\sigma_e \odot \mathbf{\delta})

    and the rigid pose that brings them to world space. The coefficients
    are expressed in units of standard deviation, so that the basis
    columns are the derivatives of the vertices wrt the std-scaled
    coefficients :math:`\sigma_i \alpha_i`.
    """

    def __init__(
        self,
        mean: Tensor,
        shape_basis: Tensor,
        shape_std: Tensor,
        expression_basis: Tensor,
        expression_std: Tensor,
        faces: LongTensor = None
    ):
        r"""
        Create a face model.

        :param mean: Mean vertex positions. Its shape must be (V, 3).
        :type mean: Tensor
        :param shape_basis: Shape basis. Its shape must be (3V, K).
        :type shape_basis: Tensor
        :param shape_std: Shape standard deviations. Its shape must be
            (K,).
        :type shape_std: Tensor
        :param expression_basis: Expression basis. Its shape must be
            (3V, M).
        :type expression_basis: Tensor
        :param expression_std: Expression standard deviations. Its shape
            must be (M,).
        :type expression_std: Tensor
        :param faces: Mesh triangles. Its shape must be (F, 3). Defaults
            to None (point cloud).
        :type faces: LongTensor, optional
        """
        super(Face, self).__init__()
        if mean.ndim != 2 or mean.shape[1] != 3:
            raise ValueError(ws_msg(mean, "mean", "(V, 3)"))
        n = 3 * mean.shape[0]
        if shape_basis.ndim != 2 or shape_basis.shape[0] != n:
            raise ValueError(ws_msg(shape_basis, "shape_basis", f"({n}, K)"))
        if shape_std.shape != shape_basis.shape[1:]:
            raise ValueError(ws_msg(shape_std, "shape_std", shape_basis.shape[1:]))
        if expression_basis.ndim != 2 or expression_basis.shape[0] != n:
            raise ValueError(
                ws_msg(expression_basis, "expression_basis", f"({n}, M)")
            )
        if expression_std.shape != expression_basis.shape[1:]:
            raise ValueError(
                ws_msg(expression_std, "expression_std", expression_basis.shape[1:])
            )
        if faces is not None and (faces.ndim != 2 or faces.shape[1] != 3):
            raise ValueError(ws_msg(faces, "faces", "(F, 3)"))

        # Model data
        self.register_buffer("mean", mean)
        self.register_buffer("shape_basis", shape_basis)
        self.register_buffer("shape_std", shape_std)
        self.register_buffer("expression_basis", expression_basis)
        self.register_buffer("expression_std", expression_std)
        self.register_buffer("faces", faces)

        # Mutable state
        self.register_buffer("shape_coefficients", torch.zeros_like(shape_std))
        self.register_buffer("expression_coefficients", torch.zeros_like(expression_std))
        self.register_buffer("rotation_coefficients", torch.zeros(3).to(mean))
        self.register_buffer("translation_coefficients", torch.zeros(3).to(mean))
        self.register_buffer("current_face", mean.clone())

    @property
    def number_of_vertices(self) -> int:
        return self.mean.shape[0]

    @property
    def num_shape_coefficients(self) -> int:
        return self.shape_std.shape[0]

    @property
    def num_expression_coefficients(self) -> int:
        return self.expression_std.shape[0]

    def forward(self) -> Tensor:
        return self.compute_face()

    @torch.no_grad()
    def compute_face(self) -> Tensor:
        r"""
        Regenerate the local vertex positions from the current shape and
        expression coefficients. The result is also cached in
        `current_face`.

        :return: The vertices. Its shape is (V, 3).
        :rtype: Tensor
        """
        offsets = (
            self.shape_basis @ (self.shape_std * self.shape_coefficients)
            + self.expression_basis @ (self.expression_std * self.expression_coefficients)
        )
        self.current_face = self.mean + offsets.view(-1, 3)
        return self.current_face

    def compute_model_matrix(self) -> Tensor:
        r"""
        The pose (model) matrix mapping local to world coordinates.

        :return: The affine transformation. Its shape is (4, 4).
        :rtype: Tensor
        """
        R = euler_to_matrix(self.rotation_coefficients)
        return transform_mat(R, self.translation_coefficients[:, None])

    def compute_rotation_derivatives(self) -> tuple[Tensor, Tensor, Tensor]:
        r"""
        Derivatives of the rotation part of the model matrix wrt the three
        rotation coefficients.

        :return: The three (3, 3) matrices dR/drx, dR/dry, dR/drz.
        :rtype: tuple[Tensor, Tensor, Tensor]
        """
        return euler_derivatives(self.rotation_coefficients)

    @classmethod
    def load(cls, path: str | Path, **kwargs) -> "Face":
        r"""
        Load a face model saved with :meth:`save` (a dictionary of
        tensors stored with `torch.save`).

        :param path: The model file path.
        :type path: str | Path
        :param kwargs: PyTorch Tensor parameters (e.g. device, dtype),
            applied to the floating point data.
        :return: The loaded face model, with zero coefficients.
        :rtype: Face
        """
        data = torch.load(Path(path), map_location="cpu")
        missing = {
            "mean", "shape_basis", "shape_std", "expression_basis", "expression_std"
        } - data.keys()
        if missing:
            raise KeyError(f"The face model {path} lacks the entries {sorted(missing)}.")
        floats = {
            key: torch.as_tensor(data[key], **kwargs)
            for key in ["mean", "shape_basis", "shape_std", "expression_basis", "expression_std"]
        }
        faces = data.get("faces")
        if faces is not None:
            faces = torch.as_tensor(faces, dtype=torch.long, device=kwargs.get("device"))
        return cls(**floats, faces=faces)

    def save(self, path: str | Path):
        r"""
        Save the model data (not its coefficients).

        :param path: The output file path.
        :type path: str | Path
        """
        torch.save(
            {
                "mean": self.mean.cpu(),
                "shape_basis": self.shape_basis.cpu(),
                "shape_std": self.shape_std.cpu(),
                "expression_basis": self.expression_basis.cpu(),
                "expression_std": self.expression_std.cpu(),
                "faces": None if self.faces is None else self.faces.cpu(),
            },
            Path(path)
        )

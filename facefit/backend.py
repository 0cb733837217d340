import logging
from contextlib import contextmanager, nullcontext
from typing import Any, Generator

import torch
from torch import Tensor

from .common import Device

logger = logging.getLogger(__name__)


class ComputeContext:
    r"""
    Handle to the compute backend: the device and floating point type of
    every solver tensor, plus a dedicated CUDA stream when running on a
    GPU. A context is owned by one solver instance and lives as long as
    it does: it is acquired on construction and released by
    :meth:`close` (or on exit from a `with` block).
    """

    def __init__(self, device: Device = None, dtype: torch.dtype = torch.float32):
        r"""
        :param device: The compute device. Defaults to None ("cuda:0"
            when available, "cpu" otherwise).
        :type device: Device, optional
        :param dtype: The floating point type. Defaults to float32.
        :type dtype: torch.dtype, optional
        """
        if device is None:
            device = "cuda:0" if torch.cuda.is_available() else "cpu"
        if not dtype.is_floating_point:
            raise ValueError(f"dtype must be a floating point type, got {dtype}.")
        self.device = torch.device(device)
        self.dtype = dtype
        self._stream = (
            torch.cuda.Stream(device=self.device)
            if self.device.type == "cuda"
            else None
        )
        self._closed = False
        logger.debug("Acquired compute context on %s (%s)", self.device, self.dtype)

    @property
    def closed(self) -> bool:
        return self._closed

    def zeros(self, *size: int) -> Tensor:
        self._check_open()
        return torch.zeros(*size, device=self.device, dtype=self.dtype)

    def tensor(self, data: Any) -> Tensor:
        r"""
        Copy host data (or a tensor from another device) to the context.
        """
        self._check_open()
        return torch.as_tensor(data, device=self.device, dtype=self.dtype)

    @contextmanager
    def scope(self) -> Generator[None, None, None]:
        r"""
        Enqueue the work issued inside the block on the context stream.
        """
        self._check_open()
        with torch.cuda.stream(self._stream) if self._stream is not None else nullcontext():
            yield

    def synchronize(self):
        r"""
        Wait for all the queued work, so that results can be read back by
        the host.
        """
        if self._stream is not None:
            self._stream.synchronize()

    def close(self):
        if self._closed:
            return
        self.synchronize()
        self._stream = None
        self._closed = True
        logger.debug("Released compute context on %s", self.device)

    def _check_open(self):
        if self._closed:
            raise RuntimeError("The compute context has already been released.")

    def __enter__(self) -> "ComputeContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __del__(self):
        if not getattr(self, "_closed", True):
            self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"{type(self).__name__}(device={self.device}, dtype={self.dtype}, {state})"

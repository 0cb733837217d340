import pytest
import torch

from facefit.backend import ComputeContext


def test_context_on_cpu():
    with ComputeContext("cpu", torch.float64) as ctx:
        assert ctx.device == torch.device("cpu")
        x = ctx.zeros(2, 3)
        assert x.shape == (2, 3)
        assert x.dtype == torch.float64
        y = ctx.tensor([1, 2, 3])
        assert y.dtype == torch.float64
        with ctx.scope():
            z = x.sum()
        ctx.synchronize()
        assert z.item() == 0.0
        assert "open" in repr(ctx)
    assert ctx.closed
    assert "closed" in repr(ctx)


def test_closed_context():
    ctx = ComputeContext("cpu")
    ctx.close()
    ctx.close()
    with pytest.raises(RuntimeError):
        ctx.zeros(3)
    with pytest.raises(RuntimeError):
        with ctx.scope():
            pass


def test_non_float_dtype():
    with pytest.raises(ValueError):
        ComputeContext("cpu", torch.int64)

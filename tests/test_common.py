import logging
from logging.handlers import RotatingFileHandler

import pytest
import torch

from facefit.common import setup_logging, to_full_list, wrong_shape_msg
from facefit.math import floored_reciprocal, minmax


@pytest.mark.parametrize("compact, expected", [
    ("0-3, 7", [0, 1, 2, 3, 7]),
    ("5-3", [5, 4, 3]),
    ("1\n2,\n\n4", [1, 2, 4]),
    ("-2, 3", [-2, 3]),
    ("", []),
])
def test_to_full_list(compact, expected):
    assert to_full_list(compact) == expected


def test_wrong_shape_msg():
    msg = wrong_shape_msg(torch.zeros(2, 3), "points", "(N, 2)")
    assert "(N, 2)" in msg
    assert "(2, 3)" in msg
    assert "(N > 0)" in wrong_shape_msg(torch.zeros(2), "x", (3,), "N > 0")


def test_setup_logging(tmp_path):
    logger = setup_logging(tmp_path / "fit.log")
    assert logger.name == "facefit"
    assert any(isinstance(h, RotatingFileHandler) for h in logger.handlers)
    logging.getLogger("facefit.solver").debug("debug message")
    for handler in logger.handlers:
        handler.flush()
    assert "debug message" in (tmp_path / "fit.log").read_text()
    # Reconfiguring replaces the handlers
    logger = setup_logging()
    assert len(logger.handlers) == 1


def test_minmax():
    torch.testing.assert_close(minmax(torch.tensor([2.0, 4.0, 3.0])), torch.tensor([0.0, 1.0, 0.5]))
    torch.testing.assert_close(minmax(torch.tensor([3.0, 3.0])), torch.tensor([0.0, 0.0]))
    assert minmax(torch.zeros(0)).numel() == 0


def test_floored_reciprocal():
    torch.testing.assert_close(
        floored_reciprocal(torch.tensor([0.0, 0.5, 4.0], dtype=torch.float64), 1e-8),
        torch.tensor([1e8, 2.0, 0.25], dtype=torch.float64)
    )

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import torch
from torch import Size, Tensor

Device = str | torch.device


class StyledTerminal:
    r"""
    Container class for terminal ANSI escape codes.
    """
    # Foreground color
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"
    DEFAULT = "\033[39m"
    GRAY = "\033[90m"
    # Background color
    DEFAULTB = "\033[49m"
    # Font styles
    BOLD = "\033[1m"
    # Reset
    END = "\033[0m"

    @staticmethod
    def sprint(
        text: str,
        fg: str = DEFAULT,
        bg: str = DEFAULTB,
        *styles: str,
        **kwargs
    ):
        r"""
        Styled-print.

        :param text: The output text string.
        :type text: str
        :param fg: Foreground ANSI code. Defaults to DEFAULT.
        :type fg: str, optional
        :param bg: Background ANSI code. Defaults to DEFAULTB.
        :type bg: str, optional
        :param styles: Font style ANSI codes.
        :type styles: str
        :param kwargs: Standard print kwargs.
        """
        print(f"{fg}{bg}{''.join(styles)}{text}{StyledTerminal.END}", **kwargs)


def to_full_list(compact_list: str) -> list[int]:
    r"""
    Compact list parser. Ranges are written as "l-r" and include both
    ends, e.g. "0-3, 7" becomes [0, 1, 2, 3, 7].

    :param compact_list: The input compact list.
    :type compact_list: str
    :return: The full parsed list version.
    :rtype: list[int]
    """
    # Clean and split
    compact_list = compact_list.replace(" ", "").replace("\n", ",").split(",")
    full_list = []
    for item in filter(None, compact_list):
        if "-" in item[1:]:
            # Range value
            l, r = [int(x) for x in item.split("-")]
            step = 1 if l <= r else -1
            full_list += list(range(l, r + step, step))
        else:
            # Integer value
            full_list += [int(item)]
    return full_list


def wrong_shape_msg(
    tensor: Tensor,
    name: str,
    expected_shape: str | tuple[()] | tuple[int, ...] | Size,
    constr: str = None
) -> str:
    r"""
    Return a formatted message that reports a description of the Tensor
    shape error.

    :param tensor: The input tensor, that has the wrong shape.
    :type tensor: Tensor
    :param name: The codename of the input tensor.
    :type name: str
    :param expected_shape: The expected (correct) shape.
    :type expected_shape: str | tuple[()] | tuple[int] | Size
    :param constr: An optional constraint string about the shape.
        Defaults to None (no constraints).
    :type constr: str, optional
    :return: The formatted error message.
    :rtype: str
    """
    exp_shape = (
        expected_shape
        if isinstance(expected_shape, str)
        else tuple(expected_shape)
    )
    constr = f" ({constr})" if constr is not None else ""
    return (
        f"The expected shape for {name} is {exp_shape}{constr}, but a "
        f"tensor of shape {tuple(tensor.shape)} was given instead."
    )


def setup_logging(
    log_path: str | Path = None,
    level: int = logging.INFO
) -> logging.Logger:
    r"""
    Configure the "facefit" logger: messages go to stderr and, when a
    path is given, to a rotating log file.

    :param log_path: Path to the log file. Defaults to None (no file).
    :type log_path: str | Path, optional
    :param level: Console logging level. Defaults to INFO.
    :type level: int, optional
    :return: The configured package logger.
    :rtype: logging.Logger
    """
    logger = logging.getLogger("facefit")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_path is not None:
        file_handler = RotatingFileHandler(
            filename=Path(log_path),
            mode="a",
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=5,
            encoding="utf-8",
            delay=True
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger

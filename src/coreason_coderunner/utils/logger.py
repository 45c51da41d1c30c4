# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_coderunner

import contextlib
import sys
from pathlib import Path

from loguru import logger

__all__ = ["configure_logging", "logger"]

STDERR_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)

# loguru's built-in stderr sink always has id 0.
_DEFAULT_HANDLER_ID = 0
_handler_ids: list[int] = []


def configure_logging(level: str = "INFO", log_file: str | Path | None = None) -> None:
    """Replace loguru's default sink with the code runner's sinks.

    Always logs human-readable lines to stderr. When ``log_file`` is given,
    also writes JSON records there, rotated at 10 MB. Calling it again swaps
    out only the sinks it installed before; sinks added by the host
    application are left alone.

    Args:
        level: Minimum level for every sink.
        log_file: Optional path of the JSON log file. Parent directories are created.
    """
    for handler_id in [_DEFAULT_HANDLER_ID, *_handler_ids]:
        # Already removed elsewhere.
        with contextlib.suppress(ValueError):
            logger.remove(handler_id)
    _handler_ids.clear()

    _handler_ids.append(logger.add(sys.stderr, level=level, format=STDERR_FORMAT))

    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        _handler_ids.append(
            logger.add(
                path,
                level=level,
                serialize=True,
                rotation="10 MB",
                retention=5,
                enqueue=True,
            )
        )

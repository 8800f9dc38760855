"""Logging helpers for Aura."""

from __future__ import annotations

import logging
from typing import Optional

_PACKAGE = "aura"
_LOGGER: Optional[logging.Logger] = None


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return the Aura logger, or the child logger for module *name*.

    The handler and level live on the package logger only; module loggers
    such as ``aura.storage.engine`` propagate to it.
    """

    global _LOGGER
    if _LOGGER is None:
        _LOGGER = logging.getLogger(_PACKAGE)
        if not _LOGGER.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
            handler.setFormatter(formatter)
            _LOGGER.addHandler(handler)
        _LOGGER.setLevel(logging.INFO)
    if not name or name == _PACKAGE:
        return _LOGGER
    return _LOGGER.getChild(name.removeprefix(f"{_PACKAGE}."))

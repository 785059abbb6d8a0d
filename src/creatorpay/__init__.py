"""creatorpay - Paid media access for chat channels, settled by balance or QRIS.

The package root only carries the version string and the environment
parsers that :mod:`creatorpay.config` uses for numeric payment settings
(code lifetime, watcher poll interval).  Everything else lives in the
submodules.
"""

from __future__ import annotations

import logging
import os
import re
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Callable, Optional, TypeVar

_logger = logging.getLogger(__name__)

_N = TypeVar("_N", int, float)


def _resolve_version() -> str:
    # A checkout's pyproject.toml wins over whatever metadata pip left behind.
    pyproject = Path(__file__).resolve().parents[2] / "pyproject.toml"
    try:
        text = pyproject.read_text(encoding="utf-8")
    except OSError:
        text = ""
    match = re.search(r'(?m)^\s*version\s*=\s*"([^"]+)"\s*$', text)
    if match:
        return match.group(1)
    try:
        return version("creatorpay")
    except PackageNotFoundError:
        return "unknown"


__version__ = _resolve_version()


def _parse_env(
    name: str,
    default: _N,
    cast: Callable[[str], _N],
    minimum: Optional[_N],
) -> _N:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        _logger.warning("Ignoring %s=%r: not a number, using %s", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        _logger.warning("Ignoring %s=%r: below %s, using %s", name, raw, minimum, default)
        return default
    return value


def parse_int_env(name: str, default: int, *, minimum: Optional[int] = None) -> int:
    """Read a whole-number setting such as ``CREATORPAY_PAYMENT_TTL``.

    Unset, blank, malformed or below-*minimum* values all yield *default*;
    the latter two log a warning so a typo in a deployment is visible.
    """
    return _parse_env(name, default, int, minimum)


def parse_float_env(name: str, default: float, *, minimum: Optional[float] = None) -> float:
    """Float counterpart of :func:`parse_int_env` (poll intervals, timeouts)."""
    return _parse_env(name, default, float, minimum)

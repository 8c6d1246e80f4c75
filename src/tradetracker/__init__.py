from __future__ import annotations

import logging

log = logging.getLogger(__name__)

try:
    from importlib.metadata import PackageNotFoundError
    from importlib.metadata import version

    __version__ = version("tradetracker")
except PackageNotFoundError:  # pragma: no cover
    # package is not installed
    __version__ = "0.0.0.not-installed"

"""contentmirror: mirror a content collection's pages through a fetch cache.

``__version__`` is read from the installed distribution. A checkout imported
straight from ``src/`` has no distribution metadata; it reports
``DEV_VERSION`` and warns once at import.
"""

from __future__ import annotations

import warnings
from importlib.metadata import PackageNotFoundError, version

DISTRIBUTION = "contentmirror"
DEV_VERSION = "0.0.0.dev0"


def _resolve_version() -> str:
    try:
        return version(DISTRIBUTION)
    except PackageNotFoundError:
        warnings.warn(
            f"{DISTRIBUTION} is imported from a source tree without installed metadata; "
            f"reporting version {DEV_VERSION}. Install it with `pip install -e .`.",
            RuntimeWarning,
            stacklevel=3,
        )
        return DEV_VERSION


__version__ = _resolve_version()

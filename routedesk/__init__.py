"""Fleet and route administration dashboard."""

from . import _compat  # noqa: F401

__version__ = "0.1.0"

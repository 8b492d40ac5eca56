"""caskit: build, test, validate and package CAS platform plugins."""

from caskit.__version__ import __version__

__all__ = ["__version__"]

"""Provision persistent, optionally encrypted live USB drives from ISO images."""

from .__version__ import __version__


__all__ = ["__version__"]

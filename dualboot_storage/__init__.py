"""Partition planning and provisioning engine for dual-boot installations."""

from .__version__ import __version__


__all__ = ["__version__"]

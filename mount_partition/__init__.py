"""Mount numbered partitions of raw disk images through loop devices."""

from .__version__ import __version__

__all__ = ["__version__"]

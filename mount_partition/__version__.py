"""Version information for mount-partition."""

__version__ = "0.3.0"

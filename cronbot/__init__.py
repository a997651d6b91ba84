"""cronbot — scheduled autonomous agent jobs."""

__version__ = "0.1.0"

"""taskgate — autonomous task scheduler and skill capability gate."""

__version__ = "0.1.0"

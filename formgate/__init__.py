"""Typed multipart/form-data binding, per-request working contexts, and HTTP-mapped errors."""

__version__ = "0.1.0"
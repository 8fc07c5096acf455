"""
exceptions.py
~~~~~~~~~~~~~

Errors raised by the network core.

File-open failures are not wrapped: they surface as the built-in
``OSError`` raised by ``open()``.
"""


class NetworkError(Exception):
    """Base class for all errors raised by digitnet."""


class DimensionMismatch(NetworkError, ValueError):
    """An input or target vector does not match the width a layer expects."""


class EmptyLayer(NetworkError, ValueError):
    """A layer was built or evaluated without any units."""


class CorruptModel(NetworkError):
    """A persisted model is truncated or structurally inconsistent."""

"""
Exceptions raised by the LayerNorm kernels.

All of them derive from ValueError so existing ``except ValueError`` call
sites keep working.

Passing statistics that were not produced by the matching forward call is
NOT detected here: the backward pass will return wrong gradients, but it
never reads or writes outside the validated buffers.
"""


class LayerNormError(ValueError):
    """Base class for LayerNorm argument errors."""


class InvalidShapeError(LayerNormError):
    """A buffer does not match the declared (B, T, C) / (B, T) / (C,) sizes."""

    def __init__(self, name: str, expected, actual):
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(f"Buffer '{name}': expected {expected}, got {actual}")


class DegenerateInputError(LayerNormError):
    """Zero channels: mean and variance are undefined."""

    def __init__(self, channels: int = 0):
        self.channels = channels
        super().__init__(
            f"LayerNorm needs at least one channel per position, got C={channels}"
        )

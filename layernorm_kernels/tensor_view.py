"""
Shape contract shared by the forward and backward kernels.

Activations are flat row-major buffers interpreted as (B, T, C); element
(b, t, c) lives at ``b*T*C + t*C + c``. Statistics are (B, T) and the
parameters are (C,). A TensorView pairs one such borrowed buffer with its
logical shape, so the kernels never do offset arithmetic of their own.
"""

import warnings
from typing import Dict, Tuple, Union

import numpy as np
import torch

from .errors import DegenerateInputError, InvalidShapeError

BufferLike = Union[torch.Tensor, np.ndarray]

_REDUCED_PRECISION = (torch.float16, torch.bfloat16)


def row_major_strides(shape: Tuple[int, ...]) -> Tuple[int, ...]:
    """Element strides for a contiguous buffer of the given shape"""
    strides = []
    step = 1
    for dim in reversed(shape):
        strides.append(step)
        step *= dim
    return tuple(reversed(strides))


def as_buffer(buffer: BufferLike, name: str, writable: bool = False) -> torch.Tensor:
    """
    Borrow a caller buffer as a flat torch tensor without copying.

    numpy arrays are wrapped with ``torch.from_numpy`` so writes land in the
    caller's array.
    """
    if isinstance(buffer, np.ndarray):
        if not buffer.flags.c_contiguous:
            raise InvalidShapeError(name, "C-contiguous array", "non-contiguous array")
        if not buffer.flags.writeable:
            if writable:
                raise InvalidShapeError(name, "writeable array", "read-only array")
            buffer = buffer.copy()
        tensor = torch.from_numpy(buffer)
    elif isinstance(buffer, torch.Tensor):
        tensor = buffer
        if not tensor.is_contiguous():
            raise InvalidShapeError(name, "contiguous tensor", f"strides {tuple(tensor.stride())}")
    else:
        raise TypeError(
            f"Buffer '{name}' must be a torch.Tensor or numpy.ndarray, got {type(buffer).__name__}"
        )

    if not tensor.is_floating_point():
        raise TypeError(f"Buffer '{name}' must be floating point, got {tensor.dtype}")
    return tensor.reshape(-1)


class TensorView:
    """A borrowed flat buffer viewed through an explicit row-major shape"""

    def __init__(self, buffer: BufferLike, shape: Tuple[int, ...],
                 name: str = "tensor", writable: bool = False):
        self.name = name
        self.shape = tuple(int(d) for d in shape)
        self.strides = row_major_strides(self.shape)
        self.writable = writable

        data = as_buffer(buffer, name, writable)
        expected = int(np.prod(self.shape, dtype=np.int64))
        if data.numel() != expected:
            raise InvalidShapeError(
                name, f"{expected} elements for shape {self.shape}", f"{data.numel()} elements"
            )
        self.data = data

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def numel(self) -> int:
        return self.data.numel()

    @property
    def dtype(self) -> torch.dtype:
        return self.data.dtype

    @property
    def device(self) -> torch.device:
        return self.data.device

    def offset(self, *index: int) -> int:
        """Flat offset of a logical index"""
        if len(index) != self.ndim:
            raise IndexError(f"{self.name}: expected {self.ndim} indices, got {len(index)}")
        flat = 0
        for i, dim, stride in zip(index, self.shape, self.strides):
            if not 0 <= i < dim:
                raise IndexError(f"{self.name}: index {index} out of range for shape {self.shape}")
            flat += i * stride
        return flat

    def __getitem__(self, index) -> float:
        if not isinstance(index, tuple):
            index = (index,)
        return self.data[self.offset(*index)].item()

    def as_tensor(self) -> torch.Tensor:
        """Shaped view sharing storage with the caller's buffer"""
        return self.data.view(self.shape)

    def rows(self) -> torch.Tensor:
        """2D view (positions, last dim) sharing storage with the caller's buffer"""
        if self.ndim < 2:
            return self.data.view(1, -1)
        return self.data.view(-1, self.shape[-1])

    def __repr__(self):
        return f"TensorView(name={self.name!r}, shape={self.shape}, dtype={self.dtype})"


class LayerNormShape:
    """Declared (B, T, C) of one LayerNorm call and the buffer shapes it implies"""

    def __init__(self, batch_size: int, seq_len: int, channels: int):
        for label, value in (("B", batch_size), ("T", seq_len), ("C", channels)):
            if int(value) != value or value < 0:
                raise InvalidShapeError(label, "non-negative integer", value)
        if channels == 0:
            raise DegenerateInputError(channels)
        self.batch_size = int(batch_size)
        self.seq_len = int(seq_len)
        self.channels = int(channels)

    @property
    def positions(self) -> int:
        return self.batch_size * self.seq_len

    @property
    def activation(self) -> Tuple[int, int, int]:
        return (self.batch_size, self.seq_len, self.channels)

    @property
    def stats(self) -> Tuple[int, int]:
        return (self.batch_size, self.seq_len)

    @property
    def params(self) -> Tuple[int]:
        return (self.channels,)

    def __repr__(self):
        return f"LayerNormShape(B={self.batch_size}, T={self.seq_len}, C={self.channels})"


def _check_consistent(views: Dict[str, TensorView]):
    first = next(iter(views.values()))
    for view in views.values():
        if view.dtype != first.dtype:
            raise TypeError(
                f"Buffer '{view.name}' has dtype {view.dtype}, expected {first.dtype} like '{first.name}'"
            )
        if view.device != first.device:
            raise TypeError(
                f"Buffer '{view.name}' is on {view.device}, expected {first.device} like '{first.name}'"
            )
    if first.dtype in _REDUCED_PRECISION:
        warnings.warn(
            f"LayerNorm running in {first.dtype}; results are specified for float32/float64"
        )


def bind_forward(shape: LayerNormShape, out, mean, rstd, inp, weight, bias) -> Dict[str, TensorView]:
    """Validate every forward buffer before anything is written"""
    views = {
        "out": TensorView(out, shape.activation, "out", writable=True),
        "mean": TensorView(mean, shape.stats, "mean", writable=True),
        "rstd": TensorView(rstd, shape.stats, "rstd", writable=True),
        "inp": TensorView(inp, shape.activation, "inp"),
        "weight": TensorView(weight, shape.params, "weight"),
        "bias": TensorView(bias, shape.params, "bias"),
    }
    _check_consistent(views)
    return views


def bind_backward(shape: LayerNormShape, dinp, dweight, dbias, dout, inp, weight,
                  mean, rstd) -> Dict[str, TensorView]:
    """Validate every backward buffer before anything is accumulated"""
    views = {
        "dinp": TensorView(dinp, shape.activation, "dinp", writable=True),
        "dweight": TensorView(dweight, shape.params, "dweight", writable=True),
        "dbias": TensorView(dbias, shape.params, "dbias", writable=True),
        "dout": TensorView(dout, shape.activation, "dout"),
        "inp": TensorView(inp, shape.activation, "inp"),
        "weight": TensorView(weight, shape.params, "weight"),
        "mean": TensorView(mean, shape.stats, "mean"),
        "rstd": TensorView(rstd, shape.stats, "rstd"),
    }
    _check_consistent(views)
    return views

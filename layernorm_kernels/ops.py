"""
High-level operation interface for the LayerNorm kernels.

Two levels are provided:

- Buffer API (``layernorm_forward`` / ``layernorm_backward_accumulate``):
  the caller owns every buffer and passes B, T, C explicitly. Nothing is
  allocated. All buffers are validated before the first write.
- Tensor API (``layernorm`` / ``layernorm_backward``): takes shaped
  [batch_size, seq_len, hidden_size] tensors and allocates the results.
"""

import logging
from typing import Optional, Tuple

import torch

from .config import Backend, LayerNormConfig, resolve_config
from .kernels import (
    cpu_layernorm_backward,
    cpu_layernorm_forward,
    reference_layernorm_backward,
    reference_layernorm_forward,
)
from .tensor_view import BufferLike, LayerNormShape, bind_backward, bind_forward

logger = logging.getLogger(__name__)


def layernorm_forward(
    out: BufferLike,
    mean: BufferLike,
    rstd: BufferLike,
    inp: BufferLike,
    weight: BufferLike,
    bias: BufferLike,
    batch_size: int,
    seq_len: int,
    channels: int,
    eps: Optional[float] = None,
    config: Optional[LayerNormConfig] = None,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    LayerNorm forward pass into caller-owned buffers.

    Args:
        out: Output buffer, B*T*C elements, overwritten
        mean: Per-position mean buffer, B*T elements, overwritten
        rstd: Per-position reciprocal std buffer, B*T elements, overwritten
        inp: Input activations, B*T*C elements
        weight: Scale parameter, C elements
        bias: Shift parameter, C elements
        batch_size, seq_len, channels: Declared B, T, C
        eps: Overrides ``config.eps`` for this call
        config: Execution settings, defaults to ``get_default_config()``

    Returns:
        Tuple of (out, mean, rstd) as shaped views of the caller's buffers

    Raises:
        DegenerateInputError: if channels == 0
        InvalidShapeError: if any buffer does not match the declared sizes
    """
    config = resolve_config(config, eps)
    shape = LayerNormShape(batch_size, seq_len, channels)
    views = bind_forward(shape, out, mean, rstd, inp, weight, bias)

    if config.backend is Backend.REFERENCE:
        logger.debug(f"LayerNorm forward {shape} on reference backend")
        reference_layernorm_forward(views, shape, config.eps)
    else:
        cpu_layernorm_forward(views, shape, config)

    return views["out"].as_tensor(), views["mean"].as_tensor(), views["rstd"].as_tensor()


def layernorm_backward_accumulate(
    dinp: BufferLike,
    dweight: BufferLike,
    dbias: BufferLike,
    dout: BufferLike,
    inp: BufferLike,
    weight: BufferLike,
    mean: BufferLike,
    rstd: BufferLike,
    batch_size: int,
    seq_len: int,
    channels: int,
    config: Optional[LayerNormConfig] = None,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    LayerNorm backward pass, ADDED into caller-owned gradient buffers.

    Gradients are accumulated, never overwritten: zero ``dinp``, ``dweight``
    and ``dbias`` before the first call of a step. ``mean`` and ``rstd`` must
    come from the forward call over this exact ``inp``; stale statistics are
    not detected and give wrong gradients.

    Args:
        dinp: Input-gradient buffer, B*T*C elements, accumulated into
        dweight: Scale-gradient buffer, C elements, accumulated into
        dbias: Shift-gradient buffer, C elements, accumulated into
        dout: Upstream gradient, B*T*C elements
        inp: Forward input, B*T*C elements
        weight: Scale parameter, C elements
        mean: Saved forward mean, B*T elements
        rstd: Saved forward reciprocal std, B*T elements
        batch_size, seq_len, channels: Declared B, T, C
        config: Execution settings, defaults to ``get_default_config()``

    Returns:
        Tuple of (dinp, dweight, dbias) as shaped views of the caller's buffers

    Raises:
        DegenerateInputError: if channels == 0
        InvalidShapeError: if any buffer does not match the declared sizes
    """
    config = resolve_config(config)
    shape = LayerNormShape(batch_size, seq_len, channels)
    views = bind_backward(shape, dinp, dweight, dbias, dout, inp, weight, mean, rstd)

    if config.backend is Backend.REFERENCE:
        logger.debug(f"LayerNorm backward {shape} on reference backend")
        reference_layernorm_backward(views, shape)
    else:
        cpu_layernorm_backward(views, shape, config)

    return views["dinp"].as_tensor(), views["dweight"].as_tensor(), views["dbias"].as_tensor()


def _check_3d(x: torch.Tensor):
    if x.dim() != 3:
        raise ValueError(f"Expected 3D input tensor, got {x.dim()}D")


def layernorm(
    x: torch.Tensor,
    weight: Optional[torch.Tensor] = None,
    bias: Optional[torch.Tensor] = None,
    eps: Optional[float] = None,
    config: Optional[LayerNormConfig] = None,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    LayerNorm over the last dimension of a 3D tensor.

    Args:
        x: Input tensor [batch_size, seq_len, hidden_size]
        weight: Optional scale parameter [hidden_size], defaults to ones
        bias: Optional shift parameter [hidden_size], defaults to zeros
        eps: Small constant for numerical stability
        config: Execution settings

    Returns:
        Tuple of (output, mean, rstd) for the backward pass
    """
    _check_3d(x)
    x = x.detach().contiguous()
    batch_size, seq_len, hidden_size = x.shape
    if weight is None:
        weight = torch.ones(hidden_size, device=x.device, dtype=x.dtype)
    if bias is None:
        bias = torch.zeros(hidden_size, device=x.device, dtype=x.dtype)

    output = torch.empty_like(x)
    mean = torch.empty(batch_size, seq_len, device=x.device, dtype=x.dtype)
    rstd = torch.empty(batch_size, seq_len, device=x.device, dtype=x.dtype)
    return layernorm_forward(
        output, mean, rstd, x, weight.detach().contiguous(), bias.detach().contiguous(),
        batch_size, seq_len, hidden_size, eps=eps, config=config,
    )


def layernorm_backward(
    grad_output: torch.Tensor,
    x: torch.Tensor,
    weight: Optional[torch.Tensor],
    mean: torch.Tensor,
    rstd: torch.Tensor,
    config: Optional[LayerNormConfig] = None,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    LayerNorm backward pass into freshly zeroed gradients.

    Args:
        grad_output: Gradient w.r.t. output [batch_size, seq_len, hidden_size]
        x: Original input [batch_size, seq_len, hidden_size]
        weight: Scale parameter [hidden_size], None means ones
        mean: Mean from forward pass [batch_size, seq_len]
        rstd: Reciprocal standard deviation from forward pass [batch_size, seq_len]
        config: Execution settings

    Returns:
        Tuple of (grad_input, grad_weight, grad_bias)
    """
    _check_3d(x)
    batch_size, seq_len, hidden_size = x.shape
    if weight is None:
        weight = torch.ones(hidden_size, device=x.device, dtype=x.dtype)

    grad_input = torch.zeros_like(x, memory_format=torch.contiguous_format)
    grad_weight = torch.zeros(hidden_size, device=x.device, dtype=x.dtype)
    grad_bias = torch.zeros(hidden_size, device=x.device, dtype=x.dtype)
    return layernorm_backward_accumulate(
        grad_input, grad_weight, grad_bias,
        grad_output.detach().contiguous(), x.detach().contiguous(), weight.detach().contiguous(),
        mean.detach().contiguous(), rstd.detach().contiguous(),
        batch_size, seq_len, hidden_size, config=config,
    )

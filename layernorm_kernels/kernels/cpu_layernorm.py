"""
Vectorized LayerNorm kernels

Each chunk of positions is processed with torch ops on a (rows, C) view of
the caller's buffers; chunks run on the shared PositionExecutor.
"""

import logging
from typing import Dict, Tuple

import torch

from ..config import LayerNormConfig
from ..parallel import get_executor
from ..tensor_view import LayerNormShape, TensorView

logger = logging.getLogger(__name__)


def layernorm_forward_rows(
    out: torch.Tensor,
    mean: torch.Tensor,
    rstd: torch.Tensor,
    inp: torch.Tensor,
    weight: torch.Tensor,
    bias: torch.Tensor,
    eps: float,
) -> None:
    """
    Forward pass over a block of positions

    Args:
        out: Output rows [rows, C], overwritten
        mean: Per-row mean [rows], overwritten
        rstd: Per-row reciprocal standard deviation [rows], overwritten
        inp: Input rows [rows, C]
        weight: Scale parameter [C]
        bias: Shift parameter [C]
        eps: Small constant for numerical stability
    """
    # Biased variance from the centered values (divide by C, not C-1)
    row_mean = inp.mean(dim=-1, keepdim=True)
    centered = inp - row_mean
    var = (centered * centered).mean(dim=-1, keepdim=True)
    row_rstd = torch.rsqrt(var + eps)

    normalized = centered * row_rstd
    out.copy_(normalized * weight + bias)
    mean.copy_(row_mean.squeeze(-1))
    rstd.copy_(row_rstd.squeeze(-1))


def layernorm_backward_rows(
    dinp: torch.Tensor,
    dout: torch.Tensor,
    inp: torch.Tensor,
    weight: torch.Tensor,
    mean: torch.Tensor,
    rstd: torch.Tensor,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Backward pass over a block of positions

    Adds the input gradient into ``dinp`` and returns this block's partial
    (dweight, dbias) sums instead of touching the shared parameter gradients.

    Args:
        dinp: Input-gradient rows [rows, C], accumulated into
        dout: Upstream gradient rows [rows, C]
        inp: Original forward input rows [rows, C]
        weight: Scale parameter [C]
        mean: Saved per-row mean [rows]
        rstd: Saved per-row reciprocal standard deviation [rows]

    Returns:
        Tuple of (partial_dweight [C], partial_dbias [C])
    """
    row_rstd = rstd.unsqueeze(-1)
    norm = (inp - mean.unsqueeze(-1)) * row_rstd
    dnorm = weight * dout

    # Both channel means must be final before the per-channel correction
    dnorm_mean = dnorm.mean(dim=-1, keepdim=True)
    dnorm_norm_mean = (dnorm * norm).mean(dim=-1, keepdim=True)

    dval = (dnorm - dnorm_mean - norm * dnorm_norm_mean) * row_rstd
    dinp.add_(dval)

    return (norm * dout).sum(dim=0), dout.sum(dim=0)


def _add_partials(a: Tuple[torch.Tensor, torch.Tensor],
                  b: Tuple[torch.Tensor, torch.Tensor]) -> Tuple[torch.Tensor, torch.Tensor]:
    return a[0] + b[0], a[1] + b[1]


@torch.no_grad()
def cpu_layernorm_forward(views: Dict[str, TensorView], shape: LayerNormShape,
                          config: LayerNormConfig) -> None:
    """Run the forward pass over all positions of bound, validated buffers"""
    out = views["out"].rows()
    inp = views["inp"].rows()
    mean = views["mean"].data
    rstd = views["rstd"].data
    weight = views["weight"].data
    bias = views["bias"].data

    def run_chunk(start: int, end: int):
        # Grad mode is thread-local, so each worker disables it itself
        with torch.no_grad():
            layernorm_forward_rows(
                out[start:end], mean[start:end], rstd[start:end],
                inp[start:end], weight, bias, config.eps,
            )

    logger.debug(
        f"LayerNorm forward {shape}: {config.num_workers} workers, chunk_size={config.chunk_size}"
    )
    get_executor(config.num_workers).map(run_chunk, shape.positions, config.chunk_size)


@torch.no_grad()
def cpu_layernorm_backward(views: Dict[str, TensorView], shape: LayerNormShape,
                           config: LayerNormConfig) -> None:
    """Accumulate the backward pass of all positions into bound, validated buffers"""
    dinp = views["dinp"].rows()
    dout = views["dout"].rows()
    inp = views["inp"].rows()
    mean = views["mean"].data
    rstd = views["rstd"].data
    weight = views["weight"].data

    def run_chunk(start: int, end: int):
        with torch.no_grad():
            return layernorm_backward_rows(
                dinp[start:end], dout[start:end], inp[start:end],
                weight, mean[start:end], rstd[start:end],
            )

    logger.debug(
        f"LayerNorm backward {shape}: {config.num_workers} workers, chunk_size={config.chunk_size}"
    )
    merged = get_executor(config.num_workers).map_reduce(
        run_chunk, shape.positions, config.chunk_size, _add_partials
    )
    if merged is None:
        return

    dweight_partial, dbias_partial = merged
    views["dweight"].data.add_(dweight_partial)
    views["dbias"].data.add_(dbias_partial)

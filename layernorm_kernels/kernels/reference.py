"""
Scalar reference implementation of LayerNorm

Walks positions one at a time in (b, t) order with Python float (double)
arithmetic, following the per-position algorithm literally. Slow; used as
an oracle for the vectorized kernels and selectable via Backend.REFERENCE.
"""

import math
from typing import Dict

import torch

from ..tensor_view import LayerNormShape, TensorView


@torch.no_grad()
def reference_layernorm_forward(views: Dict[str, TensorView], shape: LayerNormShape,
                                eps: float) -> None:
    """Forward pass over bound, validated buffers, one position at a time"""
    out = views["out"].rows()
    inp = views["inp"].rows()
    mean_buf = views["mean"].data
    rstd_buf = views["rstd"].data
    weight = views["weight"].data.tolist()
    bias = views["bias"].data.tolist()
    C = shape.channels

    for b in range(shape.batch_size):
        for t in range(shape.seq_len):
            pos = views["mean"].offset(b, t)
            x = inp[pos].tolist()

            mean = sum(x) / C
            variance = sum((v - mean) ** 2 for v in x) / C
            rstd = 1.0 / math.sqrt(variance + eps)

            out[pos] = torch.tensor(
                [(x[i] - mean) * rstd * weight[i] + bias[i] for i in range(C)],
                dtype=out.dtype,
            )
            mean_buf[pos] = mean
            rstd_buf[pos] = rstd


@torch.no_grad()
def reference_layernorm_backward(views: Dict[str, TensorView], shape: LayerNormShape) -> None:
    """Accumulate the backward pass into bound, validated buffers, one position at a time"""
    dinp = views["dinp"].rows()
    dout = views["dout"].rows()
    inp = views["inp"].rows()
    means = views["mean"].data
    rstds = views["rstd"].data
    weight = views["weight"].data.tolist()
    C = shape.channels

    # Shared across every position, written back once at the end
    dweight = views["dweight"].data.tolist()
    dbias = views["dbias"].data.tolist()

    for b in range(shape.batch_size):
        for t in range(shape.seq_len):
            pos = views["mean"].offset(b, t)
            mean = means[pos].item()
            rstd = rstds[pos].item()
            x = inp[pos].tolist()
            g = dout[pos].tolist()

            # first pass: two reductions
            dnorm_mean = 0.0
            dnorm_norm_mean = 0.0
            for i in range(C):
                norm = (x[i] - mean) * rstd
                dnorm = weight[i] * g[i]
                dnorm_mean += dnorm
                dnorm_norm_mean += dnorm * norm
            dnorm_mean /= C
            dnorm_norm_mean /= C

            # second pass: accumulate all the gradients
            row_grad = dinp[pos].tolist()
            for i in range(C):
                norm = (x[i] - mean) * rstd
                dnorm = weight[i] * g[i]
                dbias[i] += g[i]
                dweight[i] += norm * g[i]
                row_grad[i] += (dnorm - dnorm_mean - norm * dnorm_norm_mean) * rstd
            dinp[pos] = torch.tensor(row_grad, dtype=dinp.dtype)

    views["dweight"].data.copy_(torch.tensor(dweight, dtype=views["dweight"].dtype))
    views["dbias"].data.copy_(torch.tensor(dbias, dtype=views["dbias"].dtype))

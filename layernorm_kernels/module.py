"""
PyTorch integration for the LayerNorm kernels

LayerNormFunction routes torch's backward through the analytic
``layernorm_backward_accumulate`` kernel, and LayerNorm wraps it as a
drop-in module for [batch_size, seq_len, hidden_size] activations.
"""

from typing import Optional

import torch
import torch.nn as nn

from .config import LayerNormConfig, resolve_config
from .ops import layernorm, layernorm_backward


class LayerNormFunction(torch.autograd.Function):
    """Forward/backward pair saving (input, weight, mean, rstd) between passes"""

    @staticmethod
    def forward(ctx, x, weight, bias, eps, config):
        output, mean, rstd = layernorm(x, weight, bias, eps=eps, config=config)
        ctx.save_for_backward(x, weight, mean, rstd)
        ctx.config = config
        return output

    @staticmethod
    def backward(ctx, grad_output):
        x, weight, mean, rstd = ctx.saved_tensors
        grad_input, grad_weight, grad_bias = layernorm_backward(
            grad_output, x, weight, mean, rstd, config=ctx.config
        )
        return grad_input, grad_weight, grad_bias, None, None


def layer_norm(
    x: torch.Tensor,
    weight: torch.Tensor,
    bias: torch.Tensor,
    eps: Optional[float] = None,
    config: Optional[LayerNormConfig] = None,
) -> torch.Tensor:
    """Differentiable LayerNorm over the last dimension of a 3D tensor

    ``eps=None`` takes epsilon from ``config`` (or the process-wide default).
    """
    return LayerNormFunction.apply(x, weight, bias, eps, config)


class LayerNorm(nn.Module):
    """LayerNorm module backed by the analytic kernels"""

    def __init__(self, hidden_size: int, eps: Optional[float] = None,
                 config: Optional[LayerNormConfig] = None, device=None, dtype=None):
        super().__init__()
        factory_kwargs = {'device': device, 'dtype': dtype}
        self.hidden_size = hidden_size
        self.eps = eps
        self.config = config

        self.weight = nn.Parameter(torch.ones(hidden_size, **factory_kwargs))
        self.bias = nn.Parameter(torch.zeros(hidden_size, **factory_kwargs))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return layer_norm(x, self.weight, self.bias, self.eps, self.config)

    def extra_repr(self) -> str:
        eps = resolve_config(self.config, self.eps).eps
        return f"{self.hidden_size}, eps={eps}"

"""
Core kernel implementations

Vectorized (chunked, multi-threaded) and scalar reference LayerNorm kernels.
"""

from .cpu_layernorm import (
    cpu_layernorm_backward,
    cpu_layernorm_forward,
    layernorm_backward_rows,
    layernorm_forward_rows,
)
from .reference import reference_layernorm_backward, reference_layernorm_forward

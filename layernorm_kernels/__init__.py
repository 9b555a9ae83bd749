# Python package initialization

__version__ = "0.1.0"
__author__ = "Yangyang Fu"

from .config import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_EPS,
    Backend,
    LayerNormConfig,
    get_default_config,
    set_default_config,
)
from .errors import DegenerateInputError, InvalidShapeError, LayerNormError
from .tensor_view import LayerNormShape, TensorView

# Import operations
from .ops import layernorm, layernorm_backward, layernorm_backward_accumulate, layernorm_forward

# Import PyTorch module wrappers
from .module import LayerNorm, LayerNormFunction, layer_norm

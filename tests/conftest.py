import pytest
import torch

from layernorm_kernels import get_default_config, set_default_config
from layernorm_kernels.parallel import shutdown_executors


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
    config.addinivalue_line(
        "markers", "benchmark: mark test as performance benchmark"
    )


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their names."""
    for item in items:
        # Mark slow tests
        if "performance" in item.name.lower() or "benchmark" in item.name.lower():
            item.add_marker(pytest.mark.slow)
            item.add_marker(pytest.mark.benchmark)


@pytest.fixture(scope="session", autouse=True)
def _shutdown_worker_pools():
    yield
    shutdown_executors()


@pytest.fixture(autouse=True)
def _restore_default_config():
    previous = get_default_config()
    yield
    set_default_config(previous)


@pytest.fixture
def make_problem():
    """Random flat buffers for a (B, T, C) problem."""
    def _make(B, T, C, dtype=torch.float64, seed=42):
        gen = torch.Generator().manual_seed(seed)
        return {
            "inp": torch.randn(B * T * C, generator=gen, dtype=dtype),
            "weight": torch.randn(C, generator=gen, dtype=dtype),
            "bias": torch.randn(C, generator=gen, dtype=dtype),
            "dout": torch.randn(B * T * C, generator=gen, dtype=dtype),
        }
    return _make

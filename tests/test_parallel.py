"""
Tests for chunked parallel execution and deterministic reduction
"""

import threading
import time

import pytest
import torch

from layernorm_kernels import LayerNormConfig, layernorm_backward_accumulate, layernorm_forward
from layernorm_kernels.parallel import (
    PositionExecutor,
    chunk_ranges,
    get_executor,
    tree_reduce,
)


class TestChunking:

    def test_chunk_ranges(self):
        assert chunk_ranges(10, 4) == [(0, 4), (4, 8), (8, 10)]
        assert chunk_ranges(8, 4) == [(0, 4), (4, 8)]
        assert chunk_ranges(3, 100) == [(0, 3)]
        assert chunk_ranges(0, 4) == []

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValueError):
            chunk_ranges(10, 0)

    def test_tree_reduce_shape(self):
        """The merge order is a fixed pairwise tree"""
        def combine(a, b):
            return f"({a}{b})"

        assert tree_reduce(["a", "b", "c", "d", "e"], combine) == "(((ab)(cd))e)"
        assert tree_reduce(["a", "b", "c"], combine) == "((ab)c)"
        assert tree_reduce(["a"], combine) == "a"
        assert tree_reduce([], combine) is None


class TestPositionExecutor:

    def test_results_in_chunk_order(self):
        """Chunks finishing out of order still come back in chunk order"""
        def work(start, end):
            # Later chunks finish first
            time.sleep(0.001 * (10 - start))
            return (start, end, threading.current_thread().name)

        with PositionExecutor(num_workers=4) as executor:
            results = executor.map(work, 10, 1)

        assert [(s, e) for s, e, _ in results] == [(i, i + 1) for i in range(10)]

    def test_single_worker_runs_inline(self):
        executor = PositionExecutor(num_workers=1)
        caller = threading.current_thread().name
        names = executor.map(lambda s, e: threading.current_thread().name, 10, 3)

        assert names == [caller] * 4
        assert executor._pool is None

    def test_chunk_exception_propagates(self):
        def work(start, end):
            if start == 4:
                raise RuntimeError("chunk failed")
            return start

        with PositionExecutor(num_workers=3) as executor:
            with pytest.raises(RuntimeError, match="chunk failed"):
                executor.map(work, 8, 2)

    def test_no_chunk_runs_after_failure(self):
        """Once map raises, queued chunks are cancelled and running ones have finished"""
        finished = []

        def work(start, end):
            if start == 0:
                raise RuntimeError("chunk failed")
            time.sleep(0.01)
            finished.append(start)
            return start

        with PositionExecutor(num_workers=2) as executor:
            with pytest.raises(RuntimeError, match="chunk failed"):
                executor.map(work, 10, 1)
            snapshot = list(finished)
            time.sleep(0.05)

        assert finished == snapshot
        assert len(snapshot) < 9

    def test_map_reduce(self):
        with PositionExecutor(num_workers=2) as executor:
            total = executor.map_reduce(lambda s, e: sum(range(s, e)), 100, 7, lambda a, b: a + b)
        assert total == sum(range(100))

    def test_shared_executors(self):
        assert get_executor(3) is get_executor(3)
        assert get_executor(3) is not get_executor(2)

    def test_invalid_worker_count(self):
        with pytest.raises(ValueError):
            PositionExecutor(num_workers=0)


class TestDeterminism:
    """Results do not depend on the worker count for a fixed chunk size"""

    B, T, C = 3, 10, 16

    @pytest.fixture
    def problem(self, make_problem):
        return make_problem(self.B, self.T, self.C, dtype=torch.float32, seed=7)

    def _run(self, p, config):
        B, T, C = self.B, self.T, self.C
        out = torch.empty(B * T * C)
        mean = torch.empty(B * T)
        rstd = torch.empty(B * T)
        layernorm_forward(out, mean, rstd, p["inp"], p["weight"], p["bias"], B, T, C,
                          config=config)

        dinp, dweight, dbias = torch.zeros(B * T * C), torch.zeros(C), torch.zeros(C)
        layernorm_backward_accumulate(dinp, dweight, dbias, p["dout"], p["inp"], p["weight"],
                                      mean, rstd, B, T, C, config=config)
        return out, mean, rstd, dinp, dweight, dbias

    @pytest.mark.parametrize("num_workers", [2, 3, 8])
    def test_bit_identical_across_workers(self, problem, num_workers):
        serial = self._run(problem, LayerNormConfig(num_workers=1, chunk_size=4))
        parallel = self._run(problem, LayerNormConfig(num_workers=num_workers, chunk_size=4))

        for a, b in zip(serial, parallel):
            assert torch.equal(a, b)

    def test_chunk_size_only_moves_low_order_bits(self, problem):
        small = self._run(problem, LayerNormConfig(num_workers=2, chunk_size=1))
        large = self._run(problem, LayerNormConfig(num_workers=2, chunk_size=64))

        for a, b in zip(small, large):
            assert torch.allclose(a, b, atol=1e-4, rtol=1e-4)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

"""
Tests for the forward-only matmul / transpose kernels.
"""

import numpy as np
import pytest

from conftest import assert_array_close
from conftest import make_context
from tapegrad import ops
from tapegrad.kernels import MatmulKernel
from tapegrad.kernels import available_kernels
from tapegrad.kernels import get_kernel


class TestKernels:

    def test_registry(self):
        assert set(available_kernels()) == {"blas", "torch", "naive"}
        assert get_kernel("naive").name == "naive"

    def test_unknown_kernel(self):
        with pytest.raises(ValueError, match="Unknown matmul kernel"):
            get_kernel("cuda")

    def test_matmul_writes_into_out(self, kernel_name, rng):
        kernel = get_kernel(kernel_name)
        a = rng.standard_normal((4, 3))
        b = rng.standard_normal((3, 5))
        out = np.empty((4, 5))
        result = kernel.matmul(a, b, out)
        assert result is out
        assert_array_close(out, a @ b, atol=1e-12)

    def test_transpose(self, kernel_name, rng):
        kernel = get_kernel(kernel_name)
        a = rng.standard_normal((2, 6))
        out = np.empty((6, 2))
        kernel.transpose(a, out)
        np.testing.assert_array_equal(out, a.T)

    def test_matmul_into_arena_memory(self, kernel_name, rng):
        """Kernels write through views of arena blocks."""
        ctx = make_context(kernel=kernel_name)
        a = rng.standard_normal((3, 3))
        b = rng.standard_normal((3, 2))
        out = ctx.scratch((3, 2))
        ctx.kernel.matmul(a, b, out)
        assert_array_close(out, a @ b, atol=1e-12)

    def test_backward_agrees_across_kernels(self, rng):
        a = rng.standard_normal((3, 4))
        b = rng.standard_normal((4, 2))
        grads = {}
        for name in available_kernels():
            ctx = make_context(kernel=name)
            va = ctx.variable(a, requires_grad=True)
            vb = ctx.variable(b, requires_grad=True)
            ctx.backward(ops.sum(ctx, ops.matmul(ctx, va, vb)))
            grads[name] = (va.grad.numpy(), vb.grad.numpy())
        for name in ("torch", "naive"):
            assert_array_close(grads[name][0], grads["blas"][0], atol=1e-12)
            assert_array_close(grads[name][1], grads["blas"][1], atol=1e-12)

    def test_base_is_abstract(self):
        with pytest.raises(NotImplementedError):
            MatmulKernel().matmul(np.eye(2), np.eye(2), np.empty((2, 2)))

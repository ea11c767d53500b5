"""
Forward-only matrix-multiply / transpose kernels.

The autodiff core calls exactly two entry points, both writing into caller-provided
row-major float64 buffers:

    kernel.matmul(a, b, out)   # out = a @ b, a: (m, k), b: (k, n), out: (m, n)
    kernel.transpose(a, out)   # out = a.T

Implementations:
    blas   numpy (dispatches to the BLAS it was built against)
    torch  PyTorch CPU kernels over memory shared with the numpy buffers
    naive  pure-Python loops, the fallback when no optimized library should be used
"""

from __future__ import annotations

import numpy as np
import torch

from tapegrad.logging import get_logger


logger = get_logger(__name__)


class MatmulKernel:
    """Interface for forward-only 2-D matmul and transpose."""

    name = "abstract"

    def matmul(self, a: np.ndarray, b: np.ndarray, out: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def transpose(self, a: np.ndarray, out: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class BlasKernel(MatmulKernel):
    name = "blas"

    def matmul(self, a: np.ndarray, b: np.ndarray, out: np.ndarray) -> np.ndarray:
        return np.matmul(a, b, out=out)

    def transpose(self, a: np.ndarray, out: np.ndarray) -> np.ndarray:
        np.copyto(out, a.T)
        return out


class TorchKernel(MatmulKernel):
    name = "torch"

    def matmul(self, a: np.ndarray, b: np.ndarray, out: np.ndarray) -> np.ndarray:
        # from_numpy shares memory, so the result lands directly in `out`.
        torch.matmul(
            torch.from_numpy(np.ascontiguousarray(a)),
            torch.from_numpy(np.ascontiguousarray(b)),
            out=torch.from_numpy(out),
        )
        return out

    def transpose(self, a: np.ndarray, out: np.ndarray) -> np.ndarray:
        torch.from_numpy(out).copy_(torch.from_numpy(np.ascontiguousarray(a)).t())
        return out


class NaiveKernel(MatmulKernel):
    name = "naive"

    def matmul(self, a: np.ndarray, b: np.ndarray, out: np.ndarray) -> np.ndarray:
        m, k = a.shape
        n = b.shape[1]
        for i in range(m):
            for j in range(n):
                total = 0.0
                for l in range(k):
                    total += a[i, l] * b[l, j]
                out[i, j] = total
        return out

    def transpose(self, a: np.ndarray, out: np.ndarray) -> np.ndarray:
        m, n = a.shape
        for i in range(m):
            for j in range(n):
                out[j, i] = a[i, j]
        return out


_KERNELS = {
    "blas": BlasKernel,
    "torch": TorchKernel,
    "naive": NaiveKernel,
}


def available_kernels() -> tuple[str, ...]:
    return tuple(_KERNELS)


def get_kernel(name: str = "blas") -> MatmulKernel:
    """Instantiate a kernel by name."""
    try:
        kernel_cls = _KERNELS[name]
    except KeyError as exc:
        raise ValueError(
            f"Unknown matmul kernel {name!r}; expected one of {available_kernels()}"
        ) from exc
    logger.debug("Using %s matmul kernel", name)
    return kernel_cls()

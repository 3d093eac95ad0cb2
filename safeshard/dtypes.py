"""Element counts and float32 decoding for tensor payloads."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from .errors import UnsupportedDtypeError, WrongDtypeError
from .format import DType

if TYPE_CHECKING:
    from .header import TensorDescriptor
    from .reader import ShardCatalog


def element_count(shape) -> int:
    """Product of *shape*; ``()`` is a scalar (1), any zero dim gives 0."""
    n = 1
    for d in shape:
        if d < 0:
            raise ValueError(f"negative dimension: {d}")
        n *= d
    return n


def is_bf16(desc: TensorDescriptor) -> bool:
    return desc.dtype is DType.BF16


def bf16_to_f32(bits: np.ndarray) -> np.ndarray:
    """Widen bfloat16 bit patterns to float32.

    Each 16-bit value becomes the high half of a 32-bit word, which is an
    exact widening: ``0x3F80`` → ``1.0``, ``0x4049`` → ``3.140625``.
    """
    bits = np.asarray(bits, dtype=np.uint16)
    return (bits.astype(np.uint32) << np.uint32(16)).view(np.float32)


def to_f32(desc: TensorDescriptor, raw) -> np.ndarray:
    """Return an owned float32 array shaped like *desc*.

    F32 payloads are copied, BF16 payloads widened. Every other dtype
    raises :class:`UnsupportedDtypeError`; read those from the raw bytes.
    """
    if desc.dtype not in (DType.F32, DType.BF16):
        raise UnsupportedDtypeError(
            f"cannot convert {desc.name!r} ({desc.dtype_label}) to float32"
        )
    n = desc.numel
    if n == 0:
        return np.zeros(desc.shape, dtype=np.float32)
    if desc.dtype is DType.F32:
        out = np.frombuffer(raw, dtype="<f4", count=n).astype(np.float32)
    else:
        out = bf16_to_f32(np.frombuffer(raw, dtype="<u2", count=n))
    return out.reshape(desc.shape)


def bf16_view(desc: TensorDescriptor, shard: ShardCatalog) -> np.ndarray:
    """Zero-copy, read-only uint16 view of a BF16 tensor.

    The array aliases the shard's mapping and must not outlive it.
    """
    if desc.dtype is not DType.BF16:
        raise WrongDtypeError(
            f"{desc.name!r} is {desc.dtype_label}, not BF16", shard.path
        )
    n = desc.numel
    if n == 0:
        return np.zeros(desc.shape, dtype=np.uint16)
    raw = shard.raw_bytes(desc)
    return np.frombuffer(raw, dtype="<u2", count=n).reshape(desc.shape)

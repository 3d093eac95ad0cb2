"""safetensors on-disk constants, dtype table, and discovery conventions."""

import struct
from enum import IntEnum

# ── Fixed layout ────────────────────────────────────────────────────────────
#
# File:
#   header_len(u64 LE)
#   header[header_len]     UTF-8 JSON object
#   data[...]              concatenated raw tensor bytes

HEADER_LEN_FMT = "<Q"
HEADER_LEN_SIZE = 8

assert struct.calcsize(HEADER_LEN_FMT) == HEADER_LEN_SIZE

METADATA_KEY = "__metadata__"

# ── Dtype enum ──────────────────────────────────────────────────────────────


class DType(IntEnum):
    UNKNOWN = -1
    F32 = 0
    F16 = 1
    BF16 = 2
    I32 = 3
    I64 = 4
    BOOL = 5


DTYPE_FROM_STR: dict[str, DType] = {
    "F32": DType.F32,
    "F16": DType.F16,
    "BF16": DType.BF16,
    "I32": DType.I32,
    "I64": DType.I64,
    "BOOL": DType.BOOL,
}

DTYPE_SIZES: dict[DType, int] = {
    DType.F32: 4, DType.F16: 2, DType.BF16: 2,
    DType.I32: 4, DType.I64: 8, DType.BOOL: 1,
}


def parse_dtype(name: str) -> DType:
    """Map a header dtype string to :class:`DType` (``UNKNOWN`` if unrecognised)."""
    return DTYPE_FROM_STR.get(name, DType.UNKNOWN)


# ── Directory conventions ───────────────────────────────────────────────────

SINGLE_FILE_NAME = "model.safetensors"
SHARD_PREFIX = "model-"
SHARD_SUFFIX = ".safetensors"

# ── Safety limits ──────────────────────────────────────────────────────────

MAX_NDIM = 8
MAX_NAME_BYTES = 256

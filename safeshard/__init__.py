"""safeshard – zero-copy, read-only access to (sharded) safetensors models."""

__version__ = "0.1.0"

from .dtypes import bf16_to_f32, bf16_view, element_count, is_bf16, to_f32
from .errors import (
    DuplicateTensorError,
    HeaderOverrunError,
    HeaderParseError,
    NoShardsFoundError,
    PartialShardFailure,
    SafetensorsError,
    ShardIOError,
    ShardNotFoundError,
    TensorNotFoundError,
    TooSmallError,
    UnsupportedDtypeError,
    WrongDtypeError,
)
from .format import DType
from .header import TensorDescriptor, parse_header
from .mapping import MappedFile, open_mapped
from .reader import ShardCatalog, open_shard
from .shardset import ShardSet, discover_shards, open_model

__all__ = [
    "__version__",
    "DType", "TensorDescriptor", "parse_header",
    "MappedFile", "open_mapped",
    "ShardCatalog", "open_shard",
    "ShardSet", "discover_shards", "open_model",
    "element_count", "to_f32", "bf16_to_f32", "bf16_view", "is_bf16",
    "SafetensorsError", "ShardIOError", "ShardNotFoundError",
    "TooSmallError", "HeaderOverrunError", "HeaderParseError",
    "UnsupportedDtypeError", "WrongDtypeError",
    "NoShardsFoundError", "PartialShardFailure", "DuplicateTensorError",
    "TensorNotFoundError",
]

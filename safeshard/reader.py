"""safetensors shard reader – map, parse, and access one .safetensors file."""

from __future__ import annotations

import json
import logging
import os
import struct
from typing import Any, Iterator

import numpy as np

from . import dtypes
from .errors import (
    HeaderOverrunError,
    HeaderParseError,
    TensorNotFoundError,
    TooSmallError,
)
from .format import (
    DTYPE_SIZES,
    DType,
    HEADER_LEN_FMT,
    HEADER_LEN_SIZE,
    MAX_NAME_BYTES,
    MAX_NDIM,
)
from .header import TensorDescriptor, parse_header
from .mapping import MappedFile, open_mapped

logger = logging.getLogger("safeshard")


# ── ShardCatalog ────────────────────────────────────────────────────────────


class ShardCatalog:
    """Read-only view of one safetensors file.

    Usage::

        with ShardCatalog("model.safetensors") as shard:
            for t in shard.list_tensors():
                print(t.describe())
            w = shard.read_f32("encoder.conv1.weight")

    The whole file is memory-mapped once; :meth:`raw_bytes` and
    :meth:`bf16_view` hand out zero-copy views that are only valid until
    :meth:`close`.
    """

    def __init__(
        self,
        path: str | os.PathLike,
        *,
        max_name_bytes: int = MAX_NAME_BYTES,
    ) -> None:
        self._path = os.fspath(path)
        self._mapped: MappedFile | None = open_mapped(self._path)
        self._header_size = 0
        self._header_bytes = b""
        self._metadata_text: str | None = None
        self._tensors: list[TensorDescriptor] = []
        self._tensor_map: dict[str, TensorDescriptor] = {}
        try:
            self._parse(max_name_bytes)
        except BaseException:
            self._mapped.close()
            self._mapped = None
            raise
        logger.debug("opened %s (%d tensors)", self._path, len(self._tensors))

    @classmethod
    def open(cls, path: str | os.PathLike, **kwargs: Any) -> ShardCatalog:
        return cls(path, **kwargs)

    # ── Public properties ────────────────────────────────────────────────

    @property
    def path(self) -> str:
        return self._path

    @property
    def closed(self) -> bool:
        return self._mapped is None

    @property
    def file_size(self) -> int:
        return self._require_open().size

    @property
    def header_size(self) -> int:
        return self._header_size

    @property
    def header_bytes(self) -> bytes:
        """Copy of the raw JSON header (independent of the mapping)."""
        return self._header_bytes

    @property
    def data_start(self) -> int:
        return HEADER_LEN_SIZE + self._header_size

    @property
    def metadata(self) -> dict[str, Any]:
        """The ``__metadata__`` object, or ``{}`` when absent."""
        if not self._metadata_text:
            return {}
        try:
            return json.loads(self._metadata_text)
        except ValueError as exc:
            raise HeaderParseError(f"invalid __metadata__: {exc}", self._path) from exc

    # ── Tensor discovery ─────────────────────────────────────────────────

    def list_tensors(self) -> list[TensorDescriptor]:
        return list(self._tensors)

    def get(self, name: str) -> TensorDescriptor | None:
        return self._tensor_map.get(name)

    def find(self, name: str) -> TensorDescriptor:
        self._require_open()
        tensor = self._tensor_map.get(name)
        if tensor is None:
            raise TensorNotFoundError(f"tensor {name!r} not found", self._path)
        return tensor

    def __contains__(self, name: object) -> bool:
        return name in self._tensor_map

    def __iter__(self) -> Iterator[TensorDescriptor]:
        return iter(self._tensors)

    def __len__(self) -> int:
        return len(self._tensors)

    # ── Tensor data ──────────────────────────────────────────────────────

    def tensor_offset(self, tensor: TensorDescriptor) -> int:
        """Absolute file offset of *tensor*'s first byte."""
        return self.data_start + tensor.data_offset

    def raw_bytes(self, tensor: TensorDescriptor | str) -> memoryview:
        """Zero-copy, read-only view of a tensor's bytes.

        Bounds are not re-checked here; run :meth:`validate` once at load
        time when the file is untrusted.
        """
        mapped = self._require_open()
        if isinstance(tensor, str):
            tensor = self.find(tensor)
        start = self.tensor_offset(tensor)
        return mapped.view[start : start + tensor.data_size]

    def read_f32(self, name: str) -> np.ndarray:
        tensor = self.find(name)
        return dtypes.to_f32(tensor, self.raw_bytes(tensor))

    def bf16_view(self, name: str) -> np.ndarray:
        return dtypes.bf16_view(self.find(name), self)

    # ── Validation ───────────────────────────────────────────────────────

    def validate(self) -> list[str]:
        """Check every descriptor against the file; return error descriptions."""
        errors: list[str] = []
        data_len = self.file_size - self.data_start
        seen: set[str] = set()
        for t in self._tensors:
            if t.name in seen:
                errors.append(f"{t.name!r}: duplicate tensor name")
            seen.add(t.name)
            if t.ndim > MAX_NDIM:
                errors.append(f"{t.name!r}: {t.ndim} dims exceeds {MAX_NDIM}")
            if any(d < 0 for d in t.shape):
                errors.append(f"{t.name!r}: negative dimension in {list(t.shape)}")
                continue
            if t.data_end > data_len:
                errors.append(
                    f"{t.name!r}: data [{t.data_offset}, {t.data_end}) "
                    f"exceeds data block ({data_len} bytes)"
                )
            if t.dtype is DType.UNKNOWN:
                continue
            expected = t.numel * DTYPE_SIZES[t.dtype]
            if expected != t.data_size:
                errors.append(
                    f"{t.name!r}: {t.dtype_label} {list(t.shape)} needs "
                    f"{expected} bytes, data_offsets span {t.data_size}"
                )
        return errors

    def describe(self) -> str:
        lines = [f"File: {self._path} ({len(self._tensors)} tensors)"]
        lines.extend("  " + t.describe() for t in self._tensors)
        return "\n".join(lines)

    # ── Lifecycle ────────────────────────────────────────────────────────

    def close(self) -> None:
        """Release the mapping and the parsed header. Safe to call more than once.

        Descriptors already handed out stay usable as plain values; the
        catalog itself answers no further lookups.
        """
        if self._mapped is None:
            return
        mapped, self._mapped = self._mapped, None
        self._tensors = []
        self._tensor_map = {}
        self._header_bytes = b""
        self._metadata_text = None
        mapped.close()

    def __enter__(self) -> ShardCatalog:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else f"{len(self._tensors)} tensors"
        return f"ShardCatalog({self._path!r}, {state})"

    # ── Internal ─────────────────────────────────────────────────────────

    def _require_open(self) -> MappedFile:
        if self._mapped is None:
            raise ValueError(f"{self._path}: shard is closed")
        return self._mapped

    def _parse(self, max_name_bytes: int) -> None:
        mapped = self._mapped
        if mapped.size < HEADER_LEN_SIZE:
            raise TooSmallError(
                f"file too small for header length ({mapped.size} bytes)", self._path
            )

        (header_size,) = struct.unpack_from(HEADER_LEN_FMT, mapped.view, 0)
        if header_size > mapped.size - HEADER_LEN_SIZE:
            raise HeaderOverrunError(
                f"header length {header_size} exceeds file size {mapped.size}",
                self._path,
            )

        self._header_size = header_size
        self._header_bytes = bytes(
            mapped.view[HEADER_LEN_SIZE : HEADER_LEN_SIZE + header_size]
        )
        try:
            parsed = parse_header(self._header_bytes, max_name_bytes=max_name_bytes)
        except HeaderParseError as exc:
            raise HeaderParseError(exc.reason, self._path, exc.position) from exc

        self._tensors = parsed.tensors
        self._metadata_text = parsed.metadata_text
        for t in self._tensors:
            self._tensor_map.setdefault(t.name, t)


def open_shard(path: str | os.PathLike, **kwargs: Any) -> ShardCatalog:
    """Open a single safetensors file."""
    return ShardCatalog(path, **kwargs)

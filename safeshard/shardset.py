"""Multi-shard model loading – one logical tensor namespace over many files.

A model directory looks like either::

    model.safetensors                       ← single file

or::

    model-00001-of-00003.safetensors        ← zero-padded shards
    model-00002-of-00003.safetensors
    model-00003-of-00003.safetensors

Shards are ordered by byte-wise filename comparison. That order decides
which shard wins when a tensor name appears more than once.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Iterator

import numpy as np

from . import dtypes
from .errors import (
    DuplicateTensorError,
    NoShardsFoundError,
    PartialShardFailure,
    SafetensorsError,
    ShardIOError,
    TensorNotFoundError,
)
from .format import SHARD_PREFIX, SHARD_SUFFIX, SINGLE_FILE_NAME
from .header import TensorDescriptor
from .reader import ShardCatalog

logger = logging.getLogger("safeshard")


# ── Discovery ───────────────────────────────────────────────────────────────


def _is_shard_name(name: str) -> bool:
    return name.startswith(SHARD_PREFIX) and SHARD_SUFFIX in name


def list_shard_files(model_dir: str | os.PathLike, max_shards: int | None = None) -> list[str]:
    """Sorted paths of ``model-*.safetensors*`` files in *model_dir*."""
    if max_shards is not None and max_shards < 1:
        raise ValueError(f"max_shards must be at least 1, got {max_shards}")
    model_dir = os.fspath(model_dir)
    try:
        entries = os.listdir(model_dir)
    except FileNotFoundError as exc:
        raise ShardIOError("model directory does not exist", model_dir) from exc
    except OSError as exc:
        raise ShardIOError(f"cannot list directory: {exc.strerror or exc}", model_dir) from exc

    names = sorted((e for e in entries if _is_shard_name(e)), key=os.fsencode)
    if max_shards is not None and len(names) > max_shards:
        logger.warning(
            "%s: %d shard files found, keeping the first %d",
            model_dir, len(names), max_shards,
        )
        names = names[:max_shards]
    return [os.path.join(model_dir, n) for n in names]


def _open_single(
    model_dir: str, **shard_kwargs: Any
) -> tuple[ShardCatalog | None, SafetensorsError | None]:
    """Try ``model.safetensors``; return ``(shard, None)`` or ``(None, why_not)``."""
    single = os.path.join(model_dir, SINGLE_FILE_NAME)
    if not os.path.exists(single):
        return None, None
    try:
        return ShardCatalog(single, **shard_kwargs), None
    except SafetensorsError as exc:
        logger.warning("%s unusable (%s); looking for shard files", single, exc)
        return None, exc


def discover_shards(
    model_dir: str | os.PathLike,
    *,
    max_shards: int | None = None,
    **shard_kwargs: Any,
) -> list[str]:
    """Return the shard paths :func:`open_model` would open, in order.

    A ``model.safetensors`` is opened briefly to check it parses, since a
    broken one makes :func:`open_model` fall back to the shard files.
    Shard files themselves are only listed by name.
    """
    model_dir = os.fspath(model_dir)
    if os.path.isfile(model_dir):
        return [model_dir]
    shard, _ = _open_single(model_dir, **shard_kwargs)
    if shard is not None:
        shard.close()
        return [shard.path]
    return list_shard_files(model_dir, max_shards)


def open_model(
    path: str | os.PathLike,
    *,
    max_shards: int | None = None,
    strict: bool = False,
    **shard_kwargs: Any,
) -> ShardSet:
    """Open a model from a directory (single-file or sharded) or one file.

    Any shard failing to open aborts the load: shards opened so far are
    closed and :class:`PartialShardFailure` is raised, chained to the
    cause. With ``strict=True`` a tensor name present in more than one
    shard raises :class:`DuplicateTensorError` instead of resolving to
    the first shard.
    """
    path = os.fspath(path)
    if os.path.isfile(path):
        return ShardSet([ShardCatalog(path, **shard_kwargs)], strict=strict)

    shard, single_error = _open_single(path, **shard_kwargs)
    if shard is not None:
        return ShardSet([shard], strict=strict)

    shard_paths = list_shard_files(path, max_shards)
    if not shard_paths:
        raise NoShardsFoundError(
            f"no {SINGLE_FILE_NAME} or {SHARD_PREFIX}*{SHARD_SUFFIX} files", path
        ) from single_error

    shards: list[ShardCatalog] = []
    for shard_path in shard_paths:
        try:
            shards.append(ShardCatalog(shard_path, **shard_kwargs))
        except SafetensorsError as exc:
            _close_all(shards)
            raise PartialShardFailure(
                f"failed to open shard ({exc.stage}): {exc.message}", shard_path
            ) from exc
        except BaseException:
            _close_all(shards)
            raise
    logger.debug("opened %d shards from %s", len(shards), path)
    return ShardSet(shards, strict=strict)


def _close_all(shards: list[ShardCatalog]) -> list[BaseException]:
    """Close every shard, continuing past failures; return what failed."""
    errors: list[BaseException] = []
    for shard in shards:
        try:
            shard.close()
        except Exception as exc:
            logger.error("failed to close %s: %s", shard.path, exc)
            errors.append(exc)
    return errors


# ── ShardSet ────────────────────────────────────────────────────────────────


class ShardSet:
    """Ordered collection of shards answering name lookups.

    Usage::

        with open_model("/models/qwen3-asr") as model:
            desc, shard = model.find("thinker.lm_head.weight")
            w = model.read_f32("thinker.lm_head.weight")

    The set owns its shards: closing it closes all of them.
    """

    def __init__(self, shards: list[ShardCatalog], *, strict: bool = False) -> None:
        self._shards = list(shards)
        self._index: dict[str, tuple[TensorDescriptor, ShardCatalog]] = {}
        for shard in self._shards:
            for t in shard:
                if t.name not in self._index:
                    self._index[t.name] = (t, shard)

        dupes = self.duplicates()
        if dupes:
            if strict:
                _close_all(self._shards)
                self._shards = []
                name, paths = next(iter(dupes.items()))
                raise DuplicateTensorError(
                    f"{len(dupes)} tensor name(s) in more than one shard, "
                    f"e.g. {name!r} in {paths}",
                    paths[0],
                )
            logger.debug(
                "%d duplicate tensor name(s); first shard in order wins", len(dupes)
            )

    # ── Public properties ────────────────────────────────────────────────

    @property
    def shards(self) -> list[ShardCatalog]:
        return list(self._shards)

    @property
    def paths(self) -> list[str]:
        return [s.path for s in self._shards]

    def __len__(self) -> int:
        return len(self._shards)

    # ── Lookup ───────────────────────────────────────────────────────────

    def find(self, name: str) -> tuple[TensorDescriptor, ShardCatalog]:
        """Resolve *name* to its descriptor and owning shard."""
        hit = self._index.get(name)
        if hit is None:
            raise TensorNotFoundError(
                f"tensor {name!r} not found in {len(self._shards)} shard(s)",
                self._shards[0].path if self._shards else None,
            )
        return hit

    def get(self, name: str) -> tuple[TensorDescriptor, ShardCatalog] | None:
        return self._index.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __iter__(self) -> Iterator[TensorDescriptor]:
        return (t for t, _ in self._index.values())

    def list_tensors(self) -> list[TensorDescriptor]:
        """Every descriptor of every shard, shard order then file order."""
        return [t for shard in self._shards for t in shard]

    def tensor_names(self) -> list[str]:
        return list(self._index)

    def duplicates(self) -> dict[str, list[str]]:
        """Names found in more than one shard → owning shard paths, in order."""
        owners: dict[str, list[str]] = {}
        for shard in self._shards:
            for name in dict.fromkeys(t.name for t in shard):
                owners.setdefault(name, []).append(shard.path)
        return {name: paths for name, paths in owners.items() if len(paths) > 1}

    # ── Tensor data ──────────────────────────────────────────────────────

    def raw_bytes(self, name: str) -> memoryview:
        tensor, shard = self.find(name)
        return shard.raw_bytes(tensor)

    def read_f32(self, name: str) -> np.ndarray:
        tensor, shard = self.find(name)
        return dtypes.to_f32(tensor, shard.raw_bytes(tensor))

    def bf16_view(self, name: str) -> np.ndarray:
        tensor, shard = self.find(name)
        return dtypes.bf16_view(tensor, shard)

    # ── Validation ───────────────────────────────────────────────────────

    def validate(self) -> list[str]:
        errors: list[str] = []
        for shard in self._shards:
            errors.extend(f"{shard.path}: {e}" for e in shard.validate())
        for name, paths in self.duplicates().items():
            errors.append(f"{name!r}: present in {len(paths)} shards {paths}")
        return errors

    def describe(self) -> str:
        return "\n".join(shard.describe() for shard in self._shards)

    # ── Lifecycle ────────────────────────────────────────────────────────

    def close(self) -> None:
        """Close every shard, even if one of them fails; then re-raise."""
        shards, self._shards = self._shards, []
        self._index.clear()
        errors = _close_all(shards)
        if errors:
            raise errors[0]

    def __enter__(self) -> ShardSet:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"ShardSet({len(self._shards)} shards, {len(self._index)} tensors)"

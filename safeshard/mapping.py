"""Read-only whole-file memory mappings.

One contract (:func:`open_mapped` → :class:`MappedFile` with ``view`` /
``size`` / ``close``) over two platform backends picked at import time:
POSIX maps ``MAP_PRIVATE`` + ``PROT_READ``; Windows creates a read-only
file mapping through ``ACCESS_READ``.
"""

from __future__ import annotations

import logging
import mmap
import os

from .errors import ShardIOError, ShardNotFoundError

logger = logging.getLogger("safeshard")


# ── Platform backends ───────────────────────────────────────────────────────


def _map_posix(fd: int, size: int) -> mmap.mmap:
    return mmap.mmap(fd, size, flags=mmap.MAP_PRIVATE, prot=mmap.PROT_READ)


def _map_windows(fd: int, size: int) -> mmap.mmap:
    return mmap.mmap(fd, size, access=mmap.ACCESS_READ)


_map_region = _map_windows if os.name == "nt" else _map_posix
_OPEN_FLAGS = os.O_RDONLY | getattr(os, "O_BINARY", 0)


# ── MappedFile ──────────────────────────────────────────────────────────────


class MappedFile:
    """Owns a read-only mapping of a whole file.

    ``view`` stays valid and unchanged until :meth:`close`. Zero-length
    files cannot be mapped by the OS, so they get an empty view instead.
    """

    def __init__(self, path: str, mm: mmap.mmap | None, size: int) -> None:
        self.path = path
        self.size = size
        self._mm = mm
        # PROT_READ mappings still export a writable buffer; writes would fault.
        view = memoryview(mm) if mm is not None else memoryview(b"")
        self._view: memoryview | None = view.toreadonly()

    @property
    def closed(self) -> bool:
        return self._view is None

    @property
    def view(self) -> memoryview:
        if self._view is None:
            raise ValueError(f"{self.path}: mapping is closed")
        return self._view

    def __len__(self) -> int:
        return self.size

    def close(self) -> None:
        """Unmap the file; calling again is a no-op.

        If callers still hold views exported from the mapping, the OS
        unmap happens when the last of them is released.
        """
        if self._view is None:
            return
        view, mm = self._view, self._mm
        self._view = None
        self._mm = None
        try:
            view.release()
            if mm is not None:
                mm.close()
        except BufferError:
            logger.warning(
                "%s: mapping still referenced by live tensor views; "
                "unmap deferred until they are released", self.path,
            )

    def __enter__(self) -> MappedFile:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else f"{self.size} bytes"
        return f"MappedFile({self.path!r}, {state})"


def open_mapped(path: str | os.PathLike) -> MappedFile:
    """Map *path* read-only in its entirety."""
    path = os.fspath(path)
    try:
        fd = os.open(path, _OPEN_FLAGS)
    except FileNotFoundError as exc:
        raise ShardNotFoundError("no such file", path) from exc
    except OSError as exc:
        raise ShardIOError(f"cannot open: {exc.strerror or exc}", path) from exc
    try:
        size = os.fstat(fd).st_size
        mm = _map_region(fd, size) if size else None
    except (OSError, ValueError) as exc:
        raise ShardIOError(f"cannot map: {exc}", path) from exc
    finally:
        os.close(fd)
    return MappedFile(path, mm, size)

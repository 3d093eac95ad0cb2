"""Exception hierarchy for shard loading and tensor access."""

from __future__ import annotations

import os


class SafetensorsError(Exception):
    """Base exception for safetensors load / access errors.

    ``path`` names the file or directory involved and ``stage`` the step
    that failed (``io``, ``header-size``, ``parse``, ``decode``,
    ``discovery`` or ``lookup``), so a misconfigured model directory can be
    diagnosed from the message alone.
    """

    stage = "io"

    def __init__(self, message: str, path: str | os.PathLike | None = None) -> None:
        self.path = os.fspath(path) if path is not None else None
        self.message = message
        super().__init__(f"{self.path}: {message}" if self.path else message)


class ShardIOError(SafetensorsError):
    """open / stat / map failure."""

    stage = "io"


class ShardNotFoundError(ShardIOError):
    """The shard file does not exist."""


class TooSmallError(SafetensorsError):
    """File shorter than the 8-byte header length prefix."""

    stage = "header-size"


class HeaderOverrunError(SafetensorsError):
    """Declared header length runs past the end of the file."""

    stage = "header-size"


class HeaderParseError(SafetensorsError):
    """Malformed header JSON."""

    stage = "parse"

    def __init__(
        self,
        message: str,
        path: str | os.PathLike | None = None,
        position: int | None = None,
    ) -> None:
        self.position = position
        self.reason = message
        if position is not None:
            message = f"{message} (at offset {position})"
        super().__init__(message, path)


class UnsupportedDtypeError(SafetensorsError):
    """Conversion requested for a dtype the decoder does not handle."""

    stage = "decode"


class WrongDtypeError(SafetensorsError):
    """Typed view requested against a descriptor of another dtype."""

    stage = "decode"


class NoShardsFoundError(SafetensorsError):
    """Directory holds neither a single-file model nor any shard files."""

    stage = "discovery"


class PartialShardFailure(SafetensorsError):
    """One shard of a multi-shard model failed to open."""

    stage = "discovery"


class DuplicateTensorError(SafetensorsError):
    """A tensor name appears in more than one shard (strict mode only)."""

    stage = "discovery"


class TensorNotFoundError(SafetensorsError):
    """Name lookup miss."""

    stage = "lookup"

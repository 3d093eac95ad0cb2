"""safeshard CLI – inspect, validate, and look up tensors in safetensors models."""

from __future__ import annotations

import argparse
import logging
import os
import sys

from . import __version__
from .errors import SafetensorsError
from .shardset import open_model


# ── Output helpers ──────────────────────────────────────────────────────────

_SGR = {"bold": "1", "dim": "2", "red": "31", "green": "32", "cyan": "36"}


def _styled(text: str, style: str, stream=None) -> str:
    """Wrap *text* in an SGR sequence when *stream* is a terminal and NO_COLOR is unset."""
    stream = stream or sys.stdout
    if os.environ.get("NO_COLOR") or not getattr(stream, "isatty", lambda: False)():
        return text
    return f"\033[{_SGR[style]}m{text}\033[0m"


def _heading(title: str) -> None:
    print(_styled(f"\n  ◆ {title}", "cyan"))


def _status(msg: str, ok: bool) -> None:
    stream = sys.stdout if ok else sys.stderr
    mark = _styled("✓ ", "green", stream) if ok else _styled("✗ ", "red", stream)
    print(mark + msg, file=stream)


def _table(headers: list[str], rows: list[list[str]], padding: int = 1) -> list[str]:
    """Return lines for a UTF-8 box table. Column widths from content."""
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    pad = " " * padding

    def line(cells: list[str]) -> str:
        return "│" + "│".join(pad + c.ljust(w) + pad for c, w in zip(cells, widths)) + "│"

    rule = ["─" * (w + 2 * padding) for w in widths]
    lines = ["╭" + "┬".join(rule) + "╮", line(headers), "├" + "┼".join(rule) + "┤"]
    lines.extend(line(row) for row in rows)
    lines.append("╰" + "┴".join(rule) + "╯")
    return lines


# ── inspect ─────────────────────────────────────────────────────────────────


def cmd_inspect(args: argparse.Namespace) -> None:
    with open_model(args.path) as model:
        print(_styled("\n  safetensors  ", "bold") + _styled(args.path, "dim"))
        _heading(f"Shards ({len(model)})")
        rows = [
            [str(i), os.path.basename(s.path), str(len(s)),
             str(s.header_size), str(s.file_size)]
            for i, s in enumerate(model.shards)
        ]
        for line in _table(["#", "File", "Tensors", "Header", "Bytes"], rows):
            print("  " + line)

        tensors = model.list_tensors()
        show = min(args.max_tensors or len(tensors), len(tensors))
        _heading(f"Tensors ({len(tensors)}, showing {show})")
        rows = []
        for t in tensors[:show]:
            name = t.name if len(t.name) <= 48 else t.name[:47] + "…"
            rows.append([name, t.dtype_label, str(list(t.shape)),
                         str(t.data_offset), str(t.data_size)])
        for line in _table(["Name", "Dtype", "Shape", "Offset", "Bytes"], rows):
            print("  " + line)
        if len(tensors) > show:
            more = len(tensors) - show
            print(_styled(f"\n  … and {more} more (use --max-tensors to show more)", "dim"))
        print()


# ── validate ────────────────────────────────────────────────────────────────


def cmd_validate(args: argparse.Namespace) -> None:
    with open_model(args.path, strict=args.strict) as model:
        errors = model.validate()
        if errors:
            for e in errors:
                _status(e, ok=False)
            sys.exit(1)
        _status(f"{len(model.tensor_names())} tensors in {len(model)} shard(s).", ok=True)


# ── find ────────────────────────────────────────────────────────────────────


def cmd_find(args: argparse.Namespace) -> None:
    with open_model(args.path) as model:
        tensor, shard = model.find(args.name)
        print(f"{shard.path}")
        print(f"  {tensor.describe()}")
        print(f"  absolute offset {shard.tensor_offset(tensor)}")


# ── Entry point ─────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="safeshard", description="Inspect safetensors models"
    )
    parser.add_argument(
        "--version", action="version", version=f"safeshard {__version__}"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("inspect", help="List shards and tensors", aliases=["info"])
    p.add_argument("path", help="model directory or .safetensors file")
    p.add_argument("--max-tensors", type=int, default=None)

    p = sub.add_parser("validate", help="Check tensor byte ranges against the files")
    p.add_argument("path", help="model directory or .safetensors file")
    p.add_argument("--strict", action="store_true",
                   help="treat tensor names present in several shards as an error")

    p = sub.add_parser("find", help="Show which shard holds a tensor")
    p.add_argument("path", help="model directory or .safetensors file")
    p.add_argument("name", help="tensor name")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    cmds = {
        "inspect": cmd_inspect,
        "info": cmd_inspect,  # alias
        "validate": cmd_validate,
        "find": cmd_find,
    }
    fn = cmds.get(args.command)
    if fn is None:
        parser.print_help()
        sys.exit(1)
    try:
        fn(args)
    except SafetensorsError as exc:
        _status(f"[{exc.stage}] {exc}", ok=False)
        sys.exit(1)


if __name__ == "__main__":
    main()

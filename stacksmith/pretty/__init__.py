"""Pretty formatting utilities for CLI output."""

import json
import shutil
import sys
from typing import IO, List, Optional, Sequence


def get_term_width() -> int:
    """Get terminal width, default to 80 if can't detect."""
    try:
        return shutil.get_terminal_size().columns
    except (OSError, ValueError):
        return 80


def header(text: str, use_emoji: bool = True) -> str:
    """Boxed header sized to the terminal (at least wide enough for text)."""
    emoji = "📚 " if use_emoji else ""
    width = max(get_term_width(), len(text) + len(emoji) + 4)
    h_line = "─" * (width - 2)
    v_line = "│"
    return "\n".join([
        f"┌{h_line}┐",
        f"{v_line} {emoji}{text}{' ' * (width - len(text) - len(emoji) - 3)}{v_line}",
        f"└{h_line}┘",
    ])


def table(rows: Sequence[Sequence[str]], headers: Sequence[str]) -> str:
    """Left-aligned plain text table."""
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    lines: List[str] = ["  ".join(h.ljust(widths[i]) for i, h in enumerate(headers)).rstrip()]
    lines.append("  ".join("-" * w for w in widths))
    for row in rows:
        lines.append("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())
    return "\n".join(lines)


def pretty_json(data: object, prefix: str = "") -> str:
    """Format JSON data with optional prefix."""
    raw = json.dumps(data, indent=2, ensure_ascii=False)
    if prefix:
        return "\n".join(f"{prefix}{line}" for line in raw.split("\n"))
    return raw


def print_json(data: object, prefix: str = "", file: Optional[IO[str]] = None) -> None:
    """Print JSON data to file (default stdout)."""
    print(pretty_json(data, prefix), file=file or sys.stdout)


def print_header(text: str, use_emoji: bool = True, file: Optional[IO[str]] = None) -> None:
    """Print a header to file (default stdout)."""
    print(header(text, use_emoji), file=file or sys.stdout)

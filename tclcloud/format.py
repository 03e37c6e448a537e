"""Output mode selection and formatting helpers."""

import json


def get_output_mode(args) -> str:
    """Determine output mode from parsed args."""
    if getattr(args, "json", False):
        return "json"
    if getattr(args, "verbose", False):
        return "verbose"
    return "terse"


def format_json(**fields) -> str:
    """Wrap ``fields`` in the ``{"ok": true, ...}`` envelope."""
    return json.dumps({"ok": True, **fields}, indent=2, default=str)


def format_success(message: str, mode: str = "terse") -> str:
    """Format a success message for the given output mode."""
    if mode == "json":
        return format_json(message=message)
    return message


def format_table(rows: list[list[str]], headers: list[str]) -> str:
    """Left-aligned columns separated by two spaces."""
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    lines = []
    for row in [headers] + rows:
        lines.append("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())
    return "\n".join(lines)


def format_error(message: str) -> str:
    """Format an error message. Always plain text, always stderr."""
    return f"ERR: {message}"

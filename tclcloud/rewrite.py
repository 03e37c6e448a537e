"""Record a threat model slug in the backend block of a local HCL file."""

import os
import re
import shutil

from tclcloud.util import BACKEND_NAME, AlreadySetError, RewriteError

_BACKEND_RE = re.compile(
    rf'^[ \t]*backend[ \t]+"{re.escape(BACKEND_NAME)}"[ \t]*\{{', re.MULTILINE
)
# Attributes start a line or directly follow the opening brace of a
# single-line block.
_ORG_RE = re.compile(r'(?<![^\s{])organization[ \t]*=[ \t]*"[^"\n]*"')
_THREATMODEL_RE = re.compile(r'(?<![^\s{])(threatmodel[ \t]*=[ \t]*")([^"\n]*)(")')
_SLUG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _block_end(text: str, open_brace: int) -> int:
    """Index of the brace closing the one at ``open_brace``, skipping strings and comments."""
    depth = 0
    i = open_brace
    while i < len(text):
        ch = text[i]
        if ch == '"':
            i += 1
            while i < len(text) and text[i] not in '"\n':
                i += 2 if text[i] == "\\" else 1
        elif ch == "#" or text.startswith("//", i):
            newline = text.find("\n", i)
            i = len(text) if newline == -1 else newline
            continue
        elif text.startswith("/*", i):
            close = text.find("*/", i + 2)
            i = len(text) if close == -1 else close + 2
            continue
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise RewriteError(f'backend "{BACKEND_NAME}" block is not closed')


def set_backend_threatmodel(text: str, slug: str, replace: bool = False) -> str:
    """Return ``text`` with ``threatmodel = "<slug>"`` added to the backend block.

    The new line goes directly after the ``organization`` line and copies its
    indentation. A single-line block such as
    ``backend "threatcl-cloud" { organization = "acme" }`` is split open
    first, one attribute per line, indented one level deeper than the
    ``backend`` keyword. An existing ``threatmodel`` raises AlreadySetError
    unless ``replace`` is set, in which case only its value changes.
    """
    if not _SLUG_RE.match(slug):
        raise RewriteError(f"invalid threat model slug: {slug!r}")

    start = _BACKEND_RE.search(text)
    if not start:
        raise RewriteError(f'could not find backend "{BACKEND_NAME}" block')
    open_brace = start.end() - 1
    close_brace = _block_end(text, open_brace)
    body_start = open_brace + 1

    existing = _THREATMODEL_RE.search(text, body_start, close_brace)
    if existing:
        if not replace:
            raise AlreadySetError(
                f"threatmodel is already set in the backend block "
                f'({existing.group(2)!r})'
            )
        return text[:existing.start(2)] + slug + text[existing.end(2):]

    org = _ORG_RE.search(text, body_start, close_brace)
    if not org:
        raise RewriteError("could not find organization in backend block")
    declaration = f'threatmodel = "{slug}"'
    line_start = text.rfind("\n", 0, org.start()) + 1
    indent = text[line_start:org.start()]
    if indent.strip(" \t"):
        if text[body_start:org.start()].strip():
            raise RewriteError("organization must start its own line in the backend block")
        return _split_open(text, start.start(), body_start, close_brace, org, declaration)

    eol = text.find("\n", org.end(), close_brace)
    if eol == -1:
        return text[:org.end()] + "\n" + indent + declaration + text[org.end():]
    if text[eol - 1] == "\r":
        eol -= 1
        newline = "\r\n"
    else:
        newline = "\n"
    return text[:eol] + newline + indent + declaration + text[eol:]


def _split_open(text, block_start, body_start, close_brace, org, declaration):
    """Rewrite a block whose ``organization`` shares a line with ``{``."""
    outer = re.match(r"[ \t]*", text[block_start:]).group()
    inner = outer + ("\t" if "\t" in outer else "  ")
    newline = "\r\n" if "\r\n" in text else "\n"
    head = (
        text[:body_start] + newline
        + inner + org.group(0) + newline
        + inner + declaration
    )
    if "\n" in text[org.end():close_brace]:
        return head + text[org.end():]
    # the closing brace sat on the same line
    return head + newline + outer + text[close_brace:]


def _write_file(path: str, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)


def rewrite_backend_file(path: str, slug: str, replace: bool = False) -> None:
    """Rewrite ``path`` in place, guarded by a ``<path>.bak`` copy.

    On any failure the original bytes are copied back from the backup and
    the backup is removed before the error propagates. On success the
    backup is removed.
    """
    backup = path + ".bak"
    with open(path, "rb") as f:
        original = f.read()
    try:
        shutil.copy2(path, backup)
    except OSError:
        if os.path.exists(backup):
            os.remove(backup)
        raise

    try:
        updated = set_backend_threatmodel(original.decode("utf-8"), slug, replace)
        _write_file(path, updated.encode("utf-8"))
    except Exception:
        shutil.copyfile(backup, path)
        os.remove(backup)
        raise
    os.remove(backup)

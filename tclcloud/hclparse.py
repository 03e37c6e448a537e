"""Minimal HCL reader (no hcl dependency).

Understands what threat model files use: blocks with labels, attributes,
strings (escapes and ``${...}`` templates kept verbatim), heredocs, numbers,
booleans, null, lists, objects, and ``#``, ``//`` and ``/* */`` comments.
Anything else on the right of ``=`` (references, function calls,
arithmetic) is kept as its raw source text.
"""

import re
import textwrap
from dataclasses import dataclass, field

_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_-]*")
_NUMBER = re.compile(r"-?\d+(\.\d+)?([eE][+-]?\d+)?")
_HEREDOC = re.compile(r"<<(-?)([A-Za-z_][A-Za-z0-9_]*)[ \t]*\r?\n")

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\"}


class HCLSyntaxError(ValueError):
    """Raised when the input is not well-formed enough to read."""

    def __init__(self, message: str, line: int):
        super().__init__(f"line {line}: {message}")
        self.line = line


@dataclass
class Block:
    type: str
    labels: list[str] = field(default_factory=list)
    attributes: dict = field(default_factory=dict)
    blocks: list["Block"] = field(default_factory=list)
    line: int = 0

    def blocks_of(self, block_type: str) -> list["Block"]:
        return [b for b in self.blocks if b.type == block_type]


class _Reader:
    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    @property
    def line(self) -> int:
        return self.text.count("\n", 0, self.pos) + 1

    def error(self, message: str) -> HCLSyntaxError:
        return HCLSyntaxError(message, self.line)

    def peek(self, n: int = 1) -> str:
        return self.text[self.pos:self.pos + n]

    def at_end(self) -> bool:
        return self.pos >= len(self.text)

    def skip_inline(self) -> None:
        """Skip spaces, tabs and comments, stopping at a newline."""
        while not self.at_end():
            ch = self.peek()
            if ch in " \t\r":
                self.pos += 1
            elif ch == "#" or self.peek(2) == "//":
                end = self.text.find("\n", self.pos)
                self.pos = len(self.text) if end == -1 else end
            elif self.peek(2) == "/*":
                end = self.text.find("*/", self.pos + 2)
                if end == -1:
                    raise self.error("unterminated comment")
                self.pos = end + 2
            else:
                return

    def skip_space(self) -> None:
        """Skip whitespace (including newlines) and comments."""
        while True:
            self.skip_inline()
            if self.peek() == "\n":
                self.pos += 1
            else:
                return

    def match(self, pattern: re.Pattern):
        m = pattern.match(self.text, self.pos)
        if m:
            self.pos = m.end()
        return m

    def expect(self, ch: str) -> None:
        if self.peek() != ch:
            found = self.peek() or "end of file"
            raise self.error(f"expected {ch!r}, found {found!r}")
        self.pos += 1

    # Bodies

    def body(self, block: Block, closing: bool) -> None:
        while True:
            self.skip_space()
            if self.at_end():
                if closing:
                    raise self.error(f"unclosed block {block.type!r}")
                return
            if self.peek() == "}":
                if not closing:
                    raise self.error("unexpected '}'")
                self.pos += 1
                return

            line = self.line
            ident = self.match(_IDENT)
            if not ident:
                raise self.error(f"unexpected character {self.peek()!r}")
            name = ident.group(0)
            self.skip_inline()

            if self.peek() == "=" and self.peek(2) != "==":
                self.pos += 1
                self.skip_inline()
                block.attributes[name] = self.attribute_value()
                continue

            child = Block(type=name, line=line)
            while self.peek() != "{":
                if self.peek() == '"':
                    child.labels.append(self.string())
                else:
                    label = self.match(_IDENT)
                    if not label:
                        raise self.error(f"expected block label or '{{' after {name!r}")
                    child.labels.append(label.group(0))
                self.skip_inline()
            self.pos += 1
            self.body(child, closing=True)
            block.blocks.append(child)

    # Values

    def attribute_value(self):
        """Read a value and require the line to end after it."""
        start = self.pos
        try:
            value = self.value()
            self.skip_inline()
            if self.at_end() or self.peek() in "\n}":
                return value
        except HCLSyntaxError:
            pass
        self.pos = start
        return self.raw_expression()

    def value(self):
        ch = self.peek()
        if ch == '"':
            return self.string()
        if self.peek(2) == "<<":
            return self.heredoc()
        if ch == "[":
            return self.sequence()
        if ch == "{":
            return self.mapping()
        number = self.match(_NUMBER)
        if number:
            literal = number.group(0)
            return float(literal) if number.group(1) or number.group(2) else int(literal)
        ident = _IDENT.match(self.text, self.pos)
        if ident and ident.group(0) in ("true", "false", "null"):
            self.pos = ident.end()
            return {"true": True, "false": False, "null": None}[ident.group(0)]
        raise self.error(f"unsupported value starting with {ch!r}")

    def string(self) -> str:
        self.expect('"')
        out = []
        while True:
            if self.at_end() or self.peek() == "\n":
                raise self.error("unterminated string")
            ch = self.peek()
            if ch == '"':
                self.pos += 1
                return "".join(out)
            if ch == "\\":
                esc = self.text[self.pos + 1:self.pos + 2]
                if esc in _ESCAPES:
                    out.append(_ESCAPES[esc])
                    self.pos += 2
                    continue
                if esc == "u":
                    out.append(chr(int(self.text[self.pos + 2:self.pos + 6], 16)))
                    self.pos += 6
                    continue
                raise self.error(f"invalid escape \\{esc}")
            if self.peek(2) in ("${", "%{"):
                out.append(self.template())
                continue
            out.append(ch)
            self.pos += 1

    def template(self) -> str:
        """Copy a ``${...}`` or ``%{...}`` sequence verbatim."""
        start = self.pos
        self.pos += 2
        depth = 1
        while depth:
            if self.at_end():
                raise self.error("unterminated template sequence")
            ch = self.peek()
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
            self.pos += 1
        return self.text[start:self.pos]

    def heredoc(self) -> str:
        m = self.match(_HEREDOC)
        if not m:
            raise self.error("malformed heredoc")
        indented, marker = m.group(1) == "-", m.group(2)
        closing = re.compile(rf"^[ \t]*{re.escape(marker)}[ \t]*\r?$", re.MULTILINE)
        end = closing.search(self.text, self.pos)
        if not end:
            raise self.error(f"heredoc {marker} is not closed")
        content = self.text[self.pos:end.start()]
        self.pos = end.end()
        return textwrap.dedent(content) if indented else content

    def sequence(self) -> list:
        self.expect("[")
        items = []
        while True:
            self.skip_space()
            if self.peek() == "]":
                self.pos += 1
                return items
            items.append(self.value())
            self.skip_space()
            if self.peek() == ",":
                self.pos += 1
            elif self.peek() != "]":
                raise self.error("expected ',' or ']' in list")

    def mapping(self) -> dict:
        self.expect("{")
        items = {}
        while True:
            self.skip_space()
            if self.peek() == "}":
                self.pos += 1
                return items
            if self.peek() == '"':
                key = self.string()
            else:
                ident = self.match(_IDENT)
                if not ident:
                    raise self.error("expected object key")
                key = ident.group(0)
            self.skip_inline()
            if self.peek() not in ("=", ":"):
                raise self.error("expected '=' or ':' after object key")
            self.pos += 1
            self.skip_space()
            items[key] = self.value()
            self.skip_inline()
            if self.peek() == ",":
                self.pos += 1

    def raw_expression(self) -> str:
        """Consume an expression up to the end of its line, balancing brackets."""
        start = self.pos
        depth = 0
        while not self.at_end():
            ch = self.peek()
            if ch == '"':
                self.string()
                continue
            if ch in "([{":
                depth += 1
            elif ch in ")]}":
                if depth == 0:
                    break
                depth -= 1
            elif ch == "\n" and depth == 0:
                break
            elif ch == "#" or self.peek(2) in ("//", "/*"):
                if depth == 0:
                    break
            self.pos += 1
        if depth:
            raise self.error("unbalanced brackets in expression")
        raw = self.text[start:self.pos].strip()
        if not raw:
            raise self.error("missing value")
        return raw


def parse(text: str) -> Block:
    """Parse HCL source into a root Block (type ``""``) holding top-level content."""
    root = Block(type="", line=1)
    _Reader(text).body(root, closing=False)
    return root

"""
Source preprocessing shared by the script and interface parsers.

The grammars themselves live in ``canrepl/grammar``; this module handles the
parts a regular lexer cannot: nested block comments, environment variable
expansion, and decoding of text literal escapes.
"""
import os
import re
from dataclasses import dataclass
from typing import Optional, Mapping

from canrepl.canrepl_errors import ParseError


@dataclass(frozen=True)
class Span:
    start: int
    end: int
    line: int
    col: int

    def text(self, source: str) -> str:
        return source[self.start:self.end]


def line_col(source: str, offset: int) -> tuple[int, int]:
    line = source.count("\n", 0, offset) + 1
    last_nl = source.rfind("\n", 0, offset)
    return line, offset - last_nl


def span_at(source: str, start: int, end: Optional[int] = None) -> Span:
    line, col = line_col(source, start)
    return Span(start, start if end is None else end, line, col)


def strip_shebang(source: str) -> str:
    if source.startswith("#!"):
        nl = source.find("\n")
        return "" if nl < 0 else " " * nl + source[nl:]
    return source


def strip_comments(source: str) -> str:
    """Blank out ``//`` and (nested) ``/* */`` comments, keeping every offset."""
    out = list(source)
    i = 0
    n = len(source)
    while i < n:
        c = source[i]
        if c == '"':
            i += 1
            while i < n and source[i] != '"':
                i += 2 if source[i] == "\\" else 1
            i += 1
            continue
        if source.startswith("//", i):
            while i < n and source[i] != "\n":
                out[i] = " "
                i += 1
            continue
        if source.startswith("/*", i):
            start = i
            depth = 0
            while i < n:
                if source.startswith("/*", i):
                    depth += 1
                    out[i] = out[i + 1] = " "
                    i += 2
                elif source.startswith("*/", i):
                    depth -= 1
                    out[i] = out[i + 1] = " "
                    i += 2
                    if depth == 0:
                        break
                else:
                    if source[i] != "\n":
                        out[i] = " "
                    i += 1
            if depth:
                raise ParseError("unterminated block comment", span_at(source, start), ["*/"])
            continue
        i += 1
    return "".join(out)


_ENV_RE = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}|([A-Za-z_][A-Za-z0-9_]*))")


def expand_env(source: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """Expand ``$VAR``, ``${VAR}`` and ``${VAR:-default}`` references.

    The default applies when the variable is unset or empty; any other unset
    variable is an error.
    """
    env = os.environ if environ is None else environ

    def repl(m):
        name = m.group(1) or m.group(3)
        default = m.group(2)
        val = env.get(name)
        if default is not None:
            return val or default
        if val is not None:
            return val
        raise ParseError(f"environment variable {name} is not set", span_at(source, m.start(), m.end()))

    return _ENV_RE.sub(repl, source)


def preprocess(source: str, environ: Optional[Mapping[str, str]] = None) -> str:
    return expand_env(strip_comments(strip_shebang(source)), environ)


_SIMPLE_ESCAPES = {
    "n": b"\n",
    "r": b"\r",
    "t": b"\t",
    "\\": b"\\",
    '"': b'"',
    "'": b"'",
}
_HEX = "0123456789abcdefABCDEF"


def unescape(body: str) -> bytes:
    """Decode the inside of a quoted literal into raw bytes.

    ``\\XX`` produces a single raw byte, so the result may not be valid UTF-8;
    callers building text values must validate it.
    """
    out = bytearray()
    i = 0
    n = len(body)
    while i < n:
        c = body[i]
        if c != "\\":
            j = body.find("\\", i)
            j = n if j < 0 else j
            out += body[i:j].encode("utf-8")
            i = j
            continue
        if i + 1 >= n:
            raise ParseError("dangling escape at end of literal")
        e = body[i + 1]
        if e in _SIMPLE_ESCAPES:
            out += _SIMPLE_ESCAPES[e]
            i += 2
        elif e == "u":
            m = re.match(r"\{([0-9a-fA-F_]+)\}", body[i + 2:])
            if not m:
                raise ParseError(f"invalid unicode escape in {body!r}")
            cp = int(m.group(1).replace("_", ""), 16)
            if cp > 0x10FFFF or 0xD800 <= cp <= 0xDFFF:
                raise ParseError(f"unicode escape out of range: {m.group(1)}")
            out += chr(cp).encode("utf-8")
            i += 2 + m.end()
        elif e in _HEX and i + 2 < n and body[i + 2] in _HEX:
            out.append(int(body[i + 1:i + 3], 16))
            i += 3
        else:
            raise ParseError(f"unknown escape \\{e}")
    return bytes(out)


def unquote_text(token: str) -> str:
    """Decode a ``"..."`` literal that must be valid UTF-8 text."""
    raw = unescape(token[1:-1])
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(f"text literal is not valid UTF-8: {token}") from e


def unquote_bytes(token: str) -> bytes:
    return unescape(token[1:-1])

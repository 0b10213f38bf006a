"""
A pretty-printer for canrepl values, producing Candid textual syntax that the
script parser reads back.
"""
import math

from canrepl.canrepl_types import format_label
from canrepl.canrepl_values import (
    Bool, Null, Reserved, NoneVal, Text, Number, Integral, Float, Opt, Vec, Blob,
    Record, Variant, Principal, Service, Func,
)


def quote_text(s: str) -> str:
    out = ['"']
    for ch in s:
        match ch:
            case '"':
                out.append('\\"')
            case "\\":
                out.append("\\\\")
            case "\n":
                out.append("\\n")
            case "\r":
                out.append("\\r")
            case "\t":
                out.append("\\t")
            case _ if ord(ch) < 0x20 or ord(ch) == 0x7F:
                out.append(f"\\u{{{ord(ch):x}}}")
            case _:
                out.append(ch)
    out.append('"')
    return "".join(out)


def format_blob(data: bytes) -> str:
    body = "".join(
        chr(b) if 0x20 <= b < 0x7F and b not in (0x22, 0x5C) else f"\\{b:02x}"
        for b in data
    )
    return f'blob "{body}"'


def group_digits(n: int) -> str:
    sign = "-" if n < 0 else ""
    digits = str(abs(n))
    head = len(digits) % 3 or 3
    parts = [digits[:head]] + [digits[i:i + 3] for i in range(head, len(digits), 3)]
    return sign + "_".join(parts)


class Printer:
    """Formats values into readable, re-parseable Candid text."""

    def __init__(self, indent_width=2, width=80):
        self._indent_char = " " * indent_width
        self._width = width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format a value."""
        flat = self._flat(obj)
        if len(flat) + level * len(self._indent_char) <= self._width:
            return flat
        handler = self._get_handler(obj)
        return handler(obj, level)

    def pformat_args(self, values) -> str:
        return "(" + ", ".join(self._flat(v) for v in values) + ")"

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        return lambda o, l: self._flat(o)

    def _create_handlers(self):
        return {
            Opt: self._pformat_opt,
            Vec: self._pformat_vec,
            Record: self._pformat_record,
            Variant: self._pformat_variant,
        }

    # --- single-line rendering ---
    def _flat(self, v) -> str:
        match v:
            case Null() | Reserved() | NoneVal():
                return "null"
            case Bool(b):
                return "true" if b else "false"
            case Text(s):
                return quote_text(s)
            case Number(n):
                return n
            case Integral():
                return f"{group_digits(v.value)} : {v.kind}"
            case Float(f):
                return f"{self._float(f)} : {v.kind}"
            case Opt(inner):
                return "opt " + self._opt_operand(inner, self._flat(inner))
            case Blob(data):
                return format_blob(data)
            case Vec(items):
                if not items:
                    return "vec {}"
                return "vec { " + "; ".join(self._flat(x) for x in items) + " }"
            case Record(fields):
                if not fields:
                    return "record {}"
                if v.is_tuple():
                    body = "; ".join(self._flat(x) for _, x in fields)
                else:
                    body = "; ".join(f"{format_label(l)} = {self._flat(x)}" for l, x in fields)
                return "record { " + body + " }"
            case Variant(label, inner, _):
                if isinstance(inner, Null) and format_label(label) == label.name:
                    return f"variant {{ {label.name} }}"
                return f"variant {{ {format_label(label)} = {self._flat(inner)} }}"
            case Principal(pid):
                return f'principal "{pid}"'
            case Service(pid):
                return f'service "{pid}"'
            case Func(pid, method):
                return f'func "{pid}".{method}'
        return repr(v)

    def _opt_operand(self, inner, text: str) -> str:
        # "opt" binds tighter than ":"
        if isinstance(inner, (Integral, Float)):
            return f"({text})"
        return text

    def _float(self, f: float) -> str:
        if math.isnan(f):
            return "nan"
        if math.isinf(f):
            return "inf" if f > 0 else "-inf"
        s = repr(f)
        if "." not in s and "e" not in s:
            s += ".0"
        return s

    # --- multi-line rendering ---
    def _pformat_opt(self, v, level):
        return "opt " + self._opt_operand(v.value, self.pformat(v.value, level))

    def _block(self, head, lines, level):
        pad = self._indent_char * (level + 1)
        body = "".join(f"{pad}{line};\n" for line in lines)
        return f"{head} {{\n{body}{self._indent_char * level}}}"

    def _pformat_vec(self, v, level):
        return self._block("vec", [self.pformat(x, level + 1) for x in v.items], level)

    def _pformat_record(self, v, level):
        if v.is_tuple():
            lines = [self.pformat(x, level + 1) for _, x in v.fields]
        else:
            lines = [f"{format_label(l)} = {self.pformat(x, level + 1)}" for l, x in v.fields]
        return self._block("record", lines, level)

    def _pformat_variant(self, v, level):
        if isinstance(v.value, Null):
            return self._flat(v)
        return f"variant {{ {format_label(v.label)} = {self.pformat(v.value, level)} }}"

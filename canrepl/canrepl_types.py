"""
Candid types, field labels and type environments.

Types are immutable and hashable. Recursive and named types are expressed with
``TVar`` and resolved through a ``TypeEnv``.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union

from canrepl.canrepl_errors import EvalError


def idl_hash(name: str) -> int:
    h = 0
    for b in name.encode("utf-8"):
        h = (h * 223 + b) & 0xFFFFFFFF
    return h


class Label:
    """A record/variant field label. Equality and ordering use the numeric id only."""
    __slots__ = ("name", "id")

    def __init__(self, name: Optional[str] = None, id: Optional[int] = None):
        if id is None:
            if name is None:
                raise ValueError("label needs a name or an id")
            id = idl_hash(name)
        self.name = name
        self.id = id

    @classmethod
    def of(cls, key: Union[str, int, 'Label']) -> 'Label':
        if isinstance(key, Label):
            return key
        if isinstance(key, int):
            return cls(id=key)
        return cls(name=key)

    def matches(self, key: Union[str, int, 'Label']) -> bool:
        return self == Label.of(key)

    def __eq__(self, other):
        return isinstance(other, Label) and other.id == self.id

    def __lt__(self, other):
        return self.id < other.id

    def __hash__(self):
        return hash(self.id)

    def __str__(self):
        return self.name if self.name is not None else str(self.id)

    def __repr__(self):
        return f"Label({self})"


# =================================================================
# Types
# =================================================================

class Type:
    pass


@dataclass(frozen=True)
class Prim(Type):
    name: str

    def __str__(self):
        return self.name


@dataclass(frozen=True)
class TVar(Type):
    name: str

    def __str__(self):
        return self.name


@dataclass(frozen=True)
class TOpt(Type):
    inner: Type

    def __str__(self):
        return f"opt {self.inner}"


@dataclass(frozen=True)
class TVec(Type):
    inner: Type

    def __str__(self):
        if self.inner == NAT8:
            return "blob"
        return f"vec {self.inner}"


def _sorted_fields(fields) -> tuple:
    fs = tuple(sorted(fields, key=lambda f: f[0].id))
    for a, b in zip(fs, fs[1:]):
        if a[0] == b[0]:
            raise EvalError(f"duplicate field {b[0]} in type")
    return fs


@dataclass(frozen=True)
class TRecord(Type):
    fields: Tuple[Tuple[Label, Type], ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "fields", _sorted_fields(self.fields))

    def is_tuple(self) -> bool:
        return all(lbl.name is None and lbl.id == i for i, (lbl, _) in enumerate(self.fields))

    def __str__(self):
        if self.fields and self.is_tuple():
            body = "; ".join(str(t) for _, t in self.fields)
        else:
            body = "; ".join(f"{format_label(l)} : {t}" for l, t in self.fields)
        return f"record {{ {body} }}" if body else "record {}"


@dataclass(frozen=True)
class TVariant(Type):
    fields: Tuple[Tuple[Label, Type], ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "fields", _sorted_fields(self.fields))

    def __str__(self):
        parts = []
        for l, t in self.fields:
            parts.append(format_label(l) if t == NULL else f"{format_label(l)} : {t}")
        body = "; ".join(parts)
        return f"variant {{ {body} }}" if body else "variant {}"


@dataclass(frozen=True)
class TFunc(Type):
    args: Tuple[Type, ...] = ()
    rets: Tuple[Type, ...] = ()
    modes: Tuple[str, ...] = ()

    def is_query(self) -> bool:
        return "query" in self.modes or "composite_query" in self.modes

    def signature(self) -> str:
        args = ", ".join(str(a) for a in self.args)
        rets = ", ".join(str(r) for r in self.rets)
        modes = "".join(f" {m}" for m in self.modes)
        return f"({args}) -> ({rets}){modes}"

    def __str__(self):
        return f"func {self.signature()}"


@dataclass(frozen=True)
class TService(Type):
    methods: Tuple[Tuple[str, Type], ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "methods", tuple(sorted(self.methods, key=lambda m: m[0])))

    def __str__(self):
        body = "; ".join(f"{format_name(n)} : {t.signature() if isinstance(t, TFunc) else t}"
                         for n, t in self.methods)
        return f"service {{ {body} }}" if body else "service {}"


PRIMITIVES = (
    "null", "bool", "nat", "int", "nat8", "nat16", "nat32", "nat64",
    "int8", "int16", "int32", "int64", "float32", "float64", "text",
    "reserved", "empty", "principal",
)
_PRIM = {name: Prim(name) for name in PRIMITIVES}
NULL = _PRIM["null"]
BOOL = _PRIM["bool"]
NAT = _PRIM["nat"]
INT = _PRIM["int"]
NAT8 = _PRIM["nat8"]
NAT64 = _PRIM["nat64"]
INT8 = _PRIM["int8"]
INT32 = _PRIM["int32"]
INT64 = _PRIM["int64"]
FLOAT64 = _PRIM["float64"]
TEXT = _PRIM["text"]
RESERVED = _PRIM["reserved"]
EMPTY = _PRIM["empty"]
PRINCIPAL = _PRIM["principal"]
BLOB = TVec(NAT8)

# (min, max) for every bounded integer type
INT_RANGES = {
    "nat8": (0, 2 ** 8 - 1),
    "nat16": (0, 2 ** 16 - 1),
    "nat32": (0, 2 ** 32 - 1),
    "nat64": (0, 2 ** 64 - 1),
    "int8": (-2 ** 7, 2 ** 7 - 1),
    "int16": (-2 ** 15, 2 ** 15 - 1),
    "int32": (-2 ** 31, 2 ** 31 - 1),
    "int64": (-2 ** 63, 2 ** 63 - 1),
}
INTEGRAL = ("nat", "int") + tuple(INT_RANGES)
FLOATS = ("float32", "float64")


def prim(name: str) -> Optional[Prim]:
    return _PRIM.get(name)


def tuple_type(types) -> TRecord:
    return TRecord(tuple((Label(id=i), t) for i, t in enumerate(types)))


_KEYWORDS = {
    "null", "true", "false", "opt", "vec", "record", "variant", "func",
    "service", "principal", "blob", "type", "import", "let", "assert",
    "identity", "config", "export", "load", "function", "if", "else",
    "while", "call", "encode", "decode", "as", "fail",
}


def format_name(name: str) -> str:
    if re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name) and name not in _KEYWORDS:
        return name
    from canrepl.canrepl_printer import quote_text
    return quote_text(name)


def format_label(label: Label) -> str:
    return format_name(label.name) if label.name is not None else str(label.id)


# =================================================================
# Type environment
# =================================================================

@dataclass
class TypeEnv:
    types: Dict[str, Type] = field(default_factory=dict)

    def resolve(self, t: Type) -> Type:
        seen = set()
        while isinstance(t, TVar):
            if t.name in seen:
                raise EvalError(f"type {t.name} is not well-founded")
            seen.add(t.name)
            if t.name not in self.types:
                raise EvalError(f"unbound type identifier {t.name}")
            t = self.types[t.name]
        return t

    def as_func(self, t: Type) -> TFunc:
        t = self.resolve(t)
        if not isinstance(t, TFunc):
            raise EvalError(f"{t} is not a function type")
        return t

    def as_service(self, t: Type) -> TService:
        t = self.resolve(t)
        if not isinstance(t, TService):
            raise EvalError(f"{t} is not a service type")
        return t

    def merge(self, other: 'TypeEnv') -> 'TypeEnv':
        merged = dict(self.types)
        merged.update(other.types)
        return TypeEnv(merged)

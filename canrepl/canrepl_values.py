"""
The closed set of values a script can hold, plus equality, type inference and
``cast_type``.

Every consumer (selector engine, cast, codec, printer) matches on these
classes; adding a variant means touching each of them.
"""
import math
import struct
from dataclasses import dataclass
from typing import ClassVar, Tuple, Optional

from canrepl.canrepl_errors import CastError, EvalError
from canrepl.canrepl_principal import PrincipalId
from canrepl.canrepl_types import (
    Label, Type, Prim, TOpt, TVec, TRecord, TVariant, TFunc, TService, TVar, TypeEnv,
    NULL, BOOL, NAT, INT, NAT8, TEXT, RESERVED, EMPTY, PRINCIPAL, INT_RANGES, INTEGRAL, FLOATS,
    prim,
)


class Value:
    pass


@dataclass(frozen=True)
class Bool(Value):
    value: bool


@dataclass(frozen=True)
class Null(Value):
    pass


@dataclass(frozen=True)
class Reserved(Value):
    pass


@dataclass(frozen=True)
class NoneVal(Value):
    """The empty option (``null`` at an ``opt`` type)."""
    pass


@dataclass(frozen=True)
class Text(Value):
    value: str


@dataclass(frozen=True)
class Number(Value):
    """An integer literal that has not been given a width yet."""
    value: str

    def __int__(self):
        return int(self.value)


@dataclass(frozen=True)
class Integral(Value):
    value: int
    kind: ClassVar[str] = "int"

    def __post_init__(self):
        bounds = INT_RANGES.get(self.kind)
        if bounds is not None:
            lo, hi = bounds
            if not lo <= self.value <= hi:
                raise CastError(f"{self.value} is out of range for {self.kind}")
        elif self.kind == "nat" and self.value < 0:
            raise CastError(f"{self.value} is out of range for nat")

    def __int__(self):
        return self.value


class Nat(Integral):
    kind = "nat"


class Nat8(Integral):
    kind = "nat8"


class Nat16(Integral):
    kind = "nat16"


class Nat32(Integral):
    kind = "nat32"


class Nat64(Integral):
    kind = "nat64"


class Int(Integral):
    kind = "int"


class Int8(Integral):
    kind = "int8"


class Int16(Integral):
    kind = "int16"


class Int32(Integral):
    kind = "int32"


class Int64(Integral):
    kind = "int64"


INTEGRAL_CLASSES = {cls.kind: cls for cls in (
    Nat, Nat8, Nat16, Nat32, Nat64, Int, Int8, Int16, Int32, Int64)}


@dataclass(frozen=True)
class Float(Value):
    value: float
    kind: ClassVar[str] = "float64"

    def __post_init__(self):
        pass


class Float32(Float):
    kind = "float32"

    def __post_init__(self):
        # store the value as it survives a 32-bit round trip
        object.__setattr__(self, "value", struct.unpack("<f", struct.pack("<f", self.value))[0])


class Float64(Float):
    kind = "float64"


FLOAT_CLASSES = {"float32": Float32, "float64": Float64}


@dataclass(frozen=True)
class Opt(Value):
    value: Value


@dataclass(frozen=True)
class Vec(Value):
    items: Tuple[Value, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "items", tuple(self.items))


@dataclass(frozen=True)
class Blob(Value):
    data: bytes = b""

    def __post_init__(self):
        object.__setattr__(self, "data", bytes(self.data))


@dataclass(frozen=True)
class Record(Value):
    fields: Tuple[Tuple[Label, Value], ...] = ()

    def __post_init__(self):
        fs = tuple(sorted(((Label.of(l), v) for l, v in self.fields), key=lambda f: f[0].id))
        for a, b in zip(fs, fs[1:]):
            if a[0] == b[0]:
                raise EvalError(f"duplicate field {b[0]} in record")
        object.__setattr__(self, "fields", fs)

    def get(self, key) -> Optional[Value]:
        lbl = Label.of(key)
        for l, v in self.fields:
            if l == lbl:
                return v
        return None

    def is_tuple(self) -> bool:
        return all(l.name is None and l.id == i for i, (l, _) in enumerate(self.fields))


@dataclass(frozen=True)
class Variant(Value):
    label: Label
    value: Value
    index: int = 0


@dataclass(frozen=True)
class Principal(Value):
    id: PrincipalId


@dataclass(frozen=True)
class Service(Value):
    id: PrincipalId


@dataclass(frozen=True)
class Func(Value):
    id: PrincipalId
    method: str


NULL_VALUE = Null()
NONE = NoneVal()
RESERVED_VALUE = Reserved()


def tuple_value(values) -> Record:
    return Record(tuple((Label(id=i), v) for i, v in enumerate(values)))


def args_to_value(values) -> Value:
    """A call result: nothing is null, one value is itself, several form a tuple."""
    values = list(values)
    if not values:
        return NULL_VALUE
    if len(values) == 1:
        return values[0]
    return tuple_value(values)


def is_numeric(v: Value) -> bool:
    return isinstance(v, (Number, Integral, Float))


def blob_bytes(v: Value) -> Optional[bytes]:
    """Bytes of a Blob or of a vec whose items are all nat8; None otherwise."""
    match v:
        case Blob(data):
            return data
        case Vec(items) if all(isinstance(i, Nat8) for i in items):
            return bytes(i.value for i in items)
    return None


# =================================================================
# Type inference
# =================================================================

def value_type(v: Value) -> Type:
    match v:
        case Null():
            return NULL
        case Reserved():
            return RESERVED
        case NoneVal():
            return TOpt(EMPTY)
        case Bool():
            return BOOL
        case Text():
            return TEXT
        case Number(text):
            return INT if int(text) < 0 else NAT
        case Integral() | Float():
            return prim(v.kind)
        case Opt(inner):
            return TOpt(value_type(inner))
        case Blob():
            return TVec(NAT8)
        case Vec(items):
            return TVec(value_type(items[0]) if items else EMPTY)
        case Record(fields):
            return TRecord(tuple((l, value_type(x)) for l, x in fields))
        case Variant(label, inner, _):
            return TVariant(((label, value_type(inner)),))
        case Principal():
            return PRINCIPAL
        case Service():
            return TService()
        case Func():
            return TFunc()
    raise EvalError(f"unknown value {v!r}")


# =================================================================
# Equality
# =================================================================

def values_equal(a: Value, b: Value) -> bool:
    """Structural equality; an untyped Number equals any integer of the same magnitude."""
    match (a, b):
        case (Number() | Integral(), Number() | Integral()):
            if isinstance(a, Integral) and isinstance(b, Integral):
                return type(a) is type(b) and a.value == b.value
            return int(a) == int(b)
        case (Opt(x), Opt(y)):
            return values_equal(x, y)
        case (Blob(), Vec()) | (Vec(), Blob()) | (Blob(), Blob()):
            ab, bb = blob_bytes(a), blob_bytes(b)
            return ab is not None and ab == bb
        case (Vec(xs), Vec(ys)):
            return len(xs) == len(ys) and all(values_equal(x, y) for x, y in zip(xs, ys))
        case (Record(fs), Record(gs)):
            return len(fs) == len(gs) and all(
                l1 == l2 and values_equal(x, y) for (l1, x), (l2, y) in zip(fs, gs))
        case (Variant(l1, x, _), Variant(l2, y, _)):
            return l1 == l2 and values_equal(x, y)
    return a == b


# =================================================================
# Casting
# =================================================================

def _numeric_cast(v: Value, kind: str) -> Value:
    if kind in FLOATS:
        try:
            f = float(v.value)
        except (TypeError, ValueError):
            raise CastError(f"cannot cast {v.value} to {kind}")
        return FLOAT_CLASSES[kind](f)
    match v:
        case Float(f):
            if math.isnan(f) or math.isinf(f):
                raise CastError(f"cannot cast {f} to {kind}")
            n = math.trunc(f)
        case _:
            n = int(v)
    return INTEGRAL_CLASSES[kind](n)


def _not_castable(v: Value, t: Type):
    from canrepl.canrepl_printer import Printer
    return CastError(f"{Printer().pformat(v)} cannot be cast to type {t}")


def cast_type(v: Value, t: Type, env: Optional[TypeEnv] = None) -> Value:
    env = env or TypeEnv()
    t = env.resolve(t)
    match (v, t):
        case (_, Prim("reserved")):
            return RESERVED_VALUE
        case (Null() | Reserved() | NoneVal(), TOpt()):
            return NONE
        case (Opt(inner), TOpt(ti)):
            return Opt(cast_type(inner, ti, env))
        case (Text(s), TVec(ti)) if env.resolve(ti) == NAT8:
            return Blob(s.encode("utf-8"))
        case (Blob() | Vec(), Prim("text")):
            data = blob_bytes(v)
            if data is None:
                raise _not_castable(v, t)
            try:
                return Text(data.decode("utf-8"))
            except UnicodeDecodeError:
                raise CastError("blob is not valid UTF-8 text")
        case (Blob(data), TVec(ti)):
            if env.resolve(ti) == NAT8:
                return v
            return Vec(tuple(cast_type(Nat8(b), ti, env) for b in data))
        case (Vec(items), TVec(ti)):
            casted = tuple(cast_type(x, ti, env) for x in items)
            if env.resolve(ti) == NAT8:
                return Blob(bytes(x.value for x in casted))
            return Vec(casted)
        case (Principal(pid) | Service(pid) | Func(pid, _), Prim("principal")):
            return Principal(pid)
        case (Principal(pid) | Service(pid) | Func(pid, _), TService()):
            return Service(pid)
        case (Func(), TFunc()):
            return v
        case (Number() | Integral() | Float(), Prim(kind)) if kind in INTEGRAL or kind in FLOATS:
            return _numeric_cast(v, kind)
        case (Bool(), Prim("bool")) | (Text(), Prim("text")) | (Null(), Prim("null")):
            return v
        case (_, TRecord() | TVariant()):
            raise CastError(f"casting to {t} is not supported")
    raise _not_castable(v, t)

"""
Binary Candid (``DIDL``) encoding and decoding, driven by types.

Encoding checks each value against the declared argument type, filling absent
optional record fields with ``null``. Decoding always reads the self-describing
type table first; when the caller knows the expected types the decoded values
are then aligned to them, which restores field names and drops extra fields.
"""
import struct
from typing import List, Optional, Sequence

from canrepl.canrepl_errors import EvalError, CastError
from canrepl.canrepl_principal import PrincipalId
from canrepl.canrepl_types import (
    Label, Type, Prim, TVar, TOpt, TVec, TRecord, TVariant, TFunc, TService, TypeEnv,
    INT_RANGES, NAT8, NULL, RESERVED,
)
from canrepl.canrepl_values import (
    Value, Bool, Null, Reserved, NoneVal, Text, Number, Integral, Float, Opt, Vec, Blob,
    Record, Variant, Principal, Service, Func, INTEGRAL_CLASSES, FLOAT_CLASSES,
    NULL_VALUE, NONE, RESERVED_VALUE, value_type,
)

MAGIC = b"DIDL"

PRIM_CODES = {
    "null": -1, "bool": -2, "nat": -3, "int": -4,
    "nat8": -5, "nat16": -6, "nat32": -7, "nat64": -8,
    "int8": -9, "int16": -10, "int32": -11, "int64": -12,
    "float32": -13, "float64": -14, "text": -15, "reserved": -16,
    "empty": -17, "principal": -24,
}
CODE_PRIMS = {code: Prim(name) for name, code in PRIM_CODES.items()}
OPT, VEC, RECORD, VARIANT, FUNC, SERVICE = -18, -19, -20, -21, -22, -23

FUNC_MODES = {"query": 1, "oneway": 2, "composite_query": 3}
MODE_NAMES = {v: k for k, v in FUNC_MODES.items()}

_FIXED = {
    "nat8": "<B", "nat16": "<H", "nat32": "<I", "nat64": "<Q",
    "int8": "<b", "int16": "<h", "int32": "<i", "int64": "<q",
    "float32": "<f", "float64": "<d",
}


def leb128(n: int) -> bytes:
    if n < 0:
        raise EvalError(f"cannot LEB128-encode negative number {n}")
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        if n:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def sleb128(n: int) -> bytes:
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        if (n == 0 and not byte & 0x40) or (n == -1 and byte & 0x40):
            out.append(byte)
            return bytes(out)
        out.append(byte | 0x80)


# =================================================================
# Encoding
# =================================================================

class _TypeTable:
    def __init__(self, env: TypeEnv):
        self.env = env
        self.entries: List[Optional[bytes]] = []
        self._index = {}

    def ref(self, t: Type) -> int:
        if isinstance(t, TVar):
            key = ("var", t.name)
            if key in self._index:
                return self._index[key]
            resolved = self.env.resolve(t)
            if isinstance(resolved, Prim):
                return PRIM_CODES[resolved.name]
            return self._alloc(key, resolved)
        if isinstance(t, Prim):
            return PRIM_CODES[t.name]
        if t in self._index:
            return self._index[t]
        return self._alloc(t, t)

    def _alloc(self, key, t: Type) -> int:
        idx = len(self.entries)
        self.entries.append(None)
        self._index[key] = idx
        self.entries[idx] = self._entry(t)
        return idx

    def _entry(self, t: Type) -> bytes:
        match t:
            case TOpt(inner):
                return sleb128(OPT) + sleb128(self.ref(inner))
            case TVec(inner):
                return sleb128(VEC) + sleb128(self.ref(inner))
            case TRecord(fields) | TVariant(fields):
                out = bytearray(sleb128(RECORD if isinstance(t, TRecord) else VARIANT))
                out += leb128(len(fields))
                for label, ft in fields:
                    out += leb128(label.id) + sleb128(self.ref(ft))
                return bytes(out)
            case TFunc(args, rets, modes):
                out = bytearray(sleb128(FUNC))
                out += leb128(len(args)) + b"".join(sleb128(self.ref(a)) for a in args)
                out += leb128(len(rets)) + b"".join(sleb128(self.ref(r)) for r in rets)
                out += leb128(len(modes)) + bytes(FUNC_MODES[m] for m in modes)
                return bytes(out)
            case TService(methods):
                out = bytearray(sleb128(SERVICE)) + leb128(len(methods))
                for name, mt in methods:
                    raw = name.encode("utf-8")
                    out += leb128(len(raw)) + raw + sleb128(self.ref(mt))
                return bytes(out)
        raise EvalError(f"cannot encode type {t}")


def _type_error(v: Value, t: Type) -> CastError:
    from canrepl.canrepl_printer import Printer
    return CastError(f"type mismatch: {Printer().pformat(v)} cannot be encoded as {t}")


def _write_principal(out: bytearray, pid: PrincipalId):
    out += b"\x01" + leb128(len(pid.raw)) + pid.raw


def _write_value(out: bytearray, v: Value, t: Type, env: TypeEnv):
    t = env.resolve(t)
    match t:
        case Prim("reserved"):
            return
        case Prim("null"):
            if not isinstance(v, (Null, NoneVal, Reserved)):
                raise _type_error(v, t)
        case Prim("bool"):
            if not isinstance(v, Bool):
                raise _type_error(v, t)
            out.append(1 if v.value else 0)
        case Prim("nat") | Prim("int"):
            if not isinstance(v, (Number, Integral)):
                raise _type_error(v, t)
            n = int(v)
            if t.name == "nat":
                if n < 0:
                    raise CastError(f"{n} is out of range for nat")
                out += leb128(n)
            else:
                out += sleb128(n)
        case Prim(kind) if kind in INT_RANGES:
            if not isinstance(v, (Number, Integral)):
                raise _type_error(v, t)
            n = int(v)
            lo, hi = INT_RANGES[kind]
            if not lo <= n <= hi:
                raise CastError(f"{n} is out of range for {kind}")
            out += struct.pack(_FIXED[kind], n)
        case Prim("float32") | Prim("float64"):
            if not isinstance(v, (Float, Number)):
                raise _type_error(v, t)
            out += struct.pack(_FIXED[t.name], float(v.value))
        case Prim("text"):
            if not isinstance(v, Text):
                raise _type_error(v, t)
            raw = v.value.encode("utf-8")
            out += leb128(len(raw)) + raw
        case Prim("principal"):
            if not isinstance(v, Principal):
                raise _type_error(v, t)
            _write_principal(out, v.id)
        case TOpt(inner):
            match v:
                case NoneVal() | Null() | Reserved():
                    out.append(0)
                case Opt(x):
                    out.append(1)
                    _write_value(out, x, inner, env)
                case _:
                    raise _type_error(v, t)
        case TVec(inner):
            match v:
                case Blob(data):
                    out += leb128(len(data))
                    if env.resolve(inner) == NAT8:
                        out += data
                    else:
                        for b in data:
                            _write_value(out, INTEGRAL_CLASSES["nat8"](b), inner, env)
                case Vec(items):
                    out += leb128(len(items))
                    for x in items:
                        _write_value(out, x, inner, env)
                case _:
                    raise _type_error(v, t)
        case TRecord(fields):
            if not isinstance(v, Record):
                raise _type_error(v, t)
            expected = {label for label, _ in fields}
            for label, _ in v.fields:
                if label not in expected:
                    raise CastError(f"unexpected field {label} for {t}")
            for label, ft in fields:
                fv = v.get(label)
                if fv is None:
                    rt = env.resolve(ft)
                    if isinstance(rt, TOpt) or rt in (NULL, RESERVED):
                        fv = NONE if isinstance(rt, TOpt) else NULL_VALUE
                    else:
                        raise CastError(f"record is missing field {label} of type {ft}")
                _write_value(out, fv, ft, env)
        case TVariant(fields):
            if not isinstance(v, Variant):
                raise _type_error(v, t)
            for idx, (label, ft) in enumerate(fields):
                if label == v.label:
                    out += leb128(idx)
                    _write_value(out, v.value, ft, env)
                    return
            raise CastError(f"variant label {v.label} is not in {t}")
        case TFunc():
            if not isinstance(v, Func):
                raise _type_error(v, t)
            out.append(1)
            _write_principal(out, v.id)
            raw = v.method.encode("utf-8")
            out += leb128(len(raw)) + raw
        case TService():
            if not isinstance(v, (Service, Principal)):
                raise _type_error(v, t)
            _write_principal(out, v.id)
        case _:
            raise _type_error(v, t)


def encode_args(values: Sequence[Value], types: Optional[Sequence[Type]] = None,
                env: Optional[TypeEnv] = None) -> bytes:
    """Encode a Candid argument list. Without types, each value's inferred type is used."""
    env = env or TypeEnv()
    values = list(values)
    if types is None:
        types = [value_type(v) for v in values]
    types = list(types)
    if len(types) != len(values):
        raise CastError(f"expected {len(types)} argument(s), got {len(values)}")
    table = _TypeTable(env)
    refs = [table.ref(t) for t in types]
    body = bytearray()
    for v, t in zip(values, types):
        _write_value(body, v, t, env)
    out = bytearray(MAGIC)
    out += leb128(len(table.entries))
    for entry in table.entries:
        out += entry
    out += leb128(len(refs)) + b"".join(sleb128(r) for r in refs)
    return bytes(out + body)


# =================================================================
# Decoding
# =================================================================

class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def take(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise EvalError("malformed candid: unexpected end of input")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def byte(self) -> int:
        return self.take(1)[0]

    def leb(self) -> int:
        result = shift = 0
        while True:
            b = self.byte()
            result |= (b & 0x7F) << shift
            shift += 7
            if not b & 0x80:
                return result

    def sleb(self) -> int:
        result = shift = 0
        while True:
            b = self.byte()
            result |= (b & 0x7F) << shift
            shift += 7
            if not b & 0x80:
                if b & 0x40:
                    result -= 1 << shift
                return result

    def text(self) -> str:
        raw = self.take(self.leb())
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            raise EvalError("malformed candid: text is not valid UTF-8")


def _table_name(idx: int) -> str:
    return f"table{idx}"


def _read_type_table(r: _Reader) -> tuple[TypeEnv, List[Type]]:
    raw_entries = []
    for _ in range(r.leb()):
        code = r.sleb()
        match code:
            case -18 | -19:
                raw_entries.append((code, r.sleb()))
            case -20 | -21:
                fields = [(r.leb(), r.sleb()) for _ in range(r.leb())]
                raw_entries.append((code, fields))
            case -22:
                args = [r.sleb() for _ in range(r.leb())]
                rets = [r.sleb() for _ in range(r.leb())]
                modes = [r.byte() for _ in range(r.leb())]
                raw_entries.append((code, (args, rets, modes)))
            case -23:
                methods = []
                for _ in range(r.leb()):
                    name = r.text()
                    methods.append((name, r.sleb()))
                raw_entries.append((code, methods))
            case _:
                raise EvalError(f"malformed candid: unknown type constructor {code}")

    def as_type(ref: int) -> Type:
        if ref >= 0:
            if ref >= len(raw_entries):
                raise EvalError(f"malformed candid: type index {ref} out of range")
            return TVar(_table_name(ref))
        if ref not in CODE_PRIMS:
            raise EvalError(f"malformed candid: unknown type code {ref}")
        return CODE_PRIMS[ref]

    env = TypeEnv()
    for idx, (code, payload) in enumerate(raw_entries):
        match code:
            case -18:
                t = TOpt(as_type(payload))
            case -19:
                t = TVec(as_type(payload))
            case -20:
                t = TRecord(tuple((Label(id=i), as_type(ft)) for i, ft in payload))
            case -21:
                t = TVariant(tuple((Label(id=i), as_type(ft)) for i, ft in payload))
            case -22:
                args, rets, modes = payload
                t = TFunc(tuple(map(as_type, args)), tuple(map(as_type, rets)),
                          tuple(MODE_NAMES.get(m, "query") for m in modes))
            case _:
                t = TService(tuple((n, as_type(mt)) for n, mt in payload))
        env.types[_table_name(idx)] = t
    arg_types = [as_type(r.sleb()) for _ in range(r.leb())]
    return env, arg_types


def _read_principal(r: _Reader) -> PrincipalId:
    if r.byte() != 1:
        raise EvalError("malformed candid: opaque reference")
    return PrincipalId(r.take(r.leb()))


def _read_value(r: _Reader, t: Type, env: TypeEnv) -> Value:
    t = env.resolve(t)
    match t:
        case Prim("null"):
            return NULL_VALUE
        case Prim("reserved"):
            return RESERVED_VALUE
        case Prim("empty"):
            raise EvalError("malformed candid: value of type empty")
        case Prim("bool"):
            b = r.byte()
            if b > 1:
                raise EvalError("malformed candid: invalid bool")
            return Bool(b == 1)
        case Prim("nat"):
            return INTEGRAL_CLASSES["nat"](r.leb())
        case Prim("int"):
            return INTEGRAL_CLASSES["int"](r.sleb())
        case Prim(kind) if kind in _FIXED:
            fmt = _FIXED[kind]
            (n,) = struct.unpack(fmt, r.take(struct.calcsize(fmt)))
            if kind in FLOAT_CLASSES:
                return FLOAT_CLASSES[kind](n)
            return INTEGRAL_CLASSES[kind](n)
        case Prim("text"):
            return Text(r.text())
        case Prim("principal"):
            return Principal(_read_principal(r))
        case TOpt(inner):
            flag = r.byte()
            if flag == 0:
                return NONE
            return Opt(_read_value(r, inner, env))
        case TVec(inner):
            n = r.leb()
            if env.resolve(inner) == NAT8:
                return Blob(r.take(n))
            return Vec(tuple(_read_value(r, inner, env) for _ in range(n)))
        case TRecord(fields):
            return Record(tuple((label, _read_value(r, ft, env)) for label, ft in fields))
        case TVariant(fields):
            idx = r.leb()
            if idx >= len(fields):
                raise EvalError(f"malformed candid: variant index {idx} out of range")
            label, ft = fields[idx]
            return Variant(label, _read_value(r, ft, env), idx)
        case TFunc():
            if r.byte() != 1:
                raise EvalError("malformed candid: opaque function reference")
            pid = _read_principal(r)
            return Func(pid, r.text())
        case TService():
            return Service(_read_principal(r))
    raise EvalError(f"cannot decode type {t}")


def _align(v: Value, t: Type, env: TypeEnv) -> Value:
    """Re-shape a wire value to the expected type: names labels, drops unknown fields."""
    t = env.resolve(t)
    match (v, t):
        case (_, Prim("reserved")):
            return RESERVED_VALUE
        case (Opt(x), TOpt(inner)):
            return Opt(_align(x, inner, env))
        case (Null() | Reserved(), TOpt()):
            return NONE
        case (Vec(items), TVec(inner)):
            return Vec(tuple(_align(x, inner, env) for x in items))
        case (Record(fs), TRecord(expected)):
            out = []
            for label, ft in expected:
                fv = v.get(label)
                if fv is None:
                    rt = env.resolve(ft)
                    if isinstance(rt, TOpt):
                        fv = NONE
                    elif rt in (NULL, RESERVED):
                        fv = NULL_VALUE
                    else:
                        raise EvalError(f"decoded record is missing field {label}")
                out.append((label, _align(fv, ft, env)))
            return Record(tuple(out))
        case (Variant(label, x, _), TVariant(expected)):
            for idx, (el, ft) in enumerate(expected):
                if el == label:
                    return Variant(el, _align(x, ft, env), idx)
            raise EvalError(f"decoded variant label {label} is not in {t}")
    return v


def decode_args(data: bytes, types: Optional[Sequence[Type]] = None,
                env: Optional[TypeEnv] = None) -> List[Value]:
    r = _Reader(bytes(data))
    if r.take(4) != MAGIC:
        raise EvalError("malformed candid: missing DIDL magic")
    wire_env, wire_types = _read_type_table(r)
    values = [_read_value(r, t, wire_env) for t in wire_types]
    if r.pos != len(r.data):
        raise EvalError("malformed candid: trailing bytes after arguments")
    if types is None:
        return values
    env = env or TypeEnv()
    types = list(types)
    out = []
    for i, t in enumerate(types):
        if i < len(values):
            out.append(_align(values[i], t, env))
        else:
            rt = env.resolve(t)
            if isinstance(rt, TOpt) or rt in (NULL, RESERVED):
                out.append(NONE if isinstance(rt, TOpt) else NULL_VALUE)
            else:
                raise EvalError(f"expected {len(types)} result value(s), got {len(values)}")
    return out

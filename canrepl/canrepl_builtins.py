"""
Builtin functions callable from scripts as ``name(args)``.

Every ``_name`` method of ``StdLib`` becomes the builtin ``name``. Arguments
arrive evaluated, except for methods marked ``@special_form`` which receive
the unevaluated expressions. A keyword-only ``env`` parameter asks for the
calling environment.
"""
import gzip
import hashlib
import inspect
import operator
import zlib
from typing import Dict, Callable

from canrepl.canrepl_errors import EvalError, ReplError
from canrepl.canrepl_principal import PrincipalId
from canrepl.canrepl_profiling import flamegraph
from canrepl.canrepl_values import (
    Bool, Text, Number, Integral, Float, Float64, Int, Int64, Nat8, Vec, Blob, Record, Principal, Service,
    blob_bytes, values_equal,
)

GOVERNANCE_CANISTER = "rrkah-fqaaa-aaaaa-aaaaq-cai"


def special_form(func):
    """Marks a builtin that receives its arguments unevaluated."""
    func._special_form = True
    return func


def account_id(owner: PrincipalId, subaccount: bytes = bytes(32)) -> bytes:
    digest = hashlib.sha224(b"\x0aaccount-id" + owner.raw + subaccount).digest()
    return zlib.crc32(digest).to_bytes(4, "big") + digest


def _principal_of(v, name: str) -> PrincipalId:
    match v:
        case Principal(pid) | Service(pid):
            return pid
        case Text(s):
            try:
                return PrincipalId.from_text(s)
            except ValueError:
                pass
    raise EvalError(f"{name} expects a principal")


def _text_of(v, name: str) -> str:
    if not isinstance(v, Text):
        raise EvalError(f"{name} expects text")
    return v.value


def _bool_of(v, name: str) -> bool:
    if not isinstance(v, Bool):
        raise EvalError(f"{name} expects a boolean")
    return v.value


def _number(v, name: str):
    match v:
        case Number() | Integral():
            return int(v)
        case Float(f):
            return f
    from canrepl.canrepl_printer import Printer
    raise EvalError(f"{name} expects numbers, got {Printer().pformat(v)}")


def _numeric_result(n):
    return Float64(float(n)) if isinstance(n, float) else Int(n)


def _arith(name: str, op, a, b):
    try:
        return _numeric_result(op(_number(a, name), _number(b, name)))
    except OverflowError as e:
        raise EvalError(f"{name}: {e}") from e


def _stringify(v) -> str:
    match v:
        case Text(s):
            return s
        case Number() | Integral():
            return str(int(v))
        case Float(f):
            return repr(f)
        case Bool(b):
            return "true" if b else "false"
        case Principal(pid):
            return str(pid)
    from canrepl.canrepl_printer import Printer
    raise EvalError(f"Cannot stringify {Printer().pformat(v)}")


class StdLib:
    """Python implementations of the script builtins."""

    def __init__(self, evaluator):
        self.evaluator = evaluator

    def bindings(self) -> Dict[str, Callable]:
        return {
            name[1:]: member
            for name, member in inspect.getmembers(self)
            if name.startswith('_') and not name.startswith('__') and callable(member)
        }

    # --- Ledger ---
    def _account(self, principal):
        return Blob(account_id(_principal_of(principal, "account")))

    def _neuron_account(self, principal, nonce):
        owner = _principal_of(principal, "neuron_account")
        if not isinstance(nonce, (Number, Integral)) or int(nonce) < 0:
            raise EvalError("neuron_account expects a nat64 nonce")
        sub = hashlib.sha256(b"\x0cneuron-stake" + owner.raw + int(nonce).to_bytes(8, "big")).digest()
        return Blob(account_id(PrincipalId.from_text(GOVERNANCE_CANISTER), sub))

    # --- Files ---
    def _file(self, path, *, env):
        full = env.resolve_path(_text_of(path, "file"))
        try:
            return Blob(full.read_bytes())
        except OSError as e:
            raise EvalError(f"Cannot read {full}: {e}") from e

    def _gzip(self, blob):
        data = blob_bytes(blob)
        if data is None:
            raise EvalError("gzip expects a blob")
        return Blob(gzip.compress(data, mtime=0))

    def _output(self, path, text, *, env):
        full = env.resolve_path(_text_of(path, "output"))
        content = _text_of(text, "output")
        try:
            with open(full, "a", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            raise EvalError(f"Cannot write {full}: {e}") from e
        return text

    # --- Profiling ---
    def _wasm_profiling(self, path, *names, env):
        if len(names) > 1:
            raise EvalError("wasm_profiling expects a path and an optional vec of function names")
        full = env.resolve_path(_text_of(path, "wasm_profiling"))
        try:
            wasm = full.read_bytes()
        except OSError as e:
            raise EvalError(f"Cannot read {full}: {e}") from e
        selected = None
        if names:
            if not isinstance(names[0], Vec):
                raise EvalError("wasm_profiling expects a vec of function names")
            selected = [_text_of(n, "wasm_profiling") for n in names[0].items]
        return Blob(env.session.instrumenter(wasm, selected))

    async def _flamegraph(self, canister, title, path, *, env):
        session = env.session
        if session.offline or session.agent is None:
            raise EvalError("flamegraph needs a connected replica")
        canister_id = _principal_of(canister, "flamegraph")
        info = await session.directory.get(canister_id)
        target = env.resolve_path(_text_of(path, "flamegraph"))
        cost = await flamegraph(session.agent, canister_id, info.profiling or {}, target, session.warn)
        session.emit('stdout', f"Flamegraph of {_text_of(title, 'flamegraph')} written to {target}")
        return Int64(cost)

    # --- Text and collections ---
    def _stringify(self, *values):
        return Text("".join(_stringify(v) for v in values))

    def _concat(self, a, b):
        match (a, b):
            case (Text(x), Text(y)):
                return Text(x + y)
            case (Blob() | Vec(), Blob() | Vec()) if isinstance(a, Blob) or isinstance(b, Blob):
                left, right = blob_bytes(a), blob_bytes(b)
                if left is not None and right is not None:
                    return Blob(left + right)
                return Vec(tuple(_items(a) + _items(b)))
            case (Vec(xs), Vec(ys)):
                return Vec(xs + ys)
            case (Record(fs), Record(gs)):
                return Record(fs + gs)
        raise EvalError("concat expects two values of the same kind: text, blob, vec or record")

    # --- Arithmetic ---
    def _add(self, a, b):
        return _arith("add", operator.add, a, b)

    def _sub(self, a, b):
        return _arith("sub", operator.sub, a, b)

    def _mul(self, a, b):
        return _arith("mul", operator.mul, a, b)

    def _div(self, a, b):
        x, y = _number(a, "div"), _number(b, "div")
        if y == 0:
            raise EvalError("division by zero")
        if isinstance(x, float) or isinstance(y, float):
            try:
                return Float64(x / y)
            except OverflowError as e:
                raise EvalError(f"div: {e}") from e
        # truncate toward zero
        q = abs(x) // abs(y)
        return Int(q if (x >= 0) == (y >= 0) else -q)

    # --- Comparison and logic ---
    def _eq(self, a, b):
        return Bool(values_equal(a, b))

    def _neq(self, a, b):
        return Bool(not values_equal(a, b))

    def _lt(self, a, b): return Bool(_number(a, "lt") < _number(b, "lt"))
    def _lte(self, a, b): return Bool(_number(a, "lte") <= _number(b, "lte"))
    def _gt(self, a, b): return Bool(_number(a, "gt") > _number(b, "gt"))
    def _gte(self, a, b): return Bool(_number(a, "gte") >= _number(b, "gte"))

    def _not(self, x):
        return Bool(not _bool_of(x, "not"))

    def _and(self, a, b):
        return Bool(_bool_of(a, "and") and _bool_of(b, "and"))

    def _or(self, a, b):
        return Bool(_bool_of(a, "or") or _bool_of(b, "or"))

    @special_form
    async def _exist(self, exp, *, env):
        try:
            await self.evaluator.eval_exp(exp, env)
        except ReplError:
            return Bool(False)
        return Bool(True)

    @special_form
    async def _ite(self, cond, then, else_, *, env):
        if _bool_of(await self.evaluator.eval_exp(cond, env), "ite"):
            return await self.evaluator.eval_exp(then, env)
        return await self.evaluator.eval_exp(else_, env)


def _items(v) -> list:
    match v:
        case Blob(data):
            return [Nat8(b) for b in data]
        case Vec(items):
            return list(items)
    return []

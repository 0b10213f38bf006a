"""
The selector engine: applies ``.field``, ``[i]``, ``?``, ``.size()`` and the
higher-order ``.map(f)``, ``.filter(f)`` and ``.fold(init, f)`` steps to a value.

Callbacks run in a spawned child environment. The element is bound to the
empty name and the accumulator of a fold to ``_``, then ``f`` is applied to
those paths, so builtins and user functions are called the same way.
"""
from typing import List

from canrepl.canrepl_errors import ReplError, SelectorError, FieldNotFound
from canrepl.canrepl_datatypes import Index, Field, Option, Size, Map, Filter, Fold, Apply, Path
from canrepl.canrepl_types import Label
from canrepl.canrepl_values import (
    Bool, Text, Number, Integral, Opt, NoneVal, Vec, Blob, Record, Variant, Nat, Nat8,
)


def _describe(v) -> str:
    from canrepl.canrepl_printer import Printer
    return Printer(width=60).pformat(v)


def _selector_name(sel) -> str:
    match sel:
        case Index():
            return "[...]"
        case Field(label):
            return f".{label}"
        case Option():
            return "?"
        case Size():
            return ".size()"
        case Map(f):
            return f".map({f})"
        case Filter(f):
            return f".filter({f})"
        case Fold(_, f):
            return f".fold(..., {f})"
    return repr(sel)


def _mismatch(sel, v) -> SelectorError:
    return SelectorError(f"selector {_selector_name(sel)} cannot be applied to {_describe(v)}")


def _as_index(v) -> int:
    if isinstance(v, (Number, Integral)):
        return int(v)
    raise SelectorError(f"index must be a number, got {_describe(v)}")


def _as_label(v) -> Label:
    match v:
        case Number() | Integral():
            return Label(id=int(v))
        case Text(s):
            return Label.of(s)
    raise SelectorError(f"field label must be a number or text, got {_describe(v)}")


def _field(v, label: Label, sel):
    match v:
        case Record():
            found = v.get(label)
            if found is None:
                raise FieldNotFound(label, _describe(v))
            return found
        case Variant(active, inner, _):
            if active != label:
                raise FieldNotFound(label, _describe(v))
            return inner
    raise _mismatch(sel, v)


# --- element views -------------------------------------------------------

def _elements(v, sel) -> List:
    match v:
        case Vec(items):
            return list(items)
        case Blob(data):
            return [Nat8(b) for b in data]
        case Record(fields):
            return [Record(((Label(id=0), Text(str(l))), (Label(id=1), x))) for l, x in fields]
        case Text(s):
            return [Text(ch) for ch in s]
    raise _mismatch(sel, v)


def _rebuild(original, items: List):
    match original:
        case Blob():
            if all(isinstance(x, Nat8) for x in items):
                return Blob(bytes(x.value for x in items))
            return Vec(tuple(items))
        case Vec():
            return Vec(tuple(items))
        case Record():
            return Record(tuple(_pair_field(x) for x in items))
        case Text():
            out = []
            for x in items:
                if not isinstance(x, Text):
                    raise SelectorError(f"expected function to return text, got {_describe(x)}")
                out.append(x.value)
            return Text("".join(out))
    raise _mismatch(Map(""), original)


def _pair_field(v):
    match v:
        case Record(fields) if len(fields) == 2:
            key = v.get(0)
            if isinstance(key, Text) and v.get(1) is not None:
                label = Label(id=int(key.value)) if key.value.isdigit() else Label(name=key.value)
                return (label, v.get(1))
    raise SelectorError(f"expected function to return record {{ key; value }}, got {_describe(v)}")


# --- engine --------------------------------------------------------------

async def project(evaluator, env, value, selectors):
    result = value
    for sel in selectors:
        match (result, sel):
            case (Opt(inner), Option()):
                result = inner
            case (NoneVal(), Option()):
                raise SelectorError("cannot unwrap ? on null")
            case (Vec(items), Index(exp)):
                i = _as_index(await evaluator.eval_exp(exp, env))
                if not 0 <= i < len(items):
                    raise SelectorError(f"index {i} out of bound {len(items)}")
                result = items[i]
            case (Blob(data), Index(exp)):
                i = _as_index(await evaluator.eval_exp(exp, env))
                if not 0 <= i < len(data):
                    raise SelectorError(f"index {i} out of bound {len(data)}")
                result = Nat8(data[i])
            case (Text(s), Index(exp)):
                i = _as_index(await evaluator.eval_exp(exp, env))
                if not 0 <= i < len(s):
                    raise SelectorError(f"index {i} out of bound {len(s)}")
                result = Text(s[i])
            case (Record() | Variant(), Index(exp)):
                result = _field(result, _as_label(await evaluator.eval_exp(exp, env)), sel)
            case (_, Field(label)):
                result = _field(result, Label.of(label), sel)
            case (Vec(items), Size()):
                result = Nat(len(items))
            case (Blob(data), Size()):
                result = Nat(len(data))
            case (Record(fields), Size()):
                result = Nat(len(fields))
            case (Text(s), Size()):
                result = Nat(len(s))
            case (_, Map(func)):
                result = _rebuild(result, await _map(evaluator, env, _elements(result, sel), func))
            case (_, Filter(func)):
                result = _rebuild(result, await _filter(evaluator, env, _elements(result, sel), func))
            case (_, Fold(init, func)):
                items = _elements(result, sel)
                start = await evaluator.eval_exp(init, env)
                result = await _fold(evaluator, env, start, items, func)
            case _:
                raise _mismatch(sel, result)
    return result


async def _map(evaluator, env, items, func: str) -> List:
    child = env.spawn()
    out = []
    for v in items:
        child.bind("", v)
        out.append(await evaluator.eval_exp(Apply(func, [Path("")]), child))
    return out


async def _filter(evaluator, env, items, func: str) -> List:
    child = env.spawn()
    out = []
    for v in items:
        child.bind("", v)
        try:
            keep = await evaluator.eval_exp(Apply(func, [Path("")]), child)
        except ReplError as e:
            evaluator._dbg("FILTER excluded on error", e)
            continue
        if keep != Bool(False):
            out.append(v)
    return out


async def _fold(evaluator, env, acc, items, func: str):
    child = env.spawn()
    for v in items:
        child.bind("", v)
        child.bind("_", acc)
        acc = await evaluator.eval_exp(Apply(func, [Path("_"), Path("")]), child)
    return acc

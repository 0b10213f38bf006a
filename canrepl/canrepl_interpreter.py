"""
The canrepl expression evaluator.

``Evaluator.eval_exp`` turns an ``Exp`` into a value. Builtins come from
``StdLib``; user functions are run by the command interpreter in a spawned
environment. Network work is delegated to ``canrepl_invoke``.
"""
import inspect
import os
import sys

from canrepl.canrepl_builtins import StdLib
from canrepl.canrepl_candid import encode_args, decode_args
from canrepl.canrepl_datatypes import (
    Exp, Path, Literal, OptExp, VecExp, RecordExp, VariantExp, AnnVal, Apply, Call, Decode, Fail,
)
from canrepl.canrepl_errors import EvalError, ArityMismatch, ReplError
from canrepl.canrepl_invoke import (
    resolve_canister, method_info, encode_call, call_method, proxy_call,
)
from canrepl.canrepl_selector import project
from canrepl.canrepl_types import Label
from canrepl.canrepl_values import (
    Opt, Vec, Record, Variant, Blob, Text, NULL_VALUE, args_to_value, blob_bytes, cast_type,
)


def _expected_arity(sig: inspect.Signature):
    params = [p for p in sig.parameters.values() if p.kind != p.KEYWORD_ONLY]
    required = sum(1 for p in params
                   if p.kind == p.POSITIONAL_OR_KEYWORD and p.default is p.empty)
    if any(p.kind == p.VAR_POSITIONAL for p in params):
        return f"at least {required}"
    total = sum(1 for p in params if p.kind == p.POSITIONAL_OR_KEYWORD)
    return required if total == required else f"{required} to {total}"


class Evaluator:
    """Evaluates expressions against an Environment; all state lives on the session."""

    def __init__(self, session):
        self.session = session
        self.builtins = StdLib(self).bindings()
        # set by the CommandInterpreter that owns this evaluator
        self.commands = None

    @property
    def side_effects(self):
        return self.session.side_effects

    def _dbg(self, *parts):
        if os.environ.get("CANREPL_DEBUG"):
            try:
                print("[DBG]", *parts, file=sys.stderr)
            except OSError:
                pass

    async def eval_exp(self, exp: Exp, env):
        match exp:
            case Literal(value):
                return value
            case Path(name, selectors):
                value = env.lookup(name)
                return await project(self, env, value, selectors) if selectors else value
            case OptExp(inner):
                return Opt(await self.eval_exp(inner, env))
            case VecExp(items):
                return Vec(tuple([await self.eval_exp(x, env) for x in items]))
            case RecordExp(fields):
                return await self._record(fields, env)
            case VariantExp(label, inner):
                return Variant(Label.of(label), await self.eval_exp(inner, env))
            case AnnVal(inner, typ):
                return cast_type(await self.eval_exp(inner, env), typ)
            case Fail(inner):
                try:
                    await self.eval_exp(inner, env)
                except ReplError as e:
                    return Text(str(e))
                raise EvalError("expected failure, but the expression succeeded")
            case Apply(name, args):
                return await self.apply(name, args, env)
            case Call():
                return await self._call(exp, env)
            case Decode():
                return await self._decode(exp, env)
        raise EvalError(f"cannot evaluate {exp!r}")

    async def _record(self, fields, env):
        out = []
        next_id = 0
        for label, exp in fields:
            lbl = Label(id=next_id) if label is None else Label.of(label)
            next_id = lbl.id + 1
            out.append((lbl, await self.eval_exp(exp, env)))
        return Record(tuple(out))

    # --- application ---
    async def apply(self, name: str, arg_exps, env):
        builtin = self.builtins.get(name)
        if builtin is not None:
            if getattr(builtin, "_special_form", False):
                args = list(arg_exps)
            else:
                args = [await self.eval_exp(a, env) for a in arg_exps]
            return await self.call_builtin(name, builtin, args, env)
        if name in env.funcs:
            args = [await self.eval_exp(a, env) for a in arg_exps]
            return await self.call_function(name, args, env)
        raise EvalError(f"Unknown function {name}")

    async def call_builtin(self, name: str, func, args, env):
        sig = inspect.signature(func)
        kwargs = {"env": env} if "env" in sig.parameters else {}
        try:
            sig.bind(*args, **kwargs)
        except TypeError:
            raise ArityMismatch(name, _expected_arity(sig), len(args)) from None
        self._dbg("BUILTIN", name, len(args))
        result = func(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def call_function(self, name: str, args, env):
        params, body = env.funcs[name]
        if len(params) != len(args):
            raise ArityMismatch(name, len(params), len(args))
        child = env.spawn()
        # the result is the body's own "_", not the caller's
        child.vars.pop("_", None)
        for param, value in zip(params, args):
            child.bind(param, value)
        self._dbg("CALL", name, params)
        await self.commands.run_block(body, child)
        return child.vars.get("_", NULL_VALUE)

    # --- canister calls ---
    async def _call(self, exp: Call, env):
        values = [await self.eval_exp(a, env) for a in exp.args]
        if exp.method is None:
            return Blob(encode_args(values))
        canister_id = resolve_canister(env, exp.method.canister)
        info, func = await method_info(self.session, canister_id, exp.method.name)
        arg = encode_call(values, info, func)
        match exp.mode:
            case "encode":
                return Blob(arg)
            case "proxy":
                return await proxy_call(self, env, exp.wallet, exp.method, arg)
        self._dbg("INVOKE", canister_id, exp.method.name, len(arg), "bytes")
        return await call_method(self.session, canister_id, exp.method.name, arg, info, func)

    async def _decode(self, exp: Decode, env):
        blob = await self.eval_exp(exp.blob, env)
        data = blob_bytes(blob)
        if data is None:
            raise EvalError("decode expects a blob")
        if exp.method is None:
            return args_to_value(decode_args(data))
        canister_id = resolve_canister(env, exp.method.canister)
        info, func = await method_info(self.session, canister_id, exp.method.name)
        if func is None:
            return args_to_value(decode_args(data))
        return args_to_value(decode_args(data, func.rets, info.env))

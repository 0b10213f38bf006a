"""
The invocation protocol: signature lookup, argument encoding, routing,
query vs. update dispatch, offline signing and the proxy forwarder.
"""
from typing import Optional, Tuple

from canrepl.canrepl_agent import wait_for_reply
from canrepl.canrepl_candid import encode_args, decode_args
from canrepl.canrepl_datatypes import Call, Decode, Method, Path, Field, Literal, RecordExp
from canrepl.canrepl_did import CanisterInfo
from canrepl.canrepl_errors import EvalError, NetworkError, RejectError, ReplError
from canrepl.canrepl_offline import sign_call, message_json
from canrepl.canrepl_principal import PrincipalId
from canrepl.canrepl_profiling import ok_to_profile, get_cycles, with_cost, may_extract_profiling
from canrepl.canrepl_types import TFunc
from canrepl.canrepl_values import (
    Principal, Service, Record, Text, Number, Blob, NULL_VALUE, args_to_value,
)

# management methods that an ingress message may not call
_INTER_CANISTER_ONLY = ("create_canister", "raw_rand")
_ROUTED_TO_MANAGEMENT = ("provisional_create_canister_with_cycles",)


def resolve_canister(env, name: str) -> PrincipalId:
    """A principal literal, or a variable holding a principal or service."""
    try:
        return PrincipalId.from_text(name)
    except ValueError:
        pass
    match env.vars.get(name):
        case Principal(pid) | Service(pid):
            return pid
    raise EvalError(f"{name} is not a canister id")


def get_effective_canister_id(canister_id: PrincipalId, method: str, arg: bytes) -> PrincipalId:
    if not canister_id.is_management():
        return canister_id
    if method in _INTER_CANISTER_ONLY:
        raise EvalError(f"{method} can only be called via inter-canister call.")
    if method in _ROUTED_TO_MANAGEMENT:
        return canister_id
    try:
        values = decode_args(arg)
    except ReplError as e:
        raise EvalError(f"cannot decode the arguments of {method}: {e}") from e
    record = values[0] if values else None
    target = record.get("canister_id") if isinstance(record, Record) else None
    if not isinstance(target, Principal):
        raise EvalError(f"{method} needs a canister_id field to route the call")
    return target.id


async def method_info(session, canister_id: PrincipalId, method: str
                      ) -> Tuple[CanisterInfo, Optional[TFunc]]:
    info = await session.directory.get(canister_id)
    func = info.signature(method)
    if func is None:
        session.warn(f"cannot find method {method} in {canister_id}, arguments are encoded by value")
    return info, func


def encode_call(values, info: CanisterInfo, func: Optional[TFunc]) -> bytes:
    if func is None:
        return encode_args(values)
    if len(values) > len(func.args):
        raise EvalError(f"too many arguments: {func.signature()} takes {len(func.args)}")
    return encode_args(values, func.args, info.env)


def decode_reply(reply: Optional[bytes], info: CanisterInfo, func: Optional[TFunc]):
    if reply is None:
        return NULL_VALUE
    if func is None:
        return args_to_value(decode_args(reply))
    return args_to_value(decode_args(reply, func.rets, info.env))


async def send(session, canister_id: PrincipalId, method: str, arg: bytes,
               is_query: bool) -> Optional[bytes]:
    """
    Sends one call and returns the raw reply. In offline mode the call is
    signed, logged and printed instead, and None is returned.
    """
    effective = get_effective_canister_id(canister_id, method, arg)
    if session.offline:
        message = sign_call(session.identity, canister_id, method, arg, effective, is_query)
        session.messages.append(message)
        session.emit('stdout', message_json(message))
        return None
    agent = session.agent
    if agent is None:
        raise NetworkError("no replica agent is configured", canister_id, method)
    try:
        if is_query:
            return await agent.query(canister_id, method, arg, effective)
        rid = await agent.submit(canister_id, method, arg, effective)
    except RejectError as e:
        if e.canister is not None:
            raise
        raise RejectError(e.code, e.reject_message, canister_id, method) from e
    except NetworkError as e:
        if e.canister is not None:
            raise
        raise type(e)(str(e), canister_id, method) from e
    return await wait_for_reply(lambda: agent.request_status(effective, rid),
                                session.poll, canister_id, method)


async def call_method(session, canister_id: PrincipalId, method: str, arg: bytes,
                      info: CanisterInfo, func: Optional[TFunc]):
    is_query = func is not None and func.is_query()
    if not ok_to_profile(session, info, func):
        return decode_reply(await send(session, canister_id, method, arg, is_query), info, func)
    before = await get_cycles(session.agent, canister_id)
    reply = await send(session, canister_id, method, arg, is_query)
    after = await get_cycles(session.agent, canister_id)
    return with_cost(decode_reply(reply, info, func), after - before)


async def proxy_call(evaluator, env, wallet: str, method: Method, arg: bytes):
    """
    Relays ``method`` through ``wallet.wallet_call`` and unwraps the
    ``Ok.return`` blob with the target method's return types.
    """
    canister_id = resolve_canister(env, method.canister)
    wallet_id = resolve_canister(env, wallet)
    child = env.spawn()
    child.bind("_msg", Blob(arg))
    forward = Call(Method(str(wallet_id), "wallet_call"), [RecordExp([
        ("args", Path("_msg")),
        ("cycles", Literal(Number("0"))),
        ("method_name", Literal(Text(method.name))),
        ("canister", Literal(Principal(canister_id))),
    ])])
    unwrap = Decode(Method(str(canister_id), method.name), Path("_", [Field("Ok"), Field("return")]))
    result, _ = may_extract_profiling(await evaluator.eval_exp(forward, child))
    child.bind("_", result)
    child.bind("_", await evaluator.eval_exp(unwrap, child))
    return child.vars.get("_", NULL_VALUE)

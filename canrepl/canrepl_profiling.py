"""
Cost sampling for canisters instrumented for profiling.

Such canisters expose ``__get_cycles`` (instruction counter) and
``__get_profiling`` (paged trace of function entries and exits). A call to a
profiled canister is wrapped as ``record { result; record { __cost = n } }``;
``let`` splits the cost off into a ``__cost_<name>`` binding.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from canrepl.canrepl_candid import encode_args, decode_args
from canrepl.canrepl_errors import EvalError
from canrepl.canrepl_types import INT32, INT64, TOpt, TVec, tuple_type
from canrepl.canrepl_values import Int32, Int64, Record, Vec, Opt, tuple_value

COST_FIELD = "__cost"
_TRACE_PAGE = (TVec(tuple_type([INT32, INT64])), TOpt(INT32))


def ok_to_profile(session, info, func) -> bool:
    return (not session.offline
            and info.has_profiling()
            and not (func is not None and func.is_query()))


def with_cost(value, cost: int) -> Record:
    return tuple_value([value, Record(((COST_FIELD, Int64(cost)),))])


def may_extract_profiling(value) -> Tuple[object, Optional[int]]:
    """Splits ``record { v; record { __cost = n } }`` into (v, n); other values pass through."""
    match value:
        case Record(fields) if len(fields) == 2 and value.is_tuple():
            inner = fields[1][1]
            if isinstance(inner, Record) and len(inner.fields) == 1:
                label, cost = inner.fields[0]
                if label.name == COST_FIELD and isinstance(cost, Int64):
                    return fields[0][1], cost.value
    return value, None


async def get_cycles(agent, canister_id) -> int:
    reply = await agent.query(canister_id, "__get_cycles", encode_args([]), canister_id)
    return decode_args(reply, [INT64])[0].value


async def get_profiling(agent, canister_id) -> Tuple[List[Tuple[int, int]], int]:
    """Reads every page of the trace; returns (pairs, pages)."""
    idx = 0
    pairs: List[Tuple[int, int]] = []
    pages = 1
    while True:
        reply = await agent.query(canister_id, "__get_profiling", encode_args([Int32(idx)]), canister_id)
        trace, next_idx = decode_args(reply, list(_TRACE_PAGE))
        if isinstance(trace, Vec):
            pairs.extend((int(r.get(0)), int(r.get(1))) for r in trace.items)
        if isinstance(next_idx, Opt):
            idx = int(next_idx.value)
            pages += 1
        else:
            break
    return pairs, pages


@dataclass
class FoldedTrace:
    lines: List[str]
    cost: Optional[int]             # None when the trace is incomplete
    start_cost: Optional[int] = None


def render_profiling(pairs: List[Tuple[int, int]], names: Dict[int, str]) -> FoldedTrace:
    """
    Turns a trace of (function id, counter) pairs into folded stack lines.
    A positive id enters a function, the negated id leaves it.
    """
    stack: List[List[int]] = []
    prefix: List[str] = []
    result: List[str] = []
    total = 0
    prev = None
    start_cost = pairs[0][1] if pairs else None
    for fid, count in pairs:
        if fid >= 0:
            stack.append([fid, count, 0])
            prefix.append(names.get(fid, f"func_{fid}"))
            continue
        if not stack:
            raise EvalError("profiling trace pops an empty stack")
        start_id, start, children = stack.pop()
        if start_id != -fid:
            raise EvalError("profiling trace function id mismatch")
        cost = count - start
        frame = ";".join(prefix)
        prefix.pop()
        if stack:
            stack[-1][2] += cost
        else:
            total += cost
        if prev == frame:
            # keep adjacent calls of the same function apart
            result.append(f"{';'.join(prefix)};spacer 0")
        result.append(f"{frame} {cost - children}")
        prev = frame
    if stack:
        result.append("incomplete_trace 10000")
        trace = FoldedTrace(result, None, start_cost)
    else:
        trace = FoldedTrace(result, total)
    trace.lines.reverse()
    return trace


async def flamegraph(agent, canister_id, names: Dict[int, str], path: Path,
                     warn: Callable[[str], None]) -> int:
    """Writes the folded trace of the last call to ``path``; returns its instruction cost."""
    pairs, pages = await get_profiling(agent, canister_id)
    if pages > 1:
        warn(f"large trace: {pages * 2}MB")
    if not pairs:
        warn("empty trace")
        return 0
    trace = render_profiling(pairs, names)
    path.write_text("\n".join(trace.lines) + "\n", encoding="utf-8")
    if trace.cost is not None:
        return trace.cost
    warn("a trap occurred or the trace is too large")
    end = await get_cycles(agent, canister_id)
    return end - trace.start_cost

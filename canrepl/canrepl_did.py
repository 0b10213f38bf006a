"""
Compiles Candid interface text (``.did``) into a CanisterInfo: the type
environment, the method signature table and the optional init arguments.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from canrepl.canrepl_errors import EvalError, InterfaceError, ParseError
from canrepl.canrepl_types import Type, TFunc, TypeEnv


@dataclass
class CanisterInfo:
    env: TypeEnv = field(default_factory=TypeEnv)
    methods: Dict[str, TFunc] = field(default_factory=dict)
    init: Optional[Tuple[Type, ...]] = None
    # function index -> name, read from the canister's "name" metadata section
    profiling: Optional[Dict[int, str]] = None

    def signature(self, method: str) -> Optional[TFunc]:
        return self.methods.get(method)

    def has_profiling(self) -> bool:
        return "__get_cycles" in self.methods


def compile_did(source: str, base_dir: Optional[str] = None, _seen=None) -> CanisterInfo:
    from canrepl.canrepl_parser import ReplParser
    try:
        items = ReplParser().parse_did(source)
    except ParseError as e:
        raise InterfaceError(f"invalid candid interface: {e}") from e

    seen = set() if _seen is None else _seen
    env = TypeEnv()
    actor = None
    init = None
    for item in items:
        match item:
            case ("type", name, t):
                env.types[name] = t
            case ("import", path):
                if base_dir is None:
                    raise InterfaceError(f"cannot resolve import {path!r} without a base directory")
                full = (Path(base_dir) / path).resolve()
                if full in seen:
                    continue
                seen.add(full)
                try:
                    text = full.read_text(encoding="utf-8")
                except OSError as e:
                    raise InterfaceError(f"cannot read imported interface {full}: {e}") from e
                imported = compile_did(text, str(full.parent), seen)
                env = imported.env.merge(env)
            case ("actor", args, body):
                init, actor = args, body

    info = CanisterInfo(env=env, init=init)
    if actor is not None:
        try:
            service = env.as_service(actor)
            for name, t in service.methods:
                info.methods[name] = env.as_func(t)
        except EvalError as e:
            raise InterfaceError(f"invalid service definition: {e}") from e
    return info

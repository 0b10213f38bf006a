"""
Interpreter state.

A ``Session`` holds what every environment of a REPL run shares: the agent,
the canister directory, the identity table, the offline flag and message log,
and the output side effects. An ``Environment`` owns its variables and user
functions and points at the session; ``spawn`` gives a child with copies of
both the variable and the function tables.
"""
import itertools
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from canrepl.canrepl_errors import EvalError, UndefinedVariable
from canrepl.canrepl_identity import Identity, AnonymousIdentity, no_hsm_loader
from canrepl.canrepl_random import RandomConfig

REPLICAS = {
    "local": "http://127.0.0.1:4943",
    "ic": "https://icp-api.io",
}


def replica_url(name: Optional[str]) -> str:
    name = name or "local"
    return REPLICAS.get(name, name).rstrip("/")


@dataclass
class PollPolicy:
    """Backoff for update-call status polling, bounded by an overall deadline."""
    initial: float = 1.0
    factor: float = 1.1
    max_delay: float = 10.0
    timeout: float = 300.0

    def delays(self) -> Iterator[float]:
        delay = self.initial
        while True:
            yield delay
            delay = min(delay * self.factor, self.max_delay)


class OutputNames:
    """Hands out numbered file names (``msg1.json``, ``msg2.json``...) per stem."""

    def __init__(self):
        self._counters: Dict[str, Iterator[int]] = {}

    def next(self, stem: str, suffix: str = "") -> str:
        counter = self._counters.setdefault(stem, itertools.count(1))
        return f"{stem}{next(counter)}{suffix}"


def no_instrumenter(wasm: bytes, names: Optional[List[str]] = None) -> bytes:
    raise EvalError("wasm instrumentation is not available in this session")


class Session:
    """State shared by reference between an environment and all its spawned children."""

    def __init__(self, agent=None, *, replica: Optional[str] = None, offline: bool = False,
                 poll: Optional[PollPolicy] = None, hsm_loader: Callable = no_hsm_loader,
                 instrumenter: Callable = no_instrumenter,
                 pin_prompt: Optional[Callable[[str], str]] = None):
        from canrepl.canrepl_directory import CanisterDirectory
        self.agent = agent
        self.offline = offline
        self.replica_url = replica_url("ic" if offline and replica is None else replica)
        self.poll = poll or PollPolicy()
        self.hsm_loader = hsm_loader
        self.instrumenter = instrumenter
        self.pin_prompt = pin_prompt
        self.identities: Dict[str, Identity] = {"anon": AnonymousIdentity()}
        self.current_identity = "anon"
        self.output_names = OutputNames()
        self.messages: list = []
        self.side_effects: List[Dict[str, Any]] = []
        self.directory = CanisterDirectory(self)

    @property
    def identity(self) -> Identity:
        return self.identities[self.current_identity]

    def use_identity(self, name: str, identity: Identity):
        self.identities[name] = identity
        self.current_identity = name
        if self.agent is not None:
            self.agent.identity = identity

    def emit(self, topic: str, message: str):
        self.side_effects.append({'topics': [topic], 'message': message})

    def warn(self, message: str):
        self.emit('stderr', f"Warning: {message}")


class Environment:
    def __init__(self, session: Session, base_path: Optional[str] = None,
                 config: Optional[RandomConfig] = None):
        self.session = session
        self.vars: Dict[str, Any] = {}
        self.funcs: Dict[str, Tuple[List[str], list]] = {}
        self.base_path = Path(base_path or os.getcwd())
        self.config = config or RandomConfig()

    def spawn(self) -> 'Environment':
        child = Environment(self.session, str(self.base_path), self.config)
        child.vars = dict(self.vars)
        child.funcs = dict(self.funcs)
        return child

    def lookup(self, name: str):
        try:
            return self.vars[name]
        except KeyError:
            raise UndefinedVariable(name) from None

    def bind(self, name: str, value):
        self.vars[name] = value

    def resolve_path(self, path: str) -> Path:
        p = Path(os.path.expanduser(path))
        return p if p.is_absolute() else self.base_path / p

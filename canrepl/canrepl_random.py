"""
Random value generation from Candid types, used to suggest call arguments.
The generator is tuned by a RandomConfig installed with the ``config`` command.
"""
import random
import string
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple

from canrepl.canrepl_errors import ConfigError, EvalError
from canrepl.canrepl_principal import PrincipalId
from canrepl.canrepl_types import (
    Prim, TOpt, TVec, TRecord, TVariant, TFunc, TService, TypeEnv, INT_RANGES, NAT8,
)
from canrepl.canrepl_values import (
    Bool, Text, Opt, Vec, Blob, Record, Variant, Principal, Service, Func,
    NULL_VALUE, NONE, RESERVED_VALUE, INTEGRAL_CLASSES, FLOAT_CLASSES,
)

TEXT_KINDS = ("ascii", "name", "alphanumeric", "emoji")
_NAMES = ("alice", "bob", "carol", "dave", "erin", "frank", "grace", "heidi")
_EMOJI = "😀😁😂🤣😃😄😅😆😉😊"


@dataclass
class RandomConfig:
    depth: int = 5
    size: int = 10
    range: Optional[Tuple[int, int]] = None
    text: str = "ascii"
    seed: Optional[int] = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Any) -> 'RandomConfig':
        if not isinstance(data, Mapping):
            raise ConfigError("config must be a table of settings")
        cfg = cls()
        for key, val in data.items():
            match key:
                case "depth" | "size" | "seed":
                    if not isinstance(val, int) or isinstance(val, bool) or val < 0:
                        raise ConfigError(f"config {key} must be a non-negative integer")
                    setattr(cfg, key, val)
                case "range":
                    if (not isinstance(val, (list, tuple)) or len(val) != 2
                            or not all(isinstance(x, int) for x in val) or val[0] > val[1]):
                        raise ConfigError("config range must be [low, high]")
                    cfg.range = (val[0], val[1])
                case "text":
                    if val not in TEXT_KINDS:
                        raise ConfigError(f"config text must be one of {', '.join(TEXT_KINDS)}")
                    cfg.text = val
                case _:
                    cfg.extra[key] = val
        return cfg

    def rng(self) -> random.Random:
        return random.Random(self.seed)


class RandomGenerator:
    def __init__(self, config: RandomConfig, env: TypeEnv):
        self.config = config
        self.env = env
        self.rng = config.rng()

    def _int(self, lo: Optional[int], hi: Optional[int]) -> int:
        if self.config.range is not None:
            rlo, rhi = self.config.range
            lo = rlo if lo is None else max(lo, rlo)
            hi = rhi if hi is None else min(hi, rhi)
        lo = -1000 if lo is None else lo
        hi = 1000 if hi is None else hi
        if lo > hi:
            lo = hi
        return self.rng.randint(lo, hi)

    def _text(self) -> str:
        n = self.rng.randint(0, self.config.size)
        match self.config.text:
            case "name":
                return self.rng.choice(_NAMES)
            case "alphanumeric":
                return "".join(self.rng.choice(string.ascii_letters + string.digits) for _ in range(n))
            case "emoji":
                return "".join(self.rng.choice(_EMOJI) for _ in range(n))
        return "".join(self.rng.choice(string.ascii_letters + string.digits + " ") for _ in range(n))

    def value(self, t, depth: Optional[int] = None):
        depth = self.config.depth if depth is None else depth
        t = self.env.resolve(t)
        match t:
            case Prim("null"):
                return NULL_VALUE
            case Prim("reserved"):
                return RESERVED_VALUE
            case Prim("empty"):
                raise EvalError("cannot generate a value of type empty")
            case Prim("bool"):
                return Bool(self.rng.random() < 0.5)
            case Prim("nat"):
                return INTEGRAL_CLASSES["nat"](self._int(0, None))
            case Prim("int"):
                return INTEGRAL_CLASSES["int"](self._int(None, None))
            case Prim(kind) if kind in INT_RANGES:
                lo, hi = INT_RANGES[kind]
                return INTEGRAL_CLASSES[kind](self._int(lo, hi))
            case Prim(kind) if kind in FLOAT_CLASSES:
                return FLOAT_CLASSES[kind](float(self._int(None, None)) + self.rng.random())
            case Prim("text"):
                return Text(self._text())
            case Prim("principal"):
                return Principal(PrincipalId.from_canister_index(self.rng.randint(0, 2 ** 20)))
            case TOpt(inner):
                if depth <= 0 or self.rng.random() < 0.5:
                    return NONE
                return Opt(self.value(inner, depth - 1))
            case TVec(inner):
                n = 0 if depth <= 0 else self.rng.randint(0, self.config.size)
                if self.env.resolve(inner) == NAT8:
                    return Blob(bytes(self.rng.randint(0, 255) for _ in range(n)))
                return Vec(tuple(self.value(inner, depth - 1) for _ in range(n)))
            case TRecord(fields):
                return Record(tuple((l, self.value(ft, depth - 1)) for l, ft in fields))
            case TVariant(fields):
                if not fields:
                    raise EvalError("cannot generate a value of an empty variant")
                choices = list(enumerate(fields))
                if depth <= 0:
                    leaves = [c for c in choices if isinstance(self.env.resolve(c[1][1]), Prim)]
                    choices = leaves or choices
                idx, (label, ft) = self.rng.choice(choices)
                return Variant(label, self.value(ft, depth - 1), idx)
            case TFunc():
                return Func(PrincipalId.management(), "method")
            case TService():
                return Service(PrincipalId.management())
        raise EvalError(f"cannot generate a value of type {t}")


def random_args(types, env: TypeEnv, config: RandomConfig) -> list:
    gen = RandomGenerator(config, env)
    return [gen.value(t) for t in types]

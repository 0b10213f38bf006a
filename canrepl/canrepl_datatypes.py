"""
Defines the AST for canrepl scripts.

Expressions (``Exp``) evaluate to values, commands (``Command``) are executed
for effect against an Environment, and selectors project into values.
"""
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Union


# =================================================================
# Selectors
# =================================================================

class Selector:
    pass


@dataclass
class Index(Selector):
    exp: 'Exp'


@dataclass
class Field(Selector):
    # str for a named label, int for a numeric id
    label: Union[str, int]


@dataclass
class Option(Selector):
    pass


@dataclass
class Size(Selector):
    pass


@dataclass
class Map(Selector):
    func: str


@dataclass
class Filter(Selector):
    func: str


@dataclass
class Fold(Selector):
    init: 'Exp'
    func: str


# =================================================================
# Expressions
# =================================================================

class Exp:
    pass


@dataclass
class Method:
    """``canister.method``; canister is a variable name or principal text."""
    canister: str
    name: str

    def __str__(self):
        return f"{self.canister}.{self.name}"


@dataclass
class Path(Exp):
    name: str
    selectors: List[Selector] = field(default_factory=list)


@dataclass
class Literal(Exp):
    value: Any


@dataclass
class OptExp(Exp):
    exp: Exp


@dataclass
class VecExp(Exp):
    items: List[Exp]


@dataclass
class RecordExp(Exp):
    # label is None for positional fields
    fields: List[Tuple[Optional[Union[str, int]], Exp]]


@dataclass
class VariantExp(Exp):
    label: Union[str, int]
    exp: Exp


@dataclass
class AnnVal(Exp):
    exp: Exp
    typ: Any


@dataclass
class Apply(Exp):
    name: str
    args: List[Exp]


@dataclass
class Call(Exp):
    method: Optional[Method]
    args: List[Exp]
    mode: str = "call"          # 'call' | 'encode' | 'proxy'
    wallet: Optional[str] = None


@dataclass
class Decode(Exp):
    method: Optional[Method]
    blob: Exp


@dataclass
class Fail(Exp):
    exp: Exp


# =================================================================
# Commands
# =================================================================

class Command:
    span = None


@dataclass
class Let(Command):
    name: str
    exp: Exp


@dataclass
class Show(Command):
    exp: Exp


@dataclass
class Assert(Command):
    op: str                     # '==' | '~=' | '!='
    left: Exp
    right: Exp


@dataclass
class Import(Command):
    alias: str
    principal: str
    did_file: Optional[str] = None


@dataclass
class Config(Command):
    source: str


@dataclass
class Identity(Command):
    name: str
    config: Optional[Exp] = None


@dataclass
class Export(Command):
    path: str


@dataclass
class Load(Command):
    path: str


@dataclass
class Func(Command):
    name: str
    params: List[str]
    body: List[Command]


@dataclass
class If(Command):
    cond: Exp
    then: List[Command]
    else_: List[Command] = field(default_factory=list)


@dataclass
class While(Command):
    cond: Exp
    body: List[Command]

"""
Transforms lark parse trees into canrepl AST nodes and Candid types.
"""
import math

from lark import Transformer, v_args

from canrepl.canrepl_errors import ParseError
from canrepl.canrepl_lexer import Span, unquote_text, unquote_bytes
from canrepl.canrepl_principal import PrincipalId
from canrepl.canrepl_types import (
    Label, Prim, TVar, TOpt, TVec, TRecord, TVariant, TFunc, TService,
    NULL, PRINCIPAL, BLOB, prim,
)
from canrepl.canrepl_values import (
    Bool, Text, Number, Float64, Blob, Principal, Service, Func as FuncValue, NULL_VALUE,
)
from canrepl.canrepl_datatypes import (
    Index, Field, Option, Size, Map, Filter, Fold,
    Method, Path, Literal, OptExp, VecExp, RecordExp, VariantExp, AnnVal, Apply, Call, Decode, Fail,
    Let, Show, Assert, Import, Config, Identity, Export, Load, Func, If, While,
)

FUNC_MODES = ("query", "oneway", "composite_query")


def parse_number(text: str):
    digits = text.replace("_", "")
    sign = ""
    if digits[:1] in "+-":
        sign, digits = digits[0], digits[1:]
    if digits.lower().startswith("0x"):
        return Number(str(int(sign + digits[2:], 16)))
    if any(c in digits for c in ".eE"):
        return Float64(float(sign + digits))
    return Number(str(int(sign + digits)))


def _principal(token) -> PrincipalId:
    text = unquote_text(token)
    try:
        return PrincipalId.from_text(text)
    except ValueError as e:
        raise ParseError(str(e), _token_span(token), ["principal text"])


def _token_span(token):
    if getattr(token, "start_pos", None) is None:
        return None
    return Span(token.start_pos, token.end_pos, token.line, token.column)


def _token_label(token):
    match token.type:
        case "NUMBER":
            if not token.isdigit():
                raise ParseError(f"invalid field id {token}", _token_span(token))
            return int(token)
        case "TEXT":
            return unquote_text(token)
    return str(token)


class TypeRules(Transformer):
    """Candid type syntax, shared by script annotations and .did files."""

    def type_ref(self, c):
        name = str(c[0])
        return prim(name) or TVar(name)

    def null_type(self, c):
        return NULL

    def principal_type(self, c):
        return PRINCIPAL

    def blob_type(self, c):
        return BLOB

    def opt_type(self, c):
        return TOpt(c[0])

    def vec_type(self, c):
        return TVec(c[0])

    def field_label(self, c):
        return _token_label(c[0])

    def named_type_field(self, c):
        return ("named", c[0], c[1])

    def anon_type_field(self, c):
        return ("anon", None, c[0])

    def text_type_field(self, c):
        return ("named", unquote_text(c[0]), NULL)

    def record_type(self, c):
        fields = []
        last = -1
        for kind, key, t in c:
            label = Label(id=last + 1) if kind == "anon" else Label.of(key)
            last = label.id
            fields.append((label, t))
        return TRecord(tuple(fields))

    def variant_type(self, c):
        fields = []
        for kind, key, t in c:
            if kind == "anon":
                match t:
                    case Prim(name) | TVar(name):
                        key, t = name, NULL
                    case _:
                        raise ParseError(f"variant field needs a label: {t}")
            fields.append((Label.of(key), t))
        return TVariant(tuple(fields))

    def named_arg(self, c):
        return c[1]

    def plain_arg(self, c):
        return c[0]

    def tuple_type(self, c):
        return tuple(c)

    def func_type(self, c):
        modes = tuple(str(m) for m in c[2:])
        for m in modes:
            if m not in FUNC_MODES:
                raise ParseError(f"unknown function annotation {m}", _token_span(m), FUNC_MODES)
        return TFunc(c[0], c[1], modes)

    def func_ref_type(self, c):
        return c[0]

    def method_sig(self, c):
        name = unquote_text(c[0]) if c[0].type == "TEXT" else str(c[0])
        t = c[1]
        if not isinstance(t, TFunc):
            t = TVar(str(t))
        return (name, t)

    def actor_body(self, c):
        return TService(tuple(c))

    def service_type(self, c):
        return c[0]


def _spanned(cmd, meta):
    if not getattr(meta, "empty", True):
        cmd.span = Span(meta.start_pos, meta.end_pos, meta.line, meta.column)
    return cmd


class ReplTransformer(TypeRules):
    """Builds commands and expressions from the script grammar."""

    # --- Commands ---
    def commands(self, c):
        return [cmd for cmd in c if cmd is not None]

    def block(self, c):
        return c[0] if c else []

    @v_args(meta=True)
    def let_cmd(self, meta, c):
        return _spanned(Let(str(c[0]), c[1]), meta)

    @v_args(meta=True)
    def show_cmd(self, meta, c):
        return _spanned(Show(c[0]), meta)

    @v_args(meta=True)
    def assert_cmd(self, meta, c):
        return _spanned(Assert(str(c[1]), c[0], c[2]), meta)

    @v_args(meta=True)
    def import_cmd(self, meta, c):
        did = unquote_text(c[2]) if len(c) > 2 else None
        return _spanned(Import(str(c[0]), unquote_text(c[1]), did), meta)

    @v_args(meta=True)
    def config_cmd(self, meta, c):
        return _spanned(Config(unquote_text(c[0])), meta)

    @v_args(meta=True)
    def identity_cmd(self, meta, c):
        return _spanned(Identity(str(c[0]), c[1] if len(c) > 1 else None), meta)

    @v_args(meta=True)
    def export_cmd(self, meta, c):
        return _spanned(Export(unquote_text(c[0])), meta)

    @v_args(meta=True)
    def load_cmd(self, meta, c):
        return _spanned(Load(unquote_text(c[0])), meta)

    @v_args(meta=True)
    def func_cmd(self, meta, c):
        params = [str(p) for p in c[1:-1]]
        if len(set(params)) != len(params):
            raise ParseError(f"duplicate parameter in function {c[0]}", _token_span(c[0]))
        return _spanned(Func(str(c[0]), params, c[-1]), meta)

    @v_args(meta=True)
    def if_cmd(self, meta, c):
        else_ = []
        if len(c) > 2:
            else_ = c[2] if isinstance(c[2], list) else [c[2]]
        return _spanned(If(c[0], c[1], else_), meta)

    @v_args(meta=True)
    def while_cmd(self, meta, c):
        return _spanned(While(c[0], c[1]), meta)

    # --- Expressions ---
    def annval(self, c):
        return AnnVal(c[0], c[1])

    def add(self, c):
        return Apply("add", [c[0], c[1]])

    def sub(self, c):
        return Apply("sub", [c[0], c[1]])

    def mul(self, c):
        return Apply("mul", [c[0], c[1]])

    def div(self, c):
        return Apply("div", [c[0], c[1]])

    def neg_number(self, c):
        return Literal(parse_number("-" + c[0]))

    def number(self, c):
        return Literal(parse_number(c[0]))

    def nan(self, c):
        return Literal(Float64(math.nan))

    def inf(self, c):
        return Literal(Float64(math.inf))

    def neg_inf(self, c):
        return Literal(Float64(-math.inf))

    def path(self, c):
        return Path(str(c[0]), list(c[1:]))

    def apply(self, c):
        return Apply(str(c[0]), list(c[1:]))

    def method(self, c):
        canister = unquote_text(c[0]) if c[0].type == "TEXT" else str(c[0])
        return Method(canister, str(c[1]))

    def args(self, c):
        return list(c)

    def call(self, c):
        return Call(c[0], c[1], "call")

    def proxy_call(self, c):
        return Call(c[1], c[2], "proxy", wallet=str(c[0]))

    def encode(self, c):
        return Call(c[0], c[1], "encode")

    def encode_untyped(self, c):
        return Call(None, c[0], "encode")

    def decode(self, c):
        return Decode(c[0], c[1])

    def decode_untyped(self, c):
        return Decode(None, c[0])

    def fail_exp(self, c):
        return Fail(c[0])

    # --- Selectors ---
    def sel_opt(self, c):
        return Option()

    def sel_field(self, c):
        return Field(_token_label(c[0]))

    def sel_index(self, c):
        return Index(c[0])

    def sel_method(self, c):
        name, args = str(c[0]), list(c[1:])

        def func_name(exp):
            if isinstance(exp, Path) and not exp.selectors:
                return exp.name
            raise ParseError(f".{name}() expects a function name", _token_span(c[0]))

        match (name, len(args)):
            case ("size", 0):
                return Size()
            case ("map", 1):
                return Map(func_name(args[0]))
            case ("filter", 1):
                return Filter(func_name(args[0]))
            case ("fold", 2):
                return Fold(args[0], func_name(args[1]))
        raise ParseError(f"unknown selector .{name}() with {len(args)} argument(s)",
                         _token_span(c[0]), ["size()", "map(f)", "filter(f)", "fold(init, f)"])

    # --- Literals ---
    def null(self, c):
        return Literal(NULL_VALUE)

    def true(self, c):
        return Literal(Bool(True))

    def false(self, c):
        return Literal(Bool(False))

    def text(self, c):
        return Literal(Text(unquote_text(c[0])))

    def blob(self, c):
        return Literal(Blob(unquote_bytes(c[0])))

    def principal(self, c):
        return Literal(Principal(_principal(c[0])))

    def service(self, c):
        return Literal(Service(_principal(c[0])))

    def func(self, c):
        return Literal(FuncValue(_principal(c[0]), str(c[1])))

    def opt(self, c):
        return OptExp(c[0])

    def vec(self, c):
        return VecExp(list(c))

    def labeled_field(self, c):
        return (c[0], c[1])

    def positional_field(self, c):
        return (None, c[0])

    def record(self, c):
        return RecordExp(list(c))

    def variant(self, c):
        label, exp = c[0]
        if label is None:
            if isinstance(exp, Path) and not exp.selectors:
                return VariantExp(exp.name, Literal(NULL_VALUE))
            raise ParseError("variant field needs a label")
        return VariantExp(label, exp)


class DidTransformer(TypeRules):
    """Builds the pieces of a .did file: type definitions, imports and the actor."""

    def prog(self, c):
        return list(c)

    def type_def(self, c):
        return ("type", str(c[0]), c[1])

    def import_def(self, c):
        return ("import", unquote_text(c[0]))

    def actor(self, c):
        body = c[-1]
        init = next((x for x in c[:-1] if isinstance(x, tuple)), None)
        if not isinstance(body, TService):
            body = TVar(str(body))
        return ("actor", init, body)

import pytest

from canrepl.canrepl_parser import ReplParser
from canrepl.canrepl_principal import PrincipalId
from canrepl.canrepl_printer import Printer, quote_text, format_blob, group_digits
from canrepl.canrepl_types import Label
from canrepl.canrepl_values import (
    Null, NoneVal, Bool, Text, Number, Nat, Nat64, Int, Float64, Opt, Vec, Blob, Record,
    Variant, Principal, Func, tuple_value,
)


@pytest.fixture
def printer():
    return Printer()


def test_scalars(printer):
    assert printer.pformat(Null()) == "null"
    assert printer.pformat(NoneVal()) == "null"
    assert printer.pformat(Bool(False)) == "false"
    assert printer.pformat(Number("42")) == "42"
    assert printer.pformat(Nat(1234567)) == "1_234_567 : nat"
    assert printer.pformat(Int(-1000)) == "-1_000 : int"
    assert printer.pformat(Float64(2.0)) == "2.0 : float64"


def test_group_digits():
    assert group_digits(0) == "0"
    assert group_digits(999) == "999"
    assert group_digits(1000) == "1_000"
    assert group_digits(-12345) == "-12_345"


def test_text_quoting():
    assert quote_text('say "hi"\n') == '"say \\"hi\\"\\n"'
    assert quote_text("\x01") == '"\\u{1}"'


def test_blob_escapes_non_printable_bytes():
    assert format_blob(b"ab\x00\xff") == 'blob "ab\\00\\ff"'
    assert format_blob(b'"\\') == 'blob "\\22\\5c"'


def test_composites_flat(printer):
    pid = PrincipalId.from_canister_index(1)
    assert printer.pformat(Opt(Text("x"))) == 'opt "x"'
    assert printer.pformat(Vec(())) == "vec {}"
    assert printer.pformat(Vec((Nat(1), Nat(2)))) == "vec { 1 : nat; 2 : nat }"
    assert printer.pformat(Record(())) == "record {}"
    assert printer.pformat(Record((("a", Nat(1)),))) == "record { a = 1 : nat }"
    assert printer.pformat(tuple_value([Text("a"), Bool(True)])) == 'record { "a"; true }'
    assert printer.pformat(Variant(Label("ok"), Null())) == "variant { ok }"
    assert printer.pformat(Variant(Label("err"), Text("e"))) == 'variant { err = "e" }'
    assert printer.pformat(Principal(pid)) == f'principal "{pid}"'
    assert printer.pformat(Func(pid, "go")) == f'func "{pid}".go'


def test_keyword_and_unnamed_labels_are_quoted_or_numeric(printer):
    r = Record((("type", Nat(1)), (Label(id=7), Nat(2))))
    assert printer.pformat(r) == 'record { 7 = 2 : nat; "type" = 1 : nat }'


def test_long_values_break_over_lines():
    printer = Printer(width=20)
    out = printer.pformat(Record((("alpha", Nat64(1)), ("beta", Text("x" * 10)))))
    lines = out.splitlines()
    assert lines[0] == "record {"
    assert lines[-1] == "}"
    assert all(line.startswith("  ") for line in lines[1:-1])
    assert all(line.endswith(";") for line in lines[1:-1])


def test_pformat_args(printer):
    assert printer.pformat_args([]) == "()"
    assert printer.pformat_args([Nat(1), Text("a")]) == '(1 : nat, "a")'


def test_printed_values_parse_back():
    parser = ReplParser()
    printer = Printer()
    value = Record((("name", Text("q\"uote")), ("data", Blob(b"\x00a")), ("n", Opt(Nat(5)))))
    exp = parser.parse_exp(printer.pformat(value))
    assert exp is not None


def test_opt_of_annotated_number_is_parenthesised(printer):
    assert printer.pformat(Opt(Nat64(3))) == "opt (3 : nat64)"
    assert printer.pformat(Opt(Opt(Int(-2)))) == "opt opt (-2 : int)"
    assert printer.pformat(Opt(Number("3"))) == "opt 3"
    assert printer.pformat(Vec((Opt(Nat(1)),))) == "vec { opt (1 : nat) }"


def test_non_finite_floats(printer):
    assert printer.pformat(Float64(float("nan"))) == "nan : float64"
    assert printer.pformat(Opt(Float64(float("-inf")))) == "opt (-inf : float64)"


def test_variant_with_keyword_label_keeps_null(printer):
    assert printer.pformat(Variant(Label("type"), Null())) == 'variant { "type" = null }'

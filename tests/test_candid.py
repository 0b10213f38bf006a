import pytest

from canrepl.canrepl_candid import encode_args, decode_args, leb128, sleb128
from canrepl.canrepl_errors import CastError, EvalError
from canrepl.canrepl_principal import PrincipalId
from canrepl.canrepl_types import (
    NAT, NAT8, INT, TEXT, BOOL, PRINCIPAL, TOpt, TVec, TRecord, TVariant, TVar, TypeEnv, Label, prim,
)
from canrepl.canrepl_values import (
    Nat, Int, Nat8, Nat16, Text, Bool, Number, Opt, Vec, Blob, Record, Variant, Principal,
    NONE, NULL_VALUE,
)


def test_leb128_encodings():
    assert leb128(0) == b"\x00"
    assert leb128(624485) == b"\xe5\x8e\x26"
    assert sleb128(-1) == b"\x7f"
    assert sleb128(-123456) == b"\xc0\xbb\x78"


def test_encode_primitive_arguments():
    assert encode_args([Nat(1)], [NAT]) == b"DIDL\x00\x01\x7d\x01"
    assert encode_args([Text("hi")], [TEXT]) == b"DIDL\x00\x01\x71\x02hi"
    assert encode_args([]) == b"DIDL\x00\x00"


def test_untyped_number_takes_declared_width():
    data = encode_args([Number("5")], [prim("nat16")])
    assert decode_args(data) == [Nat16(5)]


def test_typed_record_round_trip_restores_names():
    t = TRecord(((Label("name"), TEXT), (Label("age"), NAT8), (Label("nick"), TOpt(TEXT))))
    value = Record((("name", Text("ada")), ("age", Number("36"))))
    data = encode_args([value], [t])
    (decoded,) = decode_args(data, [t])
    assert decoded.get("name") == Text("ada")
    assert decoded.get("age") == Nat8(36)
    assert decoded.get("nick") == NONE
    assert [l.name for l, _ in decoded.fields] == [l.name for l, _ in t.fields]


def test_untyped_decode_keeps_numeric_labels():
    t = TRecord(((Label("name"), TEXT),))
    data = encode_args([Record((("name", Text("x")),))], [t])
    (decoded,) = decode_args(data)
    (label, value), = decoded.fields
    assert label.name is None
    assert label.id == Label("name").id
    assert value == Text("x")


def test_missing_required_field_is_rejected():
    t = TRecord(((Label("a"), NAT),))
    with pytest.raises(CastError):
        encode_args([Record(())], [t])


def test_unexpected_field_is_rejected():
    t = TRecord(((Label("a"), NAT),))
    with pytest.raises(CastError):
        encode_args([Record((("a", Nat(1)), ("b", Nat(2))))], [t])


def test_type_mismatch_is_a_cast_error():
    with pytest.raises(CastError):
        encode_args([Text("x")], [NAT])
    with pytest.raises(CastError):
        encode_args([Number("300")], [NAT8])


def test_variant_round_trip():
    t = TVariant(((Label("ok"), NAT), (Label("err"), TEXT)))
    data = encode_args([Variant(Label("err"), Text("boom"))], [t])
    (decoded,) = decode_args(data, [t])
    assert decoded.label == Label("err")
    assert decoded.value == Text("boom")
    with pytest.raises(CastError):
        encode_args([Variant(Label("other"), NULL_VALUE)], [t])


def test_blob_and_vec_encodings():
    blob = encode_args([Blob(b"\x01\x02")], [TVec(NAT8)])
    assert decode_args(blob) == [Blob(b"\x01\x02")]
    vec = encode_args([Vec((Nat(1), Nat(2)))], [TVec(NAT)])
    assert decode_args(vec) == [Vec((Nat(1), Nat(2)))]


def test_inferred_types_when_untyped():
    pid = PrincipalId.from_canister_index(3)
    data = encode_args([Bool(True), Principal(pid), Opt(Int(-2))])
    assert decode_args(data) == [Bool(True), Principal(pid), Opt(Int(-2))]


def test_recursive_types_through_env():
    env = TypeEnv()
    env.types["List"] = TOpt(TRecord(((Label("head"), NAT), (Label("tail"), TVar("List")))))
    value = Opt(Record((("head", Nat(1)), ("tail", Opt(Record((("head", Nat(2)), ("tail", NONE))))))))
    data = encode_args([value], [TVar("List")], env)
    (decoded,) = decode_args(data, [TVar("List")], env)
    assert decoded.value.get("head") == Nat(1)
    assert decoded.value.get("tail").value.get("head") == Nat(2)


def test_missing_optional_results_decode_as_none():
    data = encode_args([Nat(1)], [NAT])
    assert decode_args(data, [NAT, TOpt(TEXT)]) == [Nat(1), NONE]
    with pytest.raises(EvalError):
        decode_args(data, [NAT, BOOL])


def test_malformed_input():
    with pytest.raises(EvalError):
        decode_args(b"NOPE")
    with pytest.raises(EvalError):
        decode_args(b"DIDL\x00\x01\x7d")
    with pytest.raises(EvalError):
        decode_args(encode_args([Nat(1)], [NAT]) + b"\x00")


def test_principal_type_accepts_only_principals():
    with pytest.raises(CastError):
        encode_args([Text("aaaaa-aa")], [PRINCIPAL])
    assert decode_args(encode_args([Int(-7)], [INT])) == [Int(-7)]

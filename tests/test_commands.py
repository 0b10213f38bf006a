import math

import pytest

from canrepl.canrepl_env import Session
from canrepl.canrepl_identity import Ed25519Identity, ExternalIdentity
from canrepl.canrepl_principal import PrincipalId
from canrepl.canrepl_runtime import ScriptRunner
from canrepl.canrepl_types import Label
from canrepl.canrepl_values import (
    Null, Reserved, Bool, Text, Number, Nat, Nat8, Nat64, Int, Int8, Float32, Float64,
    Opt, Vec, Blob, Record, Variant, Principal, Service, Func, tuple_value, values_equal,
)

PID = PrincipalId.from_canister_index(7)


async def run(src: str, runner=None):
    runner = runner or ScriptRunner()
    return await runner.handle_script(src)


def assert_ok(res, expected=None):
    assert res.status == 'success', f"expected success, got {res.status}: {res.error_message}"
    if expected is not None:
        assert values_equal(res.value, expected), f"{res.value!r} != {expected!r}"


def assert_error(res, contains: str):
    assert res.status == 'error'
    assert contains in (res.error_message or ""), res.error_message


def stdout_of(res):
    return [e['message'] for e in res.side_effects if 'stdout' in e['topics']]


# --- assert ---

@pytest.mark.asyncio
async def test_assert_operators():
    src = """
    assert "abc" ~= "b";
    let a = 1;
    let b = 2;
    assert a != b;
    assert (5 : nat8) ~= (5 : nat64);
    assert blob "hi" ~= "hi";
    assert vec { (1 : nat8) } == blob "\\01";
    """
    assert_ok(await run(src))


@pytest.mark.asyncio
async def test_failed_assert_reports_both_sides():
    res = await run("assert 1 != 1")
    assert_error(res, "AssertionFailed: assertion failed: 1 != 1")
    res = await run('assert "abc" ~= "z"')
    assert_error(res, 'assertion failed: "abc" ~= "z"')


@pytest.mark.asyncio
async def test_widths_differ_under_strict_equality():
    assert_error(await run("assert (5 : nat8) == (5 : nat64)"), "assertion failed")


# --- let / show ---

@pytest.mark.asyncio
async def test_show_prints_and_binds_underscore():
    res = await run("let x = 1 + 2; x; _")
    assert_ok(res, Int(3))
    assert stdout_of(res) == ["3 : int", "3 : int"]
    assert any('timing' in e['topics'] for e in res.side_effects)


@pytest.mark.asyncio
async def test_let_does_not_print():
    res = await run("let x = 5")
    assert_ok(res, Number("5"))
    assert stdout_of(res) == []


@pytest.mark.asyncio
async def test_undefined_variable():
    assert_error(await run("y"), "UndefinedVariable: Undefined variable y")


@pytest.mark.asyncio
async def test_fail_captures_the_error_text():
    res = await run('fail div(1, 0)')
    assert_ok(res, Text("division by zero"))
    assert_error(await run("fail 1"), "expected failure, but the expression succeeded")


# --- control flow and functions ---

@pytest.mark.asyncio
async def test_if_and_while():
    src = """
    let n = 0;
    let total = 0;
    while lt(n, 5) {
        let total = add(total, n);
        let n = add(n, 1);
    };
    if eq(total, 10) { let r = "ten" } else { let r = "other" };
    r
    """
    assert_ok(await run(src), Text("ten"))


@pytest.mark.asyncio
async def test_conditions_must_be_boolean():
    assert_error(await run("if 1 { let a = 1 }"), "if condition is not a boolean expression")
    assert_error(await run("while 1 { }"), "while condition is not a boolean expression")


@pytest.mark.asyncio
async def test_function_trailing_expression_is_its_result():
    res = await run("function inc(x) { x + 1 }; let y = inc(41); assert y == 42; y")
    assert_ok(res, Int(42))


@pytest.mark.asyncio
async def test_function_without_result_returns_null():
    res = await run("function nothing(x) { let a = x }; nothing(1)")
    assert_ok(res)
    assert stdout_of(res)[-1] == "null"


@pytest.mark.asyncio
async def test_function_locals_do_not_leak():
    res = await run("function f(x) { let inner = x }; f(1); inner")
    assert_error(res, "Undefined variable inner")


# --- export / load / config ---

@pytest.mark.asyncio
async def test_export_writes_let_lines(tmp_path):
    runner = ScriptRunner(base_path=str(tmp_path))
    res = await run('let a = 1; let s = "hi"; export "vars.sh"', runner)
    assert_ok(res)
    assert (tmp_path / "vars.sh").read_text() == 'let a = 1;\nlet s = "hi";\n'


@pytest.mark.asyncio
async def test_export_then_load_restores_bindings(tmp_path):
    first = ScriptRunner(base_path=str(tmp_path))
    assert_ok(await run('let a = (7 : nat8); export "vars.sh"', first))
    second = ScriptRunner(base_path=str(tmp_path))
    res = await run('load "vars.sh"; a', second)
    assert_ok(res)
    assert res.value == first.env.vars["a"]


EXPORTED = {
    "n": Null(),
    "b": Bool(True),
    "t": Text('say "hi"\n\ttab \\ done'),
    "num": Number("-12"),
    "big": Nat(12_345_678_901),
    "i8": Int8(-3),
    "f32": Float32(0.1),
    "f64": Float64(-1.5e-7),
    "o": Opt(Nat64(3)),
    "oo": Opt(Opt(Float64(2.5))),
    "oneg": Opt(Number("-3")),
    "oinf": Opt(Float64(-math.inf)),
    "bl": Blob(b'\x00a"\\\xff'),
    "v": Vec((Opt(Nat8(1)), Opt(Nat8(2)))),
    "long": Vec(tuple(Nat64(10 ** 12 + i) for i in range(12))),
    "r": Record(((Label("x"), Opt(Nat64(3))), (Label("type"), Text("kw")), (Label(id=7), Int(-1)))),
    "tup": tuple_value([Nat(1), Text("a")]),
    "var": Variant(Label("ok"), Null()),
    "kwvar": Variant(Label("type"), Null()),
    "numvar": Variant(Label(id=3), Opt(Int8(4))),
    "p": Principal(PID),
    "s": Service(PID),
    "fn": Func(PID, "greet"),
}


@pytest.mark.asyncio
async def test_export_then_load_round_trips_every_kind(tmp_path):
    first = ScriptRunner(base_path=str(tmp_path))
    first.env.vars.update(EXPORTED)
    first.env.vars["fnan"] = Float64(math.nan)
    first.env.vars["pinf"] = Float64(math.inf)
    first.env.vars["res"] = Reserved()
    assert_ok(await run('export "all.sh"', first))
    second = ScriptRunner(base_path=str(tmp_path))
    assert_ok(await run('load "all.sh"', second))
    loaded = second.env.vars
    for name, value in EXPORTED.items():
        assert values_equal(loaded[name], value), f"{name}: {loaded[name]!r} != {value!r}"
    assert math.isnan(loaded["fnan"].value)
    assert loaded["pinf"] == Float64(math.inf)
    # null-like values read back as plain null
    assert loaded["res"] == Null()


@pytest.mark.asyncio
async def test_exported_opt_of_number_is_parenthesised(tmp_path):
    runner = ScriptRunner(base_path=str(tmp_path))
    assert_ok(await run('let x = opt (3 : nat64); export "o.sh"', runner))
    assert (tmp_path / "o.sh").read_text() == "let x = opt (3 : nat64);\n"


@pytest.mark.asyncio
async def test_load_echoes_commands_and_restores_base_path(tmp_path):
    sub = tmp_path / "sub"
    sub.mkdir()
    (sub / "data.txt").write_text("payload")
    (sub / "lib.sh").write_text('#!/usr/bin/env canrepl\nlet d = file("data.txt");\nlet n = 2\n')
    runner = ScriptRunner(base_path=str(tmp_path))
    res = await run('load "sub/lib.sh"; n', runner)
    assert_ok(res, Number("2"))
    out = stdout_of(res)
    assert '> let d = file("data.txt")' in out
    assert "> let n = 2" in out
    assert runner.env.base_path == tmp_path


@pytest.mark.asyncio
async def test_load_error_still_restores_base_path(tmp_path):
    (tmp_path / "bad.sh").write_text("let a = 1;\nassert a == 2\n")
    runner = ScriptRunner(base_path=str(tmp_path / "elsewhere"))
    res = await run(f'load "{tmp_path / "bad.sh"}"', runner)
    assert_error(res, "assertion failed")
    assert runner.env.base_path == tmp_path / "elsewhere"


@pytest.mark.asyncio
async def test_config_inline_and_file(tmp_path):
    runner = ScriptRunner(base_path=str(tmp_path))
    assert_ok(await run('config "depth = 2\nsize = 3"', runner))
    assert runner.env.config.depth == 2
    assert runner.env.config.size == 3
    (tmp_path / "rand.yaml").write_text("text: name\nseed: 4\n")
    assert_ok(await run('config "rand.yaml"', runner))
    assert runner.env.config.text == "name"
    assert runner.env.config.seed == 4


@pytest.mark.asyncio
async def test_bad_config_is_a_config_error():
    assert_error(await run('config "depth = -1"'), "ConfigError")


# --- identity ---

@pytest.mark.asyncio
async def test_identity_is_stable_per_name():
    runner = ScriptRunner()
    res = await run("identity alice; identity bob; identity alice", runner)
    assert_ok(res)
    alice = runner.env.vars["alice"]
    bob = runner.env.vars["bob"]
    assert isinstance(alice, Principal) and alice != bob
    assert runner.session.current_identity == "alice"
    assert runner.session.identity.sender() == alice.id
    msgs = stdout_of(res)
    assert msgs[0] == msgs[2] == f"Current identity {alice.id}"


@pytest.mark.asyncio
async def test_identity_from_pem(tmp_path):
    key = Ed25519Identity.generate()
    (tmp_path / "me.pem").write_bytes(key.to_pem())
    runner = ScriptRunner(base_path=str(tmp_path))
    assert_ok(await run('identity me "me.pem"; me', runner))
    assert runner.env.vars["me"] == Principal(key.sender())


@pytest.mark.asyncio
async def test_identity_from_missing_pem(tmp_path):
    runner = ScriptRunner(base_path=str(tmp_path))
    assert_error(await run('identity me "missing.pem"', runner), "cannot read identity file")


@pytest.mark.asyncio
async def test_hardware_identity_goes_through_loader(monkeypatch):
    monkeypatch.setenv("DFX_HSM_PIN", "1234")
    der = b"\x30\x2a" + bytes(42)
    seen = {}

    def loader(lib_path, slot, key_id, pin):
        seen.update(slot=slot, key_id=key_id, pin=pin)
        return ExternalIdentity(der, lambda m: b"sig")

    runner = ScriptRunner(Session(hsm_loader=loader))
    res = await run('identity hw record { slot_index = 0; key_id = "abcd" }', runner)
    assert_ok(res)
    assert seen == {"slot": 0, "key_id": "abcd", "pin": "1234"}
    assert runner.env.vars["hw"] == Principal(PrincipalId.self_authenticating(der))


@pytest.mark.asyncio
async def test_hardware_identity_without_support(monkeypatch):
    monkeypatch.setenv("DFX_HSM_PIN", "1234")
    res = await run('identity hw record { slot_index = 0; key_id = "abcd" }')
    assert_error(res, "no hardware security module support")


# --- errors ---

@pytest.mark.asyncio
async def test_runtime_error_shows_location_and_context():
    src = "let a = 1;\nlet b = 2;\nassert a == b;\nlet c = 3"
    res = await run(src)
    assert res.status == 'error'
    assert res.error_token == {'line': 3, 'col': 1}
    msg = res.error_message
    assert msg.startswith("AssertionFailed: assertion failed: 1 == 2")
    assert "(line 3, col 1)" in msg
    assert "> 3 | assert a == b;" in msg
    assert res.format_error().startswith("Error on line 3, col 1: AssertionFailed")


@pytest.mark.asyncio
async def test_parse_error_reports_position():
    res = await run("let a = 1;\nlet = 2")
    assert res.status == 'error'
    assert res.error_message.startswith("ParseError: unexpected token '='")
    assert res.error_token == {'line': 2, 'col': 5}


@pytest.mark.asyncio
async def test_session_survives_errors():
    runner = ScriptRunner()
    assert_ok(await run("let a = 1", runner))
    assert_error(await run("nosuch()", runner), "Unknown function")
    assert_ok(await run("a", runner), Number("1"))

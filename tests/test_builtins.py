import gzip
import hashlib
import zlib

import pytest

from canrepl.canrepl_builtins import account_id, GOVERNANCE_CANISTER
from canrepl.canrepl_principal import PrincipalId
from canrepl.canrepl_runtime import ScriptRunner
from canrepl.canrepl_values import (
    Blob, Bool, Float64, Int, Int64, Text, Vec, Number, Nat8, Record, values_equal,
)


async def run(src: str, base_path=None):
    runner = ScriptRunner(base_path=base_path)
    return await runner.handle_script(src)


def assert_ok(res, expected=None):
    assert res.status == 'success', f"expected success, got {res.status}: {res.error_message}"
    if expected is not None:
        assert values_equal(res.value, expected), f"{res.value!r} != {expected!r}"


def assert_error(res, contains: str):
    assert res.status == 'error'
    assert contains in (res.error_message or ""), res.error_message


# --- concat ---

@pytest.mark.asyncio
async def test_concat_text_and_vec():
    assert_ok(await run('concat("ab", "cd")'), Text("abcd"))
    assert_ok(await run("concat(vec {1}, vec {2; 3})"), Vec((Number("1"), Number("2"), Number("3"))))


@pytest.mark.asyncio
async def test_concat_blob_with_nat8_vec_stays_blob():
    assert_ok(await run('concat(blob "a", vec { (98 : nat8) })'), Blob(b"ab"))
    res = await run('concat(blob "a", vec { "x" })')
    assert_ok(res, Vec((Nat8(97), Text("x"))))


@pytest.mark.asyncio
async def test_concat_records_merges_fields_and_rejects_duplicates():
    res = await run("concat(record { a = 1 }, record { b = 2 })")
    assert_ok(res, Record((("a", Number("1")), ("b", Number("2")))))
    assert_error(await run("concat(record { a = 1 }, record { a = 2 })"), "duplicate field a")


@pytest.mark.asyncio
async def test_concat_mismatched_kinds():
    assert_error(await run('concat("a", vec {})'), "concat expects two values of the same kind")


# --- stringify ---

@pytest.mark.asyncio
async def test_stringify_joins_scalars():
    res = await run('stringify("n=", 42, " ok=", true, " p=", principal "aaaaa-aa")')
    assert_ok(res, Text("n=42 ok=true p=aaaaa-aa"))


@pytest.mark.asyncio
async def test_stringify_rejects_composites():
    assert_error(await run("stringify(vec {1})"), "Cannot stringify vec { 1 }")


# --- arithmetic and logic ---

@pytest.mark.asyncio
async def test_division_rules():
    assert_ok(await run("div(1, 2)"), Int(0))
    assert_ok(await run("div(-7, 2)"), Int(-3))
    assert_ok(await run("div(1, 2.0)"), Float64(0.5))
    assert_error(await run("div(1, 0)"), "division by zero")


@pytest.mark.asyncio
async def test_float_overflow_is_a_catchable_error():
    huge = "1" + "0" * 400
    res = await run(f"add({huge}, 1.0)")
    assert_error(res, "EvalError: add:")
    res = await run(f"fail mul({huge}, 2.0)")
    assert res.status == 'success'
    assert "too large" in res.value.value


@pytest.mark.asyncio
async def test_infix_arithmetic_is_builtin_sugar():
    assert_ok(await run("1 + 2 * 3"), Int(7))
    assert_ok(await run("(1 + 2) * 3"), Int(9))
    assert_ok(await run("10 - 4 / 2"), Int(8))


@pytest.mark.asyncio
async def test_numeric_casts_through_arithmetic():
    src = "div((mul(div(((1:nat8):float32), (3:float64)), 1000) : nat), 100.0)"
    assert_ok(await run(src), Float64(3.33))


@pytest.mark.asyncio
async def test_comparisons_and_boolean_logic():
    src = """
    assert eq("text", "text") == true;
    assert not(eq("text", "text")) == false;
    assert eq(div(1,2), sub(2,2)) == true;
    assert gt(div(1, 2.0), 1) == false;
    assert and(lte(div(1, 2), 0), gte(div(1, 2), 0)) == true;
    assert or(lt(div(1, 2), 0), gt(div(1, 2), 0)) == false;
    neq(1, 2)
    """
    assert_ok(await run(src), Bool(True))


@pytest.mark.asyncio
async def test_arithmetic_rejects_non_numbers():
    assert_error(await run('add(1, "a")'), "add expects numbers")
    assert_error(await run("not(1)"), "not expects a boolean")


# --- special forms ---

@pytest.mark.asyncio
async def test_exist_does_not_propagate_errors():
    assert_ok(await run("let r = record { a = 1 }; exist(r.b)"), Bool(False))
    assert_ok(await run("let r = record { a = 1 }; exist(r.a)"), Bool(True))


@pytest.mark.asyncio
async def test_ite_evaluates_only_the_taken_branch():
    assert_ok(await run("ite(true, 1, div(1, 0))"), Number("1"))
    assert_error(await run("ite(1, 2, 3)"), "ite expects a boolean")


@pytest.mark.asyncio
async def test_recursive_functions():
    src = """
    function fac(n) {
      if eq(n, 0) {
          let _ = 1;
      } else {
          let _ = mul(n, fac(sub(n, 1)));
      }
    };
    function fac2(n) {
      let res = 1;
      while gt(n, 0) {
          let res = mul(res, n);
          let n = sub(n, 1);
      };
      let _ = res;
    };
    function fib(n) {
      let _ = ite(lt(n, 2), 1, add(fib(sub(n, 1)), fib(sub(n, 2))))
    };
    assert fac(5) == 120;
    assert fac2(5) == 120;
    fib(10)
    """
    assert_ok(await run(src), Int(89))


@pytest.mark.asyncio
async def test_arity_mismatch_and_unknown_function():
    res = await run("add(1)")
    assert_error(res, "ArityMismatch: add expects 2 argument(s), got 1")
    assert_error(await run("nosuch(1)"), "Unknown function nosuch")
    res = await run("function f(a, b) { a }; f(1)")
    assert_error(res, "f expects 2 argument(s), got 1")


# --- casts ---

@pytest.mark.asyncio
async def test_principal_service_and_blob_casts():
    src = """
    assert (service "aaaaa-aa" : principal) == principal "aaaaa-aa";
    assert (func "aaaaa-aa".test : service {}) == service "aaaaa-aa";
    assert (principal "aaaaa-aa" : service {}) == service "aaaaa-aa";
    assert ("this is a text" : blob) == blob "this is a text";
    (blob "this is a blob" : text)
    """
    assert_ok(await run(src), Text("this is a blob"))


# --- ledger ---

def test_account_id_layout():
    owner = PrincipalId.from_text("aaaaa-aa")
    acc = account_id(owner)
    digest = hashlib.sha224(b"\x0aaccount-id" + owner.raw + bytes(32)).digest()
    assert len(acc) == 32
    assert acc[4:] == digest
    assert acc[:4] == zlib.crc32(digest).to_bytes(4, "big")


@pytest.mark.asyncio
async def test_account_builtin():
    owner = PrincipalId.from_text("aaaaa-aa")
    assert_ok(await run('account(principal "aaaaa-aa")'), Blob(account_id(owner)))


@pytest.mark.asyncio
async def test_neuron_account_uses_governance_subaccount():
    owner = PrincipalId.from_text("aaaaa-aa")
    nonce = 49
    sub = hashlib.sha256(b"\x0cneuron-stake" + owner.raw + nonce.to_bytes(8, "big")).digest()
    expected = account_id(PrincipalId.from_text(GOVERNANCE_CANISTER), sub)
    res = await run('neuron_account(principal "aaaaa-aa", (49 : nat64))')
    assert_ok(res, Blob(expected))


# --- files ---

@pytest.mark.asyncio
async def test_file_and_gzip(tmp_path):
    (tmp_path / "data.bin").write_bytes(b"\x00\x01payload")
    res = await run('let f = file("data.bin"); gzip(f)', base_path=str(tmp_path))
    assert_ok(res)
    assert gzip.decompress(res.value.data) == b"\x00\x01payload"
    assert res.value == Blob(gzip.compress(b"\x00\x01payload", mtime=0))


@pytest.mark.asyncio
async def test_file_missing_reports_path(tmp_path):
    res = await run('file("nope.bin")', base_path=str(tmp_path))
    assert_error(res, "Cannot read")


@pytest.mark.asyncio
async def test_output_appends_and_returns_text(tmp_path):
    src = 'output("log.txt", "one\\n"); output("log.txt", "two\\n")'
    res = await run(src, base_path=str(tmp_path))
    assert_ok(res, Text("two\n"))
    assert (tmp_path / "log.txt").read_text() == "one\ntwo\n"


@pytest.mark.asyncio
async def test_wasm_profiling_needs_an_instrumenter(tmp_path):
    (tmp_path / "m.wasm").write_bytes(b"\x00asm")
    res = await run('wasm_profiling("m.wasm")', base_path=str(tmp_path))
    assert_error(res, "wasm instrumentation is not available")


@pytest.mark.asyncio
async def test_wasm_profiling_passes_selected_names(tmp_path):
    seen = {}

    def instrument(wasm, names=None):
        seen["args"] = (wasm, names)
        return wasm + b"!"

    (tmp_path / "m.wasm").write_bytes(b"\x00asm")
    from canrepl.canrepl_env import Session
    runner = ScriptRunner(Session(instrumenter=instrument), base_path=str(tmp_path))
    res = await runner.handle_script('wasm_profiling("m.wasm", vec { "a"; "b" })')
    assert_ok(res, Blob(b"\x00asm!"))
    assert seen["args"] == (b"\x00asm", ["a", "b"])


@pytest.mark.asyncio
async def test_flamegraph_needs_a_replica():
    res = await run('flamegraph(principal "aaaaa-aa", "t", "out.svg")')
    assert_error(res, "flamegraph needs a connected replica")

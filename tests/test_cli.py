import importlib.util
import sys
import uuid
from pathlib import Path

import cbor2
import httpx
import pytest

from conftest import CANISTER

from canrepl.canrepl_agent import HttpAgent, decode_cbor
from canrepl.canrepl_candid import encode_args
from canrepl.canrepl_types import NAT
from canrepl.canrepl_values import Nat

SVC_DID = """
service : {
  inc : (nat) -> (nat);
}
"""


def _load_cli_module():
    """Dynamically load the top-level canrepl_main.py as a module with a unique name."""
    cli_path = Path(__file__).resolve().parents[1] / "canrepl_main.py"
    mod_name = f"canrepl_cli_for_test_{uuid.uuid4().hex}"
    spec = importlib.util.spec_from_file_location(mod_name, str(cli_path))
    mod = importlib.util.module_from_spec(spec)
    sys.modules[mod_name] = mod
    assert spec.loader is not None
    spec.loader.exec_module(mod)
    return mod


def _feed(monkeypatch, cli, lines):
    it = iter(lines)

    async def fake_ainput(prompt: str) -> str:
        return next(it)
    monkeypatch.setattr(cli, "ainput", fake_ainput)


@pytest.mark.asyncio
async def test_repl_exit_immediately(monkeypatch, capsys):
    cli = _load_cli_module()
    _feed(monkeypatch, cli, ["exit"])
    await cli.main([])
    out = capsys.readouterr().out
    assert "canrepl" in out
    assert "Type 'exit' or press Ctrl+D to quit." in out


@pytest.mark.asyncio
async def test_repl_prints_values(monkeypatch, capsys):
    cli = _load_cli_module()
    _feed(monkeypatch, cli, ["let x = 1 + 2", "x", "exit"])
    await cli.main([])
    out, err = capsys.readouterr()
    assert "3 : int" in out
    assert err == ""


@pytest.mark.asyncio
async def test_repl_errors_print_to_stderr(monkeypatch, capsys):
    cli = _load_cli_module()
    _feed(monkeypatch, cli, ["assert 1 == 2", "let y = 5", "y", "exit"])
    await cli.main([])
    out, err = capsys.readouterr()
    assert "AssertionFailed: assertion failed: 1 == 2" in err
    assert err.count("AssertionFailed") == 1
    assert "\n5\n" in out


@pytest.mark.asyncio
async def test_repl_eof_quits(monkeypatch, capsys):
    cli = _load_cli_module()

    async def fake_ainput(prompt: str) -> str:
        return ""
    monkeypatch.setattr(cli, "ainput", fake_ainput)
    await cli.main([])
    assert "Exiting." in capsys.readouterr().out


@pytest.mark.asyncio
async def test_script_file_runs_and_exits_nonzero_on_error(tmp_path, capsys):
    cli = _load_cli_module()
    ok = tmp_path / "ok.sh"
    ok.write_text("#!/usr/bin/env canrepl\nlet a = 2;\nassert add(a, 1) == 3;\nstringify(\"a=\", a)\n")
    await cli.main(["--offline", str(ok)])
    assert '"a=2"' in capsys.readouterr().out

    bad = tmp_path / "bad.sh"
    bad.write_text("let a = 2;\nassert a == 3;\n")
    with pytest.raises(SystemExit) as exc:
        await cli.main(["--offline", str(bad)])
    assert exc.value.code == 1
    err = capsys.readouterr().err
    assert "Error on line 2, col 1: AssertionFailed" in err


@pytest.mark.asyncio
async def test_missing_script_file(tmp_path, capsys):
    cli = _load_cli_module()
    with pytest.raises(SystemExit):
        await cli.main([str(tmp_path / "nope.sh")])
    assert "file not found" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_send_with_missing_file(tmp_path, capsys):
    cli = _load_cli_module()
    with pytest.raises(SystemExit) as exc:
        await cli.main(["send", str(tmp_path / "nope.json")])
    assert exc.value.code == 1
    assert "file not found" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_offline_script_saves_messages_and_send_replays_them(tmp_path, capsys, monkeypatch):
    cli = _load_cli_module()
    (tmp_path / "svc.did").write_text(SVC_DID)
    script = tmp_path / "calls.sh"
    script.write_text(f'import c = "{CANISTER}" as "svc.did";\ncall c.inc(1);\n')
    await cli.main(["--offline", str(script)])
    out = capsys.readouterr().out
    assert "1 message(s) saved to msg1.json" in out
    saved = tmp_path / "msg1.json"
    assert saved.exists()

    reply = encode_args([Nat(2)], [NAT])

    def handler(request):
        if request.url.path.endswith("/call"):
            return httpx.Response(202)
        envelope = decode_cbor(request.content)
        rid = envelope["content"]["paths"][0][1]
        tree = [2, b"request_status", [2, rid, [1,
                [2, b"reply", [3, reply]],
                [2, b"status", [3, b"replied"]]]]]
        return httpx.Response(200, content=cbor2.dumps({"certificate": cbor2.dumps({"tree": tree})}))

    monkeypatch.setattr(cli, "HttpAgent",
                        lambda url: HttpAgent(url, transport=httpx.MockTransport(handler)))
    monkeypatch.setattr("builtins.input", lambda prompt="": "y")
    await cli.main(["send", str(saved)])
    out = capsys.readouterr().out
    assert "Method name: inc" in out
    assert "(2 : nat)" in out

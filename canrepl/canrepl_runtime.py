# canrepl_runtime.py

import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from canrepl.canrepl_datatypes import (
    Command, Let, Show, Assert, Import, Config, Identity, Export, Load, Func, If, While, Call,
)
from canrepl.canrepl_env import Session, Environment
from canrepl.canrepl_errors import (
    ReplError, ParseError, EvalError, AssertionFailed, ConfigError,
)
from canrepl.canrepl_identity import Ed25519Identity, load_pem_identity, hsm_pin, pkcs11_lib_path
from canrepl.canrepl_interpreter import Evaluator
from canrepl.canrepl_invoke import resolve_canister
from canrepl.canrepl_lexer import strip_shebang, preprocess
from canrepl.canrepl_offline import Messages
from canrepl.canrepl_parser import ReplParser
from canrepl.canrepl_printer import Printer
from canrepl.canrepl_profiling import may_extract_profiling
from canrepl.canrepl_random import RandomConfig, random_args
from canrepl.canrepl_serialize import load_source
from canrepl.canrepl_values import (
    Bool, Text, Number, Integral, Int64, Principal, Record, cast_type, value_type, values_equal,
)


def _elapsed(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.2f}ms"
    return f"{seconds:.2f}s"


# ===================================================================
# Command interpreter
# ===================================================================

class CommandInterpreter:
    """Executes commands in order; the first error stops the block it occurs in."""

    def __init__(self, evaluator: Evaluator, parser: ReplParser):
        self.evaluator = evaluator
        self.parser = parser
        self.printer = Printer()
        evaluator.commands = self

    def emit(self, env, topic: str, message: str):
        env.session.emit(topic, message)

    async def run_block(self, commands: List[Command], env):
        for cmd in commands:
            await self.run_command(cmd, env)

    async def run_command(self, cmd: Command, env) -> Any:
        """Runs one command; returns the value bound by ``let`` or shown by a bare expression."""
        ev = self.evaluator
        match cmd:
            case Let(name, exp):
                return self._bind_value(env, name, exp, await ev.eval_exp(exp, env), display=False)
            case Show(exp):
                start = time.monotonic()
                value = await ev.eval_exp(exp, env)
                value = self._bind_value(env, "_", exp, value, display=True)
                self.emit(env, 'timing', _elapsed(time.monotonic() - start))
                return value
            case Assert(op, left, right):
                await self._assert(op, await ev.eval_exp(left, env), await ev.eval_exp(right, env))
            case Import(alias, principal, did_file):
                canister_id = resolve_canister(env, principal)
                if did_file is not None:
                    env.session.directory.register_did(canister_id, env.resolve_path(did_file))
                env.bind(alias, Principal(canister_id))
            case Config(source):
                env.config = RandomConfig.from_mapping(load_source(source, str(env.base_path)))
            case Identity(name, config):
                await self._identity(env, name, config)
            case Export(path):
                self._export(env, env.resolve_path(path))
            case Load(path):
                await self._load(env, env.resolve_path(path))
            case Func(name, params, body):
                env.funcs[name] = (params, body)
            case If(cond, then, else_):
                if self._condition(await ev.eval_exp(cond, env), "if"):
                    await self.run_block(then, env)
                else:
                    await self.run_block(else_, env)
            case While(cond, body):
                while self._condition(await ev.eval_exp(cond, env), "while"):
                    await self.run_block(body, env)
            case _:
                raise EvalError(f"unknown command {cmd!r}")
        return None

    def _bind_value(self, env, name: str, exp, value, display: bool):
        if isinstance(exp, Call) and exp.mode == "call":
            value, cost = may_extract_profiling(value)
            if cost is not None:
                env.bind(f"__cost_{name}", Int64(cost))
                if display:
                    self.emit(env, 'stdout', f"Cost: {cost} Wasm instructions")
        if display:
            self.emit(env, 'stdout', self.printer.pformat(value))
        env.bind(name, value)
        return value

    def _condition(self, value, keyword: str) -> bool:
        if not isinstance(value, Bool):
            raise EvalError(f"{keyword} condition is not a boolean expression")
        return value.value

    async def _assert(self, op: str, left, right):
        match op:
            case "==":
                ok = values_equal(left, right)
            case "!=":
                ok = not values_equal(left, right)
            case "~=":
                ok = self._sub_equal(left, right)
            case _:
                raise EvalError(f"unknown assert operator {op}")
        if not ok:
            pf = self.printer.pformat
            raise AssertionFailed(f"assertion failed: {pf(left)} {op} {pf(right)}")

    def _sub_equal(self, left, right) -> bool:
        """Substring match for text; otherwise compare after casting one side to the other's type."""
        if isinstance(left, Text) and isinstance(right, Text):
            return right.value in left.value
        try:
            return values_equal(cast_type(left, value_type(right)), right)
        except ReplError:
            pass
        try:
            return values_equal(left, cast_type(right, value_type(left)))
        except ReplError:
            pass
        return values_equal(left, right)

    async def _identity(self, env, name: str, config):
        session = env.session
        if config is None:
            identity = session.identities.get(name) or Ed25519Identity.generate()
        else:
            match await self.evaluator.eval_exp(config, env):
                case Text(path):
                    identity = load_pem_identity(str(env.resolve_path(path)))
                case Record() as hsm:
                    slot, key_id = hsm.get("slot_index"), hsm.get("key_id")
                    if not isinstance(slot, (Number, Integral)) or not isinstance(key_id, Text):
                        raise ConfigError("hardware identity needs record { slot_index = nat; key_id = text }")
                    pin = hsm_pin(session.pin_prompt)
                    identity = session.hsm_loader(pkcs11_lib_path(), int(slot), key_id.value, pin)
                case _:
                    raise ConfigError("identity expects a PEM file path or a hardware key record")
        session.use_identity(name, identity)
        sender = identity.sender()
        self.emit(env, 'stdout', f"Current identity {sender}")
        env.bind(name, Principal(sender))

    def _export(self, env, path: Path):
        lines = [f"let {name} = {self.printer.pformat(value)};\n" for name, value in env.vars.items()]
        try:
            path.write_text("".join(lines), encoding="utf-8")
        except OSError as e:
            raise EvalError(f"Cannot write {path}: {e}") from e

    async def _load(self, env, path: Path):
        try:
            source = strip_shebang(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise EvalError(f"Cannot read {path}: {e}") from e
        text = preprocess(source, os.environ)
        commands = self.parser.parse_commands(source, os.environ)
        previous = env.base_path
        env.base_path = path.parent
        try:
            for cmd, span in commands:
                if span is not None:
                    self.emit(env, 'stdout', f"> {span.text(text)}")
                await self.run_command(cmd, env)
        finally:
            env.base_path = previous


# ===================================================================
# Script runner
# ===================================================================

Token = Dict[str, Any]

@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and 'line' in self.error_token:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg


# call c.m(args  /  call as w c.m(args  /  encode c.m(args
_CALL_PREFIX = re.compile(
    r'(?:call(?:\s+as\s+\w+)?|encode)\s+("[^"]*"|[A-Za-z_][A-Za-z0-9_]*)\.([A-Za-z_][A-Za-z0-9_]*)\s*(\((.*))?$'
)


class ScriptRunner:
    """Parses and executes canrepl scripts against one long-lived session."""

    def __init__(self, session: Optional[Session] = None, *, base_path: Optional[str] = None,
                 **session_options):
        self.session = session or Session(**session_options)
        self.env = Environment(self.session, base_path)
        self.parser = ReplParser()
        self.evaluator = Evaluator(self.session)
        self.interpreter = CommandInterpreter(self.evaluator, self.parser)
        self.current_span = None

    def _format_parse_error(self, e: ParseError, source: str) -> str:
        span = e.span
        if span is not None:
            return f"ParseError: {e} (line {span.line}, col {span.col})\n{self._source_context(source, span.line, span.col)}"
        return f"ParseError: {e}"

    def _format_runtime_error(self, e: Exception, source: str) -> tuple[str, Optional[dict]]:
        match e:
            case ReplError():
                msg = f"{e.kind}: {e}"
            case _:
                msg = f"InternalError: {e}"
        token = None
        span = self.current_span
        if span is not None:
            token = {'line': span.line, 'col': span.col}
            msg = f"{msg}\n(line {span.line}, col {span.col})\n{self._source_context(source, span.line, span.col)}"
        return msg, token

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            out.append(f"{prefix} {ln} | {lines[i - 1]}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    async def handle_script(self, source_code: str) -> ExecutionResult:
        """The main entry point to execute a script."""
        side_effects = self.session.side_effects
        side_effects.clear()
        self.current_span = None
        try:
            commands = self.parser.parse_commands(source_code)
        except ParseError as e:
            msg = self._format_parse_error(e, source_code)
            side_effects.append({'topics': ['stderr'], 'message': msg})
            token = {'line': e.span.line, 'col': e.span.col} if e.span is not None else None
            return ExecutionResult(status='error', error_message=msg, error_token=token,
                                   side_effects=side_effects)
        result = None
        try:
            for cmd, span in commands:
                self.current_span = span
                result = await self.interpreter.run_command(cmd, self.env)
        except Exception as e:
            msg, token = self._format_runtime_error(e, source_code)
            side_effects.append({'topics': ['stderr'], 'message': msg})
            return ExecutionResult(status='error', error_message=msg, error_token=token,
                                   side_effects=side_effects)
        return ExecutionResult(status='success', value=result, side_effects=side_effects)

    def hint(self, line: str) -> Optional[str]:
        """
        Suggests random arguments for a partially typed call, e.g. for
        ``call c.greet(`` returns ``"abc")``. Only cached interfaces are used.
        """
        m = _CALL_PREFIX.search(line)
        if m is None:
            return None
        canister, method, paren, given = m.group(1).strip('"'), m.group(2), m.group(3), m.group(4)
        if given is not None and given.rstrip().endswith(")"):
            return None
        try:
            canister_id = resolve_canister(self.env, canister)
        except EvalError:
            return None
        info = self.session.directory.cached(canister_id)
        func = info.signature(method) if info is not None else None
        if func is None:
            return None
        try:
            values = random_args(func.args, info.env, self.env.config)
            count = 0
            if given and given.strip():
                count = len(self.parser.parse_exp(f"encode ({given})").args)
        except ReplError:
            return None
        rendered = [self.interpreter.printer.pformat(v) for v in values]
        if paren is None:
            return "(" + ", ".join(rendered) + ")"
        if count == 0:
            return ", ".join(rendered) + ")"
        if count > len(rendered):
            return ""
        return "".join(f", {r}" for r in rendered[count:]) + ")"

    def dump_messages(self, path: str) -> int:
        """Writes the offline message log as JSON; returns the number of messages."""
        messages = Messages(self.session.replica_url, list(self.session.messages))
        target = self.env.resolve_path(path)
        try:
            target.write_text(messages.to_json(), encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"cannot write {target}: {e}") from e
        return len(messages.messages)

import argparse
import asyncio
import sys
from pathlib import Path

from canrepl.canrepl_agent import HttpAgent
from canrepl.canrepl_candid import decode_args
from canrepl.canrepl_env import Session, PollPolicy, replica_url
from canrepl.canrepl_errors import ReplError
from canrepl.canrepl_offline import Messages, send_messages
from canrepl.canrepl_printer import Printer
from canrepl.canrepl_random import RandomConfig
from canrepl.canrepl_runtime import ScriptRunner
from canrepl.canrepl_serialize import load_source

# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)


def build_parser() -> argparse.ArgumentParser:
    argp = argparse.ArgumentParser(
        prog="canrepl",
        description="Scripting REPL for Candid canisters. Use 'canrepl send FILE' to replay offline messages.",
    )
    argp.add_argument("-r", "--replica", help="Replica to talk to: local, ic or a URL")
    argp.add_argument("--offline", action="store_true",
                      help="Sign calls without sending them; messages are saved as JSON")
    argp.add_argument("--config", help="Random value configuration (toml, yaml or json file)")
    argp.add_argument("script", nargs="?", help="Script to run; starts the REPL when omitted")
    argp.add_argument("messages", nargs="?", help=argparse.SUPPRESS)
    return argp


def build_runner(args) -> ScriptRunner:
    replica = args.replica
    agent = None if args.offline else HttpAgent(replica_url(replica))
    runner = ScriptRunner(Session(agent, replica=replica, offline=args.offline))
    if args.config:
        runner.env.config = RandomConfig.from_mapping(load_source(args.config))
    return runner


def print_effects(result):
    for effect in result.side_effects:
        topics = effect.get('topics') or []
        message = effect.get('message', '')
        if 'stderr' in topics:
            if message != result.error_message:
                print(message, file=sys.stderr)
        else:
            print(message)


def save_messages(runner: ScriptRunner):
    if not runner.session.messages:
        return
    name = runner.session.output_names.next("msg", ".json")
    count = runner.dump_messages(name)
    print(f"{count} message(s) saved to {name}")


async def run_script_file(runner: ScriptRunner, file_path: str):
    """Run a script file non-interactively and exit with appropriate status."""
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    runner.env.base_path = p.parent.resolve()
    result = await runner.handle_script(source)
    print_effects(result)
    save_messages(runner)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)


async def run_send(file_path: str, replica=None):
    """Replay a saved message log, asking before each message."""
    try:
        text = Path(file_path).read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    messages = Messages.from_json(text)
    agent = HttpAgent(messages.replica_url or replica_url(replica))

    def confirm(summary: str) -> bool:
        return input("Okay? [y/N] ").strip().lower() in ("y", "yes")

    replies = await send_messages(messages, agent, PollPolicy(), confirm)
    printer = Printer()
    for reply in replies:
        print(printer.pformat_args(decode_args(reply)))


async def repl(runner: ScriptRunner):
    print("canrepl")
    print("Type 'exit' or press Ctrl+D to quit.")
    while True:
        try:
            raw = await ainput(">> ")
            if raw == "":
                raise EOFError
            line = raw.strip()
            if not line:
                continue
            if line == "exit":
                break
            result = await runner.handle_script(line)
            print_effects(result)
            if result.status == 'error':
                print(result.format_error(), file=sys.stderr)
        except EOFError:
            print("\nExiting.")
            break
    save_messages(runner)


async def main(argv=None):
    """Run a script file when provided, otherwise start the interactive REPL."""
    args = build_parser().parse_args(argv)
    try:
        if args.script == "send":
            if not args.messages:
                print("Error: send needs a messages file", file=sys.stderr)
                raise SystemExit(2)
            await run_send(args.messages, args.replica)
            return
        runner = build_runner(args)
        if args.script:
            await run_script_file(runner, args.script)
        else:
            await repl(runner)
    except ReplError as e:
        print(f"{e.kind}: {e}", file=sys.stderr)
        raise SystemExit(1)


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")


if __name__ == "__main__":
    run()

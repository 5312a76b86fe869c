import asyncio
import sys
from pathlib import Path

from bass.bass_config import load_config
from bass.bass_datatypes import DirPath
from bass.bass_decode import thunk_from_scope
from bass.bass_errors import BassError, ReadError
from bass.bass_json import unmarshal
from bass.bass_pool import Pool
from bass.bass_printer import Printer
from bass.bass_reader import read_all
from bass.bass_runtime import ScriptRunner
from bass.bass_thunk import ThunkPath

USAGE = """usage: bass [script [args...]]
       bass --export < thunk.json > thunk.tar
       bass --prune"""


# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)


def _runner() -> ScriptRunner:
    try:
        config = load_config()
    except BassError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)
    return ScriptRunner(config)


async def run_script_file(file_path: str, args):
    """Run a Bass script non-interactively and exit with appropriate status."""
    runner = _runner()
    try:
        result = await runner.run_file(file_path, list(args))
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    finally:
        runner.pool.close()
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)


async def export_thunk():
    """Read a thunk as JSON on stdin and write its working directory as a tar stream to stdout."""
    runner = _runner()
    try:
        thunk = thunk_from_scope(unmarshal(sys.stdin.read()))
        await runner.pool.export(ThunkPath(thunk, DirPath(".")), sys.stdout.buffer)
    except BassError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)
    finally:
        runner.pool.close()


async def prune():
    """Remove every cached response, artifact and log."""
    try:
        pool = Pool(load_config())
        await pool.prune()
    except BassError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)


def _incomplete(text: str) -> bool:
    try:
        read_all(text, "<repl>")
    except ReadError as e:
        return e.incomplete
    return False


async def repl():
    print("Bass REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    # Setup
    runner = _runner()
    printer = Printer()
    runner.source_dir = str(Path.cwd())
    await runner._initialize()

    buffer = ""
    while True:
        try:
            raw = await ainput(".. " if buffer else "=> ")
            if raw == "":
                raise EOFError
            if not buffer:
                line = raw.strip()
                if not line:
                    continue
                if line == "exit":
                    break

            # keep reading while a form is left open
            buffer += raw
            if _incomplete(buffer):
                continue
            source, buffer = buffer, ""

            result = await runner.handle_script(source, "<repl>")

            if result.status == 'error':
                # Pretty, location-aware message
                print(result.format_error(), file=sys.stderr)
                continue

            print(printer.pformat(result.value))

        except EOFError:
            print("\nExiting.")
            break
    runner.pool.close()


async def main(argv):
    """Run a script file when provided, otherwise start the interactive REPL."""
    if not argv:
        await repl()
        return
    arg = argv[0]
    match arg:
        case "--export":
            await export_thunk()
        case "--prune":
            await prune()
        case "-h" | "--help":
            print(USAGE)
        case _ if arg.startswith("-"):
            print(f"unknown flag: {arg}\n{USAGE}", file=sys.stderr)
            raise SystemExit(2)
        case _:
            await run_script_file(arg, argv[1:])


def cli():
    try:
        asyncio.run(main(sys.argv[1:]))
    except KeyboardInterrupt:
        print("\nExiting.")
        raise SystemExit(1)


if __name__ == "__main__":
    cli()

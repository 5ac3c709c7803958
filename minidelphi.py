"""minidelphi command-line entry point."""

from __future__ import annotations
import argparse
import sys
from typing import Any, List, Optional

from extensions import RuntimeServices, build_default_services
from interpreter import Interpreter, TracebackFormatter
from lexer import DelphiParseError
from runtime import DelphiRuntimeError, Value


def install_trace_hooks(services: RuntimeServices, stream: Any = None) -> None:
    """Write one line to ``stream`` on every call entry and exit."""

    def _out() -> Any:
        return stream if stream is not None else sys.stderr

    @services.on_event("before_call", owner="trace")
    def _enter(interpreter: Interpreter, name: str, args: List[Value], location: Any) -> None:
        indent = "  " * interpreter.runtime.depth
        rendered = ", ".join(arg.render() for arg in args)
        print(f"{indent}-> {name}({rendered})", file=_out())

    @services.on_event("after_call", owner="trace")
    def _leave(interpreter: Interpreter, name: str, result: Value, location: Any) -> None:
        indent = "  " * interpreter.runtime.depth
        print(f"{indent}<- {name} = {result.render()}", file=_out())


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="minidelphi object Pascal interpreter")
    parser.add_argument("program", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit frame snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--trace", action="store_true", help="Log method calls to stderr")
    args = parser.parse_args(argv)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    services = build_default_services()
    if args.trace:
        install_trace_hooks(services)

    interpreter = Interpreter(source=source_text, filename=filename, verbose=args.verbose, services=services)
    try:
        interpreter.run()
    except DelphiParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1
    except DelphiRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()

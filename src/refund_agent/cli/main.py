from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any, Callable, Dict, List, Sequence

from ..domain.errors import ConfigError, SlotBusy
from ..domain.normalize import strip_brackets
from ..logging import get_logger
from ..orchestrator.flow import RefundAgent, build_agent_config

LOG = get_logger("cli-main")

EXIT_WORDS = ("exit", "quit")


def _print_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _build_agent() -> RefundAgent:
    # Read .env from the current working directory upwards
    return RefundAgent.from_config(build_agent_config(os.getcwd()))


def parse_file_args(values: Sequence[str]) -> List[str]:
    """Accept `refund_req1.png refund_req2.png` as well as `[refund_req1.png,refund_req2.png]`."""
    names: List[str] = []
    for raw in values:
        for part in strip_brackets(raw).split(","):
            part = part.strip().strip("'\"")
            if part:
                names.append(part)
    return names


def run_repl(
    agent: RefundAgent,
    *,
    read: Callable[[str], str] = input,
    write: Callable[[Dict[str, Any]], None] = _print_json,
) -> int:
    """Read queries line by line until exit/quit or end of input."""
    LOG.info("Interactive mode. Type 'exit' or 'quit' to leave.")
    while True:
        try:
            line = read("> ")
        except (EOFError, KeyboardInterrupt):
            LOG.info("Input closed. Exiting.")
            return 0
        text = (line or "").strip()
        if not text:
            continue
        if text.lower() in EXIT_WORDS:
            LOG.info("Goodbye.")
            return 0
        try:
            write(agent.handle(text))
        except SlotBusy as exc:
            LOG.warning(str(exc))
            write({"success": False, "error": str(exc)})


def main(argv: Sequence[str] | None = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    LOG.info(f"CLI invoked with arguments: {provided}")

    parser = argparse.ArgumentParser(
        prog="refund-agent",
        description="Natural-language front end over the refund request database.",
    )
    subparsers = parser.add_subparsers(dest="command")

    repl = subparsers.add_parser("repl", help="Interactive prompt (default when no command is given).")
    repl.set_defaults(handler=lambda ns: run_repl(_build_agent()))

    query = subparsers.add_parser("query", help="Classify and run a single query.")
    query.add_argument("text", nargs="+")

    def _query(ns: argparse.Namespace) -> int:
        result = _build_agent().handle(" ".join(ns.text))
        _print_json(result)
        return 0 if result.get("success", True) else 1

    query.set_defaults(handler=_query)

    receipts = subparsers.add_parser("receipts", help="Extract totals from receipt images in storage.")
    receipts.add_argument("files", nargs="+", help="Receipt filenames, e.g. refund_req1.png")

    def _receipts(ns: argparse.Namespace) -> int:
        names = parse_file_args(ns.files)
        if not names:
            LOG.error("No receipt filenames given")
            return 2
        result = _build_agent().process_receipts(names)
        _print_json(result)
        return 0 if result["success"] else 1

    receipts.set_defaults(handler=_receipts)

    audio = subparsers.add_parser("audio", help="Transcribe and summarize pending audio attachments.")
    audio.add_argument("--single", action="store_true", help="Only process the first pending record")

    def _audio(ns: argparse.Namespace) -> int:
        result = _build_agent().process_audio(single=ns.single)
        _print_json(result)
        return 0 if result["success"] else 1

    audio.set_defaults(handler=_audio)

    summaries = subparsers.add_parser("summaries", help="List stored audio summaries.")

    def _summaries(_: argparse.Namespace) -> int:
        _print_json(_build_agent().audio_summaries())
        return 0

    summaries.set_defaults(handler=_summaries)

    url = subparsers.add_parser("url", help="Print the public URL of a receipt image.")
    url.add_argument("file")

    def _url(ns: argparse.Namespace) -> int:
        _print_json(_build_agent().receipt_url(strip_brackets(ns.file)))
        return 0

    url.set_defaults(handler=_url)

    serve = subparsers.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=3000)
    serve.add_argument("--log-level", default="info")
    serve.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )

    def _serve(ns: argparse.Namespace) -> int:
        from ..api import create_app
        import uvicorn

        app = create_app(_build_agent(), allow_origins=ns.allow_origins)
        uvicorn.run(app, host=ns.host, port=ns.port, log_level=ns.log_level)
        return 0

    serve.set_defaults(handler=_serve)

    args = parser.parse_args(provided)
    handler = getattr(args, "handler", None) or (lambda ns: run_repl(_build_agent()))
    try:
        code = handler(args)
    except ConfigError as exc:
        LOG.error(f"Configuration error: {exc}")
        return 1
    LOG.info(f"Subcommand '{args.command or 'repl'}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())

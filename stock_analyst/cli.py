"""Command-line entry point: run the server or talk to a running one."""
import argparse
import sys
from typing import Any, Dict, Optional

import httpx
from rich.console import Console
from rich.live import Live
from rich.table import Table

from stock_analyst.app.settings import get_settings
from stock_analyst.rendering.console import document_renderable
from stock_analyst.rendering.markdown import render
from stock_analyst.streaming.sse import DeltaToken, ErrorEvent, SSEFrameDecoder


def stream_to_console(
    client: httpx.Client,
    path: str,
    body: Dict[str, Any],
    console: Console,
) -> Optional[str]:
    """POST `body`, redraw the rendered answer on every delta, return the full text.

    Returns None when the server rejected the request or the relay reported an error.
    """
    decoder = SSEFrameDecoder(surface_errors=True)
    text = ""
    failed = False
    with client.stream("POST", path, json=body) as resp:
        if resp.status_code >= 400:
            resp.read()
            console.print(f"[red]Request rejected ({resp.status_code}): {resp.text}[/red]")
            return None
        with Live(console=console, refresh_per_second=8, vertical_overflow="visible") as live:
            for chunk in resp.iter_bytes():
                for event in decoder.feed(chunk):
                    if isinstance(event, DeltaToken):
                        text += event.text
                        live.update(document_renderable(render(text)))
                    elif isinstance(event, ErrorEvent):
                        failed = True
                        console.print(f"[red]{event.message}[/red]")
                if decoder.terminated:
                    break
    return None if failed else text


def _relay_body(args: argparse.Namespace) -> Dict[str, Any]:
    settings = get_settings()
    api_key = args.api_key or settings.api_key
    if not api_key:
        raise SystemExit("An API key is required: pass --api-key or set API_KEY")
    return {
        "sessionId": args.session,
        "apiKey": api_key,
        "apiUrl": args.api_url or settings.default_api_url(),
        "model": args.model or settings.default_model(),
    }


def _client(args: argparse.Namespace) -> httpx.Client:
    # generation can pause for a long time between deltas
    return httpx.Client(base_url=args.server, timeout=httpx.Timeout(10.0, read=None))


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("stock_analyst.app.main:create_app", factory=True, host=args.host, port=args.port)
    return 0


def cmd_analyze(args: argparse.Namespace) -> int:
    console = Console()
    body = {**_relay_body(args), "stockCode": args.code, "exchange": args.exchange}
    with _client(args) as client:
        text = stream_to_console(client, "/api/analyze", body, console)
    return 0 if text is not None else 1


def cmd_chat(args: argparse.Namespace) -> int:
    console = Console()
    body = {**_relay_body(args), "message": args.message}
    with _client(args) as client:
        text = stream_to_console(client, "/api/chat", body, console)
    return 0 if text is not None else 1


def cmd_history(args: argparse.Namespace) -> int:
    console = Console()
    with _client(args) as client:
        resp = client.get("/api/history")
        resp.raise_for_status()
        records = resp.json()
    table = Table("ID", "Code", "Name", "Created", "Chars")
    for record in records[: args.limit]:
        table.add_row(
            str(record["id"]),
            record["stock_code"],
            record.get("stock_name") or "",
            record["created_at"],
            str(len(record["content"])),
        )
    console.print(table)
    return 0


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(prog="stock-analyst", description="AI stock analysis over a streaming LLM proxy")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--host", default=settings.host)
    serve_parser.add_argument("--port", type=int, default=settings.port)
    serve_parser.set_defaults(func=cmd_serve)

    def add_client_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--server", default=settings.server_url, help="Base URL of a running server")
        p.add_argument("--session", default="cli", help="Session id; a new request supersedes the previous one")

    def add_relay_args(p: argparse.ArgumentParser) -> None:
        add_client_args(p)
        p.add_argument("--api-key", help="Bearer credential for the LLM endpoint")
        p.add_argument("--api-url", help="OpenAI-compatible chat-completions URL")
        p.add_argument("--model", help="Model name")

    analyze_parser = subparsers.add_parser("analyze", help="Stream a new analysis for a stock")
    analyze_parser.add_argument("code", help="Stock code, e.g. 600519, sz000001, hk00700")
    analyze_parser.add_argument("--exchange", default="auto", choices=["auto", "sh", "sz", "bj", "hk"])
    add_relay_args(analyze_parser)
    analyze_parser.set_defaults(func=cmd_analyze)

    chat_parser = subparsers.add_parser("chat", help="Ask a follow-up question in the current session")
    chat_parser.add_argument("message")
    add_relay_args(chat_parser)
    chat_parser.set_defaults(func=cmd_chat)

    history_parser = subparsers.add_parser("history", help="List saved analyses")
    history_parser.add_argument("--limit", type=int, default=settings.history_limit)
    add_client_args(history_parser)
    history_parser.set_defaults(func=cmd_history)

    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

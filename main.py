"""Command-line interface for chat memory extraction."""

import argparse
import asyncio
import json
import logging
import os
import sys

from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from medmem.errors import MedMemError
from medmem.pipeline import PROVIDERS, MemoryPipeline
from medmem.tokenizer import TOKENIZERS, get_tokenizer

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

API_KEY_ENV = {
    "groq": "GROQ_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Extract and inspect long-term chat memory")
    parser.add_argument("--provider", default="groq", choices=PROVIDERS, help="LLM provider")
    parser.add_argument("--base-url", help="Base URL for the LLM API (e.g. http://localhost:11434/v1 for Ollama)")
    parser.add_argument("--model", default="llama-3.3-70b-versatile", help="Model name to use")
    parser.add_argument("--db", default="memory.db", help="Path to database file")
    parser.add_argument("--log-file", help="Write logs to this file instead of stderr")
    parser.add_argument("--verbose", action="store_true", help="Print oracle calls and token usage")

    sub = parser.add_subparsers(dest="command", required=True)

    extract = sub.add_parser("extract", help="Extract memory from a transcript JSON file")
    extract.add_argument("transcript", help="JSON file: a list of {role, content} or {\"messages\": [...]}")
    extract.add_argument("--user", required=True, help="User id")
    extract.add_argument("--session", required=True, help="Session id")
    extract.add_argument("--deadline", type=float, help="Time budget for the run in seconds")
    extract.add_argument("--tokenizer", default="heuristic", choices=sorted(TOKENIZERS),
                         help="Token estimator used for chunking")
    extract.add_argument("--no-semantic", action="store_true", help="Skip the semantic index")

    context = sub.add_parser("context", help="Show the aggregated context for a user")
    context.add_argument("--user", required=True)
    context.add_argument("--query", help="Render semantic context for this query instead")

    listing = sub.add_parser("list", help="List stored memory entries for a user")
    listing.add_argument("--user", required=True)

    snapshot = sub.add_parser("snapshot", help="Write a markdown snapshot for a user")
    snapshot.add_argument("--user", required=True)
    snapshot.add_argument("--dir", default="snapshots", help="Snapshot directory")

    return parser


def configure_logging(log_file: str | None, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        filename=log_file,
    )


def load_transcript(path: str) -> list[dict]:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("messages", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of messages")
    return data


def main():
    load_dotenv()
    args = build_parser().parse_args()
    configure_logging(args.log_file, args.verbose)
    console = Console()

    # Check API key only when an extraction will actually call the oracle
    env_name = API_KEY_ENV.get(args.provider)
    api_key = os.environ.get(env_name) if env_name else None
    if args.command == "extract" and env_name and not args.base_url and not api_key:
        console.print(f"[red]Error: set {env_name} in .env to use {args.provider}, "
                      f"or specify another --provider[/red]")
        sys.exit(1)

    pipeline = MemoryPipeline(
        api_key=api_key,
        base_url=args.base_url,
        provider=args.provider,
        model=args.model,
        db_path=args.db,
        tokenizer=get_tokenizer(getattr(args, "tokenizer", "heuristic")),
        semantic_index=not getattr(args, "no_semantic", False),
        verbose=args.verbose,
    )

    try:
        if args.command == "extract":
            _run_extract(console, pipeline, args)
        elif args.command == "context":
            _show_context(console, pipeline, args.user, args.query)
        elif args.command == "list":
            _show_memories(console, pipeline, args.user)
        elif args.command == "snapshot":
            pipeline.store.ensure_schema()
            path = pipeline.store.write_snapshot(args.user, args.dir)
            console.print(f"[dim]Snapshot saved to {path}[/dim]")
    except (MedMemError, OSError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    finally:
        pipeline.close()


def _run_extract(console: Console, pipeline: MemoryPipeline, args) -> None:
    messages = load_transcript(args.transcript)
    result = asyncio.run(pipeline.extract_from_chat_history(
        args.user, args.session, messages, deadline=args.deadline,
    ))

    status = f"{result.chunks_processed}/{result.chunks_total} chunks processed"
    if result.chunks_failed:
        status += f", [yellow]{result.chunks_failed} failed[/yellow]"
    if result.timed_out:
        status += ", [yellow]deadline reached[/yellow]"

    console.print(Panel(
        f"[green]✓ {result.memory_count} memories extracted[/green]\n[dim]{status}[/dim]",
        title="[bold cyan]Extraction[/bold cyan]",
        box=box.ROUNDED,
    ))
    if result.summary:
        console.print(Panel(result.summary, title="[bold blue]Context Summary[/bold blue]", box=box.ROUNDED))


def _show_context(console: Console, pipeline: MemoryPipeline, user_id: str, query: str | None) -> None:
    text = asyncio.run(pipeline.generate_contextual_summary(user_id, query))
    if not text:
        console.print("[dim]No memory stored for this user yet.[/dim]")
        return
    console.print(Panel(text, title=f"[bold blue]Context: {user_id}[/bold blue]", box=box.ROUNDED))


def _show_memories(console: Console, pipeline: MemoryPipeline, user_id: str) -> None:
    """Display all stored entries in a table."""
    entries = asyncio.run(pipeline.list_memories(user_id))

    if not entries:
        console.print("[dim]No memories stored yet.[/dim]")
        return

    table = Table(title=f"Memories: {user_id}", box=box.SIMPLE_HEAVY)
    table.add_column("ID", style="dim", width=16)
    table.add_column("Type", style="cyan", width=16)
    table.add_column("Summary", width=48)
    table.add_column("Imp", justify="right", width=6)
    table.add_column("Conf", justify="right", width=6)
    table.add_column("Session", style="dim", width=12)

    for e in entries:
        table.add_row(
            e.id,
            e.memory_type,
            e.summary,
            f"{e.importance:.2f}",
            f"{e.confidence:.2f}",
            e.session_id,
        )

    console.print(table)


if __name__ == "__main__":
    main()

"""Deep Research - web research with streamed, cited answers

Command line entry point: serve the web app, run a query against a running
server, or manage the local research history.
"""

import argparse
import asyncio
import os
import sys

from dotenv import load_dotenv

from deepresearch.client.consumer import ResearchClient
from deepresearch.client.history import HistoryStore


async def run_research(
    query: str,
    server: str,
    token: str,
    model: str | None = None,
    history: HistoryStore | None = None,
) -> int:
    """Run one query through the server and print the answer as it streams."""
    print(f"Research query: {query}")
    print("-" * 50)

    client = ResearchClient(base_url=server, token=token, history=history)
    consumer = await client.research(
        query,
        model=model,
        on_delta=lambda delta: print(delta, end="", flush=True),
    )

    for notice in consumer.notices:
        print(f"\n[i] {notice}")

    if consumer.error:
        print(f"\n[!] Error: {consumer.error}")
        return 1

    print(f"\n\n{'=' * 50}")
    print("FINAL ANSWER:")
    print(f"{'=' * 50}")
    print(consumer.buffer)
    print(f"\n[*] Sources: {len(consumer.sources)}")
    for index, source in enumerate(consumer.sources, 1):
        print(f"  {index}. {source.get('title') or source.get('link')}")
    print(f"[*] Shareable link: {server.rstrip('/')}{consumer.link}")
    if consumer.cost is not None:
        print(f"[*] Estimated cost: ${consumer.cost:.6f}")
    return 0


def show_history(history: HistoryStore) -> int:
    entries = history.list_entries()
    if not entries:
        print("No history yet.")
        return 0
    for entry in entries:
        model = f" [{entry.modelUsed.get('name')}]" if entry.modelUsed else ""
        print(f"{entry.timestamp}  {entry.id}  {entry.query[:80]}{model}")
    return 0


def delete_history(history: HistoryStore, entry_id: str) -> int:
    if history.delete(entry_id):
        print(f"Deleted {entry_id}")
        return 0
    print(f"No history entry with id {entry_id}")
    return 1


def serve() -> int:
    import uvicorn

    from deepresearch.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "deepresearch.main:create_app",
        factory=True,
        host=settings.server_ip,
        port=settings.port,
    )
    return 0


def main():
    load_dotenv()

    parser = argparse.ArgumentParser(description="Deep Research")
    parser.add_argument("--history-file", help="Path to the local history file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Run the web server")

    research = subparsers.add_parser("research", help="Research a query")
    research.add_argument("--query", "-q", required=True, help="Research query")
    research.add_argument("--model", "-m", help="Model id (default: server default)")
    research.add_argument(
        "--server",
        default=os.getenv("DEEPRESEARCH_SERVER", f"http://localhost:{os.getenv('PORT', '3000')}"),
        help="Base URL of the running server",
    )
    research.add_argument(
        "--token",
        default=os.getenv("SESSION_SECRET_TOKEN", ""),
        help="Access token (default: SESSION_SECRET_TOKEN)",
    )

    subparsers.add_parser("history", help="List past research, newest first")

    delete = subparsers.add_parser("history-delete", help="Remove a history entry")
    delete.add_argument("id", help="Research result id")

    args = parser.parse_args()
    history = HistoryStore(args.history_file) if args.history_file else HistoryStore()

    if args.command == "serve":
        sys.exit(serve())
    if args.command == "research":
        sys.exit(asyncio.run(run_research(args.query, args.server, args.token, args.model, history)))
    if args.command == "history":
        sys.exit(show_history(history))
    if args.command == "history-delete":
        sys.exit(delete_history(history, args.id))


if __name__ == "__main__":
    main()

"""Lexis CLI -- ask, inspect and maintain the learning store, and run the server."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from lexis.config import EngineConfig, log_level_from_env, resolve_under_home
from lexis.errors import InvalidInput, LexisError


def _engine(online: bool | None = None):
    from lexis.engine import Engine

    config = EngineConfig.from_env()
    if online is not None:
        config.online_lookups = online
    return Engine(config)


def _with_engine(fn, online: bool | None = False):
    """Run ``fn(engine)`` (sync or async) inside a started engine; the store is saved on exit."""

    async def runner():
        async with _engine(online) as engine:
            result = fn(engine)
            if asyncio.iscoroutine(result):
                result = await result
            return result

    return asyncio.run(runner())


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _joined(parts) -> str:
    return " ".join(parts).strip()


def cmd_ask(args):
    """Run one message through the full pipeline."""
    text = _joined(args.text)
    if not text:
        print("Usage: lexis ask <message>", file=sys.stderr)
        sys.exit(1)

    online = False if args.offline else None
    response = _with_engine(lambda engine: engine.process(text), online=online)

    if args.json:
        _print_json(response.to_dict())
        return
    print(f"Intent:     {response.intent} ({response.confidence:.2f})")
    if response.entities:
        print(f"Entities:   {', '.join(response.entities)}")
    if response.answer:
        print(f"Answer:     {response.answer}")
    if response.error:
        print(f"Note:       {response.error}")
    if response.learned:
        print(f"Learned:    {', '.join(response.learned)}")
    if response.degraded:
        print(f"Degraded:   {', '.join(response.degraded)}")


def cmd_match(args):
    """Classify a message without touching the store."""
    text = _joined(args.text)
    result = _with_engine(lambda engine: engine.match_intent(text))
    if args.json:
        _print_json(result.to_dict() if result else None)
        return
    if result is None:
        print("No intent matched.")
        return
    print(f"{result.intent} ({result.confidence:.2f})")
    if result.entities:
        print(f"  entities: {', '.join(result.entities)}")


def cmd_tokenize(args):
    text = _joined(args.text)

    def run(engine):
        if args.encode:
            return engine.tokenizer.encode(text)
        return engine.tokenizer.get_token_info(text)

    result = _with_engine(run)
    if args.encode:
        print(" ".join(str(i) for i in result))
        return
    if args.json:
        _print_json({
            "tokens": [t.to_dict() for t in result.tokens],
            "known_words": result.known_words,
            "unknown_words": result.unknown_words,
        })
        return
    for t in result.tokens:
        mark = "" if t.is_known else " (unknown)"
        subwords = f" = {' + '.join(t.subwords)}" if t.subwords else ""
        print(f"{t.id:>6}  {t.token}{subwords}{mark}")
    print(f"\n{result.known_words} known, {result.unknown_words} unknown")


def cmd_learn(args):
    """Teach the store one fact given as a JSON object."""
    try:
        content = json.loads(args.content)
    except ValueError as e:
        print(f"Error: content is not valid JSON: {e}", file=sys.stderr)
        sys.exit(1)
    entry_id = _with_engine(lambda engine: engine.learn(args.type, content, args.source))
    print(f"Learned: {entry_id}")


def cmd_query(args):
    query_text = _joined(args.query_text)
    if not query_text:
        print("Usage: lexis query <search text>", file=sys.stderr)
        sys.exit(1)

    ranked = _with_engine(lambda engine: engine.store.rank(query_text, args.type, args.limit))
    if args.json:
        out = [{**entry.to_dict(), "score": round(score, 4)} for entry, score in ranked]
        _print_json({"results": out, "count": len(out)})
        return
    if not ranked:
        print("No matching entries.")
        return
    for entry, score in ranked:
        print(f"[{score:5.2f}] {entry.id}  ({entry.type.value}, confidence {entry.confidence:.2f}, "
              f"used {entry.usage_count}x)")


def cmd_feedback(args):
    entry = _with_engine(lambda engine: engine.feedback(args.entry_id, args.action))
    if entry is None:
        print(f"Error: entry not found: {args.entry_id}", file=sys.stderr)
        sys.exit(1)
    print(f"{entry.id}: confidence {entry.confidence:.2f}, used {entry.usage_count}x")


def cmd_consolidate(args):
    """Prune stale entries and merge near-duplicates."""
    result = _with_engine(lambda engine: engine.store.consolidate())
    if args.json:
        _print_json(result)
        return
    print("Consolidation complete:")
    print(f"  Pruned:          {result['pruned']}")
    print(f"  Merged:          {result['merged']} (in {result['groups']} groups)")
    print(f"  Entries after:   {result['remaining']}")


def cmd_export(args):
    path = resolve_under_home(args.filepath)
    result = _with_engine(lambda engine: engine.export_to_file(path))
    print(f"Exported {result['entry_count']} entries to {result['filepath']}")


def cmd_import(args):
    path = resolve_under_home(args.filepath)
    if not path.exists():
        print(f"Error: file not found: {path}", file=sys.stderr)
        sys.exit(1)
    result = _with_engine(lambda engine: engine.import_from_file(path, clear_existing=not args.merge))
    print(f"Imported {result['entry_count']} entries from {result['filepath']}")


def cmd_seed(args):
    """Load compact seed chunks (optionally from a directory) into the store."""
    from lexis.seed import MATH_SEED_KEY, VOCAB_CHUNK_PREFIX, SeedLoader, write_seed_chunk

    chunks = args.chunks or [1, 2, 3, 4]

    def load_dir(engine, directory: Path) -> None:
        files = [(f"{VOCAB_CHUNK_PREFIX}{n}", directory / f"{VOCAB_CHUNK_PREFIX}{n}.json") for n in chunks]
        files.append((MATH_SEED_KEY, directory / f"{MATH_SEED_KEY}.json"))
        for key, path in files:
            if not path.exists():
                continue
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except ValueError as e:
                raise InvalidInput(f"{path} is not valid JSON: {e}") from e
            write_seed_chunk(engine.kv, key, data)

    async def run(engine):
        if args.dir:
            load_dir(engine, Path(args.dir).expanduser())
        return await SeedLoader(engine.kv).seed_store(engine.store, chunks=chunks, include_math=not args.no_math)

    counts = _with_engine(run)
    if args.json:
        _print_json(counts)
        return
    print(f"Seeded {counts['vocabulary']} vocabulary and {counts['math']} math entries.")


def cmd_stats(args):
    stats = _with_engine(lambda engine: engine.stats())
    if args.json:
        _print_json(stats)
        return
    store = stats["store"]
    print(f"Entries:            {store['total']}")
    for name, count in store["by_type"].items():
        print(f"  {name:<16} {count}")
    print(f"Average confidence: {store['average_confidence']:.2f}")
    print(f"Total usage:        {store['total_usage']}")
    print(f"Vocabulary size:    {stats['tokenizer']['vocabulary_size']}")


def cmd_serve(args):
    """Run the MCP server (stdio by default, Streamable HTTP with --http)."""
    if args.http:
        from lexis.server.http_server import get_or_create_api_key, run_http

        api_key = None if args.no_auth else get_or_create_api_key()
        asyncio.run(run_http(args.host, args.port, api_key))
        return

    from lexis.server.mcp_server import main as serve_stdio

    asyncio.run(serve_stdio())


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="lexis",
        description="Lexis: a knowledge acquisition engine that learns from conversation",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    ask_parser = subparsers.add_parser("ask", help="Process a message: intent, tokens, lookups, answer")
    ask_parser.add_argument("text", nargs="+", help="Message text")
    ask_parser.add_argument("--offline", action="store_true", help="Skip dictionary/encyclopedia/math lookups")
    ask_parser.add_argument("--json", action="store_true", help="Output as JSON")

    match_parser = subparsers.add_parser("match", help="Classify a message into an intent")
    match_parser.add_argument("text", nargs="+")
    match_parser.add_argument("--json", action="store_true", help="Output as JSON")

    tokenize_parser = subparsers.add_parser("tokenize", help="Show tokens and ids for text")
    tokenize_parser.add_argument("text", nargs="+")
    tokenize_parser.add_argument("--encode", action="store_true", help="Print the id sequence only")
    tokenize_parser.add_argument("--json", action="store_true", help="Output as JSON")

    learn_parser = subparsers.add_parser("learn", help="Teach the store a fact")
    learn_parser.add_argument("type", choices=["vocabulary", "math", "pattern", "knowledge"])
    learn_parser.add_argument("content", help='Content as JSON, e.g. \'{"word": "apple", "definition": "a fruit"}\'')
    learn_parser.add_argument("--source", default="conversation", help="Provenance label (default: conversation)")

    query_parser = subparsers.add_parser("query", help="Rank learned entries against text")
    query_parser.add_argument("query_text", nargs="+", help="Search text")
    query_parser.add_argument("-t", "--type", choices=["vocabulary", "math", "pattern", "knowledge"])
    query_parser.add_argument("--limit", type=int, default=10, help="Max results (default: 10)")
    query_parser.add_argument("--json", action="store_true", help="Output as JSON")

    feedback_parser = subparsers.add_parser("feedback", help="Record used/positive/negative feedback on an entry")
    feedback_parser.add_argument("entry_id")
    feedback_parser.add_argument("action", choices=["used", "positive", "negative"])

    consolidate_parser = subparsers.add_parser("consolidate", help="Prune and merge near-duplicate entries")
    consolidate_parser.add_argument("--json", action="store_true", help="Output as JSON")

    export_parser = subparsers.add_parser("export", help="Export the store to a JSON file under LEXIS_HOME")
    export_parser.add_argument("filepath")

    import_parser = subparsers.add_parser("import", help="Import a JSON snapshot from under LEXIS_HOME")
    import_parser.add_argument("filepath")
    import_parser.add_argument("--merge", action="store_true", help="Merge into the store instead of replacing it")

    seed_parser = subparsers.add_parser("seed", help="Seed the store from compact vocabulary/math chunks")
    seed_parser.add_argument("--dir", help="Directory with seed_vocab_chunk_<n>.json and seed_maths.json")
    seed_parser.add_argument("--chunks", type=int, nargs="+", help="Vocabulary chunk numbers (default: 1 2 3 4)")
    seed_parser.add_argument("--no-math", action="store_true", help="Skip the math seed chunk")
    seed_parser.add_argument("--json", action="store_true", help="Output as JSON")

    stats_parser = subparsers.add_parser("stats", help="Show entry counts, confidence and cache statistics")
    stats_parser.add_argument("--json", action="store_true", help="Output as JSON")

    serve_parser = subparsers.add_parser("serve", help="Run the MCP server (stdio, or HTTP with --http)")
    serve_parser.add_argument("--http", action="store_true", help="Serve Streamable HTTP instead of stdio")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8765, help="HTTP port (default: 8765)")
    serve_parser.add_argument("--no-auth", action="store_true", help="Disable the x-api-key check")

    args = parser.parse_args(argv)

    commands = {
        "ask": cmd_ask,
        "match": cmd_match,
        "tokenize": cmd_tokenize,
        "learn": cmd_learn,
        "query": cmd_query,
        "feedback": cmd_feedback,
        "consolidate": cmd_consolidate,
        "export": cmd_export,
        "import": cmd_import,
        "seed": cmd_seed,
        "stats": cmd_stats,
        "serve": cmd_serve,
    }

    if args.command not in commands:
        parser.print_help()
        return

    if args.command != "serve":
        logging.basicConfig(level=log_level_from_env(), stream=sys.stderr)
    try:
        commands[args.command](args)
    except LexisError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

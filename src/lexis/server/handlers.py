"""
Lexis MCP Handlers -- maps tool names to async handler functions.

Handlers are closures over one Engine (``build_handlers(engine)``) and
return MCP-compatible response dicts. Bad arguments come back as an
``isError`` response with the reason; unexpected failures are logged and
reported without internals.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict

from lexis.config import resolve_under_home
from lexis.crypto import is_enabled as crypto_enabled
from lexis.errors import InvalidInput, LexisError

logger = logging.getLogger("lexis.server.handlers")

Handler = Callable[[dict], Awaitable[dict]]

WRITE_TOOLS = frozenset({
    "lexis_process", "lexis_learn", "lexis_feedback",
    "lexis_consolidate", "lexis_export", "lexis_import",
})


def _clamp_int(value, default: int, min_val: int = 1, max_val: int = 10000) -> int:
    """Clamp a numeric argument to safe bounds."""
    try:
        v = int(value)
        return max(min_val, min(v, max_val))
    except (TypeError, ValueError):
        return default


# ============================================================================
# Response Helpers
# ============================================================================


def mcp_response(result: Any) -> dict:
    """Build a successful MCP response; dicts and lists are rendered as JSON."""
    if isinstance(result, (dict, list)):
        text = json.dumps(result, ensure_ascii=False, indent=2, default=str)
    else:
        text = str(result)
    return {"content": [{"type": "text", "text": text}]}


def mcp_error(text: str) -> dict:
    """Build an error MCP response."""
    return {"content": [{"type": "text", "text": f"Error: {text}"}], "isError": True}


def _text_arg(arguments: dict, name: str) -> str:
    value = arguments.get(name, "")
    return value.strip() if isinstance(value, str) else ""


# ============================================================================
# Handler Registry
# ============================================================================


def build_handlers(engine) -> Dict[str, Handler]:
    """Return the tool-name -> handler table bound to engine."""

    async def handle_lexis_process(arguments: dict) -> dict:
        """Run one message through the engine."""
        text = _text_arg(arguments, "text")
        if not text:
            return mcp_error("text is required")
        try:
            response = await engine.process(text)
            return mcp_response(response.to_dict())
        except InvalidInput as e:
            return mcp_error(str(e))
        except Exception as e:
            logger.error("lexis_process failed: %s", e)
            return mcp_error("Processing failed")

    async def handle_lexis_match(arguments: dict) -> dict:
        text = _text_arg(arguments, "text")
        if not text:
            return mcp_error("text is required")
        try:
            result = engine.match_intent(text)
        except Exception as e:
            logger.error("lexis_match failed: %s", e)
            return mcp_error("Intent matching failed")
        if result is None:
            return mcp_response("No intent matched.")
        return mcp_response(result.to_dict())

    async def handle_lexis_tokenize(arguments: dict) -> dict:
        text = _text_arg(arguments, "text")
        if not text:
            return mcp_error("text is required")
        try:
            if arguments.get("encode", False):
                return mcp_response({"ids": engine.tokenizer.encode(text)})
            stats = engine.tokenizer.get_token_info(text)
            return mcp_response({
                "tokens": [t.to_dict() for t in stats.tokens],
                "known_words": stats.known_words,
                "unknown_words": stats.unknown_words,
                "total_tokens": stats.total_tokens,
            })
        except Exception as e:
            logger.error("lexis_tokenize failed: %s", e)
            return mcp_error("Tokenization failed")

    async def handle_lexis_learn(arguments: dict) -> dict:
        """Teach the store one typed fact."""
        entry_type = _text_arg(arguments, "entry_type")
        content = arguments.get("content")
        if not entry_type:
            return mcp_error("entry_type is required")
        if not isinstance(content, dict) or not content:
            return mcp_error("content must be a non-empty object")
        source = _text_arg(arguments, "source") or "conversation"
        try:
            entry_id = engine.learn(entry_type, content, source)
        except InvalidInput as e:
            return mcp_error(str(e))
        except Exception as e:
            logger.error("lexis_learn failed: %s", e)
            return mcp_error("Learning failed")
        entry = engine.store.get(entry_id)
        return mcp_response({"id": entry_id, "confidence": entry.confidence if entry else None})

    async def handle_lexis_query(arguments: dict) -> dict:
        query_text = _text_arg(arguments, "query")
        if not query_text:
            return mcp_error("query is required")
        limit = _clamp_int(arguments.get("limit", 10), default=10, max_val=1000)
        entry_type = arguments.get("entry_type") or None
        try:
            ranked = engine.store.rank(query_text, entry_type, limit)
        except InvalidInput as e:
            return mcp_error(str(e))
        except Exception as e:
            logger.error("lexis_query failed: %s", e)
            return mcp_error("Query failed")
        if not ranked:
            return mcp_response("No matching entries.")
        return mcp_response([{**entry.to_dict(), "score": round(score, 4)} for entry, score in ranked])

    async def handle_lexis_feedback(arguments: dict) -> dict:
        """Record a retrieval hit or a positive/negative signal on an entry."""
        entry_id = _text_arg(arguments, "entry_id")
        action = _text_arg(arguments, "action").lower()
        if not entry_id:
            return mcp_error("entry_id is required")
        if action not in ("used", "positive", "negative"):
            return mcp_error("action must be one of: used, positive, negative")
        try:
            entry = engine.feedback(entry_id, action)
        except InvalidInput as e:
            return mcp_error(str(e))
        except Exception as e:
            logger.error("lexis_feedback failed: %s", e)
            return mcp_error("Feedback failed")
        if entry is None:
            return mcp_error(f"Entry not found: {entry_id}")
        return mcp_response(
            f"Feedback recorded: {action} for `{entry_id}`\n"
            f"Confidence: {entry.confidence:.2f} | Used {entry.usage_count} times"
        )

    async def handle_lexis_consolidate(arguments: dict) -> dict:
        try:
            result = engine.store.consolidate()
            engine.matcher.set_topics(engine.store.topics())
            return mcp_response(result)
        except Exception as e:
            logger.error("lexis_consolidate failed: %s", e)
            return mcp_error("Consolidation failed")

    async def handle_lexis_export(arguments: dict) -> dict:
        filepath = _text_arg(arguments, "filepath")
        if not filepath:
            return mcp_error("filepath is required")
        try:
            resolved = resolve_under_home(filepath)
        except InvalidInput as e:
            return mcp_error(str(e))
        try:
            result = engine.export_to_file(resolved)
        except Exception as e:
            logger.error("lexis_export failed: %s", e)
            return mcp_error("Export failed (internal error)")
        # Snapshots at rest are encrypted, exports are not
        if crypto_enabled():
            result["warning"] = (
                "LEXIS_ENCRYPT is enabled but exports are plaintext. "
                "Store the file securely or delete it after use."
            )
        return mcp_response(result)

    async def handle_lexis_import(arguments: dict) -> dict:
        filepath = _text_arg(arguments, "filepath")
        if not filepath:
            return mcp_error("filepath is required")
        try:
            resolved = resolve_under_home(filepath)
        except InvalidInput as e:
            return mcp_error(str(e))
        if not resolved.exists():
            return mcp_error("File not found")
        clear_existing = bool(arguments.get("clear_existing", True))
        try:
            return mcp_response(engine.import_from_file(resolved, clear_existing=clear_existing))
        except LexisError as e:
            return mcp_error(str(e))
        except Exception as e:
            logger.error("lexis_import failed: %s", e)
            return mcp_error("Import failed (internal error)")

    async def handle_lexis_stats(arguments: dict) -> dict:
        try:
            return mcp_response(engine.stats())
        except Exception as e:
            logger.error("lexis_stats failed: %s", e)
            return mcp_error("Stats failed")

    return {
        "lexis_process": handle_lexis_process,
        "lexis_match": handle_lexis_match,
        "lexis_tokenize": handle_lexis_tokenize,
        "lexis_learn": handle_lexis_learn,
        "lexis_query": handle_lexis_query,
        "lexis_feedback": handle_lexis_feedback,
        "lexis_consolidate": handle_lexis_consolidate,
        "lexis_export": handle_lexis_export,
        "lexis_import": handle_lexis_import,
        "lexis_stats": handle_lexis_stats,
    }

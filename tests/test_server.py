"""Lexis MCP server tests -- schemas, handlers, rate limiting, dispatch."""
import json

import pytest
from mcp import types

from lexis.server.handlers import WRITE_TOOLS, _clamp_int, build_handlers, mcp_error, mcp_response
from lexis.server.mcp_server import ToolRateLimiter, create_server
from lexis.server.tool_schemas import TOOL_SCHEMAS


def _text(result: dict) -> str:
    return result["content"][0]["text"]


def _json(result: dict):
    assert not result.get("isError"), result
    return json.loads(_text(result))


@pytest.fixture
def handlers(engine):
    return build_handlers(engine)


# ============================================================================
# Schema / Registry Tests
# ============================================================================

def test_all_tools_have_handlers(engine):
    """Every tool in TOOL_SCHEMAS has a handler and vice versa."""
    schema_names = {s["name"] for s in TOOL_SCHEMAS}
    assert schema_names == set(build_handlers(engine))
    assert len(TOOL_SCHEMAS) == 10


def test_tool_schemas_valid():
    for schema in TOOL_SCHEMAS:
        assert schema["name"].startswith("lexis_")
        assert schema["description"]
        assert schema["inputSchema"]["type"] == "object"


def test_write_tools_are_real_tools():
    assert WRITE_TOOLS <= {s["name"] for s in TOOL_SCHEMAS}


def test_response_helpers():
    assert _text(mcp_response({"a": 1})) == '{\n  "a": 1\n}'
    assert _text(mcp_response("plain")) == "plain"
    err = mcp_error("bad")
    assert err["isError"] is True
    assert _text(err) == "Error: bad"


@pytest.mark.parametrize("value,expected", [("5", 5), (0, 1), (99999, 10000), ("x", 7), (None, 7)])
def test_clamp_int(value, expected):
    assert _clamp_int(value, default=7) == expected


# ============================================================================
# Handlers
# ============================================================================

class TestProcessAndMatch:
    @pytest.mark.asyncio
    async def test_process(self, handlers):
        data = _json(await handlers["lexis_process"]({"text": "what is 6 times 7"}))
        assert data["answer"] == "42"
        assert data["intent"] == "mathematics"

    @pytest.mark.asyncio
    async def test_process_requires_text(self, handlers):
        result = await handlers["lexis_process"]({"text": "   "})
        assert result["isError"]

    @pytest.mark.asyncio
    async def test_process_unexpected_failure_is_generic(self, handlers, engine, monkeypatch):
        async def boom(text):
            raise RuntimeError("secret internals")

        monkeypatch.setattr(engine, "process", boom)
        result = await handlers["lexis_process"]({"text": "hello"})
        assert result["isError"]
        assert "secret" not in _text(result)

    @pytest.mark.asyncio
    async def test_match(self, handlers):
        data = _json(await handlers["lexis_match"]({"text": "hello"}))
        assert data["intent"] == "greeting"

    @pytest.mark.asyncio
    async def test_no_match(self, handlers):
        result = await handlers["lexis_match"]({"text": "qwertyuiop zxcvbnm"})
        assert _text(result) == "No intent matched."


class TestTokenize:
    @pytest.mark.asyncio
    async def test_token_info(self, handlers, engine):
        engine.learn("vocabulary", {"word": "hello"})
        data = _json(await handlers["lexis_tokenize"]({"text": "hello world"}))
        assert data["known_words"] == 1
        assert data["total_tokens"] == 2
        assert data["tokens"][0]["is_known"] is True

    @pytest.mark.asyncio
    async def test_encode(self, handlers):
        data = _json(await handlers["lexis_tokenize"]({"text": "hello", "encode": True}))
        assert data["ids"][0] == 2
        assert data["ids"][-1] == 3


class TestLearnQueryFeedback:
    @pytest.mark.asyncio
    async def test_learn_then_query(self, handlers):
        learned = _json(await handlers["lexis_learn"]({
            "entry_type": "vocabulary",
            "content": {"word": "apple", "definition": "A round fruit."},
        }))
        assert learned["id"] == "vocab_apple"
        assert learned["confidence"] == pytest.approx(0.8)

        found = _json(await handlers["lexis_query"]({"query": "apple", "entry_type": "vocabulary"}))
        assert found[0]["id"] == "vocab_apple"
        assert found[0]["source"] == "conversation"
        assert "score" in found[0]

    @pytest.mark.asyncio
    async def test_learn_rejects_bad_type(self, handlers):
        result = await handlers["lexis_learn"]({"entry_type": "poetry", "content": {"word": "x"}})
        assert result["isError"]

    @pytest.mark.asyncio
    async def test_learn_rejects_empty_content(self, handlers):
        result = await handlers["lexis_learn"]({"entry_type": "vocabulary", "content": {}})
        assert result["isError"]

    @pytest.mark.asyncio
    async def test_query_no_results(self, handlers):
        result = await handlers["lexis_query"]({"query": "nothing here"})
        assert _text(result) == "No matching entries."

    @pytest.mark.asyncio
    async def test_feedback(self, handlers, engine):
        engine.learn("vocabulary", {"word": "apple"})
        result = await handlers["lexis_feedback"]({"entry_id": "vocab_apple", "action": "positive"})
        assert not result.get("isError")
        assert "Confidence: 0.90" in _text(result)

    @pytest.mark.asyncio
    async def test_feedback_unknown_entry(self, handlers):
        result = await handlers["lexis_feedback"]({"entry_id": "vocab_nope", "action": "used"})
        assert result["isError"]
        assert "not found" in _text(result)

    @pytest.mark.asyncio
    async def test_feedback_bad_action(self, handlers):
        result = await handlers["lexis_feedback"]({"entry_id": "vocab_apple", "action": "love"})
        assert result["isError"]


class TestMaintenanceTools:
    @pytest.mark.asyncio
    async def test_consolidate(self, handlers):
        data = _json(await handlers["lexis_consolidate"]({}))
        assert set(data) >= {"pruned", "merged", "groups"}

    @pytest.mark.asyncio
    async def test_stats(self, handlers, engine):
        engine.learn("math", {"concept": "addition", "formula": "a + b"})
        data = _json(await handlers["lexis_stats"]({}))
        assert data["store"]["by_type"]["math"] == 1

    @pytest.mark.asyncio
    async def test_export_import(self, handlers, engine, tmp_lexis_dir):
        engine.learn("vocabulary", {"word": "apple"})
        exported = _json(await handlers["lexis_export"]({"filepath": "backups/snap.json"}))
        assert exported["entry_count"] == 1
        assert "warning" not in exported
        assert (tmp_lexis_dir / "backups" / "snap.json").exists()

        engine.store.remove("vocab_apple")
        imported = _json(await handlers["lexis_import"]({"filepath": "backups/snap.json"}))
        assert imported["entry_count"] == 1
        assert engine.store.get("vocab_apple") is not None

    @pytest.mark.asyncio
    async def test_export_warns_when_encryption_on(self, handlers, tmp_lexis_dir_encrypted):
        exported = _json(await handlers["lexis_export"]({"filepath": "snap.json"}))
        assert "plaintext" in exported["warning"]

    @pytest.mark.asyncio
    async def test_paths_outside_home_rejected(self, handlers, tmp_path):
        outside = str(tmp_path / "elsewhere.json")
        assert (await handlers["lexis_export"]({"filepath": outside}))["isError"]
        assert (await handlers["lexis_import"]({"filepath": "../escape.json"}))["isError"]

    @pytest.mark.asyncio
    async def test_import_missing_file(self, handlers):
        result = await handlers["lexis_import"]({"filepath": "missing.json"})
        assert _text(result) == "Error: File not found"

    @pytest.mark.asyncio
    async def test_import_bad_snapshot(self, handlers, tmp_lexis_dir):
        (tmp_lexis_dir / "bad.json").write_text("[]", encoding="utf-8")
        result = await handlers["lexis_import"]({"filepath": "bad.json"})
        assert result["isError"]


# ============================================================================
# Rate limiting
# ============================================================================

class TestToolRateLimiter:
    def test_global_limit(self, clock):
        limiter = ToolRateLimiter(global_limit=2, write_limit=10, clock=clock)
        assert limiter.check("lexis_stats") is None
        assert limiter.check("lexis_match") is None
        assert "globally" in limiter.check("lexis_stats")
        clock.advance(61)
        assert limiter.check("lexis_stats") is None

    def test_write_limit(self, clock):
        limiter = ToolRateLimiter(global_limit=100, write_limit=1, clock=clock)
        assert limiter.check("lexis_learn") is None
        assert "write" in limiter.check("lexis_feedback")
        assert limiter.check("lexis_query") is None


# ============================================================================
# MCP Server dispatch
# ============================================================================

class TestCreateServer:
    @pytest.mark.asyncio
    async def test_list_tools(self, engine):
        server = create_server(engine)
        result = await server.request_handlers[types.ListToolsRequest](types.ListToolsRequest(method="tools/list"))
        assert {t.name for t in result.root.tools} == {s["name"] for s in TOOL_SCHEMAS}

    @pytest.mark.asyncio
    async def test_call_tool_and_rate_limit(self, engine, clock):
        server = create_server(engine, limiter=ToolRateLimiter(global_limit=1, clock=clock))
        call = server.request_handlers[types.CallToolRequest]

        def request(name):
            return types.CallToolRequest(
                method="tools/call",
                params=types.CallToolRequestParams(name=name, arguments={}),
            )

        first = await call(request("lexis_stats"))
        assert json.loads(first.root.content[0].text)["online"] is False
        second = await call(request("lexis_stats"))
        assert "Rate limit exceeded" in second.root.content[0].text

"""Lexis MCP Tool Schemas -- 10 tools over one Engine.

Read tools (process, match, tokenize, query, stats) never change what the
store believes, except ``lexis_process``, which learns from the message it
is given. Write tools are rate limited separately by the server.
"""

TOOL_SCHEMAS = [
    {
        "name": "lexis_process",
        "description": "Run the full pipeline on one message: classify intent, tokenize, answer arithmetic, look up unknown words and topics, learn from the results and return the best matching entries.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "The user message"},
            },
            "required": ["text"],
        },
    },
    {
        "name": "lexis_match",
        "description": "Classify a message into a conversational intent (greeting, mathematics, explanation_request, ...) with a confidence in [0, 1]. Returns 'no match' when nothing clears the threshold.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "The message to classify"},
            },
            "required": ["text"],
        },
    },
    {
        "name": "lexis_tokenize",
        "description": "Split text into word tokens with stable ids. Known words keep their id; unknown words are decomposed into known prefixes where possible.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "text": {"type": "string"},
                "encode": {
                    "type": "boolean",
                    "description": "Return the id sequence wrapped in START/END instead of token details",
                    "default": False,
                },
            },
            "required": ["text"],
        },
    },
    {
        "name": "lexis_learn",
        "description": "Teach the store a fact. The content object depends on entry_type: vocabulary {word, definition, ...}, math {concept, formula, ...}, pattern {pattern, contexts}, knowledge {topic, summary, ...}. Returns the entry id.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "entry_type": {
                    "type": "string",
                    "enum": ["vocabulary", "math", "pattern", "knowledge"],
                },
                "content": {"type": "object", "description": "Typed content for the entry"},
                "source": {"type": "string", "description": "Provenance label (default: conversation)"},
            },
            "required": ["entry_type", "content"],
        },
    },
    {
        "name": "lexis_query",
        "description": "Rank learned entries against a query by word matches, usage and recency.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "entry_type": {
                    "type": "string",
                    "enum": ["vocabulary", "math", "pattern", "knowledge"],
                    "description": "Restrict results to one entry type",
                },
                "limit": {"type": "integer", "default": 10},
            },
            "required": ["query"],
        },
    },
    {
        "name": "lexis_feedback",
        "description": "Record feedback on an entry. 'used' marks a retrieval hit, 'positive' and 'negative' raise or lower confidence.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "entry_id": {"type": "string"},
                "action": {"type": "string", "enum": ["used", "positive", "negative"]},
            },
            "required": ["entry_id", "action"],
        },
    },
    {
        "name": "lexis_consolidate",
        "description": "Prune stale low-confidence entries and merge near-duplicates. Safe to call repeatedly.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "lexis_export",
        "description": "Write a plaintext JSON snapshot of the learning store to a file under LEXIS_HOME.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "filepath": {"type": "string", "description": "Destination, relative to LEXIS_HOME or absolute inside it"},
            },
            "required": ["filepath"],
        },
    },
    {
        "name": "lexis_import",
        "description": "Load a JSON snapshot from a file under LEXIS_HOME.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "filepath": {"type": "string"},
                "clear_existing": {
                    "type": "boolean",
                    "description": "Replace the store contents (default true) or merge into them",
                    "default": True,
                },
            },
            "required": ["filepath"],
        },
    },
    {
        "name": "lexis_stats",
        "description": "Entry counts per type, average confidence, cache hit/miss counters and vocabulary size.",
        "inputSchema": {"type": "object", "properties": {}},
    },
]

#!/usr/bin/env python3
"""
Test suite for the PromptBank MCP server tools (LanceDB).

Run with: pytest test_server.py -v
"""

import asyncio
import json
from dataclasses import replace

import pytest
from mcp.server.auth.provider import AccessToken
from mcp.shared.memory import create_connected_server_and_client_session

import server as server_module
from server import (
    delete_prompt,
    fetch_prompts,
    prompt_health,
    prompt_insights,
    resolve_user_id,
    save_prompt,
    save_prompts,
    update_prompt,
)
from sessions import SessionRegistry


@pytest.fixture(autouse=True)
def isolated_server(store, config, monkeypatch):
    """Point the tools at an isolated store and a config without a fixed user."""
    monkeypatch.setattr(server_module, "_store", store)
    monkeypatch.setattr(server_module, "CONFIG", config)
    return store


class FakeSession:
    pass


class FakeContext:
    def __init__(self, session):
        self.session = session


# =============================================================================
# Core CRUD Tests
# =============================================================================


class TestSavePrompt:
    """Tests for savePrompt."""

    async def test_save_basic(self):
        result = await save_prompt(
            text="## Review\nReview this pull request for bugs", source="chatgpt"
        )
        assert result["status"] == "success"
        assert result["key"].startswith("p-")
        assert result["indexName"] == "u-local"
        prompt = result["prompt"]
        assert prompt["text"] == "Review this pull request for bugs"
        assert prompt["title"] == "Review"
        assert prompt["source"] == "chatgpt"
        assert prompt["wordCount"] == 6
        assert "createdAt" in prompt and "updatedAt" in prompt
        assert "uploadId" not in prompt

    async def test_save_empty_text_fails(self):
        """Whitespace-only text is a validation error, nothing is created."""
        result = await save_prompt(text="   \n\t  ")
        assert result["status"] == "error"
        assert result["error"]["kind"] == "ValidationError"
        assert "text" in result["error"]["message"]

    async def test_resave_same_text_same_key(self):
        first = await save_prompt(text="Explain monads with a metaphor")
        second = await save_prompt(text="explain MONADS with a   metaphor")
        assert first["key"] == second["key"]
        assert second["prompt"]["createdAt"] == first["prompt"]["createdAt"]


class TestSavePrompts:
    """Tests for savePrompts."""

    async def test_save_list(self):
        result = await save_prompts(
            prompts=[{"text": "Draft a cover letter"}, {"text": "Draft a cover letter"}],
            upload_id="resume-pack",
        )
        assert result["status"] == "success"
        assert result["uploadId"] == "resume-pack"
        assert result["count"] == 1
        assert len(result["keys"]) == 1

    async def test_save_raw_text_is_split(self):
        raw = "## 1. Coding\nRefactor this function\n\n## 2. Writing\nTighten this paragraph"
        result = await save_prompts(text=raw)
        assert result["count"] == 2

        listed = await fetch_prompts(limit=10)
        titles = {m["metadata"]["title"] for m in listed["matches"]}
        assert titles == {"Coding", "Writing"}

    async def test_blank_prompts_save_nothing(self):
        result = await save_prompts(prompts=[{"text": "  "}, {"text": ""}])
        assert result["status"] == "success"
        assert result["count"] == 0
        assert result["keys"] == []

    async def test_empty_request_fails(self):
        result = await save_prompts()
        assert result["status"] == "error"
        assert "At least one prompt" in result["error"]["message"]

    async def test_too_many_prompts_fails(self, config):
        prompts = [{"text": f"Prompt {i}"} for i in range(config.max_batch_size + 1)]
        result = await save_prompts(prompts=prompts)
        assert result["status"] == "error"
        assert "exceeds the maximum" in result["error"]["message"]


class TestUpdatePrompt:
    """Tests for updatePrompt."""

    async def test_update_existing(self):
        saved = await save_prompt(text="Summarize this article", tags=["reading"])
        result = await update_prompt(key=saved["key"], text="Summarize this article in 3 bullets")
        assert result["status"] == "success"
        assert result["key"] == saved["key"]
        assert result["prompt"]["tags"] == ["reading"]
        assert result["prompt"]["updatedAt"] > saved["prompt"]["updatedAt"]

    async def test_update_without_index_is_not_found(self):
        result = await update_prompt(key="p-missing", text="anything")
        assert result["status"] == "not_found"
        assert result["error"]["kind"] == "IndexNotFound"

    async def test_update_missing_key_fails(self):
        result = await update_prompt(key="  ", text="anything")
        assert result["status"] == "error"
        assert result["error"]["kind"] == "ValidationError"
        assert "key" in result["error"]["message"]


class TestDeletePrompt:
    """Tests for deletePrompt."""

    async def test_delete_existing(self):
        saved = await save_prompt(text="Translate this to French")
        result = await delete_prompt(key=saved["key"])
        assert result == {
            "status": "success",
            "key": saved["key"],
            "indexName": "u-local",
            "deleted": True,
        }
        listed = await fetch_prompts()
        assert listed["prompts"] == []

    async def test_delete_without_index(self, store):
        result = await delete_prompt(key="p-missing")
        assert result["status"] == "success"
        assert result["deleted"] is False
        assert not store.indexes.index_exists("local")

    async def test_delete_blank_key_fails(self):
        result = await delete_prompt(key="")
        assert result["status"] == "error"


# =============================================================================
# Retrieval Tests
# =============================================================================


class TestFetchPrompts:
    """Tests for fetchPrompts in query and list modes."""

    async def _seed(self):
        await save_prompts(
            prompts=[
                {"text": "Write a haiku about autumn leaves", "tags": ["poetry"], "source": "web"},
                {"text": "Debug this Python stack trace", "tags": ["coding"], "source": "api"},
                {"text": "Plan my weekly meeting agenda", "tags": ["planning"], "source": "web"},
            ]
        )

    async def test_query_returns_best_match_first(self):
        await self._seed()
        result = await fetch_prompts(query="Debug this Python stack trace")
        assert result["status"] == "success"
        assert result["prompts"][0] == "Debug this Python stack trace"
        assert result["matches"][0]["distance"] == pytest.approx(0.0, abs=1e-4)

    async def test_query_cutoff_drops_weak_matches(self):
        await self._seed()
        result = await fetch_prompts(query="Debug this Python stack trace", max_distance=0.01)
        assert result["prompts"] == ["Debug this Python stack trace"]

    async def test_query_filters(self):
        await self._seed()
        result = await fetch_prompts(query="Write a haiku about autumn leaves", source="api")
        assert all(m["metadata"]["source"] == "api" for m in result["matches"])

    async def test_list_mode_newest_first(self):
        await save_prompt(text="Older prompt")
        await save_prompt(text="Newer prompt")
        result = await fetch_prompts(limit=10)
        assert result["prompts"] == ["Newer prompt", "Older prompt"]
        assert all("distance" not in m for m in result["matches"])

    async def test_list_mode_tag_filter(self):
        await self._seed()
        result = await fetch_prompts(tags_any=["Planning"], limit=10)
        assert result["prompts"] == ["Plan my weekly meeting agenda"]

    async def test_limit_too_large_fails(self, config):
        result = await fetch_prompts(query="anything", limit=config.max_limit + 1)
        assert result["status"] == "error"
        assert "limit cannot exceed" in result["error"]["message"]

    async def test_invalid_max_distance_fails(self):
        result = await fetch_prompts(query="anything", max_distance=3.0)
        assert result["status"] == "error"
        assert result["error"]["kind"] == "ValidationError"

    async def test_limit_truncates(self):
        await self._seed()
        result = await fetch_prompts(limit=2)
        assert len(result["prompts"]) == 2


class TestInsightsAndHealth:
    """Tests for promptInsights and promptHealth."""

    async def test_insights(self):
        empty = await prompt_insights()
        assert empty["count"] == 0
        assert empty["lastUpdatedAt"] is None

        saved = await save_prompt(text="Brainstorm blog titles")
        result = await prompt_insights()
        assert result["count"] == 1
        assert result["lastUpdatedAt"] == saved["prompt"]["updatedAt"]

    async def test_health(self):
        result = await prompt_health()
        assert "PromptBank Health Status" in result
        assert "not probed yet" in result
        await save_prompt(text="Warm up the model")
        assert "Embedding dimension: 64" in await prompt_health()


# =============================================================================
# Identity Tests
# =============================================================================


class TestResolveUserId:
    """Tests for choosing the identity behind a tool call."""

    def test_no_context_is_local(self):
        assert resolve_user_id(None, SessionRegistry()) == "local"

    def test_sessions_share_local_identity_by_default(self):
        registry = SessionRegistry()
        first = FakeContext(FakeSession())
        second = FakeContext(FakeSession())
        assert resolve_user_id(first, registry) == "local"
        assert resolve_user_id(second, registry) == "local"
        assert len(registry) == 0

    def test_configured_user_wins(self, config, monkeypatch):
        monkeypatch.setattr(server_module, "CONFIG", replace(config, default_user_id="alice"))
        ctx = FakeContext(FakeSession())
        assert resolve_user_id(ctx, SessionRegistry()) == "alice"

    def test_token_subject_selects_user(self, config, monkeypatch):
        """Users behind the same OAuth client get separate identities."""
        monkeypatch.setattr(server_module, "CONFIG", replace(config, default_user_id="fallback"))
        tokens = {
            "alice": AccessToken(
                token="t-alice", client_id="chatgpt", scopes=[], subject="auth0|alice"
            ),
            "bob": AccessToken(token="t-bob", client_id="chatgpt", scopes=[], subject="auth0|bob"),
        }
        for name, token in tokens.items():
            monkeypatch.setattr(server_module, "get_access_token", lambda token=token: token)
            assert resolve_user_id(None, SessionRegistry()) == f"auth0|{name}"

    def test_token_without_subject_falls_through(self, config, monkeypatch):
        monkeypatch.setattr(server_module, "CONFIG", replace(config, default_user_id="fallback"))
        token = AccessToken(token="t", client_id="chatgpt", scopes=[])
        monkeypatch.setattr(server_module, "get_access_token", lambda: token)
        assert resolve_user_id(None, SessionRegistry()) == "fallback"

    def test_one_identity_per_session_when_enabled(self, config, monkeypatch):
        monkeypatch.setattr(server_module, "CONFIG", replace(config, per_session_users=True))
        registry = SessionRegistry()
        first = FakeContext(FakeSession())
        second = FakeContext(FakeSession())
        user = resolve_user_id(first, registry)
        assert user.startswith("session-")
        assert resolve_user_id(first, registry) == user
        assert resolve_user_id(second, registry) != user

    async def test_per_session_users_do_not_share_prompts(self, config, monkeypatch):
        monkeypatch.setattr(server_module, "CONFIG", replace(config, per_session_users=True))
        monkeypatch.setattr(server_module, "SESSIONS", SessionRegistry())
        alice = FakeContext(FakeSession())
        bob = FakeContext(FakeSession())
        await save_prompt(text="Alice only prompt", ctx=alice)

        assert (await fetch_prompts(ctx=alice))["prompts"] == ["Alice only prompt"]
        assert (await fetch_prompts(ctx=bob))["prompts"] == []
        assert len(server_module.SESSIONS) == 2

    async def test_prompts_survive_reconnect(self, store):
        """A prompt saved over one MCP connection is found over the next one."""

        async def call(tool, arguments):
            async with create_connected_server_and_client_session(
                server_module.mcp._mcp_server
            ) as client:
                result = await client.call_tool(tool, arguments)
            return json.loads(result.content[0].text)

        saved = await call("savePrompt", {"text": "Summarize a research paper"})
        assert saved["indexName"] == "u-local"

        fetched = await call("fetchPrompts", {"limit": 10})
        assert fetched["prompts"] == ["Summarize a research paper"]
        assert store.indexes._table_names() == ["u-local"]



# =============================================================================
# Integration Tests
# =============================================================================


class TestConcurrency:
    """Concurrent tool calls against one store."""

    async def test_concurrent_first_saves(self):
        topics = ["quantum computing", "sourdough baking", "tax planning", "jazz theory"]
        results = await asyncio.gather(*(save_prompt(text=f"Explain {t}") for t in topics))
        assert all(r["status"] == "success" for r in results)
        assert (await prompt_insights())["count"] == len(topics)

    async def test_concurrent_mixed_operations(self):
        await save_prompt(text="Baseline prompt")
        tasks = []
        for i in range(3):
            tasks.extend(
                [
                    save_prompt(text=f"Stress prompt {i}"),
                    fetch_prompts(query="stress prompt"),
                    prompt_insights(),
                ]
            )
        results = await asyncio.gather(*tasks, return_exceptions=True)
        errors = [r for r in results if isinstance(r, Exception)]
        assert errors == [], f"Concurrent operations failed: {errors}"
        assert all(r["status"] == "success" for r in results)


class TestFullLifecycle:
    async def test_create_read_update_delete(self):
        saved = await save_prompt(text="Outline a conference talk", tags=["talks"])
        key = saved["key"]

        found = await fetch_prompts(query="Outline a conference talk")
        assert found["matches"][0]["key"] == key

        updated = await update_prompt(key=key, text="Outline a 20 minute conference talk")
        assert updated["prompt"]["text"] == "Outline a 20 minute conference talk"

        deleted = await delete_prompt(key=key)
        assert deleted["deleted"] is True
        assert (await prompt_insights())["count"] == 0

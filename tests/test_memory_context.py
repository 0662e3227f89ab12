import json

import pytest

from barebone.memory_context import (
    QUERY_CHAR_CAP,
    build_prior_work_block,
    build_prior_work_cached,
    format_previous_run_result,
    read_full,
    search_across_tiers,
    trim_query,
)
from barebone.session import SessionManager, ToolRegistry


def _registry(tier_hits, contents, calls=None):
    reg = ToolRegistry()

    def search(args):
        if calls is not None:
            calls.append(("search", args["tier"]))
        paths = tier_hits.get(args["tier"], [])
        return json.dumps({"result": [{"path": p} for p in paths]})

    def read(args):
        if calls is not None:
            calls.append(("read", args["path"]))
        if args["path"] not in contents:
            return "Error: not found"
        return json.dumps({"content": contents[args["path"]]})

    reg.register("mcp_akw__memory_search", "search", {}, search)
    reg.register("mcp_akw__memory_read", "read", {}, read)
    return reg


def test_trim_query_short():
    assert trim_query("hello") == "hello"


def test_trim_query_caps_long():
    assert len(trim_query("a" * 500)) == QUERY_CHAR_CAP


def test_trim_query_strips_whitespace():
    assert trim_query("  spaced out \n") == "spaced out"


def test_format_previous_run_result_empty():
    assert format_previous_run_result("") == ""
    assert format_previous_run_result("   ") == ""


def test_format_previous_run_result_skips_failures():
    assert format_previous_run_result("I'm sorry, all models failed: x") == ""
    assert format_previous_run_result("LLM call failed during tool loop") == ""


def test_format_previous_run_result_normal():
    out = format_previous_run_result("The market closed up 2.5% today.")
    assert out.startswith("## Previous Run Result")
    assert "market closed up" in out


def test_format_previous_run_result_truncates_long():
    out = format_previous_run_result("x" * 3000)
    assert "## Previous Run Result" in out
    assert len(out) < 1700
    assert out.count("x") == 1500


@pytest.mark.asyncio
async def test_no_akw_returns_empty():
    assert await build_prior_work_block(ToolRegistry(), "query", 3, 4000) == []


@pytest.mark.asyncio
async def test_blank_query_returns_empty():
    calls = []
    reg = _registry({"knowledge": ["a.md"]}, {"a.md": "A"}, calls)
    assert await build_prior_work_block(reg, "   ", 3, 4000) == []
    assert calls == []


@pytest.mark.asyncio
async def test_search_dedupes_and_caps_top_k():
    reg = _registry(
        {"knowledge": ["a.md", "b.md"], "research_draft": ["b.md", "c.md", "d.md"]},
        {},
    )
    assert await search_across_tiers(reg, "q", 3) == ["a.md", "b.md", "c.md"]


@pytest.mark.asyncio
async def test_search_accepts_results_and_bare_list_shapes():
    reg = ToolRegistry()

    def search(args):
        if args["tier"] == "knowledge":
            return json.dumps({"results": [{"path": "k.md"}]})
        if args["tier"] == "research_draft":
            return json.dumps([{"path": "r.md"}, {"nopath": 1}])
        return "garbage"

    reg.register("mcp_akw__memory_search", "search", {}, search)
    assert await search_across_tiers(reg, "q", 10) == ["k.md", "r.md"]


@pytest.mark.asyncio
async def test_block_formats_entries_and_excludes_preferences():
    reg = _registry(
        {"knowledge": ["2_knowledges/preferences/style.md", "notes/a.md"]},
        {"2_knowledges/preferences/style.md": "pref", "notes/a.md": "  Alpha body \n"},
    )
    out = await build_prior_work_block(reg, "alpha", 3, 4000)
    assert out == ["### notes/a.md\n\nAlpha body"]


@pytest.mark.asyncio
async def test_block_skips_unreadable_hits():
    reg = _registry({"knowledge": ["missing.md", "b.md"]}, {"b.md": "B"})
    out = await build_prior_work_block(reg, "q", 3, 4000)
    assert out == ["### b.md\n\nB"]


@pytest.mark.asyncio
async def test_block_truncates_to_budget():
    reg = _registry({"knowledge": ["a.md"]}, {"a.md": "x" * 1000})
    out = await build_prior_work_block(reg, "q", 3, 300)
    assert out == ["### a.md\n\n" + "x" * 290 + "\n\n[... truncated]"]


@pytest.mark.asyncio
async def test_block_stops_when_remaining_budget_tiny():
    reg = _registry({"knowledge": ["a.md"]}, {"a.md": "x" * 1000})
    assert await build_prior_work_block(reg, "q", 3, 100) == []


@pytest.mark.asyncio
async def test_read_full_variants():
    reg = ToolRegistry()

    def read(args):
        return {
            "json.md": json.dumps({"content": "hello"}),
            "blank.md": json.dumps({"content": "   "}),
            "plain.md": "plain text",
        }.get(args["path"], "Error: nope")

    reg.register("mcp_akw__memory_read", "read", {}, read)
    assert await read_full(reg, "json.md") == "hello"
    assert await read_full(reg, "blank.md") is None
    assert await read_full(reg, "plain.md") == "plain text"
    assert await read_full(reg, "other.md") is None


@pytest.mark.asyncio
async def test_cached_reuses_result_within_session():
    calls = []
    reg = _registry({"knowledge": ["a.md"]}, {"a.md": "A"}, calls)
    mgr = SessionManager("ino", None, 30, ToolRegistry())
    await mgr.ensure_session("c1", "task")

    first = await build_prior_work_cached(reg, mgr, "c1", "q", 3, 4000)
    count = len(calls)
    second = await build_prior_work_cached(reg, mgr, "c1", "q", 3, 4000)
    assert first == ["### a.md\n\nA"]
    assert second == first
    assert len(calls) == count


@pytest.mark.asyncio
async def test_cached_empty_result_is_cached_too():
    mgr = SessionManager("ino", None, 30, ToolRegistry())
    await mgr.ensure_session("c1", "task")
    out = await build_prior_work_cached(ToolRegistry(), mgr, "c1", "q", 3, 4000)
    assert out == []
    assert mgr.get_prior_work("c1") == []
"""Prior-work search over AKW memory and previous-run formatting."""

from __future__ import annotations

import json
import logging

from barebone.session import SessionManager, ToolRegistry

logger = logging.getLogger(__name__)

PRIOR_WORK_PATH_EXCLUDES = ("2_knowledges/preferences/",)

# Anything past this is noise to the BM25 search.
QUERY_CHAR_CAP = 200

SEARCH_TIERS = ("knowledge", "research_draft", "session_archived")

_FAILURE_PREFIXES = ("I'm sorry, all models failed", "LLM call failed")


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def trim_query(query: str) -> str:
    """Strip ``query`` and cap it at ``QUERY_CHAR_CAP`` characters."""
    return query.strip()[:QUERY_CHAR_CAP]


async def build_prior_work_block(registry: ToolRegistry, query: str, top_k: int, token_budget: int) -> list[str]:
    """Search prior work for ``query`` and return formatted entries within the budget.

    Each entry is a hit's full content headed by its AKW path. Empty when AKW is
    absent, the query is blank, or nothing usable was found.
    """
    if not registry.has("mcp_akw__memory_search"):
        logger.debug("prior-work: AKW not configured, skipping")
        return []

    trimmed = trim_query(query)
    if not trimmed:
        return []

    paths = [
        path
        for path in await search_across_tiers(registry, trimmed, top_k)
        if not path.startswith(PRIOR_WORK_PATH_EXCLUDES)
    ]

    entries: list[str] = []
    used = 0
    for path in paths:
        body = await read_full(registry, path)
        if body is None:
            continue
        entry = f"### {path}\n\n{body.strip()}"
        size = _byte_len(entry)
        if used + size > token_budget:
            remaining = max(token_budget - used, 0)
            if remaining >= 200:
                entries.append(entry[:remaining] + "\n\n[... truncated]")
            break
        entries.append(entry)
        used += size
    return entries


async def build_prior_work_cached(
    registry: ToolRegistry,
    session_mgr: SessionManager,
    conv_id: str,
    query: str,
    top_k: int,
    token_budget: int,
) -> list[str]:
    """Like :func:`build_prior_work_block`, cached on the conversation's session."""
    cached = session_mgr.get_prior_work(conv_id)
    if cached is not None:
        return cached
    entries = await build_prior_work_block(registry, query, top_k, token_budget)
    session_mgr.set_prior_work(conv_id, entries)
    return entries


def _result_items(response) -> list | None:
    if isinstance(response, dict):
        for key in ("result", "results"):
            if isinstance(response.get(key), list):
                return response[key]
        return None
    if isinstance(response, list):
        return response
    return None


async def search_across_tiers(registry: ToolRegistry, query: str, top_k: int) -> list[str]:
    """Search each tier in turn and return up to ``top_k`` distinct hit paths.

    Scores from separate searches are not comparable, so results are kept in
    tier order rather than interleaved.
    """
    found: list[str] = []
    seen: set[str] = set()
    for tier in SEARCH_TIERS:
        raw = await registry.execute(
            "mcp_akw__memory_search", {"query": query, "tier": tier, "limit": top_k}
        )
        try:
            items = _result_items(json.loads(raw))
        except ValueError:
            continue
        if items is None:
            continue
        for item in items:
            path = item.get("path") if isinstance(item, dict) else None
            if not isinstance(path, str) or path in seen:
                continue
            seen.add(path)
            found.append(path)
            if len(found) >= top_k:
                return found
    return found


async def read_full(registry: ToolRegistry, path: str) -> str | None:
    """Read a memory page's content; None on error or empty content."""
    raw = await registry.execute("mcp_akw__memory_read", {"path": path})
    try:
        response = json.loads(raw)
    except ValueError:
        response = None
    if isinstance(response, dict) and isinstance(response.get("content"), str):
        content = response["content"]
        return content if content.strip() else None
    if raw.strip() and not raw.startswith("Error"):
        return raw
    return None


def format_previous_run_result(result: str) -> str:
    """Format a recurring task's previous result; empty for blank or failed runs."""
    trimmed = result.strip()
    if not trimmed or trimmed.startswith(_FAILURE_PREFIXES):
        return ""
    return f"## Previous Run Result\n\n{trimmed[:1500]}"
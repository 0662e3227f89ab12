"""Session-summary drafts written when a conversation segment ends.

The segment's final turns are loaded from the conversation store, summarised
with a cheap LLM call and written as a markdown draft under
``data/drafts/sessions/<group_first_8>-<segment_start_compact>.md``.
Task channels are skipped: they produce research drafts instead, and one
session draft per task run would be noise.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Protocol, Sequence

logger = logging.getLogger(__name__)

DRAFT_DIR = Path("data/drafts/sessions")

PER_TURN_BYTE_CAP = 2048
TOTAL_APPENDIX_BYTE_CAP = 50_000

SUMMARY_TURN_LIMIT = 20
SUMMARY_CHAR_CAP = 2000

_FAILURE_PREFIXES = ("LLM call failed", "I'm sorry, all models failed")

_SUMMARY_SYSTEM_PROMPT = (
    "You write concise session summaries for an archived agent conversation. "
    "Output 4-8 sentences in plain markdown. Cover: what the user asked, what the agent did, "
    "any decisions or commitments made, anything left unresolved. Do not invent details."
)

_ROLE_LABELS = {"user": "User", "assistant": "Agent"}


@dataclass
class Turn:
    """One stored conversation message."""

    role: str
    content: str
    created_at: str
    conversation_id: str = ""
    agent_name: str = ""
    channel_type: str = ""
    model_used: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    turn_id: str = ""
    is_final: bool = True
    metadata: str | None = None


class TurnStore(Protocol):
    def load_final_turns_in_window(self, conv_id: str, started: str, ended: str) -> Sequence[Turn]: ...


class CheapCaller(Protocol):
    agent_name: str

    async def cheap_call(self, system: str, user: str) -> str: ...


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _iso(moment: datetime) -> str:
    return f"{moment.astimezone(timezone.utc):%Y-%m-%dT%H:%M:%SZ}"


def _role_label(role: str) -> str:
    return _ROLE_LABELS.get(role, role)


async def write_session_draft(
    root_dir,
    agent_loop: CheapCaller,
    db: TurnStore,
    conv_id: str,
    group_id: str | None,
    channel_type: str,
    segment_started_at: datetime,
    segment_ended_at: datetime,
    include_turns: bool,
) -> Path | None:
    """Write the draft for a finished segment and return its path.

    Returns None when the draft is skipped (task channel or no turns).
    Store and filesystem errors propagate.
    """
    if channel_type == "task":
        logger.debug("session_draft: task channel for %s, skipping", conv_id)
        return None

    turns = list(
        db.load_final_turns_in_window(conv_id, _iso(segment_started_at), _iso(segment_ended_at))
    )
    if not turns:
        logger.debug("session_draft: no turns in segment window for %s, skipping", conv_id)
        return None

    summary = await run_summary(agent_loop, turns)

    directory = Path(root_dir) / DRAFT_DIR
    directory.mkdir(parents=True, exist_ok=True)

    group_short = group_id[:8] if group_id is not None else "no-group"
    compact = f"{segment_started_at.astimezone(timezone.utc):%Y%m%dT%H%M%SZ}"
    target = pick_unique_path(directory / f"{group_short}-{compact}.md")

    body = render_session_draft(
        agent_loop.agent_name,
        conv_id,
        group_id,
        channel_type,
        segment_started_at,
        segment_ended_at,
        turns,
        summary,
        include_turns,
    )
    target.write_text(body, encoding="utf-8")
    logger.info("session draft written to %s (%d bytes, %d turns)", target, _byte_len(body), len(turns))
    return target


def pick_unique_path(primary) -> Path:
    """``primary`` if free, else the first free ``<stem>-N.md`` beside it."""
    primary = Path(primary)
    if not primary.exists():
        return primary
    stem = primary.stem or "session"
    parent = primary.parent
    for n in range(2, 1000):
        candidate = parent / f"{stem}-{n}.md"
        if not candidate.exists():
            return candidate
    return parent / f"{stem}-{time.time_ns()}.md"


async def run_summary(agent_loop: CheapCaller, turns: Sequence[Turn]) -> str:
    """Summarise the segment's turns; a stub note when the LLM call fails."""
    parts = ["Conversation turns (oldest first):\n\n"]
    for turn in turns[:SUMMARY_TURN_LIMIT]:
        parts.append(f"**{_role_label(turn.role)}**: {turn.content[:SUMMARY_CHAR_CAP]}\n\n")

    response = await agent_loop.cheap_call(_SUMMARY_SYSTEM_PROMPT, "".join(parts))
    if response.startswith(_FAILURE_PREFIXES):
        logger.warning("session_draft: LLM summarization failed, using minimal stub")
        return (
            f"(LLM summarization unavailable — {len(turns)} turns recorded; "
            "see Turns appendix.)"
        )
    return response


def render_session_draft(
    agent_name: str,
    conv_id: str,
    group_id: str | None,
    channel_type: str,
    started: datetime,
    ended: datetime,
    turns: Sequence[Turn],
    summary: str,
    include_turns: bool,
) -> str:
    """Render the draft: frontmatter, summary and optionally the turns appendix."""
    lines = ["---", f"agent: {agent_name}"]
    if group_id is not None:
        lines.append(f"group_id: {group_id}")
    lines += [
        f"conv_id: {conv_id}",
        f"channel_type: {channel_type}",
        f"segment_started_at: {_iso(started)}",
        f"segment_ended_at: {_iso(ended)}",
        f"turn_count: {len(turns)}",
        "source: session_draft",
        "---",
    ]
    out = "\n".join(lines) + "\n\n## Summary\n\n" + summary.strip() + "\n"
    if include_turns:
        out += "\n## Turns\n\n" + render_turns_appendix(turns, conv_id)
    return out


def _render_turn(turn: Turn, conv_id: str) -> str:
    label = _role_label(turn.role)
    if _byte_len(turn.content) > PER_TURN_BYTE_CAP:
        return (
            f"**{label}** ({turn.created_at}): {turn.content[:PER_TURN_BYTE_CAP]}"
            f"\n\n[... truncated, see SQLite conv_id={conv_id}]"
        )
    return f"**{label}** ({turn.created_at}): {turn.content}"


def render_turns_appendix(turns: Iterable[Turn], conv_id: str) -> str:
    """Render turns oldest first, dropping the oldest ones beyond the total cap."""
    rendered = [_render_turn(turn, conv_id) for turn in turns]

    total = sum(_byte_len(text) + 2 for text in rendered)
    omitted = 0
    while total > TOTAL_APPENDIX_BYTE_CAP and omitted < len(rendered):
        total -= _byte_len(rendered[omitted]) + 2
        omitted += 1
    kept = rendered[omitted:]

    out = ""
    if omitted:
        out += f"[... {omitted} earlier turn(s) omitted, see SQLite conv_id={conv_id}]\n\n"
    out += "\n\n".join(kept)
    if not out.endswith("\n"):
        out += "\n"
    return out
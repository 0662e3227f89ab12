"""Counter-triggered pattern reflection over recent agent artifacts.

Each task completion or conversation-segment end bumps a per-scope counter.
Once it reaches the threshold, the latest local artifacts are handed to a
cheap LLM call that looks for a stable pattern; a detected pattern is written
as a pending preference draft for later review.

Counter handling:

- LLM failure prefix: the counter is kept, so the next event retries.
- Unparseable response or ``pattern_found = false``: the counter is reset.
- No artifact history: the counter is reset without calling the LLM.
- Pattern found but the draft cannot be written: the counter is kept.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

PENDING_DIR = Path("data/drafts/2_knowledges/preferences")
TASK_DRAFT_DIR = Path("data/drafts/2_researches")
SESSION_DRAFT_DIR = Path("data/drafts/sessions")

MAX_ARTIFACTS = 10
ARTIFACT_CHAR_CAP = 4000

_FAILURE_PREFIXES = ("LLM call failed", "I'm sorry, all models failed")
_FENCE_OPEN = "---\n"
_FENCE_CLOSE = "\n---\n"

_SYSTEM_PROMPT = (
    "You are an analyst looking for stable patterns across recent agent artifacts. "
    "Read the artifacts below and decide whether a stable pattern exists worth saving as a "
    "user preference (e.g. consistent style choice, recurring constraint, repeated decision). "
    "Output ONLY a JSON object with this schema: "
    "{"
    "\"pattern_found\": boolean, "
    "\"scope\": string,            // e.g. \"research-finance\", \"git-style\", \"global\" "
    "\"preference_body\": string,  // markdown body for the preference (~3-8 sentences) "
    "\"evidence_paths\": [string]  // local paths of artifacts that evidence the pattern "
    "}. "
    "If no clear pattern: pattern_found=false, leave other fields empty. "
    "Do not wrap your response in code fences."
)


class ReflectionStore(Protocol):
    def increment_reflection_counter(self, scope: str, scope_key: str, agent_name: str) -> int: ...

    def reset_reflection_counter(self, scope: str, scope_key: str, agent_name: str) -> Any: ...


class CheapCaller(Protocol):
    agent_name: str

    async def cheap_call(self, system: str, user: str) -> str: ...


class ScopeKind(Enum):
    """What a reflection counter is keyed on."""

    TASK_KEY = "task_key"
    """Recurring task; the scope key is the task key."""
    AGENT_CONV = "agent_conv"
    """Conversation segment; the scope key is ``_global``."""


@dataclass
class ReflectionOutcome:
    """What happened on one counter event."""

    counter: int
    fired: bool = False
    draft_path: Path | None = None


@dataclass
class ReflectionResult:
    """The LLM's structured reflection answer."""

    pattern_found: bool
    scope: str = ""
    preference_body: str = ""
    evidence_paths: list[str] = field(default_factory=list)


def _reset(db: ReflectionStore, scope: ScopeKind, scope_key: str, agent_name: str) -> None:
    try:
        db.reset_reflection_counter(scope.value, scope_key, agent_name)
    except Exception as exc:  # reflection must never break the caller
        logger.warning("reflection: counter reset failed: %s", exc)


async def increment_and_maybe_reflect(
    root_dir,
    db: ReflectionStore,
    agent_loop: CheapCaller,
    scope: ScopeKind,
    scope_key: str,
    threshold: int,
) -> ReflectionOutcome:
    """Bump the counter for ``(scope, scope_key, agent)`` and reflect at the threshold.

    Errors are logged and folded into the outcome; this never raises.
    """
    root_dir = Path(root_dir)
    agent_name = agent_loop.agent_name

    try:
        counter = int(db.increment_reflection_counter(scope.value, scope_key, agent_name))
    except Exception as exc:
        logger.warning("reflection: counter increment failed: %s", exc)
        return ReflectionOutcome(counter=0)
    logger.debug(
        "reflection counter incremented: scope=%s key=%s counter=%d threshold=%d",
        scope.value, scope_key, counter, threshold,
    )

    if counter < threshold:
        return ReflectionOutcome(counter=counter)

    if scope is ScopeKind.TASK_KEY:
        artifacts = collect_task_artifacts(root_dir, scope_key)
    else:
        artifacts = collect_session_artifacts(root_dir, agent_name)

    if not artifacts:
        logger.info(
            "no artifact history for %s/%s; skipping reflection "
            "(set metadata.persist_as_draft for tasks)",
            scope.value, scope_key,
        )
        _reset(db, scope, scope_key, agent_name)
        return ReflectionOutcome(counter=counter)

    logger.info("reflection firing for %s/%s over %d artifacts", scope.value, scope_key, len(artifacts))
    response = await run_reflection_llm(agent_loop, artifacts)

    if response.startswith(_FAILURE_PREFIXES):
        logger.warning("reflection: LLM failure detected; counter kept for retry")
        return ReflectionOutcome(counter=counter, fired=True)

    parsed = parse_reflection_json(response)
    if parsed is None:
        logger.debug("reflection: response was not valid JSON; treating as no pattern")
        _reset(db, scope, scope_key, agent_name)
        return ReflectionOutcome(counter=counter, fired=True)

    if not parsed.pattern_found:
        logger.info("reflection: no pattern for %s/%s; counter reset", scope.value, scope_key)
        _reset(db, scope, scope_key, agent_name)
        return ReflectionOutcome(counter=counter, fired=True)

    try:
        draft_path = write_pending_preference(root_dir, parsed)
    except OSError as exc:
        logger.warning("reflection: failed to write pending preference: %s", exc)
        return ReflectionOutcome(counter=counter, fired=True)

    logger.info("reflection: pending preference written to %s", draft_path)
    _reset(db, scope, scope_key, agent_name)
    return ReflectionOutcome(counter=counter, fired=True, draft_path=draft_path)


def strip_code_fence(raw: str) -> str:
    """Remove a surrounding ```json / ``` fence, if any."""
    text = raw.strip()
    for prefix in ("```json", "```"):
        if text.startswith(prefix):
            text = text[len(prefix):]
            break
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def parse_reflection_json(raw: str) -> ReflectionResult | None:
    """Parse the LLM answer; None unless it is an object with a boolean ``pattern_found``."""
    try:
        value = json.loads(strip_code_fence(raw))
    except ValueError:
        return None
    if not isinstance(value, dict):
        return None
    pattern_found = value.get("pattern_found")
    if not isinstance(pattern_found, bool):
        return None

    scope = value.get("scope")
    body = value.get("preference_body")
    paths = value.get("evidence_paths")
    return ReflectionResult(
        pattern_found=pattern_found,
        scope=scope if isinstance(scope, str) else "",
        preference_body=body if isinstance(body, str) else "",
        evidence_paths=[p for p in paths if isinstance(p, str)] if isinstance(paths, list) else [],
    )


def _newest_readable(paths: list[Path]) -> list[tuple[Path, str]]:
    """Sort by modification time, newest first, and read up to MAX_ARTIFACTS."""
    stamped = []
    for path in paths:
        try:
            stamped.append((path.stat().st_mtime, path))
        except OSError:
            continue
    stamped.sort(key=lambda pair: pair[0], reverse=True)

    artifacts = []
    for _, path in stamped[:MAX_ARTIFACTS]:
        try:
            artifacts.append((path, path.read_text(encoding="utf-8")))
        except (OSError, UnicodeDecodeError):
            continue
    return artifacts


def _markdown_files(directory: Path) -> list[Path]:
    if not directory.exists():
        return []
    try:
        return [p for p in directory.iterdir() if p.suffix == ".md"]
    except OSError:
        return []


def collect_task_artifacts(root_dir, task_key: str) -> list[tuple[Path, str]]:
    """Newest research drafts for ``task_key`` as (path, content) pairs."""
    prefix = f"{task_key}-"
    files = [p for p in _markdown_files(Path(root_dir) / TASK_DRAFT_DIR) if p.name.startswith(prefix)]
    return _newest_readable(files)


def collect_session_artifacts(root_dir, agent_name: str) -> list[tuple[Path, str]]:
    """Newest session drafts whose frontmatter names ``agent_name``."""
    files = []
    for path in _markdown_files(Path(root_dir) / SESSION_DRAFT_DIR):
        try:
            raw = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        if frontmatter_agent_matches(raw, agent_name):
            files.append(path)
    return _newest_readable(files)


def frontmatter_agent_matches(raw: str, agent_name: str) -> bool:
    """True when the frontmatter's first ``agent:`` line names ``agent_name``."""
    if not raw.startswith(_FENCE_OPEN):
        return False
    rest = raw[len(_FENCE_OPEN):]
    end = rest.find(_FENCE_CLOSE)
    if end < 0:
        return False
    for line in rest[:end].splitlines():
        if line.startswith("agent:"):
            value = line[len("agent:"):].strip().strip('"').strip("'")
            return value == agent_name
    return False


async def run_reflection_llm(agent_loop: CheapCaller, artifacts: list[tuple[Path, str]]) -> str:
    """Ask the cheap model for a pattern across ``artifacts``; returns its raw answer."""
    parts = ["Recent artifacts (newest first):\n\n"]
    for path, content in artifacts:
        parts.append(f"---\n### {path}\n\n")
        parts.append(content[:ARTIFACT_CHAR_CAP])
        if len(content.encode("utf-8")) > ARTIFACT_CHAR_CAP:
            parts.append("\n\n[... truncated]")
        parts.append("\n\n")
    parts.append("Return your JSON now.")
    return await agent_loop.cheap_call(_SYSTEM_PROMPT, "".join(parts))


def write_pending_preference(root_dir, parsed: ReflectionResult) -> Path:
    """Write ``parsed`` as a pending preference draft and return its path."""
    scope_slug = slugify_scope(parsed.scope) if parsed.scope else "untagged"
    now = datetime.now(timezone.utc)
    directory = Path(root_dir) / PENDING_DIR
    directory.mkdir(parents=True, exist_ok=True)
    target = pick_unique_path(directory, f"{scope_slug}-{now:%Y%m%d}")

    lines = ["---", "type: preference", f"scope: {parsed.scope}"]
    if parsed.evidence_paths:
        lines.append("evidence_paths:")
        lines.extend(f"  - {p}" for p in parsed.evidence_paths)
    lines.append("source: reflection")
    lines.append(f"generated_at: {now:%Y-%m-%dT%H:%M:%SZ}")
    lines.append("---")
    text = "\n".join(lines) + "\n\n" + parsed.preference_body.strip()
    if not text.endswith("\n"):
        text += "\n"

    target.write_text(text, encoding="utf-8")
    return target


def slugify_scope(scope: str) -> str:
    """Lower-case ASCII slug with single dashes; ``untagged`` when nothing is left."""
    out: list[str] = []
    prev_dash = False
    for ch in scope:
        if ch.isascii() and ch.isalnum():
            out.append(ch.lower())
            prev_dash = False
        elif not prev_dash and out:
            out.append("-")
            prev_dash = True
    slug = "".join(out).rstrip("-")
    return slug or "untagged"


def pick_unique_path(directory, base_name: str) -> Path:
    """``<base>.md`` in ``directory``, or the first free ``<base>-N.md``."""
    directory = Path(directory)
    primary = directory / f"{base_name}.md"
    if not primary.exists():
        return primary
    for n in range(2, 1000):
        candidate = directory / f"{base_name}-{n}.md"
        if not candidate.exists():
            return candidate
    return directory / f"{base_name}-{time.time_ns()}.md"
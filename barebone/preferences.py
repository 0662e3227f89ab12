"""Local preference pool: loading, per-message selection and prompt formatting.

Preferences live as ``*.md`` files with optional YAML frontmatter
(``keywords`` or ``tags``, ``scope``, ``summary``). Preferences with
``scope: global`` are always selected; the rest are picked greedily by how
many message tokens they match, within a token budget.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from itertools import groupby
from pathlib import Path
from typing import Iterable, Iterator

import yaml

from barebone.session import SessionManager
from barebone.skills import split_frontmatter, tokenize_message

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"

_KEYWORD_SEPARATORS = re.compile(r"[,\s]+")


@dataclass
class Preference:
    """One file from the local preference pool."""

    slug: str
    keywords: list[str] = field(default_factory=list)
    scope: str | None = None
    summary: str | None = None
    body: str = ""
    token_estimate: int = 0

    @property
    def is_global(self) -> bool:
        return self.scope == GLOBAL_SCOPE


def _words(text: str) -> Iterator[str]:
    for is_word, chars in groupby(text, key=str.isalnum):
        if is_word:
            yield "".join(chars)


def _load_frontmatter(slug: str, frontmatter: str | None) -> dict:
    if frontmatter is None:
        return {}
    try:
        value = yaml.safe_load(frontmatter)
    except yaml.YAMLError as exc:
        logger.warning(
            "preference %s frontmatter parse failed; treating whole file as body: %s",
            slug,
            exc,
        )
        return {}
    return value if isinstance(value, dict) else {}


def _keywords_from(value) -> list[str]:
    if isinstance(value, list):
        return [item.lower() for item in value if isinstance(item, str)]
    if isinstance(value, str):
        return [token.lower() for token in _KEYWORD_SEPARATORS.split(value) if token]
    return []


def parse_preference(slug: str, raw: str) -> Preference:
    """Parse a preference file's text into a :class:`Preference`."""
    frontmatter, body = split_frontmatter(raw)
    meta = _load_frontmatter(slug, frontmatter)

    keyword_field = meta["keywords"] if "keywords" in meta else meta.get("tags")
    scope = meta.get("scope")
    summary = meta.get("summary")

    return Preference(
        slug=slug,
        keywords=_keywords_from(keyword_field),
        scope=scope.lower() if isinstance(scope, str) else None,
        summary=summary if isinstance(summary, str) else None,
        body=body,
        token_estimate=len(body.encode("utf-8")) // 4,
    )


def load_preference_pool(pool_dir) -> list[Preference]:
    """Read every ``*.md`` under ``pool_dir``, skipping dot-prefixed files.

    A missing or unreadable directory gives an empty pool.
    """
    pool_dir = Path(pool_dir)
    if not pool_dir.exists():
        logger.debug("preference pool dir %s not found; empty pool", pool_dir)
        return []
    try:
        paths = [p for p in pool_dir.iterdir() if p.suffix == ".md"]
    except OSError as exc:
        logger.warning("failed to read preference dir %s: %s", pool_dir, exc)
        return []

    pool = []
    for path in paths:
        slug = path.stem or "unnamed"
        if slug.startswith("."):
            continue
        try:
            raw = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("skipping preference file %s: %s", path, exc)
            continue
        pool.append(parse_preference(slug, raw))

    pool.sort(key=lambda p: p.slug)
    logger.debug("preference pool loaded: %d", len(pool))
    return pool


def score_preference(pref: Preference, message_tokens: Iterable[str]) -> int:
    """Number of distinct message tokens found in the keywords or body."""
    tokens = set(pref.keywords)
    tokens.update(word.lower() for word in _words(pref.body))
    return len(set(message_tokens) & tokens)


def select_preferences(
    pool: Iterable[Preference],
    message: str,
    min_hits: int,
    token_budget: int,
) -> list[Preference]:
    """Pick preferences relevant to ``message``.

    Global preferences always come first, sorted by slug, and do not count
    against the budget. Scoped preferences need at least ``min_hits`` distinct
    token matches and are packed greedily (score descending, slug ascending)
    into ``token_budget``.
    """
    pool = list(pool)
    chosen = sorted((p for p in pool if p.is_global), key=lambda p: p.slug)

    message_tokens = tokenize_message(message)
    if not message_tokens:
        return chosen

    scored = [(score_preference(p, message_tokens), p) for p in pool if not p.is_global]
    eligible = sorted(
        ((hits, p) for hits, p in scored if hits >= min_hits),
        key=lambda pair: (-pair[0], pair[1].slug),
    )

    used = 0
    for _, pref in eligible:
        if used + pref.token_estimate > token_budget:
            continue
        used += pref.token_estimate
        chosen.append(pref)
    return chosen


def format_preferences(prefs: Iterable[Preference]) -> list[str]:
    """One formatted section per preference, headed by its slug and scope."""
    formatted = []
    for pref in prefs:
        body = pref.body.strip()
        if pref.scope is not None:
            formatted.append(f"### {pref.slug} (scope: {pref.scope})\n\n{body}")
        else:
            formatted.append(f"### {pref.slug}\n\n{body}")
    return formatted


def format_for_prompt(prefs: Iterable[Preference]) -> str:
    """A complete ``## User Preferences`` block; empty input gives ``""``."""
    parts = format_preferences(prefs)
    if not parts:
        return ""
    return "## User Preferences\n\n" + "\n\n---\n\n".join(parts)


def select_for_segment_cached(
    session_mgr: SessionManager,
    conv_id: str,
    message: str,
    pool_dir,
    min_hits: int,
    token_budget: int,
) -> list[str]:
    """Select and format preferences once per conversation segment.

    The first non-empty selection is cached on the session; later calls for
    the same ``conv_id`` return it unchanged.
    """
    cached = session_mgr.get_selected_preferences(conv_id)
    if cached:
        return cached

    pool = load_preference_pool(pool_dir)
    if not pool:
        return []
    formatted = format_preferences(select_preferences(pool, message, min_hits, token_budget))
    if formatted:
        session_mgr.set_selected_preferences(conv_id, formatted)
    return formatted
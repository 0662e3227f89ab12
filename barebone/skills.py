"""Core skills loaded at startup and task-matched equipped skills."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import groupby
from pathlib import Path
from typing import Iterable, Iterator

import yaml

logger = logging.getLogger(__name__)

_FENCE_OPEN = "---\n"
_FENCE_CLOSE = "\n---\n"

# Function words dropped from message tokenization. Skill keywords and bodies
# are not filtered, so a keyword like "for" still matches if the user typed it.
STOPWORDS = frozenset(
    {
        "a", "an", "and", "or", "the", "to", "of", "in", "on", "at", "by", "for",
        "is", "are", "was", "were", "be", "been", "being", "do", "does", "did",
        "has", "have", "had", "i", "you", "we", "they", "it", "this", "that",
        "with", "from", "as", "but", "if", "then", "so", "not",
    }
)


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _words(text: str) -> Iterator[str]:
    """Yield maximal runs of alphanumeric characters."""
    for is_word, chars in groupby(text, key=str.isalnum):
        if is_word:
            yield "".join(chars)


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("failed to read %s: %s", path, exc)
        return None


@dataclass
class CoreSkills:
    """Concatenated content of every core skill file."""

    content: str = ""
    count: int = 0
    token_estimate: int = 0

    @classmethod
    def load(cls, skills_dir) -> "CoreSkills":
        """Load all ``.md`` files from ``skills_dir`` in file-name order."""
        skills_dir = Path(skills_dir)
        if not skills_dir.exists():
            logger.warning("skills directory %s not found, no core skills loaded", skills_dir)
            return cls()
        try:
            entries = sorted(
                (p for p in skills_dir.iterdir() if p.suffix == ".md"),
                key=lambda p: p.name,
            )
        except OSError as exc:
            logger.warning("failed to read skills directory: %s", exc)
            return cls()

        parts = [
            text.strip()
            for text in (_read_text(p) for p in entries)
            if text is not None
        ]
        content = "\n\n".join(parts)
        token_estimate = _byte_len(content) // 4
        logger.info("core skills loaded: count=%d token_estimate=%d", len(parts), token_estimate)
        return cls(content=content, count=len(parts), token_estimate=token_estimate)

    def format_for_prompt(self) -> str:
        """Render as a system-prompt section; empty when there is no content."""
        if not self.content:
            return ""
        return f"## Core Skills\n\n{self.content}"


@dataclass
class EquippedSkill:
    """One file from the local skills pool."""

    slug: str
    keywords: list[str] = field(default_factory=list)
    description: str | None = None
    body: str = ""
    token_estimate: int = 0


def split_frontmatter(raw: str) -> tuple[str | None, str]:
    """Split ``raw`` into (frontmatter, body); frontmatter is None when absent."""
    if not raw.startswith(_FENCE_OPEN):
        return None, raw
    rest = raw[len(_FENCE_OPEN):]
    end = rest.find(_FENCE_CLOSE)
    if end < 0:
        return None, raw
    return rest[:end], rest[end + len(_FENCE_CLOSE):].lstrip("\n")


def tokenize_message(text: str) -> set[str]:
    """Lower-cased alphanumeric tokens of ``text`` minus stopwords."""
    return {word.lower() for word in _words(text)} - STOPWORDS


def _parse_frontmatter(slug: str, frontmatter: str | None) -> dict:
    if frontmatter is None:
        return {}
    try:
        value = yaml.safe_load(frontmatter)
    except yaml.YAMLError as exc:
        logger.warning("frontmatter parse failed for %s; treating whole file as body: %s", slug, exc)
        return {}
    return value if isinstance(value, dict) else {}


def parse_skill(slug: str, raw: str) -> EquippedSkill:
    """Parse a skill file's text into an :class:`EquippedSkill`."""
    frontmatter, body = split_frontmatter(raw)
    meta = _parse_frontmatter(slug, frontmatter)

    keywords: list[str] = []
    raw_keywords = meta.get("keywords")
    if isinstance(raw_keywords, list):
        keywords = [k.lower() for k in raw_keywords if isinstance(k, str)]

    description = meta.get("description")
    if not isinstance(description, str):
        description = None

    return EquippedSkill(
        slug=slug,
        keywords=keywords,
        description=description,
        body=body,
        token_estimate=_byte_len(body) // 4,
    )


def load_equipped_pool(pool_dir) -> list[EquippedSkill]:
    """Read every ``*.md`` under ``pool_dir``; a missing directory gives an empty pool."""
    pool_dir = Path(pool_dir)
    if not pool_dir.exists():
        logger.debug("equipped skills pool dir %s not found; empty pool", pool_dir)
        return []
    try:
        paths = [p for p in pool_dir.iterdir() if p.suffix == ".md"]
    except OSError as exc:
        logger.warning("failed to read equipped skills dir %s: %s", pool_dir, exc)
        return []

    pool = []
    for path in paths:
        raw = _read_text(path)
        if raw is None:
            continue
        pool.append(parse_skill(path.stem or "unnamed", raw))
    pool.sort(key=lambda s: s.slug)
    logger.debug("equipped skills pool loaded: %d", len(pool))
    return pool


def score_skill(skill: EquippedSkill, message_tokens: Iterable[str]) -> int:
    """Number of distinct message tokens found in the skill's keywords or body."""
    skill_tokens = set(skill.keywords)
    skill_tokens.update(word.lower() for word in _words(skill.body))
    return len(set(message_tokens) & skill_tokens)


def select_equipped_skills(
    pool: Iterable[EquippedSkill],
    message: str,
    min_hits: int,
    token_budget: int,
) -> list[EquippedSkill]:
    """Pick skills relevant to ``message``, greedy by score within the token budget.

    Ties are broken by slug ascending. A skill that does not fit the remaining
    budget is skipped, and smaller ones after it are still considered.
    """
    message_tokens = tokenize_message(message)
    if not message_tokens:
        return []

    scored = [(score_skill(skill, message_tokens), skill) for skill in pool]
    eligible = sorted(
        ((hits, skill) for hits, skill in scored if hits >= min_hits),
        key=lambda pair: (-pair[0], pair[1].slug),
    )

    chosen = []
    used = 0
    for _, skill in eligible:
        if used + skill.token_estimate > token_budget:
            continue
        used += skill.token_estimate
        chosen.append(skill)
    return chosen


def format_equipped_skills(skills: Iterable[EquippedSkill]) -> str:
    """Render chosen skills as a system-prompt section; empty input gives ``""``."""
    bodies = [skill.body.strip() for skill in skills]
    if not bodies:
        return ""
    return "## Equipped Skills\n\n" + "\n\n---\n\n".join(bodies)
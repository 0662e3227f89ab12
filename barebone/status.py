"""Status dashboard over agents, token usage, tasks, missions and activity."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

AgentLoader = Callable[[str], "tuple[str, str]"]
"""Returns ``(role, model)`` for an agent name; may raise when the config is unreadable."""

ACTIVITY_LIMIT = 15
_ACTIVE_STATUSES = ("in_progress", "todo")


class Section(Enum):
    """Which dashboard sections to render."""

    ALL = "all"
    AGENTS = "agents"
    TOKENS = "tokens"
    TASKS = "tasks"
    MISSIONS = "missions"
    ACTIVITY = "activity"

    @classmethod
    def parse(cls, text: str) -> "Section":
        """Parse a single section name; ``all`` is not accepted here."""
        lowered = text.lower()
        for section in cls:
            if section is not cls.ALL and section.value == lowered:
                return section
        raise ValueError(
            f"Unknown section '{text}'. Valid: agents, tokens, tasks, missions, activity"
        )


class TokenPeriod(Enum):
    """Time window for token usage totals."""

    TODAY = "today"
    WEEK = "week"
    TOTAL = "total"

    @classmethod
    def parse(cls, text: str) -> "TokenPeriod":
        try:
            return cls(text.lower())
        except ValueError:
            raise ValueError(
                f"Unknown token period '{text}'. Valid: today, week, total"
            ) from None

    @property
    def label(self) -> str:
        return self.value

    def since(self) -> str | None:
        """The ``YYYY-MM-DD`` lower bound for queries, or None for all time."""
        now = datetime.now(timezone.utc)
        if self is TokenPeriod.TODAY:
            return f"{now:%Y-%m-%d}"
        if self is TokenPeriod.WEEK:
            return f"{now - timedelta(days=7):%Y-%m-%d}"
        return None


@dataclass
class StatusQuery:
    """What the dashboard should show."""

    agent_filter: Optional[str] = None
    token_period: TokenPeriod = TokenPeriod.TODAY
    section: Section = Section.ALL
    json: bool = False


@dataclass
class _Usage:
    input_tokens: int = 0
    output_tokens: int = 0


def _or_default(call: Callable[[], T], default: T) -> T:
    try:
        return call()
    except Exception as exc:  # the dashboard shows what it can
        logger.debug("status query failed: %s", exc)
        return default


def _matches(name: str, agent_filter: str | None) -> bool:
    return agent_filter is None or agent_filter == name


def _filtered_agents(db, agent_filter: str | None) -> list[str]:
    agents = _or_default(db.get_registered_agents, [])
    return [name for name in agents if _matches(name, agent_filter)]


def _agent_info(db, agent_filter: str | None, load_agent: AgentLoader) -> list[tuple[str, str, str, str | None]]:
    info = []
    for name in _filtered_agents(db, agent_filter):
        role, model = _or_default(lambda: tuple(load_agent(name)), ("unknown", "unknown"))
        last_active = _or_default(lambda: db.get_agent_last_active(name), None)
        info.append((name, role, model, last_active))
    return info


def _usage(db, name: str, since: str | None):
    return _or_default(lambda: db.get_token_usage(name, since), _Usage())


def _active_tasks(db, agent_filter: str | None) -> list:
    tasks = _or_default(lambda: db.list_tasks(agent_filter, None, None), [])
    return [t for t in tasks if t.status in _ACTIVE_STATUSES]


# --- Agents ---

def text_agents(db, agent_filter: str | None, load_agent: AgentLoader) -> str:
    agents = _agent_info(db, agent_filter, load_agent)
    out = "[Agents]\n"
    if not agents:
        out += "  (none registered)\n"
    for name, role, model, last_active in agents:
        active = last_active if last_active is not None else "never"
        out += f"  {name:<12} role={role:<10} model={model:<25} last_active={active}\n"
    return out + "\n"


def json_agents(db, agent_filter: str | None, load_agent: AgentLoader) -> list[dict[str, Any]]:
    return [
        {"name": name, "role": role, "model": model, "last_active": last_active}
        for name, role, model, last_active in _agent_info(db, agent_filter, load_agent)
    ]


# --- Tokens ---

def text_tokens(db, period: TokenPeriod, agent_filter: str | None) -> str:
    out = f"[Tokens — {period.label}]\n"
    since = period.since()
    agents = _filtered_agents(db, agent_filter)
    if not agents:
        out += "  (no agents)\n"
    for name in agents:
        usage = _usage(db, name, since)
        total = usage.input_tokens + usage.output_tokens
        out += (
            f"  {name:<12} input={usage.input_tokens:<10} "
            f"output={usage.output_tokens:<10} total={total}\n"
        )
    return out + "\n"


def json_tokens(db, period: TokenPeriod, agent_filter: str | None) -> dict[str, Any]:
    since = period.since()
    rows = []
    for name in _filtered_agents(db, agent_filter):
        usage = _usage(db, name, since)
        rows.append(
            {
                "name": name,
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "total": usage.input_tokens + usage.output_tokens,
            }
        )
    return {"period": period.label, "agents": rows}


# --- Tasks ---

def text_tasks(db, agent_filter: str | None) -> str:
    out = "[Tasks]\n"
    counts = _or_default(lambda: db.get_task_status_counts(agent_filter), [])
    if not counts:
        out += "  (no tasks)\n"
    else:
        out += "  Status counts: " + ", ".join(f"{s}={c}" for s, c in counts) + "\n"
        active = _active_tasks(db, agent_filter)
        if active:
            out += "  Active:\n"
            for task in active:
                agent = task.agent_name if task.agent_name is not None else "-"
                out += (
                    f"    {task.key} [{task.status}] {task.title} "
                    f"(pri={task.priority}, agent={agent})\n"
                )
    return out + "\n"


def json_tasks(db, agent_filter: str | None) -> dict[str, Any]:
    counts = _or_default(lambda: db.get_task_status_counts(agent_filter), [])
    return {
        "status_counts": [{"status": s, "count": c} for s, c in counts],
        "active": [
            {
                "key": t.key,
                "title": t.title,
                "status": t.status,
                "priority": t.priority,
                "agent": t.agent_name,
            }
            for t in _active_tasks(db, agent_filter)
        ],
    }


# --- Missions ---

def _progress(db, key: str) -> tuple[int, int]:
    return tuple(_or_default(lambda: db.get_mission_task_progress(key), (0, 0)))


def text_missions(db) -> str:
    out = "[Missions]\n"
    missions = _or_default(lambda: db.list_missions(None), [])
    if not missions:
        out += "  (no missions)\n"
    for mission in missions:
        done, total = _progress(db, mission.key)
        out += f"  {mission.key} [{mission.status}] {mission.title} ({done}/{total})\n"
    return out + "\n"


def json_missions(db) -> list[dict[str, Any]]:
    rows = []
    for mission in _or_default(lambda: db.list_missions(None), []):
        done, total = _progress(db, mission.key)
        rows.append(
            {
                "key": mission.key,
                "title": mission.title,
                "status": mission.status,
                "done": done,
                "total": total,
            }
        )
    return rows


# --- Activity ---

def _recent(db, agent_filter: str | None) -> list:
    return _or_default(lambda: db.get_recent_activity(agent_filter, ACTIVITY_LIMIT), [])


def text_activity(db, agent_filter: str | None) -> str:
    out = "[Activity]\n"
    events = _recent(db, agent_filter)
    if not events:
        out += "  (no recent activity)\n"
    for time, agent, channel, role, content in events:
        preview = content.replace("\n", " ")
        out += f"  {time} {agent}/{channel} [{role}] {preview}\n"
    return out + "\n"


def json_activity(db, agent_filter: str | None) -> list[dict[str, Any]]:
    return [
        {"time": time, "agent": agent, "channel": channel, "role": role, "content": content}
        for time, agent, channel, role, content in _recent(db, agent_filter)
    ]


# --- Assembly ---

def _shows(query: StatusQuery, section: Section) -> bool:
    return query.section is Section.ALL or query.section is section


def build_text(db, query: StatusQuery, load_agent: AgentLoader) -> str:
    """The plain-text dashboard for ``query``."""
    out = "=== barebone-agent status ===\n\n"
    if _shows(query, Section.AGENTS):
        out += text_agents(db, query.agent_filter, load_agent)
    if _shows(query, Section.TOKENS):
        out += text_tokens(db, query.token_period, query.agent_filter)
    if _shows(query, Section.TASKS):
        out += text_tasks(db, query.agent_filter)
    if _shows(query, Section.MISSIONS):
        out += text_missions(db)
    if _shows(query, Section.ACTIVITY):
        out += text_activity(db, query.agent_filter)
    return out


def build_json(db, query: StatusQuery, load_agent: AgentLoader) -> dict[str, Any]:
    """The dashboard for ``query`` as a JSON-ready dict keyed by section."""
    obj: dict[str, Any] = {}
    if _shows(query, Section.AGENTS):
        obj["agents"] = json_agents(db, query.agent_filter, load_agent)
    if _shows(query, Section.TOKENS):
        obj["tokens"] = json_tokens(db, query.token_period, query.agent_filter)
    if _shows(query, Section.TASKS):
        obj["tasks"] = json_tasks(db, query.agent_filter)
    if _shows(query, Section.MISSIONS):
        obj["missions"] = json_missions(db)
    if _shows(query, Section.ACTIVITY):
        obj["activity"] = json_activity(db, query.agent_filter)
    return obj


def run_status(db, query: StatusQuery, load_agent: AgentLoader) -> None:
    """Print the dashboard as text or pretty JSON."""
    if query.json:
        print(json.dumps(build_json(db, query, load_agent), indent=2, ensure_ascii=False))
    else:
        print(build_text(db, query, load_agent), end="")
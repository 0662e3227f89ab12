"""Tool registry and per-conversation session tracking against AKW."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import monotonic
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Any], Union[Awaitable[Any], Any]]

_GROUP_START = "mcp_akw__group_start"
_GROUP_END = "mcp_akw__group_end"


@dataclass
class _Tool:
    name: str
    description: str
    parameters: Any
    handler: ToolHandler


class ToolRegistry:
    """Named tools whose handlers take JSON-like arguments and return text."""

    def __init__(self) -> None:
        self._tools: dict[str, _Tool] = {}

    def register(self, name: str, description: str, parameters: Any, handler: ToolHandler) -> None:
        """Add or replace the tool called ``name``."""
        self._tools[name] = _Tool(name, description, parameters, handler)

    def has(self, name: str) -> bool:
        """True when a tool called ``name`` is registered."""
        return name in self._tools

    async def execute(self, name: str, args: Any) -> str:
        """Run the tool and return its text output, or an ``Error`` message."""
        tool = self._tools.get(name)
        if tool is None:
            return f"Error: unknown tool: {name}"
        result = tool.handler(args)
        if inspect.isawaitable(result):
            result = await result
        return str(result)


@dataclass
class _ActiveSession:
    conv_id: str
    channel_type: str
    group_id: str | None = None
    recommended_context: list[str] = field(default_factory=list)
    # Empty list means "not yet computed".
    selected_preferences: list[str] = field(default_factory=list)
    # None means "not yet computed"; a list (possibly empty) means computed.
    prior_work: list[str] | None = None
    segment_started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: float = field(default_factory=monotonic)


class SessionManager:
    """Tracks conversation sessions and mirrors them as AKW groups when available.

    AKW is best-effort: when its tools are not registered, sessions are kept
    locally only.
    """

    def __init__(self, agent_name: str, project_id: str | None, ttl_minutes: int, registry: ToolRegistry) -> None:
        self.agent_name = agent_name
        self.project_id = project_id
        self.ttl_seconds = ttl_minutes * 60
        self.registry = registry
        self.sessions: dict[str, _ActiveSession] = {}

    async def ensure_session(self, conv_id: str, channel_type: str) -> list[str]:
        """Make sure a session exists for ``conv_id``; return its recommended context."""
        session = self.sessions.get(conv_id)
        if session is not None:
            expired = (
                channel_type == "discord"
                and monotonic() - session.last_activity > self.ttl_seconds
            )
            if not expired:
                session.last_activity = monotonic()
                return list(session.recommended_context)
            del self.sessions[conv_id]
            if session.group_id is not None:
                await self._end_akw_session()

        group_id, context = await self._start_akw_session(conv_id, channel_type)
        self.sessions[conv_id] = _ActiveSession(
            conv_id=conv_id,
            channel_type=channel_type,
            group_id=group_id,
            recommended_context=list(context),
        )
        return context

    def set_prior_work(self, conv_id: str, prior_work: list[str]) -> None:
        """Cache the segment's prior-work selection."""
        session = self.sessions.get(conv_id)
        if session is not None:
            session.prior_work = list(prior_work)

    def get_prior_work(self, conv_id: str) -> list[str] | None:
        """Cached prior-work selection, or None when not yet computed."""
        session = self.sessions.get(conv_id)
        if session is None or session.prior_work is None:
            return None
        return list(session.prior_work)

    def set_selected_preferences(self, conv_id: str, prefs: list[str]) -> None:
        """Cache the segment's preference selection."""
        session = self.sessions.get(conv_id)
        if session is not None:
            session.selected_preferences = list(prefs)

    def get_selected_preferences(self, conv_id: str) -> list[str]:
        """Cached preference selection; empty when not populated."""
        session = self.sessions.get(conv_id)
        return list(session.selected_preferences) if session else []

    def get_group_id(self, conv_id: str) -> str | None:
        session = self.sessions.get(conv_id)
        return session.group_id if session else None

    def get_segment_started_at(self, conv_id: str) -> datetime | None:
        session = self.sessions.get(conv_id)
        return session.segment_started_at if session else None

    def get_channel_type(self, conv_id: str) -> str | None:
        session = self.sessions.get(conv_id)
        return session.channel_type if session else None

    def active_conv_ids(self) -> list[str]:
        """Snapshot of all active conversation ids."""
        return list(self.sessions)

    async def log_turn(self, conv_id: str, request: str, response: str) -> None:
        """Kept for call-site compatibility; turns are stored elsewhere."""
        logger.debug("log_turn called for %s (no-op)", conv_id)

    async def end_session(self, conv_id: str) -> None:
        """End the session for ``conv_id`` if there is one."""
        session = self.sessions.pop(conv_id, None)
        if session is None:
            return
        if session.group_id is not None:
            await self._end_akw_session()
        logger.info("session ended: %s", conv_id)

    async def end_all(self) -> None:
        """End every active session."""
        for conv_id in list(self.sessions):
            session = self.sessions.pop(conv_id)
            if session.group_id is not None:
                await self._end_akw_session()
        logger.info("all sessions ended")

    def get_recommended_context(self, conv_id: str) -> list[str]:
        session = self.sessions.get(conv_id)
        return list(session.recommended_context) if session else []

    def has_akw(self) -> bool:
        """True when the AKW group tools are registered."""
        return self.registry.has(_GROUP_START)

    async def _start_akw_session(self, conv_id: str, channel_type: str) -> tuple[str | None, list[str]]:
        if not self.has_akw():
            return None, []

        metadata: dict[str, Any] = {"conv_id": conv_id, "channel": channel_type}
        if self.project_id is not None:
            metadata["project_id"] = self.project_id
        raw = await self.registry.execute(
            _GROUP_START, {"agent": self.agent_name, "metadata": metadata}
        )

        try:
            response = json.loads(raw)
        except ValueError:
            logger.warning("failed to parse AKW group_start response for %s", conv_id)
            return None, []
        if not isinstance(response, dict):
            return None, []

        group_id = response.get("group_id")
        if not isinstance(group_id, str):
            group_id = None
        items = response.get("recommended_context")
        context = [
            item["content"]
            for item in (items if isinstance(items, list) else [])
            if isinstance(item, dict) and isinstance(item.get("content"), str)
        ]
        if group_id is not None:
            logger.info("AKW group %s started for %s", group_id, conv_id)
        return group_id, context

    async def _end_akw_session(self) -> None:
        if not self.has_akw():
            return
        await self.registry.execute(_GROUP_END, {})
        logger.debug("AKW group segment ended")
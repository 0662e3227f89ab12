"""Skills, preferences, sessions, prior-work search, reflection, session drafts and a status dashboard for an agent harness."""

__version__ = "0.1.0"

__all__ = [
    "memory_context",
    "preferences",
    "reflection",
    "session",
    "session_draft",
    "skills",
    "status",
]
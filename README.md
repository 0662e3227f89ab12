# barebone

`barebone` builds the context that an agent puts in front of a language
model before each turn. It also keeps track of what the agent learns over
time. The package has these modules:

- `barebone.skills`: core skills, which are always included, and *equipped*
  skills, which are picked for each message by keyword and body match within
  a token budget.
- `barebone.preferences`: user preferences loaded from a pool of Markdown
  files. Preferences with `scope: global` are always included. Scoped ones
  are ranked by how well they match the message.
- `barebone.session`: `ToolRegistry`, a set of named async-or-sync tool
  handlers, and `SessionManager`, which tracks conversation sessions and
  caches the chosen preferences and prior work for each segment.
- `barebone.memory_context`: a prior-work search across memory tiers, packed
  into a budget, plus formatting of a recurring task's previous result.
- `barebone.reflection`: a counter that triggers pattern detection over
  recent artifacts and writes pending preference drafts.
- `barebone.session_draft`: Markdown summaries of conversation segments once
  they end.
- `barebone.status`: a text or JSON dashboard of agents, token usage, tasks,
  missions and recent activity.

## Installation

`barebone` needs Python 3.10 or newer. Its only runtime dependency is PyYAML.
The `test` extra adds pytest and pytest-asyncio.

## Skill and preference files

A skill or preference is a Markdown file with optional YAML frontmatter:

```markdown
---
keywords: [git, commit, style]
scope: git
summary: Git commit style
---

Use imperative mood for commit subjects.
```

The file name without `.md` is the slug. Frontmatter is recognised only when
the file starts with `---` on its own line and a closing `---` line follows;
otherwise the whole file is the body. Frontmatter that is not valid YAML is
ignored.

- Skills read `keywords` (a YAML list) and `description`.
- Preferences read `keywords`, or `tags` when `keywords` is absent, as either
  a YAML list or a string separated by commas or whitespace; `scope`
  (lower-cased) and `summary`. Preference files whose names start with a dot,
  such as `.template.md`, are skipped.

## Choosing context for a message

```python
from pathlib import Path

from barebone.skills import (
    CoreSkills,
    load_equipped_pool,
    select_equipped_skills,
    format_equipped_skills,
)
from barebone.preferences import (
    load_preference_pool,
    select_preferences,
    format_for_prompt,
)

message = "research the crypto market and macro economy"

core = CoreSkills.load(Path("config/skills"))
skills = select_equipped_skills(
    load_equipped_pool(Path("agents/_skills")),
    message,
    2,     # minimum distinct token matches
    4000,  # token budget
)
prefs = select_preferences(
    load_preference_pool(Path("agents/_preferences")),
    message,
    2,
    4000,
)

system_prompt = "\n\n".join(
    part
    for part in (
        core.format_for_prompt(),
        format_equipped_skills(skills),
        format_for_prompt(prefs),
    )
    if part
)
```

Messages are split into lower-cased alphanumeric words, and common function
words are dropped. A candidate's score is the number of distinct message words
found in its keywords or body. Token estimates count one token per four bytes
of body text. Candidates are ranked by score, then by slug; one that would go
over the remaining budget is skipped, and smaller ones after it can still be
added. Global preferences come first and do not count against the budget. A
missing pool directory gives an empty pool.

## Sessions and per-segment caching

```python
import asyncio

from barebone.session import SessionManager, ToolRegistry
from barebone.preferences import select_for_segment_cached
from barebone.memory_context import build_prior_work_cached

registry = ToolRegistry()
sessions = SessionManager("ino", None, 30, registry)

async def prepare(conv_id: str, message: str):
    context = await sessions.ensure_session(conv_id, "cli")
    prefs = select_for_segment_cached(sessions, conv_id, message, "agents/_preferences", 2, 4000)
    prior = await build_prior_work_cached(registry, sessions, conv_id, message, 3, 4000)
    return context, prefs, prior

asyncio.run(prepare("conv-1", "git commit style"))
```

`ToolRegistry.register(name, description, parameters, handler)` adds a tool;
`execute(name, args)` awaits the handler if needed and returns its text, or an
`Error: unknown tool: ...` message.

`SessionManager` talks to the memory service only when the tools
`mcp_akw__group_start` and `mcp_akw__group_end` are registered; otherwise
sessions are tracked locally. A `discord` session whose last activity is older
than the TTL is replaced by a new one. `end_session` and `end_all` close
sessions; `log_turn` does nothing beyond a debug log entry.

Prior work uses `mcp_akw__memory_search` over the `knowledge`,
`research_draft` and `session_archived` tiers and reads each hit with
`mcp_akw__memory_read`. Paths under `2_knowledges/preferences/` are left out.
Queries are cut to 200 characters. Without the search tool the result is an
empty list.

## Recurring tasks

`barebone.memory_context.format_previous_run_result` turns the last result of
a recurring task into a `## Previous Run Result` block, cut to 1,500
characters. It returns an empty string for blank results and for results that
start with a known LLM-failure message.

## Reflection

`barebone.reflection.increment_and_maybe_reflect(root_dir, db, agent_loop,
scope, scope_key, threshold)` bumps a counter for a `ScopeKind` (`TASK_KEY` or
`AGENT_CONV`). When the counter reaches the threshold it gathers up to ten of
the newest artifacts:

- for tasks, `data/drafts/2_researches/<task_key>-*.md`;
- for conversations, `data/drafts/sessions/*.md` whose frontmatter `agent:`
  names the agent.

It then asks the model whether a stable pattern exists. If one is found, a
pending preference is written under `data/drafts/2_knowledges/preferences/`
as `<scope-slug>-<YYYYMMDD>.md`, with `-2`, `-3`, … added on collisions. The
returned `ReflectionOutcome` holds the counter, whether reflection fired, and
the draft path. It never raises. Pending preferences are not read back into
the active pool.

## Session drafts

`barebone.session_draft.write_session_draft(...)` loads the segment's turns,
summarises them and writes
`data/drafts/sessions/<first 8 chars of group id>-<YYYYMMDDTHHMMSSZ>.md`.
The file has YAML frontmatter, a `## Summary` section and optionally a
`## Turns` appendix. In the appendix, each turn is capped at 2,048 bytes and
the oldest turns are dropped past 50,000 bytes. Task channels and empty
segments are skipped, and in those cases it returns `None`.

## Status dashboard

`barebone.status.run_status(db, query, load_agent)` prints either a text
dashboard or pretty JSON. `StatusQuery` holds:

- `agent_filter`;
- `token_period`, from `TokenPeriod.parse("today" | "week" | "total")`;
- `section`, either `Section.ALL` or `Section.parse("agents" | "tokens" |
  "tasks" | "missions" | "activity")`;
- `json`.

Unknown names raise `ValueError`. `load_agent(name)` returns `(role, model)`
for an agent. If it fails, `unknown` is shown. `build_text` and `build_json`
return the dashboard instead of printing it.

## What the package does not do

`barebone` has no command-line program, no database, no model client and no
task scheduler. The caller supplies these as objects:

- The `agent_loop` given to reflection and session drafts needs an
  `agent_name` attribute and an async `cheap_call(system, user)` that returns
  the model's text.
- The `db` given to reflection needs `increment_reflection_counter` and
  `reset_reflection_counter`.
- The `db` given to session drafts needs
  `load_final_turns_in_window(conv_id, started, ended)` returning `Turn`
  objects.
- The `db` given to the status dashboard needs these methods:
  - `get_registered_agents`
  - `get_agent_last_active`
  - `get_token_usage`
  - `get_task_status_counts`
  - `list_tasks`
  - `list_missions`
  - `get_mission_task_progress`
  - `get_recent_activity`

  Any of these calls that fails shows up as an empty section.
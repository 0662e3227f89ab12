from pathlib import Path

import pytest

from barebone.preferences import (
    Preference,
    format_for_prompt,
    format_preferences,
    load_preference_pool,
    parse_preference,
    score_preference,
    select_for_segment_cached,
    select_preferences,
)
from barebone.session import SessionManager, ToolRegistry


def write_pref(directory: Path, slug: str, content: str) -> None:
    (directory / f"{slug}.md").write_text(content, encoding="utf-8")


def pref(slug, keywords=(), scope=None, body="", token_estimate=0):
    return Preference(
        slug=slug,
        keywords=list(keywords),
        scope=scope,
        summary=None,
        body=body,
        token_estimate=token_estimate,
    )


def test_parse_pref_with_full_frontmatter():
    raw = "---\nkeywords: [git, commit, style]\nscope: git\nsummary: Git commit style\n---\n\nUse imperative mood."
    p = parse_preference("git_commit_style", raw)
    assert p.keywords == ["git", "commit", "style"]
    assert p.scope == "git"
    assert p.summary == "Git commit style"
    assert p.body.startswith("Use imperative")


def test_parse_pref_keywords_string_form():
    raw = "---\nkeywords: alpha, beta gamma\nscope: x\n---\n\nbody"
    p = parse_preference("p", raw)
    assert p.keywords == ["alpha", "beta", "gamma"]


def test_parse_pref_falls_back_to_tags():
    raw = "---\ntags: [foo, bar]\n---\n\nbody"
    p = parse_preference("p", raw)
    assert p.keywords == ["foo", "bar"]


def test_parse_pref_no_frontmatter():
    raw = "Just a body. No frontmatter."
    p = parse_preference("bare", raw)
    assert p.keywords == []
    assert p.scope is None
    assert p.body == raw


def test_parse_pref_scope_lowercased_and_token_estimate():
    p = parse_preference("p", "---\nscope: GLOBAL\n---\n\n" + "x" * 40)
    assert p.scope == "global"
    assert p.token_estimate == 10


def test_score_counts_keywords_and_body_words():
    p = pref("p", keywords=["deploy"], body="Run the Staging checks")
    assert score_preference(p, {"deploy", "staging", "missing"}) == 2


def test_select_global_always_included():
    pool = [
        pref("always", ["never_appears_in_message"], "global", "Always inject me.", 5),
        pref("scoped", ["foo", "bar"], "git", "Body", 3),
    ]
    picked = select_preferences(pool, "completely unrelated", 2, 4000)
    assert [p.slug for p in picked] == ["always"]


def test_select_scoped_filtered_by_min_hits():
    pool = [pref("scoped", ["foo", "bar"], "test", "x", 1)]
    assert select_preferences(pool, "foo unrelated", 2, 4000) == []


def test_select_respects_budget_for_scoped():
    pool = [
        pref("alpha", ["foo", "bar"], "test", "x" * 400, 100),
        pref("beta", ["foo", "bar"], "test", "y" * 400, 100),
    ]
    picked = select_preferences(pool, "foo bar", 2, 100)
    assert [p.slug for p in picked] == ["alpha"]


def test_select_global_bypasses_budget():
    pool = [
        pref("g", [], "global", "x" * 8000, 2000),
        pref("scoped", ["foo", "bar"], "test", "x", 1),
    ]
    picked = select_preferences(pool, "foo bar", 2, 50)
    slugs = {p.slug for p in picked}
    assert slugs == {"g", "scoped"}


def test_select_empty_message_returns_only_globals():
    pool = [
        pref("g", [], "global", "global body", 5),
        pref("scoped", ["foo"], "test", "scoped", 2),
    ]
    picked = select_preferences(pool, "", 1, 4000)
    assert [p.slug for p in picked] == ["g"]


def test_select_orders_globals_first_then_by_score():
    pool = [
        pref("zz_global", [], "global", "", 0),
        pref("aa_global", [], "global", "", 0),
        pref("one", ["foo"], "x", "", 0),
        pref("two", ["foo", "bar"], "x", "", 0),
    ]
    picked = select_preferences(pool, "foo bar", 1, 4000)
    assert [p.slug for p in picked] == ["aa_global", "zz_global", "two", "one"]


def test_load_pool_skips_dot_prefixed(tmp_path):
    pool_dir = tmp_path / "_preferences"
    pool_dir.mkdir()
    write_pref(pool_dir, "real", "---\nscope: x\n---\n\nbody")
    (pool_dir / ".template.md").write_text("---\nscope: y\n---\n\ntemplate", encoding="utf-8")

    pool = load_preference_pool(pool_dir)
    assert [p.slug for p in pool] == ["real"]


def test_load_pool_missing_dir():
    assert load_preference_pool(Path("/nonexistent/_preferences")) == []


def test_load_pool_end_to_end(tmp_path):
    pool_dir = tmp_path / "_preferences"
    pool_dir.mkdir()
    write_pref(pool_dir, "global_style", "---\nscope: global\nsummary: Always be terse\n---\n\nBe terse.")
    write_pref(
        pool_dir,
        "git_style",
        "---\nkeywords: [git, commit]\nscope: git\n---\n\nUse imperative mood for commits.",
    )

    pool = load_preference_pool(pool_dir)
    assert len(pool) == 2

    picked = select_preferences(pool, "i need to git commit a fix", 2, 4000)
    assert {p.slug for p in picked} == {"global_style", "git_style"}


def test_format_for_prompt_output():
    prefs = [pref("git_style", [], "git", "Use imperative mood.", 5)]
    out = format_for_prompt(prefs)
    assert out.startswith("## User Preferences")
    assert "### git_style (scope: git)" in out
    assert "Use imperative mood." in out


def test_format_for_prompt_empty():
    assert format_for_prompt([]) == ""


def test_format_preferences_without_scope():
    assert format_preferences([pref("bare", body="  Body text \n")]) == ["### bare\n\nBody text"]


@pytest.mark.asyncio
async def test_select_for_segment_cached_reuses_first_selection(tmp_path):
    pool_dir = tmp_path / "_preferences"
    pool_dir.mkdir()
    write_pref(pool_dir, "g", "---\nscope: global\n---\n\nFirst rule.")

    mgr = SessionManager("ino", None, 30, ToolRegistry())
    await mgr.ensure_session("conv-1", "cli")

    first = select_for_segment_cached(mgr, "conv-1", "hello", pool_dir, 2, 4000)
    assert first == ["### g (scope: global)\n\nFirst rule."]

    write_pref(pool_dir, "g", "---\nscope: global\n---\n\nChanged rule.")
    second = select_for_segment_cached(mgr, "conv-1", "other message", pool_dir, 2, 4000)
    assert second == first


def test_select_for_segment_cached_empty_pool(tmp_path):
    mgr = SessionManager("ino", None, 30, ToolRegistry())
    out = select_for_segment_cached(mgr, "conv-1", "hello", tmp_path / "missing", 1, 4000)
    assert out == []
    assert mgr.get_selected_preferences("conv-1") == []
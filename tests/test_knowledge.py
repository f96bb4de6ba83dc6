from pathlib import Path

from devloop.knowledge import KnowledgeBase, parse_entries

ENTRIES = """# Implementer knowledge

## Run migrations in a transaction
**Added**: 2026-03-01
**Related**: db/migrations

Wrap each schema change in a transaction so a failed deploy leaves nothing half applied.

## Feature flags live in settings
**Added**: 2026-04-12
**Related**: app/settings.py

Read flags once at startup.
"""


def test_parse_entries() -> None:
    entries = parse_entries(ENTRIES)

    assert [entry.title for entry in entries] == [
        "Run migrations in a transaction",
        "Feature flags live in settings",
    ]
    assert entries[0].added_date == "2026-03-01"
    assert entries[0].related_context == "db/migrations"
    assert entries[0].body.startswith("Wrap each schema change")
    assert entries[1].body == "Read flags once at startup."


def test_render_lists_entries_per_role(tmp_path: Path) -> None:
    knowledge = KnowledgeBase(tmp_path)
    role_dir = knowledge.role_dir("implementer")
    role_dir.mkdir()
    (role_dir / "patterns.md").write_text(ENTRIES, encoding="utf-8")
    (role_dir / "notes.txt").write_text("## Ignored\n", encoding="utf-8")

    rendered = knowledge.render("implementer")

    assert rendered.splitlines()[0] == "Accumulated knowledge for implementer:"
    assert "- Run migrations in a transaction [db/migrations]:" in rendered
    assert "Ignored" not in rendered


def test_render_is_empty_without_knowledge(tmp_path: Path) -> None:
    knowledge = KnowledgeBase(tmp_path)

    assert knowledge.load("security-reviewer") == []
    assert knowledge.render("security-reviewer") == ""

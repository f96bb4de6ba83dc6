from __future__ import annotations

import logging
import re
from pathlib import Path

from devloop.models import KnowledgeEntry

logger = logging.getLogger(__name__)

ENTRY_HEADING = re.compile(r"^##\s+(?P<title>.+?)\s*$", re.MULTILINE)
ADDED_PATTERN = re.compile(r"^\*\*Added\*\*:\s*(?P<value>.*)$", re.MULTILINE)
RELATED_PATTERN = re.compile(r"^\*\*Related\*\*:\s*(?P<value>.*)$", re.MULTILINE)

CURATION_POLICY = """
Curation policy:
- Keep an entry only if it would help a different, future task of the same role.
- Do not add entries to record that you did work; record lessons, not activity.
- Update entries that are stale, prune entries that are wrong or redundant.
- "No changes" is a valid outcome. Report it as knowledge_changes with empty lists.
- Each entry uses the format:
  ## <title>
  **Added**: <YYYY-MM-DD>
  **Related**: <files, modules, or topics>

  <2-4 sentences>
""".strip()


def parse_entries(text: str) -> list[KnowledgeEntry]:
    headings = list(ENTRY_HEADING.finditer(text))
    entries: list[KnowledgeEntry] = []
    for index, match in enumerate(headings):
        end = headings[index + 1].start() if index + 1 < len(headings) else len(text)
        section = text[match.end() : end]
        added = ADDED_PATTERN.search(section)
        related = RELATED_PATTERN.search(section)
        body = RELATED_PATTERN.sub("", ADDED_PATTERN.sub("", section)).strip()
        entries.append(
            KnowledgeEntry(
                title=match.group("title"),
                added_date=added.group("value").strip() if added else "",
                related_context=related.group("value").strip() if related else "",
                body=" ".join(body.split()),
            )
        )
    return entries


class KnowledgeBase:
    """Per-role markdown knowledge files under ``<knowledge_dir>/<role>/``."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def role_dir(self, role: str) -> Path:
        return self.root / role

    def load(self, role: str) -> list[KnowledgeEntry]:
        directory = self.role_dir(role)
        if not directory.is_dir():
            return []
        entries: list[KnowledgeEntry] = []
        for path in sorted(directory.glob("*.md")):
            try:
                entries.extend(parse_entries(path.read_text(encoding="utf-8")))
            except OSError as exc:
                logger.warning("Skipping unreadable knowledge file %s: %s", path, exc)
        return entries

    def render(self, role: str) -> str:
        entries = self.load(role)
        if not entries:
            return ""
        lines = [f"Accumulated knowledge for {role}:"]
        for entry in entries:
            related = f" [{entry.related_context}]" if entry.related_context else ""
            lines.append(f"- {entry.title}{related}: {entry.body}")
        return "\n".join(lines)

"""Discovery of project instruction files (AGENTS.md, CLAUDE.md, skills)."""

from __future__ import annotations

import sys
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path

_PROJECT_FILE_NAMES = ("AGENTS.md", "CLAUDE.md")
_SKILL_FILE = "SKILL.md"
GLOBAL_DEPTH = sys.maxsize


@dataclass
class ContextFile:
    """A discovered context file.

    ``depth`` counts directories from the filesystem root down to the one
    holding the file; global files carry the largest possible depth.
    """

    path: Path
    content: str
    depth: int


def _read_if_present(path: Path) -> str | None:
    """Return the file's text, or None if it is missing, unreadable or blank."""
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
    return content if content.strip() else None


def _subdirectory_entries(directory: Path) -> Iterator[Path]:
    try:
        children = sorted(directory.iterdir())
    except OSError:
        return
    yield from children


def _skill_files(skills_dir: Path, require_dir: bool) -> Iterator[tuple[Path, str]]:
    if not skills_dir.is_dir():
        return
    for child in _subdirectory_entries(skills_dir):
        if require_dir and not child.is_dir():
            continue
        skill_md = child / _SKILL_FILE
        content = _read_if_present(skill_md)
        if content is not None:
            yield skill_md, content


def load_context_files(cwd: str | Path, agent_dir: str | Path) -> list[ContextFile]:
    """Collect context files from ``agent_dir`` and from every ancestor of ``cwd``.

    The result is ordered by depth, so files nearer to ``cwd`` come after
    those nearer to the root.
    """
    cwd = Path(cwd)
    agent_dir = Path(agent_dir)
    files: list[ContextFile] = []

    global_path = agent_dir / "AGENTS.md"
    content = _read_if_present(global_path)
    if content is not None:
        files.append(ContextFile(global_path, content, GLOBAL_DEPTH))

    for skill_md, content in _skill_files(agent_dir / "skills", require_dir=False):
        files.append(ContextFile(skill_md, content, GLOBAL_DEPTH))

    ancestors = [cwd, *cwd.parents]
    ancestors.reverse()
    for depth, directory in enumerate(ancestors):
        for name in _PROJECT_FILE_NAMES:
            path = directory / name
            content = _read_if_present(path)
            if content is not None:
                files.append(ContextFile(path, content, depth))
        for skill_md, content in _skill_files(
            directory / ".agent" / "skills", require_dir=True
        ):
            files.append(ContextFile(skill_md, content, depth))

    files.sort(key=lambda f: f.depth)
    return files


def format_context_section(files: Sequence[ContextFile]) -> str:
    """Render context files as one section for the system prompt."""
    if not files:
        return ""
    sections = []
    for file in files:
        path = Path(file.path)
        parent_name = path.parent.name
        origin = f"({parent_name})" if parent_name else ""
        sections.append(
            f"### Instructions from `{path.name}` {origin}\n\n{file.content.strip()}"
        )
    return "## Project Context\n\n" + "\n\n---\n\n".join(sections)
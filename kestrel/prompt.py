"""System prompt assembly."""

import logging
import platform
from datetime import date
from pathlib import Path

logger = logging.getLogger(__name__)

MAX_INSTRUCTIONS_CHARS = 10_000

INSTRUCTION_FILES = [
    ("KESTREL.md", "project-instructions"),
    ("AGENTS.md", "agent-instructions"),
]

DEFAULT_SYSTEM_PROMPT = """\
You are kestrel, a coding agent working in a local project directory.

Use the tools to inspect and change the project:
- read_file, list_dir, glob and grep to explore before you edit.
- edit_file for targeted changes, write_file for new files.
- bash for builds, tests and other commands. Prefer short, non-interactive commands.

Work step by step. Do not repeat a tool call whose result you already have.
When the task is done, reply with a short summary of what changed and stop calling tools.
If a tool is denied or cancelled, do not retry it; explain what you needed instead."""


def load_instructions(base_dir: str) -> tuple[str, list[str]]:
    """Load project instruction files from base_dir, if present.

    Returns (combined_text, filenames_loaded) where combined_text is
    XML-tagged sections, or "" if none were found.
    """
    sections = []
    loaded: list[str] = []
    for filename, tag in INSTRUCTION_FILES:
        path = Path(base_dir).resolve() / filename
        if not path.is_file():
            continue
        try:
            with path.open(encoding="utf-8", errors="replace") as f:
                content = f.read(MAX_INSTRUCTIONS_CHARS + 1)
        except OSError as e:
            logger.warning("cannot read %s: %s", path, e)
            continue
        if len(content) > MAX_INSTRUCTIONS_CHARS:
            content = (
                content[:MAX_INSTRUCTIONS_CHARS]
                + f"\n[truncated: {filename} exceeds {MAX_INSTRUCTIONS_CHARS} characters]"
            )
        sections.append(f"<{tag}>\n{content}\n</{tag}>")
        loaded.append(filename)
    return "\n\n".join(sections), loaded


def build_system_prompt(
    base_dir: str, custom: str | None = None, instructions: bool = True
) -> tuple[str, list[str]]:
    """Return (system prompt, instruction files loaded)."""
    parts = [custom or DEFAULT_SYSTEM_PROMPT]
    parts.append(
        f"Working directory: {Path(base_dir).resolve()}\n"
        f"Platform: {platform.system()}\n"
        f"Date: {date.today().isoformat()}"
    )
    loaded: list[str] = []
    if instructions:
        text, loaded = load_instructions(base_dir)
        if text:
            parts.append(text)
    return "\n\n".join(parts), loaded

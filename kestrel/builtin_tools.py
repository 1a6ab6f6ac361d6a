"""Builtin file and shell tools."""

import fnmatch
import os
import re
import signal
import subprocess
import threading
from pathlib import Path, PurePath

from .cancel import CancelScope
from .tools import PermissionLevel, Tool, ToolRegistry, ToolResult

MAX_LINE_LENGTH = 2000
MAX_LIST_RESULTS = 100
MAX_GREP_MATCHES = 100
BINARY_CHECK_BYTES = 8192
_KILL_WAIT_TIMEOUT = 5


def safe_resolve(file_path: str, base_dir: str, unrestricted: bool = False) -> Path:
    """Resolve *file_path* against *base_dir*, keeping it inside base_dir.

    Symlinks are resolved before the containment check.  In unrestricted
    mode any path is accepted except the filesystem root.

    Raises:
        ValueError: If the path escapes base_dir (when not unrestricted).
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()

    if unrestricted:
        if resolved == Path(resolved.anchor):
            raise ValueError(f"Path {file_path!r} resolves to the filesystem root")
        return resolved
    if resolved.is_relative_to(base):
        return resolved
    raise ValueError(
        f"Path {file_path!r} resolves to {resolved}, "
        f"which is outside base directory {base}"
    )


def _rel(path: Path, base: Path) -> str:
    try:
        return str(path.relative_to(base))
    except ValueError:
        return str(path)


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


class FileTool(Tool):
    """Shared base for tools that work on paths under a base directory."""

    def __init__(self, base_dir: str, unrestricted: bool = False):
        self.base_dir = base_dir
        self.unrestricted = unrestricted

    def resolve(self, path: str) -> Path:
        return safe_resolve(path, self.base_dir, self.unrestricted)

    def walk(self, root: Path, scope: CancelScope):
        """Yield files under *root*, pruning .git, until cancelled."""
        for dirpath, dirs, files in os.walk(root):
            if scope.cancelled:
                return
            dirs[:] = sorted(d for d in dirs if d != ".git")
            for filename in sorted(files):
                yield Path(dirpath) / filename


class ReadFileTool(FileTool):
    name = "read_file"
    description = (
        "Read a text file. Returns lines prefixed with line numbers. "
        "Use offset/limit to paginate; a continuation hint is shown when more lines remain."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file to read."},
            "offset": {
                "type": "integer",
                "description": "1-based line number to start reading from. Defaults to 1.",
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of lines to return. Defaults to 2000.",
            },
        },
        "required": ["file_path"],
    }
    permission_level = PermissionLevel.READ

    def execute(self, scope, params):
        file_path = params.get("file_path", "")
        try:
            resolved = self.resolve(file_path)
        except ValueError as e:
            return ToolResult(f"error: {e}", is_error=True)
        if not resolved.exists():
            return ToolResult(f"error: path does not exist: {file_path}", is_error=True)
        if resolved.is_dir():
            return ToolResult(
                f"error: {file_path} is a directory, use list_dir", is_error=True
            )
        try:
            if _is_binary(resolved):
                return ToolResult(f"error: binary file detected: {file_path}", is_error=True)
            text = resolved.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            return ToolResult(f"error: failed to decode {file_path} as UTF-8: {e}", is_error=True)
        except OSError as e:
            return ToolResult(f"error: {e}", is_error=True)

        lines = text.splitlines()
        start = max(int(params.get("offset") or 1) - 1, 0)
        limit = max(int(params.get("limit") or 2000), 1)
        selected = lines[start : start + limit]
        out = [
            f"{i}: {line[:MAX_LINE_LENGTH]}"
            for i, line in enumerate(selected, start=start + 1)
        ]
        remaining = len(lines) - (start + len(selected))
        result = "\n".join(out)
        if remaining > 0:
            next_offset = start + len(selected) + 1
            result += f"\n[{remaining} more lines, use offset={next_offset} to continue]"
        return ToolResult(result or "(empty file)")


class ListDirTool(FileTool):
    name = "list_dir"
    description = "List a directory. Subdirectories have a trailing /."
    parameters = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Directory to list. Defaults to '.'."}
        },
    }
    permission_level = PermissionLevel.READ

    def execute(self, scope, params):
        path = params.get("path") or "."
        try:
            resolved = self.resolve(path)
        except ValueError as e:
            return ToolResult(f"error: {e}", is_error=True)
        if not resolved.is_dir():
            return ToolResult(f"error: not a directory: {path}", is_error=True)
        try:
            entries = sorted(resolved.iterdir())
        except OSError as e:
            return ToolResult(f"error: {e}", is_error=True)
        names = [c.name + ("/" if c.is_dir() else "") for c in entries]
        return ToolResult("\n".join(names) or "(empty directory)")


class GlobTool(FileTool):
    name = "glob"
    description = (
        "Recursively find files whose path (relative to 'path') matches a glob "
        "such as '**/*.py'. Newest files first."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Glob pattern."},
            "path": {"type": "string", "description": "Directory to search. Defaults to '.'."},
        },
        "required": ["pattern"],
    }
    permission_level = PermissionLevel.READ

    def execute(self, scope, params):
        pattern = params.get("pattern", "")
        if not pattern or ".." in PurePath(pattern).parts:
            return ToolResult(f"error: invalid pattern {pattern!r}", is_error=True)
        path = params.get("path") or "."
        try:
            root = self.resolve(path)
        except ValueError as e:
            return ToolResult(f"error: {e}", is_error=True)
        if not root.is_dir():
            return ToolResult(f"error: not a directory: {path}", is_error=True)

        base = Path(self.base_dir).resolve()
        matched = [
            f for f in self.walk(root, scope) if PurePath(f.relative_to(root)).full_match(pattern)
        ]
        if not matched:
            return ToolResult("No files matched the pattern.")
        matched.sort(key=lambda f: f.stat().st_mtime, reverse=True)
        result = "\n".join(_rel(f, base) for f in matched[:MAX_LIST_RESULTS])
        if len(matched) > MAX_LIST_RESULTS:
            result += (
                f"\n(Results truncated: showing first {MAX_LIST_RESULTS} of "
                f"{len(matched)}. Use a more specific pattern or path.)"
            )
        return ToolResult(result)


class GrepTool(FileTool):
    name = "grep"
    description = "Search file contents for a regular expression."
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Python regular expression."},
            "path": {"type": "string", "description": "Directory to search. Defaults to '.'."},
            "include": {
                "type": "string",
                "description": "Only search files whose name matches this glob, e.g. '*.py'.",
            },
        },
        "required": ["pattern"],
    }
    permission_level = PermissionLevel.READ

    def execute(self, scope, params):
        pattern = params.get("pattern", "")
        try:
            regex = re.compile(pattern)
        except re.error as e:
            return ToolResult(f"error: invalid regex {pattern!r}: {e}", is_error=True)
        path = params.get("path") or "."
        include = params.get("include")
        try:
            root = self.resolve(path)
        except ValueError as e:
            return ToolResult(f"error: {e}", is_error=True)
        if not root.is_dir():
            return ToolResult(f"error: not a directory: {path}", is_error=True)

        base = Path(self.base_dir).resolve()
        matches: list[tuple[Path, int, str]] = []
        for filepath in self.walk(root, scope):
            if include and not fnmatch.fnmatch(filepath.name, include):
                continue
            try:
                if _is_binary(filepath):
                    continue
                text = filepath.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for line_no, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append((filepath, line_no, line[:MAX_LINE_LENGTH]))

        if not matches:
            return ToolResult("No matches found.")
        out = [f"Found {len(matches)} matches"]
        current = None
        for filepath, line_no, line in matches[:MAX_GREP_MATCHES]:
            if filepath != current:
                current = filepath
                out.append(f"\n{_rel(filepath, base)}:")
            out.append(f"  Line {line_no}: {line}")
        if len(matches) > MAX_GREP_MATCHES:
            out.append(
                f"\n(Results truncated: showing first {MAX_GREP_MATCHES} matches. "
                "Use a more specific pattern or path.)"
            )
        return ToolResult("\n".join(out))


class WriteFileTool(FileTool):
    name = "write_file"
    description = "Create or overwrite a file, creating parent directories as needed."
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file to write."},
            "content": {"type": "string", "description": "The full file content."},
        },
        "required": ["file_path", "content"],
    }
    permission_level = PermissionLevel.WRITE

    def execute(self, scope, params):
        file_path = params.get("file_path", "")
        content = params.get("content", "")
        if not isinstance(content, str):
            return ToolResult("error: content must be a string", is_error=True)
        try:
            resolved = self.resolve(file_path)
            resolved.parent.mkdir(parents=True, exist_ok=True)
            data = content.encode("utf-8")
            resolved.write_bytes(data)
        except (ValueError, OSError) as e:
            return ToolResult(f"error: {e}", is_error=True)
        return ToolResult(f"Wrote {len(data)} bytes to {file_path}")


def replace_unique(content: str, old: str, new: str, replace_all: bool = False) -> str:
    """Replace *old* with *new*; *old* must occur exactly once unless replace_all.

    Falls back to matching lines with surrounding whitespace stripped when
    there is no exact match.

    Raises:
        ValueError: If *old* is not found, or is ambiguous.
    """
    count = content.count(old)
    if count == 1 or (count > 1 and replace_all):
        return content.replace(old, new)
    if count > 1:
        raise ValueError(
            f"old_string occurs {count} times; add context or set replace_all"
        )

    content_lines = content.split("\n")
    old_lines = [line.strip() for line in old.strip("\n").split("\n")]
    n = len(old_lines)
    hits = [
        i
        for i in range(len(content_lines) - n + 1)
        if [line.strip() for line in content_lines[i : i + n]] == old_lines
    ]
    if not hits:
        raise ValueError("old_string not found in file")
    if len(hits) > 1 and not replace_all:
        raise ValueError(
            f"old_string matches {len(hits)} places; add context or set replace_all"
        )
    for i in reversed(hits):
        content_lines[i : i + n] = new.strip("\n").split("\n")
    return "\n".join(content_lines)


class EditFileTool(FileTool):
    name = "edit_file"
    description = (
        "Replace old_string with new_string in an existing file. old_string must "
        "match exactly one place unless replace_all is true."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file to edit."},
            "old_string": {"type": "string", "description": "Text to replace."},
            "new_string": {"type": "string", "description": "Replacement text."},
            "replace_all": {
                "type": "boolean",
                "description": "Replace every occurrence. Defaults to false.",
            },
        },
        "required": ["file_path", "old_string", "new_string"],
    }
    permission_level = PermissionLevel.WRITE

    def execute(self, scope, params):
        file_path = params.get("file_path", "")
        old = params.get("old_string", "")
        if not old:
            return ToolResult("error: old_string must not be empty", is_error=True)
        try:
            resolved = self.resolve(file_path)
        except ValueError as e:
            return ToolResult(f"error: {e}", is_error=True)
        if not resolved.is_file():
            return ToolResult(f"error: file does not exist: {file_path}", is_error=True)
        try:
            content = resolved.read_text(encoding="utf-8")
            updated = replace_unique(
                content,
                old,
                params.get("new_string", ""),
                replace_all=bool(params.get("replace_all")),
            )
            resolved.write_text(updated, encoding="utf-8")
        except (ValueError, OSError) as e:
            return ToolResult(f"error: {e}", is_error=True)
        return ToolResult(f"Edited {file_path}")


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process group started with start_new_session=True, then reap it."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except OSError:
        pass  # already exited
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable; leave it to the OS


class BashTool(Tool):
    name = "bash"
    description = (
        "Run a shell command with /bin/sh in the project directory. "
        "Returns combined stdout and stderr, and the exit code when non-zero."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The shell command to run."},
        },
        "required": ["command"],
    }
    permission_level = PermissionLevel.EXECUTE

    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    def execute(self, scope, params):
        command = params.get("command", "")
        if not isinstance(command, str) or not command.strip():
            return ToolResult("error: command must be a non-empty string", is_error=True)
        if not Path(self.base_dir).is_dir():
            return ToolResult(
                f"error: base directory is not a directory: {self.base_dir}", is_error=True
            )
        try:
            proc = subprocess.Popen(
                ["/bin/sh", "-c", command],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                cwd=self.base_dir,
                start_new_session=True,
            )
        except OSError as e:
            return ToolResult(f"error: failed to start shell command: {e}", is_error=True)
        return self._capture(proc, scope)

    def _capture(self, proc: subprocess.Popen, scope: CancelScope) -> ToolResult:
        chunks: list[bytes] = []

        def reader():
            try:
                for chunk in iter(lambda: proc.stdout.read(4096), b""):
                    chunks.append(chunk)
            except (OSError, ValueError):
                pass  # pipe closed after kill

        reader_thread = threading.Thread(target=reader, daemon=True)
        reader_thread.start()

        killed = False
        while True:
            try:
                proc.wait(timeout=0.1)
                break
            except subprocess.TimeoutExpired:
                if scope.cancelled:
                    _kill_process_tree(proc)
                    killed = True
                    break

        reader_thread.join(timeout=2)
        proc.stdout.close()

        output = b"".join(chunks).decode("utf-8", errors="replace")
        parts = []
        if killed:
            parts.append("error: command was cancelled")
        elif proc.returncode != 0:
            parts.append(f"Exit code: {proc.returncode}")
        if output:
            parts.append(output)
        return ToolResult(
            "\n".join(parts) if parts else "(no output)",
            is_error=killed or proc.returncode != 0,
        )


def default_registry(base_dir: str, unrestricted: bool = False) -> ToolRegistry:
    return ToolRegistry(
        [
            ReadFileTool(base_dir, unrestricted),
            ListDirTool(base_dir, unrestricted),
            GlobTool(base_dir, unrestricted),
            GrepTool(base_dir, unrestricted),
            WriteFileTool(base_dir, unrestricted),
            EditFileTool(base_dir, unrestricted),
            BashTool(base_dir),
        ]
    )

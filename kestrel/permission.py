"""Permission policy for tool calls.

check() is a pure function of the configured lists, the mode, and the
approvals remembered so far.  Rules are applied in a fixed priority order;
the first one that matches decides.
"""

import enum
import fnmatch
import os
import threading

MODE_INTERACTIVE = "interactive"
MODE_AUTO_APPROVE = "auto-approve"
MODE_YOLO = "yolo"
MODES = (MODE_INTERACTIVE, MODE_AUTO_APPROVE, MODE_YOLO)

SHELL_TOOLS = frozenset({"bash"})
WRITE_TOOLS = frozenset({"write_file", "edit_file"})

DEFAULT_AUTO_APPROVE = ("read_file", "list_dir", "glob", "grep")
DEFAULT_DENIED_COMMANDS = (
    "rm -rf /",
    "sudo",
    "mkfs",
    "dd if=",
    ":(){",
    "> /dev/sd",
    "chmod -R 777 /",
)

# Any of these in a command disqualifies it from the allow-list shortcut.
_SHELL_METACHARACTERS = (";", "|", "&&", "||", "$(", "`")


class Decision(enum.Enum):
    ALLOW = "allow"
    DENY = "deny"
    NEED_CONFIRMATION = "need_confirmation"


def _param(params: dict | None, key: str) -> str:
    if not params:
        return ""
    value = params.get(key)
    return value if isinstance(value, str) else ""


def _glob_match(pattern: str, path: str) -> bool:
    """Segment-wise glob match: '*' and '?' never cross a '/'."""
    pat_parts = pattern.split("/")
    path_parts = path.split("/")
    if len(pat_parts) != len(path_parts):
        return False
    return all(fnmatch.fnmatchcase(p, g) for g, p in zip(pat_parts, path_parts))


def path_allowed(path: str, allowed_paths) -> bool:
    """Check *path* against allow-list globs after normalizing it."""
    cleaned = os.path.normpath(path)
    for pattern in allowed_paths:
        norm_pattern = os.path.normpath(pattern) if pattern else pattern
        if _glob_match(norm_pattern, cleaned):
            return True
        if pattern.endswith("/**"):
            prefix = os.path.normpath(pattern[: -len("/**")])
            if cleaned == prefix or cleaned.startswith(prefix + os.sep):
                return True
    return False


def _has_metacharacters(command: str) -> bool:
    return any(meta in command for meta in _SHELL_METACHARACTERS)


def command_allowed(command: str, allowed_commands) -> bool:
    """Allow-list match with a word boundary and no shell metacharacters."""
    command = command.strip()
    if _has_metacharacters(command):
        return False
    for prefix in allowed_commands:
        if not prefix:
            continue
        if command == prefix or command.startswith(prefix + " "):
            return True
    return False


def approval_key(tool_name: str, params: dict | None) -> str:
    """Derive the pattern a human approval is remembered under."""
    if tool_name in SHELL_TOOLS:
        tokens = _param(params, "command").split()
        return f"{tool_name}:{tokens[0]}" if tokens else tool_name
    if tool_name in WRITE_TOOLS:
        path = _param(params, "file_path")
        return f"{tool_name}:{path}" if path else tool_name
    return tool_name


class PermissionPolicy:
    def __init__(
        self,
        *,
        mode: str = MODE_INTERACTIVE,
        auto_approve_tools=DEFAULT_AUTO_APPROVE,
        allowed_commands=(),
        denied_commands=DEFAULT_DENIED_COMMANDS,
        allowed_paths=(),
    ):
        if mode not in MODES:
            raise ValueError(f"unknown permission mode {mode!r}")
        self.mode = mode
        self.auto_approve_tools = frozenset(auto_approve_tools)
        self.allowed_commands = tuple(allowed_commands)
        self.denied_commands = tuple(denied_commands)
        self.allowed_paths = tuple(allowed_paths)
        self._approvals: set[str] = set()
        self._lock = threading.Lock()

    def check(self, tool_name: str, params: dict | None) -> Decision:
        return self.check_with_reason(tool_name, params)[0]

    def check_with_reason(self, tool_name: str, params: dict | None) -> tuple[Decision, str]:
        """Return the decision and a short human-readable reason."""
        if tool_name in SHELL_TOOLS:
            command = _param(params, "command")
            for denied in self.denied_commands:
                if denied and denied in command:
                    return Decision.DENY, f"command matches deny-list entry {denied!r}"

        if tool_name in WRITE_TOOLS and self.allowed_paths:
            path = _param(params, "file_path")
            if path and not path_allowed(path, self.allowed_paths):
                return Decision.DENY, f"path {path!r} is outside the allowed paths"

        if self.mode == MODE_YOLO:
            return Decision.ALLOW, "unrestricted mode"

        if tool_name in self.auto_approve_tools:
            return Decision.ALLOW, "auto-approved tool"
        if self.mode == MODE_AUTO_APPROVE and tool_name not in SHELL_TOOLS:
            return Decision.ALLOW, "auto-approve mode"

        if tool_name in SHELL_TOOLS and command_allowed(
            _param(params, "command"), self.allowed_commands
        ):
            return Decision.ALLOW, "allow-listed command"

        # A remembered "bash:git" must not cover "git status; rm -rf ~".
        chained = tool_name in SHELL_TOOLS and _has_metacharacters(
            _param(params, "command")
        )
        if not chained and self.has_approval(tool_name, params):
            return Decision.ALLOW, "approved earlier in this session"

        return Decision.NEED_CONFIRMATION, "requires confirmation"

    # -- Approval memory ---------------------------------------------------------

    def remember_approval(self, tool_name: str, params: dict | None) -> None:
        key = approval_key(tool_name, params)
        with self._lock:
            self._approvals.add(key)

    def has_approval(self, tool_name: str, params: dict | None) -> bool:
        key = approval_key(tool_name, params)
        with self._lock:
            return key in self._approvals

    def approvals(self) -> list[str]:
        with self._lock:
            return sorted(self._approvals)

    def reset_approvals(self) -> None:
        with self._lock:
            self._approvals.clear()

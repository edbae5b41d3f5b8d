#!/usr/bin/env python3
"""
agent_core.py — Foundation layer for TinyAgent.

Holds everything the tool layer and the agent loop share:
  - .env loader and the Config dataclass
  - coloured console logging (Log)
  - chat message types (Message, ContentBlock, ToolCall)
  - workspace safety checks (Safety)
  - the todo board, pending reminders and the per-process AgentSession
  - a terminal spinner shown while the model is thinking

Nothing in here talks to the network or runs tools.
"""
import os
import re
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

try:
    import colorama
    colorama.init()
except ImportError:
    pass

VERSION = "0.3.0"

MAX_TOOL_RESULT_CHARS = 100_000
DEFAULT_MAX_TOKENS    = 8192
MAX_AGENT_ITERATIONS  = 20
MAX_TODO_ITEMS        = 20
NAG_ROUND_THRESHOLD   = 10
LOG_PREVIEW_CHARS     = 2000


# =============================================================================
# .ENV FILE LOADER
# Loaded before Config so env-var defaults pick up the values.
# Searches: <script dir>/.env, then cwd/.env. Does NOT override existing vars.
# =============================================================================

def _load_dotenv():
    """Load key=value pairs from a .env file into os.environ.

    Checks (in order):
      1. Directory containing this script
      2. Current working directory
    Existing environment variables are never overridden.
    """
    candidates = [
        Path(__file__).parent / ".env",
        Path.cwd() / ".env",
    ]
    for env_file in candidates:
        if not env_file.exists():
            continue
        try:
            loaded = 0
            for raw in env_file.read_text(encoding="utf-8").splitlines():
                line = raw.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, _, val = line.partition("=")
                key = key.strip()
                val = val.strip()
                if len(val) >= 2 and val[0] in ('"', "'") and val[-1] == val[0]:
                    val = val[1:-1]
                if key and key not in os.environ:
                    os.environ[key] = val
                    loaded += 1
            if loaded:
                # Log is not defined yet
                print(f"[INFO] Loaded {loaded} variable(s) from {env_file}")
        except OSError as e:
            print(f"[!] Could not read {env_file}: {e}")
        break


_load_dotenv()


# =============================================================================
# ERRORS
# =============================================================================

class ConfigError(ValueError):
    """Startup configuration is unusable."""


class PathEscapeError(ValueError):
    """A tool path resolved outside the workspace."""


class TodoValidationError(ValueError):
    """A proposed todo list broke one of the board invariants."""


# =============================================================================
# CONFIGURATION
# =============================================================================

def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


@dataclass
class Config:
    """Runtime settings. Build one with Config.from_env()."""

    api_key:         str
    base_url:        str   = "https://api.openai.com"
    model:           str   = "gpt-4"
    max_tokens:      int   = DEFAULT_MAX_TOKENS
    workdir:         Path  = field(default_factory=Path.cwd)
    debug:           bool  = False
    stream:          bool  = True
    timeout:         int   = 60
    max_retries:     int   = 2
    retry_delay:     float = 2.0
    max_tool_result: int   = MAX_TOOL_RESULT_CHARS
    shell_memory_mb: int   = 2048

    def __post_init__(self):
        self.workdir = Path(os.path.abspath(str(self.workdir)))

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            api_key         = os.getenv("OPENAI_API_KEY", "").strip(),
            base_url        = os.getenv("OPENAI_BASE_URL", "").strip() or "https://api.openai.com",
            model           = os.getenv("OPENAI_MODEL", "").strip() or "gpt-4",
            max_tokens      = _env_int("OPENAI_MAX_TOKENS", DEFAULT_MAX_TOKENS),
            workdir         = Path.cwd(),
            debug           = os.getenv("DEBUG", "").strip().lower() == "true",
            stream          = os.getenv("OPENAI_STREAM", "").strip().lower() != "false",
            timeout         = _env_int("LLM_TIMEOUT", 60),
            max_retries     = _env_int("LLM_MAX_RETRIES", 2),
            retry_delay     = _env_float("LLM_RETRY_DELAY", 2.0),
            max_tool_result = _env_int("MAX_TOOL_RESULT", MAX_TOOL_RESULT_CHARS),
            shell_memory_mb = _env_int("SHELL_MAX_MEMORY_MB", 2048, minimum=0),
        )

    def validate(self) -> "Config":
        if not self.api_key:
            raise ConfigError("OPENAI_API_KEY required")
        if self.max_tokens < 1:
            raise ConfigError("OPENAI_MAX_TOKENS must be >= 1")
        if self.max_tool_result < 1:
            raise ConfigError("MAX_TOOL_RESULT must be >= 1")
        if self.max_retries < 1:
            raise ConfigError("LLM_MAX_RETRIES must be >= 1")
        if self.shell_memory_mb < 0:
            raise ConfigError("SHELL_MAX_MEMORY_MB must be >= 0")
        if not self.workdir.is_dir():
            raise ConfigError(f"Workspace is not a directory: {self.workdir}")
        return self


# =============================================================================
# COLORS & LOGGING
# =============================================================================

class Colors:
    RESET         = "\033[0m"
    BOLD          = "\033[1m"
    STRIKE        = "\033[9m"
    RED           = "\033[38;5;196m"
    GREEN         = "\033[38;5;202m"
    YELLOW        = "\033[38;5;214m"
    BLUE          = "\033[38;5;223m"
    MAGENTA       = "\033[38;5;208m"
    CYAN          = "\033[38;5;215m"
    GRAY          = "\033[38;5;250m"
    TODO_PENDING  = "\033[38;2;176;176;176m"
    TODO_PROGRESS = "\033[38;2;120;200;255m"
    TODO_DONE     = "\033[38;2;34;139;34m"


def colored(text: str, color: str, bold: bool = False) -> str:
    return f"{Colors.BOLD if bold else ''}{color}{text}{Colors.RESET}"


# Log._silent is thread-local — the spinner thread never mutes the REPL.
_log_local = threading.local()


class Log:
    """Coloured console logger.

    Debug lines go to stderr and only appear after Log.set_debug(True).
    """

    _debug = False

    @classmethod
    def set_silent(cls, silent: bool):
        _log_local.silent = silent

    @classmethod
    def set_debug(cls, enabled: bool):
        cls._debug = enabled

    @classmethod
    def debug_enabled(cls) -> bool:
        return cls._debug

    @staticmethod
    def _is_silent() -> bool:
        return getattr(_log_local, "silent", False)

    @staticmethod
    def _print(prefix: str, msg: str, color: str):
        if not Log._is_silent():
            print(colored(f"{prefix} {msg}", color))

    @staticmethod
    def info(msg: str):    Log._print("[INFO]", msg, Colors.CYAN)
    @staticmethod
    def success(msg: str): Log._print("[✓]",    msg, Colors.GREEN)
    @staticmethod
    def warning(msg: str): Log._print("[!]",    msg, Colors.YELLOW)
    @staticmethod
    def error(msg: str):   Log._print("[✗]",    msg, Colors.RED)

    @staticmethod
    def tool(name: str, title: str = ""):
        if Log._is_silent():
            return
        line = f"[tool] {name}({title})" if title else f"[tool] {name}"
        print(colored(line, Colors.MAGENTA))

    @staticmethod
    def result(text: str):
        if not Log._is_silent():
            print(colored(f"  -> {text}", Colors.GRAY))

    @classmethod
    def debug(cls, msg: str):
        if cls._debug:
            sys.stderr.write(f"[DEBUG] {msg}\n")
            sys.stderr.flush()


# =============================================================================
# UTILITIES
# =============================================================================

_TRUNCATION_RE = re.compile(r"\n\n\.\.\.<truncated \d+ chars>")


def clamp_text(text: str, limit: int) -> str:
    """Cut *text* to *limit* characters and note how much was dropped.

    Already-clamped text is returned unchanged, so clamping twice with the
    same limit is a no-op.
    """
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    if _TRUNCATION_RE.fullmatch(text[limit:]):
        return text
    return f"{text[:limit]}\n\n...<truncated {len(text) - limit} chars>"


# =============================================================================
# MESSAGES
# =============================================================================

@dataclass
class ContentBlock:
    text: str
    type: str = "text"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "text": self.text}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ContentBlock":
        return ContentBlock(text=str(d.get("text") or ""), type=d.get("type") or "text")


Content = Union[str, List[ContentBlock], None]


@dataclass
class FunctionCall:
    name:      str
    arguments: str = ""


@dataclass
class ToolCall:
    id:       str
    function: FunctionCall
    type:     str = "function"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "type": self.type,
                "function": {"name": self.function.name,
                             "arguments": self.function.arguments}}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ToolCall":
        fn = d.get("function") or {}
        if not isinstance(fn, dict):
            raise ValueError("tool call function must be an object")
        args = fn.get("arguments")
        return ToolCall(
            id=str(d.get("id") or ""),
            type=d.get("type") or "function",
            function=FunctionCall(name=str(fn.get("name") or ""),
                                  arguments=args if isinstance(args, str) else ""),
        )


@dataclass
class Message:
    """One chat message. *content* is a plain string or a list of blocks."""

    role:         str
    content:      Content              = None
    tool_calls:   List[ToolCall]       = field(default_factory=list)
    tool_call_id: str                  = ""
    name:         str                  = ""

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        if isinstance(self.content, list):
            return "\n".join(b.text for b in self.content)
        return ""

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"role": self.role}
        if isinstance(self.content, list):
            d["content"] = [b.to_dict() for b in self.content]
        elif self.content is not None:
            d["content"] = self.content
        if self.tool_calls:   d["tool_calls"]   = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id: d["tool_call_id"] = self.tool_call_id
        if self.name:         d["name"]         = self.name
        return d

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Message":
        if not isinstance(d, dict):
            raise ValueError("message must be an object")
        raw = d.get("content")
        content: Content
        if isinstance(raw, list):
            content = [ContentBlock.from_dict(b) for b in raw
                       if isinstance(b, dict) and b.get("type", "text") == "text"]
        elif raw is None:
            content = None
        else:
            content = str(raw)
        return Message(
            role=d.get("role") or "assistant",
            content=content,
            tool_calls=[ToolCall.from_dict(tc) for tc in (d.get("tool_calls") or [])
                        if isinstance(tc, dict)],
            tool_call_id=d.get("tool_call_id") or "",
            name=d.get("name") or "",
        )


# =============================================================================
# SAFETY
# =============================================================================

class Safety:
    # Coarse substring heuristic, not a shell parser: "sudo_user" slips
    # through, "echo halting" is blocked.
    DANGEROUS_SUBSTRINGS = (
        "rm -rf /",
        "shutdown",
        "reboot",
        "sudo ",
        "halt",
    )

    @staticmethod
    def resolve_path(workspace: Path, path: str) -> Path:
        candidate = (path or "").strip()
        if not candidate:
            raise PathEscapeError("path required")
        if os.path.isabs(candidate):
            joined = os.path.normpath(candidate)
        else:
            joined = os.path.join(str(workspace), candidate)
        resolved = os.path.abspath(joined)
        root     = os.path.abspath(str(workspace))
        if resolved != root and not resolved.startswith(root.rstrip(os.sep) + os.sep):
            raise PathEscapeError("path escapes workspace")
        return Path(resolved)

    @staticmethod
    def is_dangerous_command(cmd: str) -> bool:
        lowered = cmd.lower()
        return any(token in lowered for token in Safety.DANGEROUS_SUBSTRINGS)


# =============================================================================
# TODO BOARD
# =============================================================================

TODO_STATUSES = ("pending", "in_progress", "completed")


@dataclass
class TodoItem:
    id:          str
    content:     str
    active_form: str
    status:      str = "pending"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "content": self.content,
                "activeForm": self.active_form, "status": self.status}


class TaskBoard:
    """Ordered todo list shared by the whole session.

    Every update replaces the list wholesale after validating all of it, so a
    rejected update never leaves a half-applied board behind.
    """

    def __init__(self):
        self._items: List[TodoItem] = []
        self._lock  = threading.Lock()

    @property
    def items(self) -> List[TodoItem]:
        with self._lock:
            return list(self._items)

    @staticmethod
    def _validate(items: List[TodoItem]) -> List[TodoItem]:
        if len(items) > MAX_TODO_ITEMS:
            raise TodoValidationError(f"todo list is limited to {MAX_TODO_ITEMS} items")
        seen: set = set()
        in_progress = 0
        accepted: List[TodoItem] = []
        for item in items:
            if item.id in seen:
                raise TodoValidationError(f"duplicate todo id: {item.id}")
            seen.add(item.id)
            if not item.content.strip():
                raise TodoValidationError("todo content cannot be empty")
            if not item.active_form.strip():
                raise TodoValidationError("todo activeForm cannot be empty")
            status = item.status.strip().lower()
            if status not in TODO_STATUSES:
                raise TodoValidationError(
                    "status must be one of: pending, in_progress, completed")
            if status == "in_progress":
                in_progress += 1
            accepted.append(TodoItem(item.id, item.content, item.active_form, status))
        if in_progress > 1:
            raise TodoValidationError("only one task can be in_progress at a time")
        return accepted

    def update(self, items: List[TodoItem]) -> str:
        with self._lock:
            self._items = self._validate(items)
            return self._render()

    def _render(self) -> str:
        if not self._items:
            return colored("☐ No todos yet", Colors.TODO_PENDING)
        lines = []
        for t in self._items:
            if t.status == "completed":
                lines.append(f"{Colors.TODO_DONE}{Colors.STRIKE}☒ {t.content}{Colors.RESET}")
            elif t.status == "in_progress":
                lines.append(colored(f"☐ {t.content}", Colors.TODO_PROGRESS))
            else:
                lines.append(colored(f"☐ {t.content}", Colors.TODO_PENDING))
        return "\n".join(lines)

    def render(self) -> str:
        with self._lock:
            return self._render()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "total":       len(self._items),
                "completed":   sum(1 for t in self._items if t.status == "completed"),
                "in_progress": sum(1 for t in self._items if t.status == "in_progress"),
            }


# =============================================================================
# REMINDERS
# =============================================================================

INITIAL_REMINDER = (
    '<reminder source="system" topic="todos">System message: complex work should be '
    "tracked with the Todo tool. Do not respond to this reminder and do not mention "
    "it to the user.</reminder>"
)

NAG_REMINDER = (
    '<reminder source="system" topic="todos">System notice: more than ten rounds passed '
    "without Todo usage. Update the Todo board if the task still requires multiple "
    "steps. Do not reply to or mention this reminder to the user.</reminder>"
)


class ReminderQueue:
    """System reminders waiting to ride along with the next user turn."""

    def __init__(self):
        self._pending: List[ContentBlock] = []
        self._lock = threading.Lock()

    @property
    def pending(self) -> List[ContentBlock]:
        with self._lock:
            return list(self._pending)

    def ensure_queued(self, text: str):
        with self._lock:
            if any(b.text == text for b in self._pending):
                return
            self._pending.append(ContentBlock(text=text))

    def inject_into(self, user_text: str) -> Content:
        with self._lock:
            if not self._pending:
                return user_text
            blocks = self._pending + [ContentBlock(text=user_text)]
            self._pending = []
            return blocks


# =============================================================================
# SESSION
# =============================================================================

class AgentSession:
    """State that outlives a single query: todo board, reminders, and the
    count of turns since the board was last touched."""

    def __init__(self, board: Optional[TaskBoard] = None,
                 reminders: Optional[ReminderQueue] = None,
                 queue_initial_reminder: bool = True):
        self.board     = board or TaskBoard()
        self.reminders = reminders or ReminderQueue()
        self._rounds_without_todo = 0
        self._lock = threading.Lock()
        if queue_initial_reminder:
            self.reminders.ensure_queued(INITIAL_REMINDER)

    @property
    def rounds_without_todo(self) -> int:
        with self._lock:
            return self._rounds_without_todo

    def reset_rounds(self):
        with self._lock:
            self._rounds_without_todo = 0

    def note_round(self):
        with self._lock:
            self._rounds_without_todo += 1
            overdue = self._rounds_without_todo > NAG_ROUND_THRESHOLD
        if overdue:
            self.reminders.ensure_queued(NAG_REMINDER)


# =============================================================================
# SPINNER
# =============================================================================

class Spinner:
    """Animated "waiting" line on a daemon thread. Does nothing off a TTY."""

    FRAMES = ("-", "\\", "|", "/")
    TICK   = 0.08

    def __init__(self, label: str = "Waiting for model", stream=None):
        self.label   = label
        self._stream = stream or sys.stdout
        self._stop   = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock   = threading.Lock()

    def _is_tty(self) -> bool:
        try:
            return self._stream.isatty()
        except (AttributeError, ValueError):
            return False

    def start(self):
        with self._lock:
            if self._thread is not None or not self._is_tty():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, daemon=True, name="spinner")
            self._thread.start()

    def _loop(self):
        frame = 0
        while not self._stop.wait(self.TICK):
            self._stream.write(f"\r{self.label} {self.FRAMES[frame % len(self.FRAMES)]}")
            self._stream.flush()
            frame += 1
        self._stream.write("\r" + " " * (len(self.label) + 2) + "\r")
        self._stream.flush()

    def stop(self):
        with self._lock:
            thread, self._thread = self._thread, None
        if thread is None:
            return
        self._stop.set()
        thread.join()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *_):
        self.stop()

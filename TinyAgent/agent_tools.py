#!/usr/bin/env python3
"""
agent_tools.py — Tool layer for TinyAgent.

Five tools are exposed to the model: bash, read_file, write_file, edit_text
and TodoWrite. Each one has an argument dataclass whose from_dict() checks
required fields and types before the handler touches the filesystem, so a
malformed call turns into an error string the model can read and correct.

Argument decoding is lenient in exactly two ways, to cope with loosely typed
model output:
  - integer fields accept ints, floats (truncated) and numeric strings;
    an empty string counts as "not given"; booleans are rejected
  - string fields accept numbers and stringify them; null means empty
"""

import json
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from agent_core import (
    Config, Log, AgentSession,
    Message, ToolCall, TodoItem,
    Safety, clamp_text,
    MAX_TOOL_RESULT_CHARS, MAX_TODO_ITEMS, LOG_PREVIEW_CHARS,
)
from sandboxed_shell import run_sandboxed

BASH_DEFAULT_TIMEOUT_MS = 30_000
BASH_MIN_TIMEOUT_MS     = 1_000
BASH_MAX_TIMEOUT_MS     = 120_000
READ_MAX_CHARS_LIMIT    = 200_000

EDIT_ACTIONS = ("replace", "insert", "delete_range")


class ToolArgumentError(ValueError):
    """Tool arguments are missing, mistyped or out of range."""


# =============================================================================
# ARGUMENT DECODING HELPERS
# =============================================================================

def _opt_int(data: Dict[str, Any], key: str) -> Optional[int]:
    val = data.get(key)
    if val is None:
        return None
    if isinstance(val, bool):
        raise ToolArgumentError(f"{key} must be an integer")
    if isinstance(val, int):
        return val
    if isinstance(val, float):
        if not math.isfinite(val):
            raise ToolArgumentError(f"{key} must be a finite integer")
        return int(val)
    if isinstance(val, str):
        if not val.strip():
            return None
        try:
            return int(val.strip())
        except ValueError:
            raise ToolArgumentError(f"{key} must be an integer, got {val!r}")
    raise ToolArgumentError(f"{key} must be an integer")


def _str(data: Dict[str, Any], key: str) -> str:
    val = data.get(key)
    if val is None:
        return ""
    if isinstance(val, bool):
        raise ToolArgumentError(f"{key} must be a string")
    if isinstance(val, (int, float)):
        return str(val)
    if isinstance(val, str):
        return val
    raise ToolArgumentError(f"{key} must be a string")


def _required_str(data: Dict[str, Any], key: str, tool: str) -> str:
    val = _str(data, key)
    if not val.strip():
        raise ToolArgumentError(f"missing {tool}.{key}")
    return val


# =============================================================================
# TOOL ARGUMENTS
# =============================================================================

@dataclass
class BashArgs:
    command:    str
    timeout_ms: int = BASH_DEFAULT_TIMEOUT_MS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BashArgs":
        command = _str(data, "command").strip()
        if not command:
            raise ToolArgumentError("missing bash.command")
        timeout = _opt_int(data, "timeout_ms")
        if timeout is None:
            timeout = BASH_DEFAULT_TIMEOUT_MS
        return cls(command=command,
                   timeout_ms=max(BASH_MIN_TIMEOUT_MS, min(timeout, BASH_MAX_TIMEOUT_MS)))


@dataclass
class ReadFileArgs:
    path:       str
    start_line: Optional[int] = None
    end_line:   Optional[int] = None
    max_chars:  int           = MAX_TOOL_RESULT_CHARS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReadFileArgs":
        max_chars = _opt_int(data, "max_chars")
        if max_chars is None:
            max_chars = MAX_TOOL_RESULT_CHARS
        return cls(
            path=_required_str(data, "path", "read_file"),
            start_line=_opt_int(data, "start_line"),
            end_line=_opt_int(data, "end_line"),
            max_chars=max(1, min(max_chars, READ_MAX_CHARS_LIMIT)),
        )


@dataclass
class WriteFileArgs:
    path:    str
    content: str
    mode:    str = "overwrite"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WriteFileArgs":
        if "content" not in data:
            raise ToolArgumentError("missing write_file.content")
        return cls(
            path=_required_str(data, "path", "write_file"),
            content=_str(data, "content"),
            mode=_str(data, "mode").strip().lower() or "overwrite",
        )


@dataclass
class EditTextArgs:
    path:         str
    action:       str
    find:         str                  = ""
    replace:      str                  = ""
    insert_after: int                  = -1
    new_text:     str                  = ""
    range:        Optional[Tuple[int, int]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EditTextArgs":
        path   = _required_str(data, "path", "edit_text")
        action = _str(data, "action").strip().lower()
        if action not in EDIT_ACTIONS:
            raise ToolArgumentError(f"unsupported edit_text.action: {action}")

        args = cls(path=path, action=action)
        if action == "replace":
            args.find = _str(data, "find")
            if not args.find:
                raise ToolArgumentError("edit_text.replace missing find")
            args.replace = _str(data, "replace")
        elif action == "insert":
            after = _opt_int(data, "insert_after")
            args.insert_after = -1 if after is None else after
            args.new_text     = _str(data, "new_text")
        else:
            raw = data.get("range")
            if not isinstance(raw, list) or len(raw) != 2:
                raise ToolArgumentError("edit_text.delete_range invalid range")
            pair  = {"start": raw[0], "end": raw[1]}
            start = _opt_int(pair, "start")
            end   = _opt_int(pair, "end")
            if start is None or end is None or start < 0 or end < start:
                raise ToolArgumentError("edit_text.delete_range invalid range")
            args.range = (start, end)
        return args


@dataclass
class TodoWriteArgs:
    items: List[TodoItem] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TodoWriteArgs":
        if "items" not in data:
            raise ToolArgumentError("missing items parameter")
        raw_items = data["items"]
        if not isinstance(raw_items, list):
            raise ToolArgumentError("items must be an array")
        items: List[TodoItem] = []
        for i, raw in enumerate(raw_items):
            if not isinstance(raw, dict):
                raise ToolArgumentError(f"item {i} is not an object")
            items.append(TodoItem(
                id=_str(raw, "id") or str(i + 1),
                content=_str(raw, "content"),
                active_form=_str(raw, "activeForm"),
                status=_str(raw, "status") or "pending",
            ))
        return cls(items=items)


# =============================================================================
# TOOL HANDLERS
# =============================================================================

def _relative(config: Config, fp: Path) -> str:
    try:
        return os.path.relpath(str(fp), str(config.workdir))
    except ValueError:
        return str(fp)


def tool_bash(config: Config, session: AgentSession, args: BashArgs) -> str:
    if Safety.is_dangerous_command(args.command):
        raise ToolArgumentError("blocked dangerous command")
    result = run_sandboxed(
        cmd=args.command,
        workspace=config.workdir,
        timeout=args.timeout_ms / 1000.0,
        max_memory_mb=config.shell_memory_mb,
    )
    if result.timed_out:
        return "(timeout)"
    output = result.output.strip() or "(no output)"
    if result.exit_code != 0:
        output = f"{output}\n(exit error: exit status {result.exit_code})"
    return clamp_text(output, MAX_TOOL_RESULT_CHARS)


def tool_read_file(config: Config, session: AgentSession, args: ReadFileArgs) -> str:
    fp = Safety.resolve_path(config.workdir, args.path)
    if fp.is_dir():
        raise IsADirectoryError(f"{args.path} is a directory")
    text  = fp.read_bytes().decode("utf-8", errors="replace")
    lines = text.split("\n")

    start = 0
    if args.start_line is not None:
        start = min(max(args.start_line, 1) - 1, len(lines))
    end = len(lines)
    if args.end_line is not None and args.end_line >= 0:
        end = max(start, min(args.end_line, len(lines)))
    start = min(start, end)
    return clamp_text("\n".join(lines[start:end]), args.max_chars)


def tool_write_file(config: Config, session: AgentSession, args: WriteFileArgs) -> str:
    fp = Safety.resolve_path(config.workdir, args.path)
    fp.parent.mkdir(parents=True, exist_ok=True)
    data = args.content.encode("utf-8")
    if args.mode == "append":
        with open(fp, "ab") as fh:
            fh.write(data)
    else:
        with open(fp, "wb") as fh:
            fh.write(data)
    return f"wrote {len(data)} bytes to {_relative(config, fp)}"


def tool_edit_text(config: Config, session: AgentSession, args: EditTextArgs) -> str:
    fp   = Safety.resolve_path(config.workdir, args.path)
    text = fp.read_bytes().decode("utf-8", errors="replace")

    if args.action == "replace":
        updated = text.replace(args.find, args.replace)
        data    = updated.encode("utf-8")
        fp.write_bytes(data)
        return f"replace done ({len(data)} bytes)"

    lines = text.split("\n")
    if args.action == "insert":
        idx = max(-1, min(args.insert_after, len(lines) - 1))
        lines.insert(idx + 1, args.new_text)
        fp.write_bytes("\n".join(lines).encode("utf-8"))
        return f"inserted after line {args.insert_after}"

    start, end = args.range
    start = min(start, len(lines))
    end   = min(end, len(lines))
    del lines[start:end]
    fp.write_bytes("\n".join(lines).encode("utf-8"))
    return f"deleted lines [{start}, {end})"


def tool_todo_write(config: Config, session: AgentSession, args: TodoWriteArgs) -> str:
    view = session.board.update(args.items)
    session.reset_rounds()
    stats = session.board.stats()
    if stats["total"] == 0:
        summary = "No todos have been created."
    else:
        summary = (f"Status updated: {stats['completed']} completed, "
                   f"{stats['in_progress']} in progress.")
    return f"{view}\n\n{summary}"


# =============================================================================
# TOOL REGISTRY
# =============================================================================

def _function(name: str, description: str, properties: Dict[str, Any],
              required: List[str]) -> Dict[str, Any]:
    return {"type": "function", "function": {
        "name": name,
        "description": description,
        "parameters": {
            "type": "object",
            "properties": properties,
            "required": required,
            "additionalProperties": False,
        }}}


TOOL_SCHEMAS: List[Dict[str, Any]] = [
    _function(
        "bash",
        "Execute a shell command inside the project workspace. "
        "Use for scaffolding, formatting, running scripts, etc.",
        {"command":    {"type": "string", "description": "Shell command to run"},
         "timeout_ms": {"type": "integer", "minimum": BASH_MIN_TIMEOUT_MS,
                        "maximum": BASH_MAX_TIMEOUT_MS}},
        ["command"]),
    _function(
        "read_file",
        "Read a UTF-8 text file. Optionally slice by line range or clamp length.",
        {"path":       {"type": "string"},
         "start_line": {"type": "integer", "minimum": 1},
         "end_line":   {"type": "integer", "minimum": -1},
         "max_chars":  {"type": "integer", "minimum": 1, "maximum": READ_MAX_CHARS_LIMIT}},
        ["path"]),
    _function(
        "write_file",
        "Create or overwrite/append a UTF-8 text file. "
        "Use overwrite unless explicitly asked to append.",
        {"path":    {"type": "string"},
         "content": {"type": "string"},
         "mode":    {"type": "string", "enum": ["overwrite", "append"],
                     "default": "overwrite"}},
        ["path", "content"]),
    _function(
        "edit_text",
        "Small, precise text edits. Choose one action: replace | insert | delete_range.",
        {"path":         {"type": "string"},
         "action":       {"type": "string", "enum": list(EDIT_ACTIONS)},
         "find":         {"type": "string"},
         "replace":      {"type": "string"},
         "insert_after": {"type": "integer", "minimum": -1},
         "new_text":     {"type": "string"},
         "range":        {"type": "array", "items": {"type": "integer"},
                          "minItems": 2, "maxItems": 2}},
        ["path", "action"]),
    _function(
        "TodoWrite",
        "Update the shared todo list (pending | in_progress | completed).",
        {"items": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id":         {"type": "string"},
                    "content":    {"type": "string"},
                    "activeForm": {"type": "string"},
                    "status":     {"type": "string",
                                   "enum": ["pending", "in_progress", "completed"]},
                },
                "required": ["content", "activeForm", "status"],
                "additionalProperties": False,
            },
            "maxItems": MAX_TODO_ITEMS,
        }},
        ["items"]),
]

TOOL_HANDLERS: Dict[str, Tuple[type, Callable[..., str]]] = {
    "bash":       (BashArgs,      tool_bash),
    "read_file":  (ReadFileArgs,  tool_read_file),
    "write_file": (WriteFileArgs, tool_write_file),
    "edit_text":  (EditTextArgs,  tool_edit_text),
    "TodoWrite":  (TodoWriteArgs, tool_todo_write),
}


# =============================================================================
# DISPATCH
# =============================================================================

def _parse_tool_args(args_raw: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    if not args_raw or not args_raw.strip():
        return {}, None
    try:
        parsed = json.loads(args_raw)
    except json.JSONDecodeError as e:
        return None, f"Error parsing arguments: {e}"
    except RecursionError:
        return None, "Error parsing arguments: nesting too deep"
    if not isinstance(parsed, dict):
        return None, (f"Error parsing arguments: expected a JSON object, "
                      f"got {type(parsed).__name__}")
    return parsed, None


def dispatch(name: str, args_raw: str, config: Config,
             session: AgentSession) -> Tuple[str, Optional[str]]:
    """Run one tool. Returns (result_text, error); error is None on success."""
    data, err = _parse_tool_args(args_raw)
    if err:
        return err, err

    entry = TOOL_HANDLERS.get(name)
    if entry is None:
        return "", f"unknown tool: {name}"
    args_cls, handler = entry

    try:
        args = args_cls.from_dict(data)
        return handler(config, session, args), None
    except (ValueError, OSError) as e:
        return "", str(e)


def _display_title(name: str, args_raw: str) -> str:
    if name == "TodoWrite":
        return "updating todos"
    return clamp_text(args_raw.strip(), 200)


def execute_tool_call(tc: ToolCall, config: Config, session: AgentSession) -> Message:
    name, args_raw = tc.function.name, tc.function.arguments
    Log.tool(name, _display_title(name, args_raw))

    result, err = dispatch(name, args_raw, config, session)
    if err is not None:
        result = err
        Log.debug(f"tool {name} failed: {err}")

    Log.result(clamp_text(result, LOG_PREVIEW_CHARS))
    return Message(
        role="tool",
        tool_call_id=tc.id,
        name=name,
        content=clamp_text(result, config.max_tool_result),
    )

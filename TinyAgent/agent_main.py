#!/usr/bin/env python3
"""
agent_main.py — Main entrypoint for TinyAgent.

Contains: run_agent() (one user turn, up to MAX_AGENT_ITERATIONS model
rounds), the interactive REPL, and main().

Usage:
  python agent_main.py          # Interactive REPL in the current directory
  tiny-agent                    # Same, via the installed console script

Environment: OPENAI_API_KEY (required), OPENAI_BASE_URL, OPENAI_MODEL,
OPENAI_MAX_TOKENS, OPENAI_STREAM, DEBUG. A .env file is read as well.
"""

import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from agent_core import (
    VERSION, MAX_AGENT_ITERATIONS,
    Config, ConfigError, Colors, Log, AgentSession, Message, Spinner,
    colored,
)
from agent_llm import LLMClient, LLMError, system_message
from agent_tools import execute_tool_call

EXIT_WORDS = frozenset({"exit", "quit", "q"})


@dataclass
class AgentResult:
    status:     str                          # completed | error | max_iterations
    messages:   List[Message] = field(default_factory=list)
    error:      str           = ""
    iterations: int           = 0

    @property
    def ok(self) -> bool:
        return self.status == "completed"


# =============================================================================
# STREAMING ECHO
# =============================================================================

class _StreamEcho:
    """Writes streamed tokens to the terminal, clearing the spinner first."""

    def __init__(self, spinner: Optional[Spinner] = None, out=None):
        self._spinner = spinner
        self._out     = out or sys.stdout
        self._printed = False

    @property
    def printed(self) -> bool:
        return self._printed

    def __call__(self, token: str) -> None:
        if not self._printed:
            self._printed = True
            if self._spinner:
                self._spinner.stop()
        self._out.write(token)
        self._out.flush()

    def finish(self) -> None:
        if self._printed:
            self._out.write("\n")
            self._out.flush()


# =============================================================================
# AGENT LOOP
# =============================================================================

def run_agent(
    history: List[Message],
    config: Config,
    session: AgentSession,
    client: Optional[LLMClient] = None,
    spinner_factory: Callable[[], Spinner] = Spinner,
) -> AgentResult:
    """Drive the model until it stops asking for tools.

    *history* is the conversation without the system prompt; it is not
    modified. The returned AgentResult carries the new history. On a
    transport error that history stops just before the failing call.
    """
    client   = client or LLMClient(config)
    messages = list(history)
    system   = system_message(config)

    for iteration in range(1, MAX_AGENT_ITERATIONS + 1):
        spinner = spinner_factory()
        echo    = _StreamEcho(spinner) if config.stream else None
        spinner.start()
        try:
            reply = client.call([system] + messages, on_token=echo)
        except LLMError as e:
            return AgentResult(status="error", messages=messages,
                               error=str(e), iterations=iteration)
        finally:
            spinner.stop()
            if echo:
                echo.finish()

        if reply.message is None:
            return AgentResult(status="error", messages=messages,
                               error="no choices in response", iterations=iteration)

        assistant = reply.message
        if not config.stream and assistant.text:
            print(assistant.text)
        messages.append(assistant)

        if reply.finish_reason == "tool_calls" and assistant.tool_calls:
            for tc in assistant.tool_calls:
                messages.append(execute_tool_call(tc, config, session))
            continue

        session.note_round()
        return AgentResult(status="completed", messages=messages, iterations=iteration)

    return AgentResult(status="max_iterations", messages=messages,
                       error="agent max iterations reached",
                       iterations=MAX_AGENT_ITERATIONS)


# =============================================================================
# REPL
# =============================================================================

def _read_line(prompt: str) -> Optional[str]:
    try:
        return input(prompt)
    except (EOFError, KeyboardInterrupt):
        print()
        return None


def repl(config: Config, session: AgentSession,
         client: Optional[LLMClient] = None,
         read_line: Callable[[str], Optional[str]] = _read_line) -> List[Message]:
    """Read one user turn at a time until an exit word or end of input."""
    client  = client or LLMClient(config)
    history: List[Message] = []

    while True:
        line = read_line(colored("User: ", Colors.YELLOW, bold=True))
        if line is None:
            break
        trimmed = line.strip()
        if not trimmed:
            continue
        if trimmed.lower() in EXIT_WORDS:
            break

        history.append(Message(role="user", content=session.reminders.inject_into(line)))
        result = run_agent(history, config, session, client)
        if not result.ok:
            Log.error(f"Error: {result.error}")
            continue
        history = result.messages

    return history


_EXIT_CODES: Dict[str, int] = {
    "ok":     0,
    "config": 1,
}


def main() -> int:
    try:
        config = Config.from_env().validate()
    except ConfigError as e:
        Log.error(str(e))
        return _EXIT_CODES["config"]

    Log.set_debug(config.debug)
    print(colored(f"Tiny Agent v{VERSION} -- cwd: {config.workdir}", Colors.CYAN, bold=True))
    print('Type "exit" or "quit" to leave.')
    print()

    repl(config, AgentSession())
    return _EXIT_CODES["ok"]


if __name__ == "__main__":
    sys.exit(main())

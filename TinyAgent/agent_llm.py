#!/usr/bin/env python3
"""
agent_llm.py — Chat-completions client and response decoding.

Talks to any OpenAI-compatible /chat/completions endpoint. Both response
shapes end up as the same ModelReply:
  - a plain JSON document  -> first choice's message + finish_reason
  - an SSE stream          -> accumulated text deltas, finish_reason "stop"

Dependency graph (no cycles):
    agent_core
        ↑
    agent_tools
        ↑
    agent_llm
        ↑
    agent_main
"""

import json
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

try:
    import requests
except ImportError:
    sys.exit("ERROR: 'requests' required.  pip install requests")

from agent_core import Config, Log, Message, clamp_text, LOG_PREVIEW_CHARS
from agent_tools import TOOL_SCHEMAS

SSE_DATA_PREFIX = "data: "
SSE_DONE        = "[DONE]"


class LLMError(RuntimeError):
    """The model endpoint could not be reached or returned something unusable."""


@dataclass
class ModelReply:
    message:       Optional[Message]
    finish_reason: str = ""


# =============================================================================
# SYSTEM PROMPT
# =============================================================================

SYSTEM_PROMPT = (
    "You are a coding agent operating INSIDE the user's repository at {workdir}.\n"
    "Follow this loop strictly: plan briefly → use TOOLS to act directly on "
    "files/shell → report concise results.\n"
    "Rules:\n"
    "- Prefer taking actions with tools (read/write/edit/bash) over long prose.\n"
    "- Keep outputs terse. Use bullet lists / checklists when summarizing.\n"
    "- Never invent file paths. Ask via reads or list directories first if unsure.\n"
    "- For edits, apply the smallest change that satisfies the request.\n"
    "- For bash, avoid destructive or privileged commands; stay inside the workspace.\n"
    "- Use the TodoWrite tool to maintain multi-step plans when needed.\n"
    "- After finishing, summarize what changed and how to run or test."
)


def system_message(config: Config) -> Message:
    return Message(role="system", content=SYSTEM_PROMPT.format(workdir=config.workdir))


# =============================================================================
# ENDPOINT
# =============================================================================

def build_endpoint(base_url: str) -> str:
    """Map a configured base URL onto the chat-completions endpoint.

    ``...#``   -> used verbatim without the ``#``
    ``.../v1`` -> ``/chat/completions`` appended
    ``.../``   -> ``chat/completions`` appended
    otherwise  -> ``/v1/chat/completions`` appended
    """
    if base_url.endswith("#"):
        return base_url[:-1]
    if base_url.endswith("/v1"):
        return base_url + "/chat/completions"
    if base_url.endswith("/"):
        return base_url + "chat/completions"
    return base_url + "/v1/chat/completions"


# =============================================================================
# LLM CLIENT
# =============================================================================

class LLMClient:
    _HEADERS: Dict[str, str] = {"Content-Type": "application/json"}

    def __init__(self, config: Config, http: Any = None):
        self.config   = config
        self.endpoint = build_endpoint(config.base_url)
        self._http    = http or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {**self._HEADERS, "Authorization": f"Bearer {self.config.api_key}"}

    def build_payload(self, messages: List[Message]) -> Dict[str, Any]:
        return {
            "model":      self.config.model,
            "messages":   [m.to_dict() for m in messages],
            "tools":      TOOL_SCHEMAS,
            "max_tokens": self.config.max_tokens,
            "stream":     self.config.stream,
        }

    def call(self, messages: List[Message],
             on_token: Optional[Callable[[str], None]] = None) -> ModelReply:
        payload = self.build_payload(messages)
        Log.debug(f"Request URL: {self.endpoint}")
        if Log.debug_enabled():
            Log.debug("Request Payload:\n" + json.dumps(payload, indent=2, ensure_ascii=False))

        last_error: Optional[str] = None
        for attempt in range(1, self.config.max_retries + 1):
            try:
                resp = self._http.post(
                    self.endpoint, json=payload, headers=self._headers(),
                    stream=self.config.stream, timeout=self.config.timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = str(e)
                Log.warning(f"LLM request failed (attempt {attempt}): {e}")
                if attempt < self.config.max_retries:
                    time.sleep(self.config.retry_delay * attempt)
                continue
            except requests.RequestException as e:
                raise LLMError(str(e)) from e

            try:
                Log.debug(f"Response Status: {resp.status_code}")
                if self.config.stream and resp.status_code < 400:
                    return self.parse_stream(resp, on_token)
                return self.parse_body(resp.status_code, resp.text)
            finally:
                resp.close()

        raise LLMError(f"LLM failed after {self.config.max_retries} attempts: {last_error}")

    # -------------------------------------------------------------------------
    # Response decoding
    # -------------------------------------------------------------------------

    @staticmethod
    def parse_body(status_code: int, body: str) -> ModelReply:
        if status_code >= 400:
            raise LLMError(f"api error: status {status_code} body "
                           f"{clamp_text(body, LOG_PREVIEW_CHARS)}")
        if Log.debug_enabled():
            Log.debug("Response Body:\n" + clamp_text(body, LOG_PREVIEW_CHARS))
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, RecursionError) as e:
            raise LLMError(f"invalid JSON from model endpoint: {e}") from e
        if not isinstance(data, dict):
            raise LLMError("invalid response from model endpoint: expected an object")

        choices = data.get("choices") or []
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return ModelReply(message=None)
        choice = choices[0]
        try:
            message = Message.from_dict(choice.get("message") or {"role": "assistant"})
        except ValueError as e:
            raise LLMError(f"invalid response from model endpoint: {e}") from e
        return ModelReply(message=message, finish_reason=str(choice.get("finish_reason") or ""))

    @staticmethod
    def _iter_sse_payloads(lines: Iterable[Any]) -> Iterable[str]:
        for line in lines:
            if isinstance(line, bytes):
                line = line.decode("utf-8", errors="replace")
            Log.debug(f"SSE Line: {line}")
            if not line or not line.strip() or not line.startswith(SSE_DATA_PREFIX):
                continue
            yield line[len(SSE_DATA_PREFIX):].strip()

    @staticmethod
    def parse_stream(resp, on_token: Optional[Callable[[str], None]] = None) -> ModelReply:
        content: List[str] = []
        resp.encoding = "utf-8"
        try:
            for data in LLMClient._iter_sse_payloads(resp.iter_lines(decode_unicode=True)):
                if data == SSE_DONE:
                    break
                try:
                    chunk = json.loads(data)
                except (json.JSONDecodeError, RecursionError) as e:
                    Log.debug(f"Error parsing SSE chunk: {e}")
                    continue
                if not isinstance(chunk, dict):
                    continue

                choices = chunk.get("choices") or []
                if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
                    continue
                choice = choices[0]
                delta  = choice.get("delta") or {}

                text = delta.get("content") if isinstance(delta, dict) else None
                if isinstance(text, str) and text:
                    content.append(text)
                    if on_token:
                        on_token(text)

                if choice.get("finish_reason"):
                    break
        except requests.RequestException as e:
            raise LLMError(f"error reading stream: {e}") from e

        return ModelReply(
            message=Message(role="assistant", content="".join(content)),
            finish_reason="stop",
        )

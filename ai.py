import asyncio
import json
import os
import random
import threading
from datetime import datetime
from http.client import HTTPException
from pathlib import Path
from typing import AsyncIterator, Optional, Sequence, Union
from urllib import error, request
from urllib.parse import urlparse

from node_models import ChatMessage

DEFAULT_API_URL = "https://openrouter.ai/api/v1"
AZURE_API_VERSION = "2024-05-01-preview"
OFFLINE_MODEL = "No AI (offline dummy output)"
_NETWORK_MODELS = [
    "openai/gpt-4o-mini",
    "openai/gpt-oss-20b:free",
    "deepseek/deepseek-r1-0528-qwen3-8b:free",
    "google/gemma-3-27b-it:free",
    "meta-llama/llama-3.3-70b-instruct:free",
    "mistralai/mistral-small-3.2-24b-instruct:free",
    "qwen/qwen3-14b:free",
    "z-ai/glm-4.5-air:free",
]
AVAILABLE_MODELS = [OFFLINE_MODEL, *_NETWORK_MODELS]
DEFAULT_MODEL = _NETWORK_MODELS[0]
REQUEST_TIMEOUT = 60
OFFLINE_FRAGMENT_DELAY = (0.01, 0.03)
ERROR_MARKER = "\n\n**Error:** {message}"
_PROMPT_LOG_PATH = Path("prompt.log")
_prompt_log_lock = threading.Lock()
_CONNECTION_LOG_PATH = Path("connection.log")
_connection_log_lock = threading.Lock()

# parse_sse_line returns this object for the terminating ``data: [DONE]`` line.
STREAM_END = object()


class TransportFailure(Exception):
    """The generation endpoint could not be reached or broke off mid-stream."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def reset_prompt_log() -> None:
    with _prompt_log_lock:
        _PROMPT_LOG_PATH.write_text("", encoding="utf-8")


def reset_connection_log() -> None:
    with _connection_log_lock:
        _CONNECTION_LOG_PATH.write_text("", encoding="utf-8")


def _log_prompt_exchange(
    messages: list[dict], response_text: str | None, error_text: str | None
) -> None:
    timestamp = datetime.now().isoformat(timespec="seconds")
    with _prompt_log_lock:
        size = _PROMPT_LOG_PATH.stat().st_size if _PROMPT_LOG_PATH.exists() else 0
        with _PROMPT_LOG_PATH.open("a", encoding="utf-8") as log:
            if size:
                log.write("=====\n")
            log.write(f"branchcanvas [{timestamp}] Prompt:\n")
            log.write("------------------------------------------------------------\n")
            for message in messages:
                log.write(f"[{message['role']}] {message['content'].strip()}\n")
            log.write("============================================================\n")
            log.write(f"{get_active_model()} [{timestamp}] Response:\n")
            log.write("------------------------------------------------------------\n")
            response = (response_text or "").strip()
            if response:
                log.write(f"{response}\n")
            if error_text:
                log.write(f"<error> {error_text}\n")
            elif not response:
                log.write("<empty>\n")
            log.write("============================================================\n")


def _log_connection_event(status: str, model: str, detail: str | None = None) -> None:
    timestamp = datetime.now().isoformat(timespec="seconds")
    message = detail.strip() if detail else ""
    line = f"{timestamp}\t{status.upper()}\t{model}"
    if message:
        line = f"{line}\t{message}"
    with _connection_log_lock:
        with _CONNECTION_LOG_PATH.open("a", encoding="utf-8") as log:
            log.write(line + "\n")


def get_active_model() -> str:
    return os.getenv("BRANCHCANVAS_MODEL", DEFAULT_MODEL)


def set_active_model(model: str) -> None:
    os.environ["BRANCHCANVAS_MODEL"] = model


def get_api_url() -> str:
    return os.getenv("BRANCHCANVAS_API_URL", DEFAULT_API_URL)


def get_api_key() -> Optional[str]:
    return os.getenv("BRANCHCANVAS_API_KEY") or os.getenv("OPENROUTER_API_KEY")


def uses_network() -> bool:
    return bool(get_api_key()) and get_active_model() != OFFLINE_MODEL


def _is_azure(api_url: str) -> bool:
    host = urlparse(api_url).hostname or ""
    return host.endswith("azure.com")


def resolve_endpoint(api_url: str) -> str:
    """Turn a configured base URL into the chat-completions endpoint."""
    url = api_url.strip()
    if "/chat/completions" not in url:
        url = f"{url.rstrip('/')}/chat/completions"
    if _is_azure(api_url) and "api-version=" not in url:
        separator = "&" if "?" in url else "?"
        url = f"{url}{separator}api-version={AZURE_API_VERSION}"
    return url


def _request_headers(api_url: str, api_key: str) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if _is_azure(api_url):
        headers["api-key"] = api_key
    else:
        headers["Authorization"] = f"Bearer {api_key}"
        headers["HTTP-Referer"] = "https://github.com/branchcanvas/branchcanvas"
        headers["X-Title"] = "branchcanvas"
    return headers


def build_messages(
    history: Sequence[ChatMessage], highlighted_text: str | None = None
) -> list[dict]:
    messages: list[dict] = []
    if highlighted_text:
        messages.append(
            {
                "role": "system",
                "content": (
                    "You are a helpful assistant. Provide a concise follow-up based on the "
                    f'following context: "{highlighted_text}". '
                    "Use Markdown and LaTeX where appropriate."
                ),
            }
        )
    messages.extend(message.as_dict() for message in history)
    return messages


def build_request_body(model: str, messages: list[dict]) -> dict:
    return {"model": model, "messages": messages, "stream": True}


def parse_sse_line(line: str) -> Union[str, None, object]:
    """Decode one Server-Sent-Events line of a streamed chat completion.

    Returns the text fragment it carries, ``STREAM_END`` for the final
    ``data: [DONE]`` line, or ``None`` for anything else (keep-alives,
    comments, malformed JSON, deltas without content).
    """
    stripped = line.strip()
    if not stripped.startswith("data: "):
        return None
    data = stripped[len("data: "):].strip()
    if data == "[DONE]":
        return STREAM_END
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        return None
    try:
        choices = payload["choices"]
        if not choices:
            return None
        delta = choices[0].get("delta") or {}
        content = delta.get("content")
    except (KeyError, TypeError, AttributeError):
        return None
    return content or None


def offline_response(prompt: str, context: str | None = None) -> str:
    if context:
        return (
            "<think>\n"
            f'The follow-up "{prompt}" refers to the excerpt "{context}".\n'
            "Relating the excerpt to the question...\n"
            "</think>\n\n"
            f'### Follow-up on: *"{context}"*\n\n'
            f"Here is a closer look at **{prompt}**:\n\n"
            "```python\n"
            "def gravity(m1, m2, r):\n"
            "    G = 6.67430e-11\n"
            "    return G * m1 * m2 / r ** 2\n"
            "```\n\n"
            "$$F = G \\frac{m_1 m_2}{r^2}$$\n\n"
            "This is offline dummy output; configure an API key for real answers."
        )
    return (
        "<think>\n"
        f'Processing request for: "{prompt}"\n'
        "Drafting an offline answer...\n"
        "</think>\n\n"
        f'### This is an offline response to: **"{prompt}"**\n\n'
        "Math renders inline, for example the quadratic formula:\n"
        "$$x = \\frac{-b \\pm \\sqrt{b^2 - 4ac}}{2a}$$\n\n"
        "Select any phrase of an answer to branch into a new line of inquiry!"
    )


async def _offline_stream(history: Sequence[ChatMessage], highlighted_text: str | None) -> AsyncIterator[str]:
    prompt = history[-1].content if history else ""
    words = offline_response(prompt, highlighted_text).split(" ")
    low, high = OFFLINE_FRAGMENT_DELAY
    for index, word in enumerate(words):
        yield word if index == len(words) - 1 else f"{word} "
        if high > 0:
            await asyncio.sleep(random.uniform(low, high))


def _open_stream(http_request: request.Request):
    return request.urlopen(http_request, timeout=REQUEST_TIMEOUT)


async def stream_chat(
    history: Sequence[ChatMessage], highlighted_text: str | None = None
) -> AsyncIterator[str]:
    """Stream an assistant reply for ``history`` one text fragment at a time.

    Raises ``TransportFailure`` if the endpoint is unreachable, answers with
    a non-2xx status, or the connection breaks while streaming.
    """
    if not uses_network():
        async for fragment in _offline_stream(history, highlighted_text):
            yield fragment
        return

    model = get_active_model()
    api_url = get_api_url()
    api_key = get_api_key() or ""
    messages = build_messages(history, highlighted_text)
    data = json.dumps(build_request_body(model, messages)).encode("utf-8")
    http_request = request.Request(
        resolve_endpoint(api_url),
        data=data,
        headers=_request_headers(api_url, api_key),
        method="POST",
    )

    try:
        response = await asyncio.to_thread(_open_stream, http_request)
    except error.HTTPError as exc:
        detail = f"API request failed with status {exc.code}"
        _log_connection_event("FAIL", model, detail)
        _log_prompt_exchange(messages, None, detail)
        raise TransportFailure(detail) from exc
    except (error.URLError, HTTPException, TimeoutError, OSError) as exc:
        reason = getattr(exc, "reason", None) or exc
        detail = f"Failed to connect to the API: {reason}"
        _log_connection_event("FAIL", model, detail)
        _log_prompt_exchange(messages, None, detail)
        raise TransportFailure(detail) from exc

    _log_connection_event("SUCCESS", model)
    received: list[str] = []
    failure: Optional[str] = None
    try:
        while True:
            try:
                raw_line = await asyncio.to_thread(response.readline)
            except (HTTPException, TimeoutError, OSError) as exc:
                failure = f"Stream interrupted: {exc}"
                _log_connection_event("FAIL", model, failure)
                raise TransportFailure(failure) from exc
            if not raw_line:
                break
            parsed = parse_sse_line(raw_line.decode("utf-8", errors="replace"))
            if parsed is STREAM_END:
                break
            if isinstance(parsed, str):
                received.append(parsed)
                yield parsed
    finally:
        response.close()
        _log_prompt_exchange(messages, "".join(received), failure)

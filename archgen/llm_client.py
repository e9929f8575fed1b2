"""HTTP chat helpers for the supported LLM backends."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional

import httpx


@dataclass(frozen=True)
class ChatReply:
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


def _client(timeout_s: float, retries: int, transport: Optional[httpx.BaseTransport]) -> httpx.Client:
    """Build a client; connection retries are handled by the transport."""
    if transport is None:
        transport = httpx.HTTPTransport(retries=retries)
    return httpx.Client(timeout=timeout_s, transport=transport)


def _log_request(
    log: Optional[Callable[[str], None]],
    label: str,
    model: str,
    system: str,
    user: str,
    max_tokens: int,
) -> None:
    if log is None:
        return
    prompt_chars = len(system) + len(user)
    prompt_bytes = len(system.encode("utf-8", errors="ignore")) + len(user.encode("utf-8", errors="ignore"))
    log(
        f"[LLM] {label} model={model} prompt_chars={prompt_chars} "
        f"prompt_bytes={prompt_bytes} max_tokens={max_tokens}"
    )


def ollama_chat(
    base_url: str,
    model: str,
    system: str,
    user: str,
    *,
    temperature: float,
    timeout_s: float,
    num_predict: int,
    num_ctx: int,
    retries: int = 0,
    transport: Optional[httpx.BaseTransport] = None,
    log: Optional[Callable[[str], None]] = None,
    label: str = "request",
) -> ChatReply:
    """Send a single chat request to Ollama and return the reply."""
    _log_request(log, label, model, system, user, num_predict)
    payload = {
        "model": model,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        "options": {
            "temperature": temperature,
            "num_predict": num_predict,
            "num_ctx": num_ctx,
        },
        "stream": False,
    }
    with _client(timeout_s, retries, transport) as client:
        r = client.post(f"{base_url}/api/chat", json=payload)
        r.raise_for_status()
        data = r.json()
    return ChatReply(
        text=data["message"]["content"],
        prompt_tokens=int(data.get("prompt_eval_count") or 0),
        completion_tokens=int(data.get("eval_count") or 0),
    )


def ollama_models(
    base_url: str,
    *,
    timeout_s: float,
    transport: Optional[httpx.BaseTransport] = None,
) -> List[str]:
    """List locally available Ollama model names."""
    with _client(timeout_s, 0, transport) as client:
        r = client.get(f"{base_url}/api/tags")
        r.raise_for_status()
        data = r.json()
    return [str(m.get("name")) for m in data.get("models", []) if isinstance(m, dict)]


def openai_chat(
    base_url: str,
    model: str,
    system: str,
    user: str,
    *,
    api_key: str,
    temperature: float,
    timeout_s: float,
    max_tokens: int,
    retries: int = 0,
    transport: Optional[httpx.BaseTransport] = None,
    log: Optional[Callable[[str], None]] = None,
    label: str = "request",
) -> ChatReply:
    """Send a chat completion request to an OpenAI-compatible endpoint."""
    _log_request(log, label, model, system, user, max_tokens)
    payload = {
        "model": model,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        "max_tokens": max_tokens,
        "temperature": temperature,
    }
    headers = {"Authorization": f"Bearer {api_key}"}
    with _client(timeout_s, retries, transport) as client:
        r = client.post(f"{base_url}/chat/completions", json=payload, headers=headers)
        r.raise_for_status()
        data = r.json()
    choices = data.get("choices") or []
    content = ""
    if choices and isinstance(choices[0], dict):
        content = (choices[0].get("message") or {}).get("content") or ""
    if not content:
        raise RuntimeError(f"No content received from {base_url} ({label})")
    usage = data.get("usage") or {}
    return ChatReply(
        text=content,
        prompt_tokens=int(usage.get("prompt_tokens") or 0),
        completion_tokens=int(usage.get("completion_tokens") or 0),
    )


def openai_models(
    base_url: str,
    *,
    api_key: str,
    timeout_s: float,
    transport: Optional[httpx.BaseTransport] = None,
) -> List[str]:
    """List model ids served by an OpenAI-compatible endpoint."""
    with _client(timeout_s, 0, transport) as client:
        r = client.get(f"{base_url}/models", headers={"Authorization": f"Bearer {api_key}"})
        r.raise_for_status()
        data = r.json()
    return [str(m.get("id")) for m in data.get("data", []) if isinstance(m, dict)]

"""
Wire formats for the supported provider APIs.

Each provider speaks one of a closed set of formats, registered in
PROVIDER_FORMATS and selected by ``ProviderDescriptor.wire_format``:

- openai:    POST {base}/chat/completions (OpenRouter, OpenAI)
- anthropic: POST {base}/messages
- google:    POST {base}/models/{model}:generateContent

A format builds the HTTP request and parses the response into a
``Completion``. Parsers raise ResponseValidationError when the payload has no
content or no usage counts.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from app.core.errors import ResponseValidationError
from app.core.logging import get_logger
from app.services.ai.config import ProviderDescriptor

logger = get_logger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
IMAGE_URL_PREFIXES = ("http://", "https://", "data:")


@dataclass
class WireRequest:
    path: str
    payload: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, str] = field(default_factory=dict)


@dataclass
class Completion:
    content: str
    input_tokens: int
    output_tokens: int
    finish_reason: Optional[str] = None


@dataclass(frozen=True)
class ProviderFormat:
    name: str
    build_request: Callable[..., WireRequest]
    parse_response: Callable[[Any], Completion]


def image_url(image: str) -> Optional[str]:
    """
    Image reference for a multimodal request.

    Only http(s) URLs and base64 data URIs are sent; anything else (such as a
    filesystem path) is dropped.
    """
    if image.startswith(IMAGE_URL_PREFIXES):
        return image
    logger.warning("ai_image_rejected", reason="not a URL or data URI")
    return None


def _require_tokens(value: Any, field_name: str) -> int:
    if value is None:
        raise ResponseValidationError(f"missing usage field {field_name}")
    try:
        tokens = int(value)
    except (TypeError, ValueError) as exc:
        raise ResponseValidationError(f"invalid usage field {field_name}: {value!r}") from exc
    if tokens < 0:
        raise ResponseValidationError(f"negative usage field {field_name}")
    return tokens


def _object(value: Any, what: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ResponseValidationError(f"{what} is not an object: {type(value).__name__}")
    return value


def _first(value: Any, what: str) -> Dict[str, Any]:
    if not isinstance(value, list) or not value:
        raise ResponseValidationError(f"response has no {what}")
    return _object(value[0], f"{what}[0]")


def _require_content(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ResponseValidationError("empty or missing completion content")
    return value


# ============================================================================
# OpenAI-compatible (OpenRouter, OpenAI)
# ============================================================================

def _openai_request(
    descriptor: ProviderDescriptor,
    model: str,
    prompt: str,
    max_tokens: int,
    temperature: float,
    images: Optional[List[str]] = None,
    system_prompt: Optional[str] = None,
) -> WireRequest:
    messages: List[Dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})

    encoded = [uri for uri in (image_url(img) for img in images or []) if uri]
    if encoded:
        parts: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        parts.extend({"type": "image_url", "image_url": {"url": uri}} for uri in encoded)
        messages.append({"role": "user", "content": parts})
    else:
        messages.append({"role": "user", "content": prompt})

    headers = {"Authorization": f"Bearer {descriptor.api_key}"}
    if descriptor.name == "openrouter":
        headers["HTTP-Referer"] = "https://ai-orchestration.local"
        headers["X-Title"] = "AI Orchestration Engine"

    return WireRequest(
        path="/chat/completions",
        payload={
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        },
        headers=headers,
    )


def _openai_response(data: Any) -> Completion:
    data = _object(data, "response body")
    choice = _first(data.get("choices"), "choices")
    usage = _object(data.get("usage"), "usage block")
    message = _object(choice.get("message"), "choices[0].message")
    return Completion(
        content=_require_content(message.get("content")),
        input_tokens=_require_tokens(usage.get("prompt_tokens"), "prompt_tokens"),
        output_tokens=_require_tokens(usage.get("completion_tokens"), "completion_tokens"),
        finish_reason=choice.get("finish_reason"),
    )


# ============================================================================
# Anthropic messages API
# ============================================================================

def _anthropic_request(
    descriptor: ProviderDescriptor,
    model: str,
    prompt: str,
    max_tokens: int,
    temperature: float,
    images: Optional[List[str]] = None,
    system_prompt: Optional[str] = None,
) -> WireRequest:
    payload: Dict[str, Any] = {
        "model": model,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "messages": [{"role": "user", "content": prompt}],
    }
    if system_prompt:
        payload["system"] = system_prompt
    return WireRequest(
        path="/messages",
        payload=payload,
        headers={"x-api-key": descriptor.api_key or "", "anthropic-version": ANTHROPIC_VERSION},
    )


def _anthropic_response(data: Any) -> Completion:
    data = _object(data, "response body")
    blocks = data.get("content")
    if not isinstance(blocks, list):
        raise ResponseValidationError("response has no content blocks")
    text = next(
        (block.get("text") for block in blocks if isinstance(block, dict) and block.get("type", "text") == "text"),
        None,
    )
    usage = _object(data.get("usage"), "usage block")
    return Completion(
        content=_require_content(text),
        input_tokens=_require_tokens(usage.get("input_tokens"), "input_tokens"),
        output_tokens=_require_tokens(usage.get("output_tokens"), "output_tokens"),
        finish_reason=data.get("stop_reason"),
    )


# ============================================================================
# Google generateContent API
# ============================================================================

def _google_request(
    descriptor: ProviderDescriptor,
    model: str,
    prompt: str,
    max_tokens: int,
    temperature: float,
    images: Optional[List[str]] = None,
    system_prompt: Optional[str] = None,
) -> WireRequest:
    payload: Dict[str, Any] = {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        "generationConfig": {"maxOutputTokens": max_tokens, "temperature": temperature},
    }
    if system_prompt:
        payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
    return WireRequest(
        path=f"/models/{model}:generateContent",
        payload=payload,
        params={"key": descriptor.api_key or ""},
    )


def _google_response(data: Any) -> Completion:
    data = _object(data, "response body")
    candidate = _first(data.get("candidates"), "candidates")
    content = _object(candidate.get("content"), "candidates[0].content")
    part = _first(content.get("parts"), "content parts")
    usage = _object(data.get("usageMetadata"), "usageMetadata block")
    return Completion(
        content=_require_content(part.get("text")),
        input_tokens=_require_tokens(usage.get("promptTokenCount"), "promptTokenCount"),
        output_tokens=_require_tokens(usage.get("candidatesTokenCount"), "candidatesTokenCount"),
        finish_reason=candidate.get("finishReason"),
    )


PROVIDER_FORMATS: Dict[str, ProviderFormat] = {
    "openai": ProviderFormat("openai", _openai_request, _openai_response),
    "anthropic": ProviderFormat("anthropic", _anthropic_request, _anthropic_response),
    "google": ProviderFormat("google", _google_request, _google_response),
}


def get_provider_format(name: str) -> ProviderFormat:
    try:
        return PROVIDER_FORMATS[name]
    except KeyError as exc:
        raise ValueError(f"Unknown provider wire format: {name}") from exc

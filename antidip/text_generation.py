"""
Text Generation Port

Optional collaborator that produces short human-readable text (motivation
tips, stuck-task notification copy, rule messages).

IMPORTANT:
- generate() returns None on timeout or failure, it never raises
- Output is sanitized and length-bounded by the core before use
- Every caller owns a deterministic fallback; nothing blocks on the network
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .config import EngineSettings

logger = logging.getLogger("text_generation")

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")


def compact_text(value: Any, max_len: int) -> str:
    """Strip control characters, collapse whitespace, truncate with an ellipsis."""
    if not isinstance(value, str):
        return ""
    cleaned = _WHITESPACE.sub(" ", _CONTROL_CHARS.sub(" ", value)).strip()
    if not cleaned:
        return ""
    if len(cleaned) > max_len:
        return cleaned[: max_len - 1] + "…"
    return cleaned


class TextGenerator(Protocol):
    async def generate(
        self,
        prompt: str,
        *,
        temperature: float = 0.7,
        max_tokens: int = 120,
        timeout_ms: int = 12000,
    ) -> Optional[str]:
        ...


class NullTextGenerator:
    """Generator used when AI is disabled; always falls back."""

    async def generate(self, prompt: str, **kwargs: Any) -> Optional[str]:
        return None


class OllamaTextGenerator:
    """
    Text generation via a local Ollama server (/api/generate).

    The HTTP client can be injected for testing (httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        max_len: int = 600,
        settings: Optional[EngineSettings] = None,
    ):
        settings = settings or EngineSettings()
        self.base_url = (base_url or settings.ollama_base_url).rstrip("/")
        self.model = model or settings.ollama_model
        self.max_len = max_len
        self._client = client

    async def generate(
        self,
        prompt: str,
        *,
        temperature: float = 0.7,
        max_tokens: int = 120,
        timeout_ms: int = 12000,
    ) -> Optional[str]:
        prompt = (prompt or "").strip()
        if not prompt:
            return None

        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": temperature,
                "top_p": 0.9,
                "num_predict": max_tokens,
            },
        }
        timeout = timeout_ms / 1000

        try:
            if self._client is not None:
                response = await self._client.post(
                    f"{self.base_url}/api/generate", json=payload, timeout=timeout
                )
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.post(f"{self.base_url}/api/generate", json=payload)

            if response.status_code != 200:
                logger.warning(f"Ollama returned HTTP {response.status_code}")
                return None

            data = response.json()
            raw = data.get("response") if isinstance(data, dict) else None
            text = compact_text(raw, self.max_len)
            return text or None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Ollama generation failed: {e}")
            return None


async def generate_bounded(
    generator: Optional[TextGenerator],
    prompt: str,
    *,
    max_len: int,
    temperature: float = 0.7,
    max_tokens: int = 120,
    timeout_ms: int = 12000,
) -> Optional[str]:
    """
    Call the generator under a hard timeout and sanitize the result.

    Returns None when the generator is missing, slow, failing, or returns
    empty or oversized text; the caller then uses its fallback.
    """
    if generator is None:
        return None
    try:
        raw = await asyncio.wait_for(
            generator.generate(
                prompt,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout_ms=timeout_ms,
            ),
            timeout=timeout_ms / 1000,
        )
    except asyncio.TimeoutError:
        logger.warning(f"Text generation abandoned after {timeout_ms}ms")
        return None
    except Exception as e:
        logger.warning(f"Text generation failed: {e}")
        return None

    if not isinstance(raw, str):
        return None
    text = compact_text(raw, 10 * max_len)
    if not text or len(text) > max_len:
        return None
    return text


# -----------------------------------------------------------------------------
# Prompt builders
# -----------------------------------------------------------------------------
def build_motivation_tip_prompt(task_name: str, progress: int) -> str:
    name = compact_text(task_name, 120) or "unknown task"
    return (
        f'The user is stuck at {progress}% on the task "{name}".\n'
        "Give one blunt, concrete technical or psychological tip for finishing it today.\n"
        "Max 15 words. No filler."
    )


def build_stuck_notification_prompt(task_names: List[str]) -> str:
    names = ", ".join(compact_text(n, 60) for n in task_names[:10])
    return (
        f"Write a short motivating notification about {len(task_names)} tasks "
        f"stuck at 90%+: {names}.\n"
        "Format: title (max 8 words) + body (max 25 words).\n"
        "Style: motivating but brutally honest, like a drill coach.\n"
        'Reply as JSON: {"title": "...", "body": "..."}'
    )


def build_encouragement_prompt(stuck_message: str) -> str:
    return (
        "The user just got this reminder about work stuck near completion: "
        f'"{compact_text(stuck_message, 200)}".\n'
        "Write one warm, short encouragement to finish it. Max 20 words."
    )


def build_rule_message_prompt(message: str, context: Dict[str, Any]) -> str:
    stuck = context.get("stuck_pillar")
    focus = f' about the stalled goal "{compact_text(stuck, 80)}"' if stuck else ""
    return (
        f"Write one short spoken reminder{focus}. "
        f"Base it on this instruction: {compact_text(message, 200)}. "
        "Max 25 words."
    )


def parse_title_body(text: Optional[str]) -> Optional[Dict[str, str]]:
    """Extract {"title", "body"} from a JSON reply, None when not present."""
    if not text:
        return None
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    title = compact_text(parsed.get("title"), 50)
    body = compact_text(parsed.get("body"), 120)
    if title and body:
        return {"title": title, "body": body}
    return None

"""LLM client wrapper for the gated chat endpoint.

A thin wrapper around the OpenAI client so tests can mock the low-level
calls. Without an API key the service answers in echo mode, which keeps
local development working.
"""
from typing import Any, Dict, List, Optional
import logging

from openai import OpenAI

from tripp.config import get_config

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are Tripp, the HerpHut assistant. Give friendly, accurate reptile "
    "and amphibian husbandry guidance and say when a vet should be involved."
)


# Singleton OpenAI client
_openai_client: Optional[OpenAI] = None


def init_openai_client(config=None) -> OpenAI:
    """Initialize and return OpenAI client singleton."""
    global _openai_client

    if _openai_client is None:
        config = config or get_config()
        _openai_client = OpenAI(api_key=config.openai_api_key)
        logger.info("OpenAI client initialized")

    return _openai_client


def build_messages(turns: List[Dict[str, str]], history_limit: int) -> List[Dict[str, str]]:
    """System prompt followed by the most recent user/assistant turns."""
    rolling = [
        {"role": t["role"], "content": t["content"]}
        for t in turns
        if t.get("role") in ("user", "assistant") and isinstance(t.get("content"), str)
    ]
    return [{"role": "system", "content": SYSTEM_PROMPT}] + rolling[-history_limit:]


def create_chat_completion(turns: List[Dict[str, str]], config=None) -> Dict[str, Any]:
    """Call the model with the conversation and return the reply.

    Returns a dict with keys: `reply`, `model`, `tokens` (dict of counts).
    """
    config = config or get_config()
    messages = build_messages(turns, config.history_limit)

    if not config.openai_api_key:
        last_user = next((m["content"] for m in reversed(messages) if m["role"] == "user"), "")
        return {"reply": f"Echo: {last_user}", "model": "echo", "tokens": {}}

    client = init_openai_client(config)
    try:
        resp = client.chat.completions.create(
            model=config.llm_model,
            messages=messages,
            max_tokens=config.llm_max_completion_tokens
        )
    except Exception as e:
        logger.error("LLM call failed: %s", e)
        raise

    text = ""
    if resp.choices:
        text = resp.choices[0].message.content or ""
    tokens: Dict[str, Any] = {}
    usage = getattr(resp, "usage", None)
    if usage:
        tokens = {
            "prompt": getattr(usage, "prompt_tokens", 0),
            "completion": getattr(usage, "completion_tokens", 0),
            "total": getattr(usage, "total_tokens", 0)
        }
    return {"reply": text, "model": config.llm_model, "tokens": tokens}

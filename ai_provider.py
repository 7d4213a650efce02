"""
AI Provider Helper - vendor-selectable wrapper for LLM calls.

Env vars:
  AI_PROVIDER   - "anthropic" (default) or "openai" (any OpenAI-compatible endpoint)
  AI_API_KEY    - default API key, used when the caller does not pass one
  AI_MODEL      - model identifier
  AI_BASE_URL   - base URL for OpenAI-compatible providers
"""

import logging

from anthropic import Anthropic
from openai import OpenAI

import config

logger = logging.getLogger(__name__)


def _call_anthropic(prompt, api_key, temperature, max_tokens, timeout):
    client = Anthropic(api_key=api_key, timeout=timeout, max_retries=0)
    response = client.messages.create(
        model=config.AI_MODEL,
        max_tokens=max_tokens,
        temperature=temperature,
        messages=[{"role": "user", "content": prompt}],
    )
    parts = [block.text for block in response.content if getattr(block, "type", "") == "text"]
    return "".join(parts)


def _call_openai(prompt, api_key, temperature, max_tokens, timeout):
    client = OpenAI(api_key=api_key, base_url=config.AI_BASE_URL or None, timeout=timeout, max_retries=0)
    response = client.chat.completions.create(
        model=config.AI_MODEL,
        messages=[{"role": "user", "content": prompt}],
        temperature=temperature,
        max_tokens=max_tokens,
    )
    return response.choices[0].message.content or ""


def call_ai(prompt, api_key=None, temperature=0.3, max_tokens=1000, timeout=None):
    """
    Send prompt to the configured AI provider.
    Returns: (response_text, error). Never raises.
    """
    api_key = api_key or config.AI_API_KEY
    if not api_key or not config.AI_MODEL:
        return None, "AI API not configured (missing key or model)"
    if timeout is None:
        timeout = config.AI_TIMEOUT_SECONDS

    provider = (config.AI_PROVIDER or "anthropic").lower()
    try:
        if provider == "openai":
            text = _call_openai(prompt, api_key, temperature, max_tokens, timeout)
        else:
            text = _call_anthropic(prompt, api_key, temperature, max_tokens, timeout)
    except Exception as e:  # SDK transport, auth and API errors all mean "fall back"
        logger.warning("ai call failed | provider=%s error=%s", provider, type(e).__name__)
        return None, f"AI API error: {e}"

    if not text:
        return None, "Empty response from AI"
    return text, None

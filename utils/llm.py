"""Claude API client for code generation."""

import logging
import os
import time

import anthropic

from config.defaults import DEFAULTS

logger = logging.getLogger(__name__)

MODEL = DEFAULTS["model"]
MAX_TOKENS = DEFAULTS["max_tokens"]


def get_client(timeout=None):
    """Return an Anthropic client. Raises if no API key is set."""
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        raise RuntimeError(
            "ANTHROPIC_API_KEY environment variable is not set. "
            "Get a key at https://console.anthropic.com/ and run:\n"
            "  export ANTHROPIC_API_KEY='your-key-here'"
        )
    if timeout is None:
        return anthropic.Anthropic(api_key=api_key)
    return anthropic.Anthropic(api_key=api_key, timeout=timeout)


def call_llm(system_prompt, messages, model=None, max_tokens=None, client=None, cancel_token=None):
    """Send a conversation to Claude and return the assistant's text.

    Args:
        system_prompt: System prompt string.
        messages: A user message string, or a list of {"role", "content"} dicts.
        model: Model id (default from config).
        max_tokens: Response token cap (default from config).
        client: Optional pre-built client.
        cancel_token: Optional token; streaming stops early once it is cancelled.

    Returns:
        Raw text string.
    """
    if isinstance(messages, str):
        messages = [{"role": "user", "content": messages}]
    client = client or get_client()

    last_error = None
    for attempt in range(2):
        try:
            # Use streaming to avoid SDK timeout for large max_tokens
            text = ""
            with client.messages.stream(
                model=model or MODEL,
                max_tokens=max_tokens or MAX_TOKENS,
                system=system_prompt,
                messages=messages,
            ) as stream:
                for chunk in stream.text_stream:
                    text += chunk
                    if cancel_token is not None and cancel_token.cancelled:
                        logger.info("Stopping Claude stream early, cancellation requested")
                        return text
                stop_reason = stream.get_final_message().stop_reason

            if stop_reason == "max_tokens":
                logger.warning("Claude response hit the %d token limit", max_tokens or MAX_TOKENS)
            return text

        except anthropic.APIError as e:
            last_error = e
            if attempt == 0:
                logger.warning("Claude API error, retrying once: %s", e)
                time.sleep(2)
                continue
            raise

    raise last_error

"""
Language-model arbitrator
Sends the arbitration prompt to the Anthropic Messages API and parses the
JSON verdict.
"""

import os
from typing import Optional

import anthropic

from logging_config import get_logger, log_api_call
from matching.arbitration import ArbitrationRequest, Decision, parse_decision, render_prompt
from .error_handling import APIError, TransientNetworkError, with_retry
from .retry_config import get_retry_config

logger = get_logger(__name__)

DEFAULT_MODEL = "claude-haiku-4-5"
DEFAULT_MAX_TOKENS = 800


class AnthropicArbitrator:
    """Arbitrator backed by a Claude model."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 max_tokens: int = DEFAULT_MAX_TOKENS, client: Optional[anthropic.Anthropic] = None):
        if client is None:
            api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
            if not api_key:
                raise APIError("ANTHROPIC_API_KEY is not set", "anthropic")
            client = anthropic.Anthropic(api_key=api_key)
        self.client = client
        self.model = model or os.getenv("ARBITRATION_MODEL", DEFAULT_MODEL)
        self.max_tokens = max_tokens

    @with_retry(get_retry_config("arbitration"))
    def complete(self, prompt: str) -> str:
        """
        Send one prompt and return the text of the reply.

        Raises:
            TransientNetworkError: timeouts, connection failures, rate limits and 5xx
            APIError: any other API failure
        """
        log_api_call(logger, "anthropic", "messages.create", model=self.model)
        try:
            message = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except (anthropic.APIConnectionError, anthropic.RateLimitError, anthropic.InternalServerError) as e:
            raise TransientNetworkError(f"Arbitration call failed: {e}", "anthropic",
                                        getattr(e, "status_code", None)) from e
        except anthropic.APIError as e:
            raise APIError(f"Arbitration call failed: {e}", "anthropic",
                           getattr(e, "status_code", None)) from e

        return "".join(block.text for block in message.content if getattr(block, "type", None) == "text")

    def decide(self, request: ArbitrationRequest) -> Decision:
        return parse_decision(self.complete(render_prompt(request)), request)

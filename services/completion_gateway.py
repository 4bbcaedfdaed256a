"""Chat-completion client for OpenRouter's OpenAI-compatible API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from openai import OpenAI, OpenAIError

from services.errors import CompletionError, ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    text: str
    tokens_used: Optional[int] = None


class CompletionGateway:
    """Stateless request/response wrapper: one system prompt, one user message, one reply.

    The upstream keeps no memory between calls, so callers resend all context
    every time. The SDK's own retries are disabled; a failed call fails once.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str,
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 500,
        timeout: float = 15.0,
        site_url: Optional[str] = None,
        site_title: Optional[str] = None,
        client: Optional[OpenAI] = None,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        headers = {}
        if site_url:
            headers['HTTP-Referer'] = site_url
        if site_title:
            headers['X-Title'] = site_title
        self._client = client or OpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
            default_headers=headers,
        )

    @classmethod
    def from_config(cls, config) -> 'CompletionGateway':
        api_key = config.get('OPENROUTER_API_KEY')
        if not api_key:
            logger.error('Missing OpenRouter API key')
            raise ConfigurationError(
                details='OpenRouter API key not configured',
                reason='missing_completion_key',
            )
        return cls(
            api_key,
            base_url=config.get('COMPLETION_BASE_URL'),
            model=config.get('COMPLETION_MODEL'),
            temperature=config.get('COMPLETION_TEMPERATURE', 0.7),
            max_tokens=config.get('COMPLETION_MAX_TOKENS', 500),
            timeout=config.get('OUTBOUND_TIMEOUT_SECONDS', 15.0),
            site_url=config.get('SITE_URL'),
            site_title=config.get('SITE_TITLE'),
        )

    def complete(self, system_prompt: str, message: str) -> CompletionResult:
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {'role': 'system', 'content': system_prompt},
                    {'role': 'user', 'content': message},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except OpenAIError as exc:
            status = getattr(exc, 'status_code', None)
            logger.error('Completion API error: status=%s %s', status, exc)
            raise CompletionError('Completion API request failed', upstream_status=status, upstream_body=str(exc)) from exc

        choices = getattr(response, 'choices', None) or []
        message_obj = getattr(choices[0], 'message', None) if choices else None
        content = getattr(message_obj, 'content', None) if message_obj is not None else None
        if content is None:
            logger.error('Invalid response structure from completion API: %r', response)
            raise CompletionError('Invalid response from completion API')

        usage = getattr(response, 'usage', None)
        tokens_used = getattr(usage, 'total_tokens', None) if usage is not None else None
        return CompletionResult(text=content, tokens_used=tokens_used)

"""Text generation adapters, one per wire format.

Each adapter exposes ``generate(prompt, config, timeout_s) -> str`` and raises
only the classified errors from :mod:`enricher.llm.errors`. Vendor identity is
resolved once in :func:`get_adapter`; nothing downstream branches on it.
"""
from __future__ import annotations

from typing import Dict, Optional

import openai
from openai import OpenAI

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from enricher.utils import get_logger
from .errors import (
    LLMAPIError,
    LLMAuthError,
    LLMRateLimitError,
    LLMServerError,
    LLMTimeoutError,
    LLMEmptyResponseError,
)
from .providers import ProviderConfig, ProviderKind

LOG = get_logger()


def classify_status(status: Optional[int], message: str, provider: str) -> LLMAPIError:
    """Map an HTTP status onto the error taxonomy."""
    if status in (401, 403):
        return LLMAuthError(message, provider=provider, status=status)
    if status == 429:
        return LLMRateLimitError(message, provider=provider, status=status)
    if status == 408:
        return LLMTimeoutError(message, provider=provider, status=status)
    if status is not None and status >= 500:
        return LLMServerError(message, provider=provider, status=status)
    return LLMAPIError(message, provider=provider, status=status)


class ChatCompletionAdapter:
    """OpenAI-style ``POST {base_url}/v1/chat/completions`` with a bearer key.

    Serves openai, together and any openai-compatible endpoint. SDK-side
    retries are disabled; the retry engine owns them.
    """

    def __init__(self, client_factory=OpenAI):
        self._client_factory = client_factory

    def _client(self, config: ProviderConfig, timeout_s: float):
        if not config.base_url:
            raise LLMAPIError(f'Missing baseUrl for {config.provider.value} provider', provider=config.provider.value)
        return self._client_factory(
            api_key=config.api_key,
            base_url=f'{config.base_url}/v1',
            timeout=timeout_s,
            max_retries=0,
        )

    def generate(self, prompt: str, config: ProviderConfig, timeout_s: float) -> str:
        name = config.provider.value
        client = self._client(config, timeout_s)
        try:
            resp = client.chat.completions.create(
                model=config.model,
                messages=[{'role': 'user', 'content': prompt}],
            )
        except openai.APITimeoutError as e:
            raise LLMTimeoutError(f'{name} request timed out after {int(timeout_s * 1000)}ms', provider=name, status=408) from e
        except openai.APIConnectionError as e:
            raise LLMServerError(f'{name} connection error: {e}', provider=name) from e
        except openai.APIStatusError as e:
            message = f'{name} error ({e.status_code}): {e.message}'
            raise classify_status(e.status_code, message, name) from e
        except Exception as e:
            LOG.exception('chat_completion_unknown_error', exc_info=True)
            raise LLMAPIError(f'{name} error: {e}', provider=name) from e

        choices = getattr(resp, 'choices', None) or []
        text = choices[0].message.content if choices and choices[0].message else None
        if not text or not isinstance(text, str) or not text.strip():
            raise LLMEmptyResponseError('Empty response from provider', provider=name)
        return text


class GeminiAdapter:
    """Native ``google-generativeai`` SDK call."""

    def __init__(self, sdk=genai):
        self._sdk = sdk

    def generate(self, prompt: str, config: ProviderConfig, timeout_s: float) -> str:
        name = config.provider.value
        try:
            self._sdk.configure(api_key=config.api_key)
            model = self._sdk.GenerativeModel(config.model)
            response = model.generate_content(prompt, request_options={'timeout': timeout_s})
        except google_exceptions.DeadlineExceeded as e:
            raise LLMTimeoutError(f'gemini request timed out after {int(timeout_s * 1000)}ms', provider=name, status=504) from e
        except (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied) as e:
            raise LLMAuthError(f'gemini auth error: {e.message}', provider=name, status=e.code) from e
        except (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests) as e:
            raise LLMRateLimitError(f'gemini rate limit (429): {e.message}', provider=name, status=429) from e
        except google_exceptions.ServerError as e:
            raise LLMServerError(f'gemini server error ({e.code}): {e.message}', provider=name, status=e.code) from e
        except google_exceptions.GoogleAPICallError as e:
            # an invalid key comes back as a plain 400
            if 'api key' in str(e.message).lower():
                raise LLMAuthError(f'gemini auth error: {e.message}', provider=name, status=e.code) from e
            raise LLMAPIError(f'gemini error ({e.code}): {e.message}', provider=name, status=e.code) from e
        except Exception as e:
            LOG.exception('gemini_unknown_error', exc_info=True)
            raise LLMAPIError(f'gemini error: {e}', provider=name) from e

        try:
            # the SDK accessors raise ValueError for blocked or multi-candidate responses
            parts = response.parts
            text = response.text if parts else None
        except ValueError as e:
            raise LLMEmptyResponseError(f'Unreadable response from provider: {e}', provider=name) from e
        if not parts:
            feedback = getattr(response, 'prompt_feedback', None)
            raise LLMEmptyResponseError(f'Empty response from provider (feedback: {feedback})', provider=name)
        if not text or not text.strip():
            raise LLMEmptyResponseError('Empty response from provider', provider=name)
        return text


_DEFAULT_ADAPTERS: Dict[ProviderKind, object] = {}


def get_adapter(kind: ProviderKind):
    if kind not in _DEFAULT_ADAPTERS:
        _DEFAULT_ADAPTERS[kind] = GeminiAdapter() if kind == ProviderKind.GEMINI else ChatCompletionAdapter()
    return _DEFAULT_ADAPTERS[kind]

"""Retry and fallback engine.

Per provider: retryable failures (rate limit, server, timeout, empty response)
are retried with ``base_delay * 2**attempt`` waits until ``max_retries`` is
used up. Anything else, or an exhausted provider, moves the chain to the next
provider. The first success returns; if every provider fails the caller gets
an :class:`LLMProvidersExhaustedError` listing each provider's last error.
Providers are never called concurrently.
"""
from __future__ import annotations

import time
from typing import Callable, List, Optional, Tuple

from tenacity import Retrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from enricher.utils import get_logger, log_llm_call, log_provider_fallback
from .adapters import get_adapter
from .errors import LLMAPIError, LLMProvidersExhaustedError, RETRYABLE_ERRORS
from .providers import LLMConfig, ProviderConfig

LOG = get_logger()


class LLMClient:
    def __init__(self, config: LLMConfig, adapters: Optional[dict] = None, sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self._sleep = sleep
        adapters = adapters or {}
        # bind each provider to its adapter once
        self._chain: List[Tuple[ProviderConfig, object]] = [
            (provider, adapters.get(provider.provider) or get_adapter(provider.provider))
            for provider in config.providers
        ]

    @property
    def provider_names(self) -> List[str]:
        return [p.provider.value for p, _ in self._chain]

    def _retrying(self, provider: ProviderConfig) -> Retrying:
        def _before_sleep(retry_state):
            exc = retry_state.outcome.exception()
            LOG.warning('llm_retry_scheduled', extra={
                'provider': provider.provider.value,
                'attempt': retry_state.attempt_number,
                'wait_s': retry_state.next_action.sleep if retry_state.next_action else None,
                'error': str(exc),
            })

        return Retrying(
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=wait_exponential(multiplier=self.config.retry_base_delay_s, exp_base=2),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            sleep=self._sleep,
            before_sleep=_before_sleep,
            reraise=True,
        )

    def _attempt(self, adapter, prompt: str, provider: ProviderConfig, attempts: list) -> str:
        attempts.append(1)
        start = time.time()
        try:
            text = adapter.generate(prompt, provider, self.config.timeout_s)
        except LLMAPIError as e:
            log_llm_call(provider.provider.value, provider.model, len(attempts), int((time.time() - start) * 1000), type(e).__name__, error=str(e))
            raise
        log_llm_call(provider.provider.value, provider.model, len(attempts), int((time.time() - start) * 1000), 'success')
        return text

    def generate(self, prompt: str) -> str:
        failures: List[Tuple[str, Exception]] = []
        for index, (provider, adapter) in enumerate(self._chain):
            name = provider.provider.value
            attempts: list = []
            try:
                text = self._retrying(provider)(self._attempt, adapter, prompt, provider, attempts)
            except LLMAPIError as e:
                failures.append((name, e))
                LOG.warning('llm_provider_failed', extra={
                    'provider': name,
                    'attempts': len(attempts),
                    'retryable': e.retryable,
                    'error': str(e),
                })
                continue
            if index > 0:
                log_provider_fallback(self.provider_names, name, [f'{p}: {err}' for p, err in failures])
            return text
        raise LLMProvidersExhaustedError(failures)


def generate_text_with_fallback(prompt: str, config: LLMConfig, sleep: Callable[[float], None] = time.sleep) -> str:
    return LLMClient(config, sleep=sleep).generate(prompt)

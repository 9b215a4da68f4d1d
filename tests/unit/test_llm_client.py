import pytest

from enricher.llm import (
    LLMAPIError,
    LLMAuthError,
    LLMClient,
    LLMEmptyResponseError,
    LLMProvidersExhaustedError,
    LLMRateLimitError,
    LLMServerError,
    ProviderKind,
)

from fixtures.mock_llm import FakeAdapter, llm_config

GEMINI = ProviderKind.GEMINI
OPENAI = ProviderKind.OPENAI


def _rate_limit():
    return LLMRateLimitError('gemini rate limit (429): quota', provider='gemini', status=429)


def _client(adapters, sleep, **config_kwargs):
    kinds = tuple(adapters.keys())
    return LLMClient(llm_config(*kinds, **config_kwargs), adapters=adapters, sleep=sleep)


def test_first_provider_success_needs_no_sleep(sleep_recorder):
    gemini = FakeAdapter(['hallo'])
    client = _client({GEMINI: gemini}, sleep_recorder)
    assert client.generate('prompt') == 'hallo'
    assert len(gemini.calls) == 1
    assert gemini.calls[0]['timeout_s'] == 5.0
    assert sleep_recorder.calls == []


def test_rate_limit_retries_with_exponential_backoff_then_falls_back(sleep_recorder):
    gemini = FakeAdapter([_rate_limit(), _rate_limit(), _rate_limit()])
    openai_adapter = FakeAdapter(['from openai'])
    client = _client({GEMINI: gemini, OPENAI: openai_adapter}, sleep_recorder, max_retries=2, retry_base_delay_s=2.0)

    assert client.generate('prompt') == 'from openai'
    assert len(gemini.calls) == 3
    assert len(openai_adapter.calls) == 1
    assert sleep_recorder.calls == [2.0, 4.0]


def test_retry_recovers_on_same_provider(sleep_recorder):
    gemini = FakeAdapter([LLMServerError('503', provider='gemini', status=503), 'ok'])
    openai_adapter = FakeAdapter()
    client = _client({GEMINI: gemini, OPENAI: openai_adapter}, sleep_recorder, retry_base_delay_s=1.0)
    assert client.generate('p') == 'ok'
    assert openai_adapter.calls == []
    assert sleep_recorder.calls == [1.0]


def test_auth_error_moves_on_without_retry(sleep_recorder):
    gemini = FakeAdapter([LLMAuthError('invalid key', provider='gemini', status=401)])
    openai_adapter = FakeAdapter(['ok'])
    client = _client({GEMINI: gemini, OPENAI: openai_adapter}, sleep_recorder)
    assert client.generate('p') == 'ok'
    assert len(gemini.calls) == 1
    assert sleep_recorder.calls == []


def test_unclassified_error_is_not_retried_but_chain_continues(sleep_recorder):
    gemini = FakeAdapter([LLMAPIError('gemini error (400): bad', provider='gemini', status=400)])
    openai_adapter = FakeAdapter(['ok'])
    client = _client({GEMINI: gemini, OPENAI: openai_adapter}, sleep_recorder)
    assert client.generate('p') == 'ok'
    assert len(gemini.calls) == 1


def test_empty_response_is_retried(sleep_recorder):
    gemini = FakeAdapter([LLMEmptyResponseError('Empty response from provider', provider='gemini'), 'ok'])
    client = _client({GEMINI: gemini}, sleep_recorder, retry_base_delay_s=0.5)
    assert client.generate('p') == 'ok'
    assert sleep_recorder.calls == [0.5]


def test_zero_retries_means_single_attempt(sleep_recorder):
    gemini = FakeAdapter([_rate_limit()])
    client = _client({GEMINI: gemini}, sleep_recorder, max_retries=0)
    with pytest.raises(LLMProvidersExhaustedError):
        client.generate('p')
    assert len(gemini.calls) == 1
    assert sleep_recorder.calls == []


def test_all_providers_failing_lists_each_error(sleep_recorder):
    gemini = FakeAdapter([_rate_limit()] * 3)
    openai_adapter = FakeAdapter([LLMAuthError('openai error (401): Incorrect API key', provider='openai', status=401)])
    client = _client({GEMINI: gemini, OPENAI: openai_adapter}, sleep_recorder, max_retries=2)

    with pytest.raises(LLMProvidersExhaustedError) as exc:
        client.generate('p')
    message = str(exc.value)
    assert message.startswith('All providers failed.')
    assert 'gemini: gemini rate limit (429): quota' in message
    assert 'openai: openai error (401): Incorrect API key' in message
    assert [name for name, _ in exc.value.failures] == ['gemini', 'openai']
    assert exc.value.rate_limited is True


def test_exhausted_without_rate_limit_is_not_rate_limited(sleep_recorder):
    gemini = FakeAdapter([LLMAuthError('denied', provider='gemini', status=403)])
    client = _client({GEMINI: gemini}, sleep_recorder)
    with pytest.raises(LLMProvidersExhaustedError) as exc:
        client.generate('p')
    assert exc.value.rate_limited is False


def test_provider_names_follow_chain_order(sleep_recorder):
    client = _client({OPENAI: FakeAdapter(), GEMINI: FakeAdapter()}, sleep_recorder)
    assert client.provider_names == ['openai', 'gemini']

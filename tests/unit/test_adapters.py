from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import openai
import pytest
from google.api_core import exceptions as google_exceptions

from enricher.llm import (
    ChatCompletionAdapter,
    GeminiAdapter,
    LLMAPIError,
    LLMAuthError,
    LLMClient,
    LLMEmptyResponseError,
    LLMRateLimitError,
    LLMServerError,
    LLMTimeoutError,
    ProviderKind,
    classify_status,
    get_adapter,
)

from fixtures.mock_llm import FakeAdapter, SleepRecorder, llm_config, provider

_REQUEST = httpx.Request('POST', 'https://api.example.test/v1/chat/completions')


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _chat_adapter(create):
    client = MagicMock()
    client.chat.completions.create.side_effect = create
    factory = MagicMock(return_value=client)
    return ChatCompletionAdapter(client_factory=factory), factory, client


def test_chat_adapter_returns_text_and_disables_sdk_retries():
    adapter, factory, client = _chat_adapter(lambda **kw: _completion('{"ok": true}'))
    text = adapter.generate('prompt', provider(ProviderKind.OPENAI, base_url='https://api.openai.com'), 12.0)
    assert text == '{"ok": true}'
    kwargs = factory.call_args.kwargs
    assert kwargs['base_url'] == 'https://api.openai.com/v1'
    assert kwargs['max_retries'] == 0
    assert kwargs['timeout'] == 12.0
    sent = client.chat.completions.create.call_args.kwargs
    assert sent['messages'] == [{'role': 'user', 'content': 'prompt'}]


@pytest.mark.parametrize('exc_cls,status,expected', [
    (openai.RateLimitError, 429, LLMRateLimitError),
    (openai.AuthenticationError, 401, LLMAuthError),
    (openai.InternalServerError, 503, LLMServerError),
    (openai.BadRequestError, 400, LLMAPIError),
])
def test_chat_adapter_classifies_status_errors(exc_cls, status, expected):
    def create(**kw):
        raise exc_cls('boom', response=httpx.Response(status, request=_REQUEST), body=None)

    adapter, _, _ = _chat_adapter(create)
    with pytest.raises(expected) as exc:
        adapter.generate('p', provider(ProviderKind.TOGETHER), 5.0)
    assert type(exc.value) is expected
    assert exc.value.status == status
    assert exc.value.provider == 'together'


def test_chat_adapter_timeout():
    def create(**kw):
        raise openai.APITimeoutError(request=_REQUEST)

    adapter, _, _ = _chat_adapter(create)
    with pytest.raises(LLMTimeoutError):
        adapter.generate('p', provider(ProviderKind.OPENAI), 5.0)


def test_chat_adapter_empty_content():
    adapter, _, _ = _chat_adapter(lambda **kw: _completion('   '))
    with pytest.raises(LLMEmptyResponseError):
        adapter.generate('p', provider(ProviderKind.OPENAI), 5.0)


def _gemini(response=None, error=None):
    sdk = MagicMock()
    model = sdk.GenerativeModel.return_value
    if error is not None:
        model.generate_content.side_effect = error
    else:
        model.generate_content.return_value = response
    return GeminiAdapter(sdk=sdk), sdk


def test_gemini_adapter_success():
    adapter, sdk = _gemini(SimpleNamespace(parts=['x'], text='antwort'))
    assert adapter.generate('p', provider(ProviderKind.GEMINI, model='gemini-test'), 7.0) == 'antwort'
    sdk.configure.assert_called_once_with(api_key='gemini-key')
    sdk.GenerativeModel.assert_called_once_with('gemini-test')
    _, kwargs = sdk.GenerativeModel.return_value.generate_content.call_args
    assert kwargs['request_options'] == {'timeout': 7.0}


@pytest.mark.parametrize('error,expected', [
    (google_exceptions.ResourceExhausted('quota exceeded'), LLMRateLimitError),
    (google_exceptions.Unauthenticated('bad credentials'), LLMAuthError),
    (google_exceptions.InvalidArgument('API key not valid. Please pass a valid API key.'), LLMAuthError),
    (google_exceptions.InternalServerError('oops'), LLMServerError),
    (google_exceptions.DeadlineExceeded('slow'), LLMTimeoutError),
    (google_exceptions.InvalidArgument('bad request'), LLMAPIError),
])
def test_gemini_adapter_classifies_errors(error, expected):
    adapter, _ = _gemini(error=error)
    with pytest.raises(expected) as exc:
        adapter.generate('p', provider(ProviderKind.GEMINI), 5.0)
    assert type(exc.value) is expected


def test_gemini_adapter_blocked_response_is_empty():
    adapter, _ = _gemini(SimpleNamespace(parts=[], text='', prompt_feedback='SAFETY'))
    with pytest.raises(LLMEmptyResponseError):
        adapter.generate('p', provider(ProviderKind.GEMINI), 5.0)


class _MultiCandidateResponse:
    prompt_feedback = None

    @property
    def parts(self):
        raise ValueError('The `response.parts` quick accessor only works for a single candidate.')

    @property
    def text(self):
        raise ValueError('The `response.text` quick accessor only works for a single candidate.')


def test_gemini_adapter_unreadable_response_is_empty():
    adapter, _ = _gemini(_MultiCandidateResponse())
    with pytest.raises(LLMEmptyResponseError) as exc:
        adapter.generate('p', provider(ProviderKind.GEMINI), 5.0)
    assert exc.value.retryable is True


def test_gemini_unreadable_response_falls_back_to_next_provider():
    gemini, _ = _gemini(_MultiCandidateResponse())
    fallback = FakeAdapter(['{"ok": true}'])
    client = LLMClient(
        llm_config(ProviderKind.GEMINI, ProviderKind.OPENAI, max_retries=0),
        adapters={ProviderKind.GEMINI: gemini, ProviderKind.OPENAI: fallback},
        sleep=SleepRecorder(),
    )
    assert client.generate('p') == '{"ok": true}'
    assert len(fallback.calls) == 1


def test_classify_status():
    assert isinstance(classify_status(403, 'x', 'openai'), LLMAuthError)
    assert isinstance(classify_status(408, 'x', 'openai'), LLMTimeoutError)
    assert isinstance(classify_status(500, 'x', 'openai'), LLMServerError)
    plain = classify_status(None, 'x', 'openai')
    assert type(plain) is LLMAPIError
    assert plain.retryable is False


def test_get_adapter_by_kind():
    assert isinstance(get_adapter(ProviderKind.GEMINI), GeminiAdapter)
    for kind in (ProviderKind.OPENAI, ProviderKind.TOGETHER, ProviderKind.OPENAI_COMPATIBLE):
        assert isinstance(get_adapter(kind), ChatCompletionAdapter)

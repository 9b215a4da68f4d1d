import os
import pytest
from pathlib import Path

from dotenv import load_dotenv

# load test env first
env_path = Path(__file__).resolve().parents[1] / '.env.test'
if env_path.exists():
    load_dotenv(env_path)

os.environ.setdefault('TESTING', '1')
# keep test runs from writing logs/ into the working tree
os.environ['LOG_TO_FILE'] = 'false'

from enricher.utils import Settings

from fixtures.mock_llm import FakeAdapter, SleepRecorder
from fixtures.mock_anki import FakeAnki

_PROVIDER_ENV = (
    'LLM_PROVIDER', 'LLM_FALLBACK_PROVIDERS',
    'GEMINI_API_KEY', 'OPENAI_API_KEY', 'TOGETHER_API_KEY', 'LLM_API_KEY',
    'GEMINI_MODEL', 'OPENAI_MODEL', 'TOGETHER_MODEL', 'LLM_MODEL',
    'OPENAI_BASE_URL', 'TOGETHER_BASE_URL', 'LLM_BASE_URL',
    'CHECKPOINT_BACKEND', 'REDIS_URL',
)


@pytest.fixture(autouse=True)
def isolate_provider_env(monkeypatch):
    # a developer's real keys must never leak into a test run
    for name in _PROVIDER_ENV:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def make_settings():
    def _make(**overrides):
        values = {'llm_request_delay_ms': 0, 'llm_retry_base_delay_ms': 0, 'checkpoint_backend': 'memory'}
        values.update(overrides)
        return Settings(_env_file=None, **values)
    return _make


@pytest.fixture
def fake_adapter():
    return FakeAdapter


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def fake_anki():
    return FakeAnki

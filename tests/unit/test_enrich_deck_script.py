import importlib.util
from pathlib import Path
from types import SimpleNamespace

import pytest

from enricher.cards import MemoryCheckpointStore, checkpoint_key
from enricher.llm import LLMClient, LLMRateLimitError, ProviderKind

from fixtures.mock_llm import MOCK_ENRICHMENT_RESPONSE, FakeAdapter, SleepRecorder, llm_config
from fixtures.mock_anki import FakeAnki, deck_cards

SCRIPT = Path(__file__).resolve().parents[2] / 'scripts' / 'enrich_deck.py'


@pytest.fixture(scope='module')
def script():
    spec = importlib.util.spec_from_file_location('enrich_deck_script', SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _args(**kw):
    values = {'deck': 'Kardio', 'limit': None, 'write_back': False, 'reset': False}
    values.update(kw)
    return SimpleNamespace(**values)


def _client(adapter):
    return LLMClient(llm_config(max_retries=0), adapters={ProviderKind.GEMINI: adapter}, sleep=SleepRecorder())


def test_run_skips_enriched_notes_and_writes_back(script, make_settings):
    anki = FakeAnki(cards=deck_cards(5), enriched_ids={101})
    store = MemoryCheckpointStore()
    code = script.run(_args(write_back=True), make_settings(enrich_batch_size=2), anki, _client(FakeAdapter(default=MOCK_ENRICHMENT_RESPONSE)), store)

    assert code == 0
    progress = store.load(checkpoint_key('Kardio'))
    assert progress.processed == 4
    assert progress.total == 4
    assert progress.skipped == 1
    assert progress.synced == 4
    assert [c.note_id for c in progress.enriched] == [100, 102, 103, 104]
    assert sorted(anki.written) == [100, 102, 103, 104]


def test_run_stops_on_rate_limit_and_resumes(script, make_settings):
    anki = FakeAnki(cards=deck_cards(4))
    store = MemoryCheckpointStore()
    settings = make_settings(enrich_batch_size=5)
    limited = FakeAdapter([MOCK_ENRICHMENT_RESPONSE, LLMRateLimitError('quota', provider='gemini', status=429)])

    assert script.run(_args(write_back=True), settings, anki, _client(limited), store) == 2
    progress = store.load(checkpoint_key('Kardio'))
    assert progress.processed == 1
    assert progress.errors == []
    assert list(anki.written) == [100]

    resumed = FakeAdapter(default=MOCK_ENRICHMENT_RESPONSE)
    assert script.run(_args(write_back=True), settings, anki, _client(resumed), store) == 0
    assert len(resumed.calls) == 3
    assert 'Frage 1' in resumed.calls[0]['prompt']
    progress = store.load(checkpoint_key('Kardio'))
    assert progress.processed == 4
    assert [c.note_id for c in progress.enriched] == [100, 101, 102, 103]
    assert progress.synced == 4


def test_reset_discards_checkpoint(script, make_settings):
    anki = FakeAnki(cards=deck_cards(2))
    store = MemoryCheckpointStore()
    settings = make_settings(enrich_batch_size=5)
    script.run(_args(), settings, anki, _client(FakeAdapter(default=MOCK_ENRICHMENT_RESPONSE)), store)

    again = FakeAdapter(default=MOCK_ENRICHMENT_RESPONSE)
    script.run(_args(reset=True), settings, anki, _client(again), store)
    assert len(again.calls) == 2

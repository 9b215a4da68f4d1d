import json

import pytest

from enricher.cards import (
    SKIPPED_EXPLANATION,
    BatchEnricher,
    CardEnricher,
    CardInput,
    MemoryCheckpointStore,
    checkpoint_key,
    clamp_limit,
    enrich_deck_batch,
    enrich_many,
    is_degraded,
    is_rate_limited,
)
from enricher.llm import LLMClient, LLMRateLimitError, ProviderKind

from fixtures.mock_llm import MOCK_ENRICHMENT_RESPONSE, FakeAdapter, SleepRecorder, llm_config
from fixtures.mock_anki import FakeAnki, deck_cards


def _rate_limit():
    return LLMRateLimitError('gemini rate limit (429): quota', provider='gemini', status=429)


def _batch(adapter, batch_sleep, delay=0.5):
    client = LLMClient(llm_config(ProviderKind.GEMINI, max_retries=0), adapters={ProviderKind.GEMINI: adapter}, sleep=SleepRecorder())
    return BatchEnricher(CardEnricher(client), request_delay_s=delay, sleep=batch_sleep)


def _cards(n):
    return [CardInput(front=f'Frage {i}', back=f'Antwort {i}') for i in range(n)]


def test_cards_are_enriched_in_order_with_pacing(sleep_recorder):
    adapter = FakeAdapter(default=MOCK_ENRICHMENT_RESPONSE)
    progress = []
    outcome = _batch(adapter, sleep_recorder).run(_cards(3), on_progress=lambda done, total: progress.append((done, total)))

    assert [c.front for c in outcome.enriched] == ['Frage 0', 'Frage 1', 'Frage 2']
    assert all(f'FRAGE: Frage {i}' in call['prompt'] for i, call in enumerate(adapter.calls))
    assert sleep_recorder.calls == [0.5, 0.5]
    assert progress == [(1, 3), (2, 3), (3, 3)]
    assert outcome.attempted == 3
    assert outcome.rate_limited is False


def test_rate_limit_stops_batch_and_fills_placeholders(sleep_recorder):
    adapter = FakeAdapter([MOCK_ENRICHMENT_RESPONSE, _rate_limit()], default=MOCK_ENRICHMENT_RESPONSE)
    outcome = _batch(adapter, sleep_recorder).run(_cards(4))

    assert len(adapter.calls) == 2
    assert outcome.rate_limited is True
    assert outcome.attempted == 2
    assert len(outcome.enriched) == 4
    assert is_rate_limited(outcome.enriched[1])
    for placeholder in outcome.enriched[2:]:
        assert placeholder.explanation == SKIPPED_EXPLANATION
        assert placeholder.solution == placeholder.back
    assert [c.front for c in outcome.enriched] == ['Frage 0', 'Frage 1', 'Frage 2', 'Frage 3']


def test_enrich_many_returns_one_result_per_card(sleep_recorder):
    client = LLMClient(llm_config(max_retries=0), adapters={ProviderKind.GEMINI: FakeAdapter(default=MOCK_ENRICHMENT_RESPONSE)}, sleep=SleepRecorder())
    results = enrich_many(_cards(2), CardEnricher(client), request_delay_s=0, sleep=sleep_recorder)
    assert len(results) == 2
    assert sleep_recorder.calls == []


class _Stop(Exception):
    pass


def _responses(n):
    return [json.dumps({'lösung': f'Lösung {i}', 'erklärung': f'Erklärung {i}'}, ensure_ascii=False) for i in range(n)]


def _stop_after(count):
    def on_progress(done, total):
        if done == count:
            raise _Stop()
    return on_progress


def test_checkpoint_resume_matches_uninterrupted_run(sleep_recorder):
    cards = _cards(4)
    full = _batch(FakeAdapter(_responses(4)), sleep_recorder).run(cards)

    store = MemoryCheckpointStore()
    key = checkpoint_key('Kardiologie')
    with pytest.raises(_Stop):
        _batch(FakeAdapter(_responses(2)), sleep_recorder).run_with_checkpoint(key, cards, store, deck_name='Kardiologie', on_progress=_stop_after(2))
    stored = [c.to_wire() for c in store.load(key).enriched]
    assert store.load(key).processed == 2

    adapter = FakeAdapter(_responses(4)[2:])
    resumed = _batch(adapter, sleep_recorder).run_with_checkpoint(key, cards, store)
    assert len(adapter.calls) == 2
    assert 'Frage 2' in adapter.calls[0]['prompt']
    assert resumed.attempted == 2
    assert [c.to_wire() for c in resumed.enriched[:2]] == stored
    assert [c.to_wire() for c in resumed.enriched] == [c.to_wire() for c in full.enriched]
    assert store.load(key).processed == 4


def test_checkpoint_rate_limited_card_is_requested_again(sleep_recorder):
    store = MemoryCheckpointStore()
    key = checkpoint_key('Kardiologie')
    cards = _cards(3)
    responses = _responses(3)

    first = _batch(FakeAdapter([responses[0], _rate_limit()]), sleep_recorder).run_with_checkpoint(key, cards, store, deck_name='Kardiologie')
    assert first.rate_limited is True
    assert first.attempted == 2
    assert len(first.enriched) == 3
    assert is_rate_limited(first.enriched[1])
    assert first.enriched[2].explanation == SKIPPED_EXPLANATION
    saved = store.load(key)
    assert saved.processed == 1
    assert saved.total == 3
    assert saved.errors == []
    stored = [c.to_wire() for c in saved.enriched]

    adapter = FakeAdapter(responses[1:])
    second = _batch(adapter, sleep_recorder).run_with_checkpoint(key, cards, store)
    assert len(adapter.calls) == 2
    assert 'Frage 1' in adapter.calls[0]['prompt']
    assert [c.to_wire() for c in second.enriched[:1]] == stored
    full = _batch(FakeAdapter(list(responses)), sleep_recorder).run(cards)
    assert [c.to_wire() for c in second.enriched] == [c.to_wire() for c in full.enriched]


def test_checkpoint_on_card_updates_are_saved(sleep_recorder):
    store = MemoryCheckpointStore()
    key = checkpoint_key('Deck')
    seen = []

    def on_card(offset, card, progress):
        seen.append(offset)
        progress.synced += 1

    _batch(FakeAdapter(_responses(2)), sleep_recorder).run_with_checkpoint(key, _cards(2), store, on_card=on_card)
    assert seen == [0, 1]
    assert store.load(key).synced == 2


def test_enrich_deck_batch_advances_offset(sleep_recorder):
    anki = FakeAnki(cards=deck_cards(7))
    batch = _batch(FakeAdapter(default=MOCK_ENRICHMENT_RESPONSE), sleep_recorder, delay=0)

    first = enrich_deck_batch(anki, 'Deck', batch, batch_size=5, offset=0)
    assert (first.next_offset, first.total, first.has_more) == (5, 7, True)
    assert len(first.enriched) == 5

    second = enrich_deck_batch(anki, 'Deck', batch, batch_size=5, offset=first.next_offset)
    assert (second.next_offset, second.has_more) == (7, False)
    assert [c.note_id for c in second.enriched] == [105, 106]

    past_end = enrich_deck_batch(anki, 'Deck', batch, batch_size=5, offset=10)
    assert past_end.enriched == []
    assert past_end.next_offset == 7
    assert past_end.to_wire()['hasMore'] is False


def test_enrich_deck_batch_rate_limit_resumes_after_attempted(sleep_recorder):
    anki = FakeAnki(cards=deck_cards(6))
    batch = _batch(FakeAdapter([MOCK_ENRICHMENT_RESPONSE, _rate_limit()]), sleep_recorder, delay=0)
    result = enrich_deck_batch(anki, 'Deck', batch, batch_size=5, offset=0)
    assert result.rate_limited is True
    assert result.next_offset == 2
    assert result.has_more is True
    assert is_rate_limited(result.enriched[1])
    wire = result.to_wire()
    assert wire['nextOffset'] == 2
    assert wire['rateLimited'] is True

    adapter = FakeAdapter(default=MOCK_ENRICHMENT_RESPONSE)
    resumed = enrich_deck_batch(anki, 'Deck', _batch(adapter, sleep_recorder, delay=0), batch_size=5, offset=result.next_offset)
    assert [c.note_id for c in resumed.enriched] == [102, 103, 104, 105]
    assert not any('Frage 1' in call['prompt'] for call in adapter.calls)


def test_enrich_deck_batch_respects_limit(sleep_recorder):
    anki = FakeAnki(cards=deck_cards(10))
    batch = _batch(FakeAdapter(default=MOCK_ENRICHMENT_RESPONSE), sleep_recorder, delay=0)
    result = enrich_deck_batch(anki, 'Deck', batch, batch_size=5, limit=3)
    assert result.total == 3
    assert result.next_offset == 3


def test_clamp_limit():
    assert clamp_limit(None) == 100
    assert clamp_limit(0) == 100
    assert clamp_limit(1000) == 500
    assert clamp_limit(-5) == 1
    assert clamp_limit(42) == 42


def test_is_degraded(sleep_recorder):
    outcome = _batch(FakeAdapter([_rate_limit()]), sleep_recorder).run(_cards(2))
    assert all(is_degraded(c) for c in outcome.enriched)
    ok = _batch(FakeAdapter([MOCK_ENRICHMENT_RESPONSE]), sleep_recorder).run(_cards(1))
    assert not is_degraded(ok.enriched[0])

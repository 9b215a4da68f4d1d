import json

import redis

from enricher.cards import (
    BatchError,
    BatchProgress,
    EnrichedCard,
    FileCheckpointStore,
    MemoryCheckpointStore,
    RedisCheckpointStore,
    checkpoint_key,
    get_checkpoint_store,
)
import enricher.cards.checkpoint as checkpoint_mod


def _progress(processed=2):
    return BatchProgress(
        deck_name='Innere Medizin',
        processed=processed,
        total=5,
        enriched=[EnrichedCard(front='F', back='B', solution='L', explanation='E')],
        errors=[BatchError(offset=1, message='Fehler bei der Generierung: x', front='F1')],
    )


def test_checkpoint_key_replaces_non_alphanumerics():
    assert checkpoint_key('Innere Medizin::Kardiologie') == 'deck_Innere_Medizin__Kardiologie'
    assert checkpoint_key('Prüfung 2024') == 'deck_Pr_fung_2024'


def test_progress_serializes_with_wire_names():
    data = json.loads(_progress().to_json())
    assert data['deckName'] == 'Innere Medizin'
    assert 'startedAt' in data and 'updatedAt' in data
    assert data['enriched'][0]['lösung'] == 'L'
    restored = BatchProgress.from_json(_progress().to_json())
    assert restored.processed == 2
    assert restored.enriched[0].solution == 'L'
    assert restored.errors[0].offset == 1


def test_file_store_keeps_keys_independent(tmp_path):
    path = tmp_path / 'state' / 'progress.json'
    store = FileCheckpointStore(str(path))
    assert store.load('deck_a') is None

    store.save('deck_a', _progress(2))
    store.save('deck_b', _progress(4))
    assert path.exists()
    assert store.load('deck_a').processed == 2
    assert store.load('deck_b').processed == 4

    store.clear('deck_a')
    assert store.load('deck_a') is None
    assert store.load('deck_b').processed == 4
    # no temp files left behind
    assert [p.name for p in path.parent.iterdir()] == ['progress.json']


def test_file_store_ignores_corrupt_document(tmp_path):
    path = tmp_path / 'progress.json'
    path.write_text('{not json', encoding='utf-8')
    store = FileCheckpointStore(str(path))
    assert store.load('deck_a') is None
    store.save('deck_a', _progress(1))
    assert store.load('deck_a').processed == 1


def test_memory_store_roundtrip():
    store = MemoryCheckpointStore()
    store.save('k', _progress(3))
    assert store.load('k').processed == 3
    store.clear('k')
    assert store.load('k') is None


class _FakeRedis:
    def __init__(self):
        self.store = {}
        self.ttls = {}

    def get(self, k):
        return self.store.get(k)

    def set(self, k, v, ex=None):
        self.store[k] = v
        self.ttls[k] = ex

    def delete(self, k):
        self.store.pop(k, None)


def test_redis_store_uses_prefix_and_ttl():
    fake = _FakeRedis()
    store = RedisCheckpointStore(fake, ttl_seconds=60)
    store.save('deck_a', _progress(2))
    assert 'enrich:checkpoint:deck_a' in fake.store
    assert fake.ttls['enrich:checkpoint:deck_a'] == 60
    assert store.load('deck_a').processed == 2
    store.clear('deck_a')
    assert store.load('deck_a') is None


def test_store_selection(make_settings, tmp_path, monkeypatch):
    assert isinstance(get_checkpoint_store(make_settings(checkpoint_backend='memory')), MemoryCheckpointStore)

    file_path = str(tmp_path / 'p.json')
    store = get_checkpoint_store(make_settings(checkpoint_backend='file', checkpoint_file=file_path))
    assert isinstance(store, FileCheckpointStore)
    assert store.path == file_path

    # redis without a URL falls back to the file store
    assert isinstance(get_checkpoint_store(make_settings(checkpoint_backend='redis', checkpoint_file=file_path)), FileCheckpointStore)

    def unreachable(url, ttl_seconds):
        raise redis.ConnectionError('connection refused')

    monkeypatch.setattr(checkpoint_mod.RedisCheckpointStore, 'from_url', staticmethod(unreachable))
    store = get_checkpoint_store(make_settings(checkpoint_backend='redis', redis_url='redis://localhost:6399/0', checkpoint_file=file_path))
    assert isinstance(store, FileCheckpointStore)

"""Batch progress persistence.

A checkpoint is one :class:`BatchProgress` document stored under a key derived
from the deck name. Stores expose ``load / save / clear`` and nothing else.
"""
from __future__ import annotations

import os
import re
import json
import tempfile
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

import redis
from pydantic import BaseModel, ConfigDict, Field

from enricher.utils import Settings, get_logger
from .models import EnrichedCard

LOG = get_logger()

_KEY_RE = re.compile(r'[^A-Za-z0-9]')


def checkpoint_key(deck_name: str) -> str:
    return 'deck_' + _KEY_RE.sub('_', deck_name or '')


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class BatchError(BaseModel):
    offset: int
    message: str
    front: str = ''
    timestamp: str = Field(default_factory=utc_now)


class BatchProgress(BaseModel):
    """Resume state. ``processed`` is the offset of the first card not yet attempted."""
    model_config = ConfigDict(populate_by_name=True)

    deck_name: Optional[str] = Field(None, alias='deckName')
    processed: int = 0
    total: int = 0
    skipped: int = 0
    synced: int = 0
    enriched: List[EnrichedCard] = Field(default_factory=list)
    errors: List[BatchError] = Field(default_factory=list)
    started_at: str = Field(default_factory=utc_now, alias='startedAt')
    updated_at: str = Field(default_factory=utc_now, alias='updatedAt')

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str) -> 'BatchProgress':
        return cls.model_validate_json(raw)


class CheckpointStore:
    def load(self, key: str) -> Optional[BatchProgress]:
        raise NotImplementedError

    def save(self, key: str, progress: BatchProgress) -> None:
        raise NotImplementedError

    def clear(self, key: str) -> None:
        raise NotImplementedError


class MemoryCheckpointStore(CheckpointStore):
    def __init__(self):
        self._data: Dict[str, str] = {}

    def load(self, key: str) -> Optional[BatchProgress]:
        raw = self._data.get(key)
        return BatchProgress.from_json(raw) if raw else None

    def save(self, key: str, progress: BatchProgress) -> None:
        self._data[key] = progress.to_json()

    def clear(self, key: str) -> None:
        self._data.pop(key, None)


class FileCheckpointStore(CheckpointStore):
    """All checkpoints in one JSON document, ``{key: progress}``.

    Writes go to a temp file in the same directory and are moved into place,
    so a crash mid-write leaves the previous document intact.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _read_all(self) -> Dict[str, dict]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            LOG.warning('checkpoint_file_corrupt', extra={'path': self.path, 'error': str(e)})
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: Dict[str, dict]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix='.checkpoint-', suffix='.json', dir=directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except Exception:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise

    def load(self, key: str) -> Optional[BatchProgress]:
        with self._lock:
            entry = self._read_all().get(key)
        return BatchProgress.model_validate(entry) if entry else None

    def save(self, key: str, progress: BatchProgress) -> None:
        with self._lock:
            data = self._read_all()
            data[key] = json.loads(progress.to_json())
            self._write_all(data)

    def clear(self, key: str) -> None:
        with self._lock:
            data = self._read_all()
            if data.pop(key, None) is not None:
                self._write_all(data)


class RedisCheckpointStore(CheckpointStore):
    def __init__(self, client, ttl_seconds: int = 7 * 24 * 3600, prefix: str = 'enrich:checkpoint:'):
        self._client = client
        self.ttl = ttl_seconds
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int) -> 'RedisCheckpointStore':
        client = redis.from_url(url, decode_responses=True)
        client.ping()
        return cls(client, ttl_seconds)

    def _key(self, key: str) -> str:
        return f'{self.prefix}{key}'

    def load(self, key: str) -> Optional[BatchProgress]:
        raw = self._client.get(self._key(key))
        return BatchProgress.from_json(raw) if raw else None

    def save(self, key: str, progress: BatchProgress) -> None:
        self._client.set(self._key(key), progress.to_json(), ex=self.ttl)

    def clear(self, key: str) -> None:
        self._client.delete(self._key(key))


def get_checkpoint_store(settings: Settings) -> CheckpointStore:
    backend = (settings.checkpoint_backend or 'file').strip().lower()
    if backend == 'memory':
        return MemoryCheckpointStore()
    if backend == 'redis':
        if settings.redis_url:
            try:
                store = RedisCheckpointStore.from_url(settings.redis_url, settings.checkpoint_ttl_seconds)
                LOG.info('checkpoint_store_redis', extra={'redis_url': settings.redis_url})
                return store
            except redis.RedisError as e:
                LOG.warning('Redis not available for checkpoints, using file store', extra={'error': str(e)})
        else:
            LOG.warning('REDIS_URL not set, using file checkpoint store')
    elif backend != 'file':
        LOG.warning('unknown_checkpoint_backend', extra={'backend': backend})
    return FileCheckpointStore(settings.checkpoint_file)

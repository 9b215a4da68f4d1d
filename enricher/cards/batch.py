"""Sequential batch enrichment with pacing, checkpoints and early stop.

Cards are enriched strictly in input order, one at a time, with a fixed sleep
between calls. A card that comes back rate-limited stops the run: every card
after it gets a "skipped" placeholder instead of another doomed request, and
the caller retries that range later.
"""
from __future__ import annotations

import time
from typing import Callable, Iterator, List, Optional

from pydantic import BaseModel, Field

from enricher.utils import get_logger, log_batch_progress
from .checkpoint import BatchError, BatchProgress, CheckpointStore, checkpoint_key, utc_now
from .enricher import CardEnricher, has_error, is_rate_limited
from .models import CardInput, EnrichedCard

LOG = get_logger()

SKIPPED_EXPLANATION = 'Übersprungen wegen Rate-Limit. Bitte später erneut versuchen oder Anbieter wechseln.'

MIN_DECK_LIMIT = 1
MAX_DECK_LIMIT = 500
DEFAULT_DECK_LIMIT = 100

ProgressCallback = Callable[[int, int], None]
# (offset, enriched card, progress) before the checkpoint is saved
CardCallback = Callable[[int, EnrichedCard, BatchProgress], None]


class BatchOutcome(BaseModel):
    enriched: List[EnrichedCard] = Field(default_factory=list)
    # cards a generation was made for; placeholders excluded
    attempted: int = 0
    rate_limited: bool = False


class DeckBatchResult(BaseModel):
    enriched: List[EnrichedCard] = Field(default_factory=list)
    next_offset: int = 0
    total: int = 0
    has_more: bool = False
    rate_limited: bool = False

    def to_wire(self) -> dict:
        return {
            'enriched': [c.to_wire() for c in self.enriched],
            'nextOffset': self.next_offset,
            'total': self.total,
            'hasMore': self.has_more,
            'rateLimited': self.rate_limited,
        }


def is_degraded(card: EnrichedCard) -> bool:
    """True for failure records and skipped placeholders."""
    return has_error(card) or card.explanation == SKIPPED_EXPLANATION


def skipped_card(card: CardInput) -> EnrichedCard:
    return EnrichedCard(
        front=card.front,
        back=card.back,
        solution=card.back,
        explanation=SKIPPED_EXPLANATION,
        options=card.options,
        answers=card.answers,
        note_id=card.note_id,
    )


class BatchEnricher:
    def __init__(self, enricher: CardEnricher, request_delay_s: float = 0.5, sleep: Callable[[float], None] = time.sleep):
        self.enricher = enricher
        self.request_delay_s = max(0.0, request_delay_s)
        self._sleep = sleep

    def iter_enrich(self, cards: List[CardInput]) -> Iterator[EnrichedCard]:
        """Yield enriched cards in order; stops right after a rate-limited one."""
        for i, card in enumerate(cards):
            if i > 0 and self.request_delay_s:
                self._sleep(self.request_delay_s)
            enriched = self.enricher.enrich_one(card)
            yield enriched
            if is_rate_limited(enriched):
                return

    def run(self, cards: List[CardInput], on_progress: Optional[ProgressCallback] = None) -> BatchOutcome:
        total = len(cards)
        results: List[EnrichedCard] = []
        rate_limited = False
        for enriched in self.iter_enrich(cards):
            results.append(enriched)
            if on_progress:
                on_progress(len(results), total)
            rate_limited = is_rate_limited(enriched)
        attempted = len(results)
        if rate_limited:
            LOG.warning('batch_stopped_rate_limited', extra={'attempted': attempted, 'skipped': total - attempted})
            results.extend(skipped_card(c) for c in cards[attempted:])
        log_batch_progress(attempted, total, rate_limited=rate_limited)
        return BatchOutcome(enriched=results, attempted=attempted, rate_limited=rate_limited)

    def run_with_checkpoint(self, key: str, cards: List[CardInput], store: CheckpointStore, deck_name: Optional[str] = None, on_progress: Optional[ProgressCallback] = None, on_card: Optional[CardCallback] = None) -> BatchOutcome:
        """Resume ``cards`` from the progress stored under ``key``.

        Results already in the checkpoint are reused as stored; only cards at
        index ``processed`` and later are requested. A rate-limited card is not
        stored and ``processed`` stays on it, so the next run requests it again.
        ``on_card`` sees each new result before progress is saved, so counters
        it updates are persisted with it. The checkpoint is never cleared here.
        """
        total = len(cards)
        progress = store.load(key)
        if progress is None:
            progress = BatchProgress(deck_name=deck_name, total=total)
        elif progress.total != total:
            LOG.warning('checkpoint_total_mismatch', extra={'checkpoint_key': key, 'stored_total': progress.total, 'total': total})
            progress.total = total

        start = min(progress.processed, total)
        if start:
            LOG.info('checkpoint_resume', extra={'checkpoint_key': key, 'processed': start, 'total': total})

        attempted = 0
        rate_limited = False
        for enriched in self.iter_enrich(cards[start:]):
            offset = start + attempted
            attempted += 1
            rate_limited = is_rate_limited(enriched)
            if not rate_limited:
                progress.enriched.append(enriched)
                progress.processed = offset + 1
                if has_error(enriched):
                    progress.errors.append(BatchError(offset=offset, front=enriched.front, message=enriched.explanation))
            if on_card:
                on_card(offset, enriched, progress)
            progress.updated_at = utc_now()
            store.save(key, progress)
            log_batch_progress(offset + 1, total, rate_limited=rate_limited, checkpoint_key=key)
            if on_progress:
                on_progress(offset + 1, total)
            last = enriched

        results = list(progress.enriched)
        if rate_limited:
            results.append(last)
            results.extend(skipped_card(c) for c in cards[progress.processed + 1:])
        return BatchOutcome(enriched=results, attempted=attempted, rate_limited=rate_limited)


def enrich_many(cards: List[CardInput], enricher: CardEnricher, request_delay_s: float = 0.5, on_progress: Optional[ProgressCallback] = None, sleep: Callable[[float], None] = time.sleep) -> List[EnrichedCard]:
    return BatchEnricher(enricher, request_delay_s=request_delay_s, sleep=sleep).run(cards, on_progress=on_progress).enriched


def clamp_limit(limit: Optional[int]) -> int:
    if not limit:
        return DEFAULT_DECK_LIMIT
    return max(MIN_DECK_LIMIT, min(MAX_DECK_LIMIT, int(limit)))


def enrich_deck_batch(anki, deck_name: str, batch: BatchEnricher, batch_size: int = 5, limit: Optional[int] = None, offset: int = 0) -> DeckBatchResult:
    """Enrich one ``batch_size`` slice of a deck starting at ``offset``.

    The deck is capped at ``limit`` cards. ``next_offset`` advances by the
    number of cards actually attempted, so a rate-limited slice is resumed at
    the first skipped card. The rate-limited card itself counts as attempted:
    it is not requested again, and its rate-limit record is the final result
    for that offset.
    """
    cards = anki.get_cards_from_deck(deck_name)[:clamp_limit(limit)]
    total = len(cards)
    offset = max(0, int(offset or 0))
    chunk = cards[offset:offset + max(1, batch_size)]
    if not chunk:
        return DeckBatchResult(enriched=[], next_offset=min(offset, total), total=total, has_more=False)

    outcome = batch.run(chunk)
    next_offset = offset + outcome.attempted
    LOG.info('deck_batch_enriched', extra={
        'deck_name': deck_name,
        'checkpoint_key': checkpoint_key(deck_name),
        'offset': offset,
        'next_offset': next_offset,
        'total': total,
    })
    return DeckBatchResult(
        enriched=outcome.enriched,
        next_offset=next_offset,
        total=total,
        has_more=next_offset < total,
        rate_limited=outcome.rate_limited,
    )

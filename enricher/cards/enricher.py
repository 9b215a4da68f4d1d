from __future__ import annotations

import time

from enricher.utils import get_logger, log_card_enrichment, truncate
from enricher.llm import (
    LLMClient,
    LLMConfigurationError,
    LLMError,
    LLMProvidersExhaustedError,
    LLMRateLimitError,
    LLMValidationError,
    safe_json_loads,
    normalize_enrichment,
)
from .models import CardInput, EnrichedCard, GradingRow
from .prompts import build_prompt, build_prompt_context

LOG = get_logger()

RATE_LIMIT_MARKER = 'Rate-Limit/Quota erreicht'
GENERATION_ERROR_PREFIX = 'Fehler bei der Generierung'
PARSE_ERROR_PREFIX = 'Fehler bei der JSON-Verarbeitung'


def rate_limit_explanation(detail: str) -> str:
    return f'{RATE_LIMIT_MARKER}: {detail}. Bitte später erneut versuchen oder Anbieter wechseln.'


def is_rate_limited(card: EnrichedCard) -> bool:
    return (card.explanation or '').startswith(RATE_LIMIT_MARKER)


def has_error(card: EnrichedCard) -> bool:
    text = card.explanation or ''
    return text.startswith((RATE_LIMIT_MARKER, GENERATION_ERROR_PREFIX, PARSE_ERROR_PREFIX))


def _is_rate_limit_error(err: Exception) -> bool:
    if isinstance(err, LLMProvidersExhaustedError):
        return err.rate_limited
    return isinstance(err, LLMRateLimitError)


class CardEnricher:
    """Enriches one card at a time through an :class:`LLMClient`.

    ``enrich_one`` never raises for provider or parse failures; the returned
    card then carries ``solution == back`` and a diagnostic explanation.
    """

    def __init__(self, client: LLMClient):
        self.client = client

    def _fallback(self, card: CardInput, explanation: str) -> EnrichedCard:
        return EnrichedCard(
            front=card.front,
            back=card.back,
            solution=card.back,
            explanation=explanation,
            options=card.options,
            answers=card.answers,
            note_id=card.note_id,
        )

    def enrich_one(self, card: CardInput) -> EnrichedCard:
        start = time.time()
        ctx = build_prompt_context(card.front, card.back, card.options, card.answers)
        prompt = build_prompt(ctx)
        preview = truncate(ctx.front, 60)

        try:
            text = self.client.generate(prompt)
            fields = normalize_enrichment(safe_json_loads(text, expect='object'), fallback_answer=card.back)
        except LLMConfigurationError:
            raise
        except LLMValidationError as e:
            log_card_enrichment(preview, ctx.template.value, int((time.time() - start) * 1000), 'parse_error')
            return self._fallback(card, f'{PARSE_ERROR_PREFIX}: {e}')
        except LLMError as e:
            status = 'rate_limited' if _is_rate_limit_error(e) else 'generation_error'
            log_card_enrichment(preview, ctx.template.value, int((time.time() - start) * 1000), status)
            if _is_rate_limit_error(e):
                return self._fallback(card, rate_limit_explanation(str(e)))
            return self._fallback(card, f'{GENERATION_ERROR_PREFIX}: {e}')
        except Exception as e:
            LOG.exception('card_enrichment_unknown_error', exc_info=True)
            return self._fallback(card, f'{GENERATION_ERROR_PREFIX}: {e}')

        rows = fields.get('grading_table')
        enriched = EnrichedCard(
            front=card.front,
            back=card.back,
            solution=fields['solution'],
            explanation=fields['explanation'],
            grading_table=[GradingRow(**row) for row in rows] if rows else None,
            summary=fields.get('summary'),
            mnemonic=fields['mnemonic'],
            reference=fields['reference'],
            extra=fields['extra'],
            options=card.options,
            answers=card.answers,
            note_id=card.note_id,
        )
        log_card_enrichment(preview, ctx.template.value, int((time.time() - start) * 1000), 'success')
        return enriched


def enrich_one(card: CardInput, client: LLMClient) -> EnrichedCard:
    return CardEnricher(client).enrich_one(card)

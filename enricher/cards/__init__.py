"""
Card enrichment: prompts, the single-card unit, batch orchestration and
checkpointed progress.
"""

from .models import CardInput, EnrichedCard, GradingRow
from .prompts import PromptContext, TemplateKind, build_prompt, build_prompt_context, is_binary_answer
from .enricher import (
	CardEnricher,
	enrich_one,
	is_rate_limited,
	has_error,
	RATE_LIMIT_MARKER,
	GENERATION_ERROR_PREFIX,
	PARSE_ERROR_PREFIX,
)
from .checkpoint import (
	BatchError,
	BatchProgress,
	CheckpointStore,
	MemoryCheckpointStore,
	FileCheckpointStore,
	RedisCheckpointStore,
	checkpoint_key,
	get_checkpoint_store,
)
from .batch import (
	BatchEnricher,
	BatchOutcome,
	DeckBatchResult,
	enrich_many,
	enrich_deck_batch,
	skipped_card,
	is_degraded,
	clamp_limit,
	SKIPPED_EXPLANATION,
)

__all__ = [
	'CardInput',
	'EnrichedCard',
	'GradingRow',
	'PromptContext',
	'TemplateKind',
	'build_prompt',
	'build_prompt_context',
	'is_binary_answer',
	'CardEnricher',
	'enrich_one',
	'is_rate_limited',
	'has_error',
	'RATE_LIMIT_MARKER',
	'GENERATION_ERROR_PREFIX',
	'PARSE_ERROR_PREFIX',
	'BatchError',
	'BatchProgress',
	'CheckpointStore',
	'MemoryCheckpointStore',
	'FileCheckpointStore',
	'RedisCheckpointStore',
	'checkpoint_key',
	'get_checkpoint_store',
	'BatchEnricher',
	'BatchOutcome',
	'DeckBatchResult',
	'enrich_many',
	'enrich_deck_batch',
	'skipped_card',
	'is_degraded',
	'clamp_limit',
	'SKIPPED_EXPLANATION',
]

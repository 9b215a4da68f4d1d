"""Flashcard store access through AnkiConnect."""

from .connect import (
	AnkiConnectClient,
	AnkiConnectError,
	has_enrichment,
	render_enrichment,
	enriched_note_fields,
	is_localhost,
	ENRICHED_MODEL_NAME,
)

__all__ = [
	'AnkiConnectClient',
	'AnkiConnectError',
	'has_enrichment',
	'render_enrichment',
	'enriched_note_fields',
	'is_localhost',
	'ENRICHED_MODEL_NAME',
]

"""Study priority suggestions (model-ranked topics and a frequency heuristic)."""

from .suggester import (
	PriorityCard,
	PrioritySuggestion,
	PriorityResult,
	suggest_top_priorities,
	suggest_heuristic_priorities,
	frequency_priorities,
	sample_cards,
	clean_cards,
	tokenize,
	STOPWORDS,
)

__all__ = [
	'PriorityCard',
	'PrioritySuggestion',
	'PriorityResult',
	'suggest_top_priorities',
	'suggest_heuristic_priorities',
	'frequency_priorities',
	'sample_cards',
	'clean_cards',
	'tokenize',
	'STOPWORDS',
]

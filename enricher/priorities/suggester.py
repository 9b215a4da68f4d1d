"""Top-N study topic suggestions for a card set.

The model path samples the deck, asks for overarching topics referencing card
indices and re-ranks the deduplicated result densely. A failure there is
reported as ``method='fallback'`` with an error message and no priorities;
``frequency_priorities`` is the separate, model-free heuristic.
"""
from __future__ import annotations

import math
import re
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from enricher.utils import Settings, get_logger, log_priority_suggestion, normalize_whitespace, sanitize_for_prompt, truncate
from enricher.llm import LLMClient, LLMConfig, LLMError, LLMOverrides, build_llm_config, safe_json_loads

LOG = get_logger()

DEFAULT_TOP_N = 15
MAX_TOP_N = 50
MAX_SAMPLE_SIZE = 120
MAX_FRONT_LENGTH = 180

STOPWORDS = frozenset([
    'der', 'die', 'das', 'und', 'oder', 'ein', 'eine', 'einer', 'eines', 'im', 'in', 'am', 'an', 'auf',
    'für', 'fur', 'mit', 'ohne', 'von', 'zu', 'zum', 'zur', 'des', 'den', 'dem', 'dass', 'ist', 'sind',
    'bei', 'als', 'auch', 'nicht', 'kein', 'keine', 'was', 'wie', 'welche', 'welcher', 'welches',
    'the', 'and', 'or', 'with', 'without', 'from', 'into', 'that', 'this', 'these', 'those',
])

_TOKEN_RE = re.compile(r'[a-z0-9äöüß]+')

_LIST_KEYS = ('themen', 'priorities', 'topics', 'items')
_TOPIC_KEYS = ('thema', 'topic', 'name')
_REASON_KEYS = ('wichtigkeit', 'reason', 'grund')
_GOAL_KEYS = ('lernziele', 'learningGoals')


class PriorityCard(BaseModel):
    id: str
    front: str
    options: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class PrioritySuggestion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    rank: int
    front: str
    topic: str
    reason: str
    learning_goals: Optional[List[str]] = Field(None, alias='learningGoals')


class PriorityResult(BaseModel):
    priorities: List[PrioritySuggestion] = Field(default_factory=list)
    method: str = 'fallback'
    error: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def clamp_top_n(top_n: Optional[int]) -> int:
    if top_n is None:
        return DEFAULT_TOP_N
    return max(1, min(MAX_TOP_N, int(top_n)))


def clean_cards(cards: List[Dict[str, Any]]) -> List[PriorityCard]:
    out = []
    for card in cards:
        raw_id = card.get('id')
        card_id = str(raw_id).strip() if raw_id is not None else ''
        front = sanitize_for_prompt(card.get('front') or '')
        if not card_id or not front:
            continue
        out.append(PriorityCard(
            id=card_id,
            front=front,
            options=[sanitize_for_prompt(o) for o in (card.get('options') or []) if o],
            tags=[normalize_whitespace(t) for t in (card.get('tags') or []) if t],
        ))
    return out


def sample_cards(cards: List[PriorityCard], max_size: int = MAX_SAMPLE_SIZE) -> List[PriorityCard]:
    """Fixed-stride sample across the whole ordered set."""
    if len(cards) <= max_size:
        return list(cards)
    step = len(cards) // max_size
    return cards[::step][:max_size]


def tokenize(text: str) -> List[str]:
    return [t for t in _TOKEN_RE.findall(text.lower()) if len(t) >= 3 and t not in STOPWORDS]


def frequency_priorities(cards: List[PriorityCard], top_n: int = DEFAULT_TOP_N) -> List[PrioritySuggestion]:
    """Rank cards by how common their vocabulary is across the deck.

    Each card scores the sum of the document frequencies of its unique tokens
    divided by the square root of its token count. Ties keep input order.
    """
    frequency: Dict[str, int] = {}
    card_tokens = []
    for card in cards:
        content = ' '.join([card.front] + card.options + card.tags)
        tokens = list(dict.fromkeys(tokenize(normalize_whitespace(content))))
        card_tokens.append(tokens)
        for token in tokens:
            frequency[token] = frequency.get(token, 0) + 1

    scored = []
    for card, tokens in zip(cards, card_tokens):
        score = sum(frequency[t] for t in tokens) / math.sqrt(max(1, len(tokens)))
        best_token, best_freq = '', 0
        for token in tokens:
            if frequency[token] > best_freq:
                best_token, best_freq = token, frequency[token]
        scored.append((score, card, best_token))

    scored.sort(key=lambda entry: entry[0], reverse=True)

    out = []
    for index, (_, card, best_token) in enumerate(scored[:clamp_top_n(top_n)]):
        topic = best_token or 'Grundlagen'
        out.append(PrioritySuggestion(
            id=card.id,
            rank=index + 1,
            front=card.front,
            topic=topic,
            reason=f'Häufiges Thema im Deck; deckt zentrale Begriffe wie "{topic}" ab.',
            learning_goals=[f'Kernkonzepte zu "{topic}" verstehen', 'Klinische Relevanz einordnen'],
        ))
    return out


def build_priority_prompt(sample: List[PriorityCard], top_n: int) -> str:
    lines = '\n'.join(f'[{i}] {truncate(card.front, MAX_FRONT_LENGTH)}' for i, card in enumerate(sample))
    return (
        'Du bist ein Lerncoach für Medizinstudierende.\n'
        f'Analysiere die folgenden Lernkarten und identifiziere die TOP {top_n} WICHTIGSTEN THEMEN für den 80/20-Lernerfolg.\n\n'
        'WICHTIG:\n'
        '- Gruppiere nach ÜBERGEORDNETEN THEMEN, nicht einzelnen Fragen\n'
        '- Jedes Thema sollte ein klinisch relevantes Konzept sein\n'
        '- Nenne konkrete Lernziele\n\n'
        'Antworte NUR mit diesem JSON (keine Erklärungen davor/danach):\n'
        '{\n'
        '  "themen": [\n'
        '    {\n'
        '      "index": 0,\n'
        '      "thema": "Beispiel: Angeborene Herzfehler im Neugeborenenscreening",\n'
        '      "wichtigkeit": "Häufige Prüfungsfrage, klinisch hochrelevant",\n'
        '      "lernziele": ["Kritische Herzfehler erkennen", "Screening-Methoden verstehen"]\n'
        '    }\n'
        '  ]\n'
        '}\n\n'
        f'Die Karten (mit Index):\n{lines}'
    )


def _first_str(entry: Dict[str, Any], keys) -> str:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, (str, int, float)) and str(value).strip():
            return str(value).strip()
    return ''


def _goals(entry: Dict[str, Any]) -> Optional[List[str]]:
    for key in _GOAL_KEYS:
        value = entry.get(key)
        if isinstance(value, list):
            return [g for g in value if isinstance(g, str)]
    return None


def parse_priority_response(text: str, sample: List[PriorityCard], top_n: int) -> List[PrioritySuggestion]:
    parsed = safe_json_loads(text)
    entries = parsed if isinstance(parsed, list) else None
    if isinstance(parsed, dict):
        for key in _LIST_KEYS:
            if isinstance(parsed.get(key), list):
                entries = parsed[key]
                break
    if not entries:
        raise ValueError('LLM hat keine Themen identifiziert')

    out: List[PrioritySuggestion] = []
    seen = set()
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            continue
        index = entry.get('index')
        if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(sample):
            index = i if i < len(sample) else None
        if index is None:
            continue
        topic = _first_str(entry, _TOPIC_KEYS) or 'Kernthema'
        key = normalize_whitespace(topic).lower()
        if key in seen:
            continue
        seen.add(key)
        card = sample[index]
        out.append(PrioritySuggestion(
            id=card.id,
            rank=len(out) + 1,
            front=card.front,
            topic=topic,
            reason=_first_str(entry, _REASON_KEYS) or 'Prüfungsrelevantes Konzept.',
            learning_goals=_goals(entry),
        ))
        if len(out) >= top_n:
            break
    if not out:
        raise ValueError('Konnte keine Themen aus LLM-Antwort extrahieren')
    return out


def suggest_top_priorities(cards: List[Dict[str, Any]], settings: Settings, top_n: Optional[int] = None, overrides: Optional[LLMOverrides] = None, client_factory: Callable[[LLMConfig], LLMClient] = LLMClient) -> PriorityResult:
    start = time.time()
    top_n = clamp_top_n(top_n)
    cleaned = clean_cards(cards)
    if not cleaned:
        return PriorityResult(method='fallback', error='Keine gültigen Karten gefunden')

    try:
        client = client_factory(build_llm_config(settings, overrides))
    except LLMError as e:
        LOG.warning('priority_llm_config_failed', extra={'error': str(e)})
        return PriorityResult(method='fallback', error=f'LLM nicht verfügbar: {e}. Bitte API-Key prüfen.')

    sample = sample_cards(cleaned)
    try:
        text = client.generate(build_priority_prompt(sample, top_n))
        priorities = parse_priority_response(text, sample, top_n)
    except (LLMError, ValueError) as e:
        LOG.warning('priority_llm_failed', extra={'error': str(e)})
        log_priority_suggestion(len(cleaned), len(sample), top_n, 'fallback', 0, int((time.time() - start) * 1000))
        return PriorityResult(method='fallback', error=f'LLM-Analyse fehlgeschlagen: {e}')

    log_priority_suggestion(len(cleaned), len(sample), top_n, 'llm', len(priorities), int((time.time() - start) * 1000))
    return PriorityResult(priorities=priorities, method='llm')


def suggest_heuristic_priorities(cards: List[Dict[str, Any]], top_n: Optional[int] = None) -> PriorityResult:
    start = time.time()
    cleaned = clean_cards(cards)
    if not cleaned:
        return PriorityResult(method='heuristic', error='Keine gültigen Karten gefunden')
    priorities = frequency_priorities(cleaned, clamp_top_n(top_n))
    log_priority_suggestion(len(cleaned), len(cleaned), clamp_top_n(top_n), 'heuristic', len(priorities), int((time.time() - start) * 1000))
    return PriorityResult(priorities=priorities, method='heuristic')

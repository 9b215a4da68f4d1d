"""AnkiConnect client.

Speaks the AnkiConnect JSON protocol (``{action, version, params}`` in,
``{result, error}`` out) against a local Anki Desktop. Only localhost
endpoints are accepted.
"""
from __future__ import annotations

import html
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

import requests

from enricher.utils import get_logger
from enricher.cards.models import CardInput, EnrichedCard

LOG = get_logger()

ANKICONNECT_VERSION = 6
ADD_NOTES_BATCH_SIZE = 10
ENRICHED_MODEL_NAME = 'Enriched Card'

FRONT_FIELDS = ('Question', 'Frage', 'Front', 'Text', 'Cloze')
ANSWER_FIELDS = ('Answers', 'Antwort', 'Back')
OPTION_FIELDS = tuple(f'Q_{i}' for i in range(1, 6))
ENRICHMENT_FIELDS = ('Extra 1', 'Sources')
ENRICHMENT_MARKERS = ('Lösung:', 'Erklärung:', 'Bewertungstabelle', 'Zusammenfassung:')

CONNECT_HINT = (
    'Cannot connect to Anki Desktop. Make sure:\n'
    '1. Anki Desktop is running\n'
    '2. AnkiConnect add-on is installed (code: 2055492159)\n'
    '3. AnkiConnect is enabled'
)

ENRICHED_MODEL_FIELDS = ['Front', 'Back', 'Original-Antwort', 'Optionen', 'Lösung', 'Erklärung', 'Eselsbrücke', 'Referenz', 'Extra 1']

ENRICHED_MODEL_CSS = """
.card{font-family:Arial,sans-serif;font-size:20px;text-align:center;color:#000;background:#fff}
.front{font-weight:bold;font-size:24px;margin-bottom:20px}
.original-antwort{background:#f5f5f5;padding:10px;margin:10px 0;border-left:3px solid #9e9e9e;text-align:left;font-size:16px;color:#666}
.lösung{background:#e3f2fd;padding:15px;margin:20px 0;border-left:4px solid #2196F3;text-align:left;font-weight:bold;font-size:22px}
.erklärung{background:#f0f0f0;padding:15px;margin-top:20px;border-left:4px solid #4CAF50;text-align:left}
.eselsbrücke{background:#fff3cd;padding:15px;margin-top:10px;border-left:4px solid #ffc107;text-align:left;font-style:italic}
.referenz{background:#e8f5e9;padding:10px;margin-top:15px;border-left:4px solid #66bb6a;text-align:left;font-size:14px;color:#555}
.extra1{background:#f3e5f5;padding:15px;margin-top:15px;border-left:4px solid #9c27b0;text-align:left;font-size:16px}
.optionen{background:#fff9e6;padding:12px;margin:10px 0;border-left:3px solid #ff9800;text-align:left;font-size:16px}
"""

ENRICHED_MODEL_BACK = """
<div class="front">{{Front}}</div><hr>
{{#Optionen}}<div class="optionen"><strong>OPTIONEN:</strong><br>{{Optionen}}</div>{{/Optionen}}
{{#Lösung}}<div class="lösung"><strong>LÖSUNG:</strong><br>{{Lösung}}</div>{{/Lösung}}
{{#Original-Antwort}}<div class="original-antwort"><strong>Original-Antwort:</strong><br>{{Original-Antwort}}</div>{{/Original-Antwort}}
{{#Erklärung}}<div class="erklärung"><strong>ERKLÄRUNG:</strong><br>{{Erklärung}}</div>{{/Erklärung}}
{{#Eselsbrücke}}<div class="eselsbrücke"><strong>ESELSBRÜCKE:</strong><br>{{Eselsbrücke}}</div>{{/Eselsbrücke}}
{{#Referenz}}<div class="referenz"><strong>REFERENZ:</strong> {{Referenz}}</div>{{/Referenz}}
{{#Extra 1}}<div class="extra1"><strong>EXTRA 1:</strong><br>{{Extra 1}}</div>{{/Extra 1}}
"""


class AnkiConnectError(Exception):
    pass


def is_localhost(url: str) -> bool:
    try:
        return urlparse(url).hostname in ('localhost', '127.0.0.1')
    except ValueError:
        return False


def _field(fields: Dict[str, Any], name: str) -> str:
    entry = fields.get(name)
    if isinstance(entry, dict):
        return (entry.get('value') or '').strip()
    return ''


def _first_field(fields: Dict[str, Any], names: Iterable[str]) -> str:
    for name in names:
        value = _field(fields, name)
        if value:
            return value
    return ''


def has_enrichment(fields: Dict[str, Any]) -> bool:
    content = _field(fields, 'Extra 1') or _field(fields, 'Sources')
    return any(marker in content for marker in ENRICHMENT_MARKERS)


def _escape(value: str) -> str:
    return html.escape(value or '').replace('\n', '<br>')


def render_enrichment(card: EnrichedCard) -> str:
    """HTML block written into a note's ``Extra 1`` field."""
    parts = [f'<b>Lösung:</b> {_escape(card.solution)}']
    if card.explanation:
        parts.append(f'<b>Erklärung:</b> {_escape(card.explanation)}')
    if card.grading_table:
        rows = ''.join(
            f'<tr><td>{_escape(r.statement)}</td><td>{"richtig" if r.correct else "falsch"}</td><td>{_escape(r.justification)}</td></tr>'
            for r in card.grading_table
        )
        parts.append(
            '<b>Bewertungstabelle</b><table><tr><th>Aussage</th><th>Bewertung</th><th>Begründung</th></tr>'
            f'{rows}</table>'
        )
    if card.summary:
        parts.append(f'<b>Zusammenfassung:</b> {_escape(card.summary)}')
    if card.mnemonic:
        parts.append(f'<b>Eselsbrücke:</b> {_escape(card.mnemonic)}')
    if card.reference:
        parts.append(f'<b>Referenz:</b> {_escape(card.reference)}')
    if card.extra:
        parts.append(_escape(card.extra))
    return '<br><br>'.join(parts)


def enriched_note_fields(card: EnrichedCard) -> Dict[str, str]:
    options = card.options or []
    return {
        'Front': card.front,
        'Back': card.back,
        'Original-Antwort': card.back,
        'Optionen': '<br>'.join(f'{i + 1}. {o}' for i, o in enumerate(options) if o),
        'Lösung': card.solution,
        'Erklärung': card.explanation,
        'Eselsbrücke': card.mnemonic,
        'Referenz': card.reference,
        'Extra 1': card.extra,
    }


class AnkiConnectClient:
    def __init__(self, url: str = 'http://localhost:8765', timeout: float = 30.0, session: Optional[requests.Session] = None):
        if not is_localhost(url):
            raise AnkiConnectError('AnkiConnect is only available on localhost')
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def request(self, action: str, **params) -> Any:
        payload: Dict[str, Any] = {'action': action, 'version': ANKICONNECT_VERSION}
        if params:
            payload['params'] = params
        try:
            resp = self._session.post(self.url, json=payload, timeout=self.timeout)
        except requests.ConnectionError as e:
            LOG.warning('ankiconnect_unreachable', extra={'url': self.url, 'error': str(e)})
            raise AnkiConnectError(CONNECT_HINT) from e
        except requests.RequestException as e:
            raise AnkiConnectError(f'AnkiConnect error: {e}') from e
        if not resp.ok:
            raise AnkiConnectError(f'AnkiConnect error: {resp.status_code} {resp.reason}')
        data = resp.json()
        if data.get('error'):
            raise AnkiConnectError(f"AnkiConnect error: {data['error']}")
        return data.get('result')

    def version(self) -> int:
        return self.request('version')

    def ping(self) -> bool:
        try:
            self.version()
            return True
        except AnkiConnectError:
            return False

    # the five store verbs

    def list_decks(self) -> List[str]:
        return self.request('deckNames') or []

    def find_notes(self, query: str) -> List[int]:
        return self.request('findNotes', query=query) or []

    def notes_info(self, note_ids: List[int]) -> List[Dict[str, Any]]:
        if not note_ids:
            return []
        return self.request('notesInfo', notes=list(note_ids)) or []

    def add_notes(self, notes: List[Dict[str, Any]]) -> List[Optional[int]]:
        ids: List[Optional[int]] = []
        for i in range(0, len(notes), ADD_NOTES_BATCH_SIZE):
            ids.extend(self.request('addNotes', notes=notes[i:i + ADD_NOTES_BATCH_SIZE]) or [])
        return ids

    def update_note_fields(self, note_id: int, fields: Dict[str, str]) -> None:
        self.request('updateNoteFields', note={'id': note_id, 'fields': fields})

    # composed operations

    def get_cards_from_deck(self, deck_name: str) -> List[CardInput]:
        escaped = deck_name.replace('"', '\\"')
        notes = self.notes_info(self.find_notes(f'deck:"{escaped}"'))
        cards = []
        for note in notes:
            fields = note.get('fields') or {}
            front = _first_field(fields, FRONT_FIELDS)
            if not front:
                continue
            options = [o for o in (_field(fields, name) for name in OPTION_FIELDS) if o]
            answers = _first_field(fields, ANSWER_FIELDS)
            cards.append(CardInput(
                front=front,
                back=answers,
                options=options,
                answers=answers,
                note_id=note.get('noteId'),
                tags=note.get('tags') or [],
            ))
        LOG.info('deck_cards_loaded', extra={'deck_name': deck_name, 'notes': len(notes), 'cards': len(cards)})
        return cards

    def note_has_enrichment(self, note_id: int) -> bool:
        info = self.notes_info([note_id])
        if not info:
            return False
        return has_enrichment(info[0].get('fields') or {})

    def ensure_deck(self, deck_name: str) -> None:
        if deck_name not in self.list_decks():
            self.request('createDeck', deck=deck_name)

    def ensure_enriched_model(self) -> str:
        models = self.request('modelNames') or []
        if ENRICHED_MODEL_NAME not in models:
            self.request(
                'createModel',
                modelName=ENRICHED_MODEL_NAME,
                inOrderFields=ENRICHED_MODEL_FIELDS,
                css=ENRICHED_MODEL_CSS,
                cardTemplates=[{'Name': 'Card 1', 'Front': '<div class="front">{{Front}}</div>', 'Back': ENRICHED_MODEL_BACK}],
            )
            LOG.info('enriched_model_created', extra={'model': ENRICHED_MODEL_NAME})
        return ENRICHED_MODEL_NAME

    def sync_enriched_cards(self, deck_name: str, cards: List[EnrichedCard], tags: Optional[List[str]] = None) -> List[Optional[int]]:
        """Add one "Enriched Card" note per card to ``deck_name``."""
        model = self.ensure_enriched_model()
        self.ensure_deck(deck_name)
        notes = [
            {'deckName': deck_name, 'modelName': model, 'fields': enriched_note_fields(c), 'tags': list(tags or [])}
            for c in cards
        ]
        ids = self.add_notes(notes)
        LOG.info('enriched_cards_synced', extra={'deck_name': deck_name, 'count': len([i for i in ids if i])})
        return ids

    def write_back(self, note_id: int, card: EnrichedCard) -> None:
        self.update_note_fields(note_id, {'Extra 1': render_enrichment(card)})

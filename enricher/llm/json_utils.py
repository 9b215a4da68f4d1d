"""Tolerant JSON extraction from free-form model output.

Models wrap JSON in prose or markdown fences and often put raw newlines inside
string values. ``extract_json`` finds the candidate span, ``parse_tolerant``
parses it with one repair pass, and ``normalize_enrichment`` maps the many
spellings a field can arrive under onto the canonical names.
"""
import re
import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

from enricher.utils import get_logger
from .errors import LLMValidationError

LOG = get_logger()

RAW_PREVIEW_CHARS = 500

_FENCE_OPEN_RE = re.compile(r'^```(?:json)?[ \t]*\n?', re.MULTILINE | re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r'```[ \t]*$', re.MULTILINE)
_TRAILING_COMMA_RE = re.compile(r',(\s*[}\]])')

_CONTROL_ESCAPES = {'\n': '\\n', '\r': '\\r', '\t': '\\t'}
_CLOSERS = {'{': '}', '[': ']'}


def _balanced_end(json_text: str, start: int) -> Optional[int]:
    """Index of the bracket closing the one at ``start``.

    Brackets inside string literals are ignored. Returns -1 on a mismatched
    closer and None when the text ends with brackets still open.
    """
    stack = []
    in_string = False
    escaped = False
    for i in range(start, len(json_text)):
        ch = json_text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in ('}', ']'):
            if not stack or stack.pop() != ch:
                return -1
            if not stack:
                return i
    return None


def _find_span(json_text: str, opener: str) -> Optional[Tuple[int, int]]:
    pos = json_text.find(opener)
    while pos != -1:
        end = _balanced_end(json_text, pos)
        if end is None:
            break
        if end != -1:
            return pos, end
        pos = json_text.find(opener, pos + 1)
    # truncated output: greedy span so the parse error shows the whole attempt
    start = pos if pos != -1 else json_text.find(opener)
    end = json_text.rfind(_CLOSERS[opener])
    if start != -1 and end > start:
        return start, end
    return None


def extract_json(text: str, expect: str = 'object') -> str:
    """Return the JSON-looking span of ``text``.

    Fences are stripped, then the first balanced ``{...}`` span is taken. A
    ``[...]`` span wins only when it encloses that object (a list of objects),
    when there is no object span, or when ``expect='array'``. Bracketed prose
    such as ``[1]`` ahead of the object is passed over. Without any bracketed
    span the trimmed text comes back unchanged so parsing fails loudly.
    """
    json_text = (text or '').strip()
    if json_text.startswith('```'):
        json_text = _FENCE_OPEN_RE.sub('', json_text)
        json_text = _FENCE_CLOSE_RE.sub('', json_text).strip()

    obj = _find_span(json_text, '{')
    arr = _find_span(json_text, '[')
    if obj and arr and arr[0] < obj[0] and arr[1] > obj[1]:
        obj = None
    spans = (arr, obj) if expect == 'array' else (obj, arr)
    for span in spans:
        if span:
            return json_text[span[0]:span[1] + 1]
    return json_text


def _escape_control_chars(json_text: str) -> str:
    out = []
    in_string = False
    escaped = False
    for ch in json_text:
        if in_string:
            if escaped:
                out.append(ch)
                escaped = False
            elif ch == '\\':
                out.append(ch)
                escaped = True
            elif ch == '"':
                out.append(ch)
                in_string = False
            elif ord(ch) < 0x20:
                # other control characters are dropped
                out.append(_CONTROL_ESCAPES.get(ch, ''))
            else:
                out.append(ch)
        else:
            if ch == '"':
                in_string = True
            out.append(ch)
    return ''.join(out)


def _strip_trailing_commas(json_text: str) -> str:
    out = []
    in_string = False
    escaped = False
    chunk_start = 0
    # only rewrite the segments that sit outside string literals
    for i, ch in enumerate(json_text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
                out.append(json_text[chunk_start:i + 1])
                chunk_start = i + 1
        elif ch == '"':
            out.append(_TRAILING_COMMA_RE.sub(r'\1', json_text[chunk_start:i]))
            chunk_start = i
            in_string = True
    tail = json_text[chunk_start:]
    out.append(tail if in_string else _TRAILING_COMMA_RE.sub(r'\1', tail))
    return ''.join(out)


def repair_json(json_text: str) -> str:
    return _strip_trailing_commas(_escape_control_chars(json_text))


def parse_tolerant(json_text: str) -> Any:
    try:
        return json.loads(json_text)
    except json.JSONDecodeError:
        pass
    try:
        return json.loads(repair_json(json_text))
    except json.JSONDecodeError as e:
        preview = (json_text or '')[:RAW_PREVIEW_CHARS]
        LOG.warning('json_parse_failed', extra={'error': str(e), 'raw_preview': preview})
        raise LLMValidationError(f'Failed to parse JSON response: {e}. Raw text (first {RAW_PREVIEW_CHARS} chars): {preview}') from e


def safe_json_loads(text: str, expect: str = 'object') -> Any:
    """``extract_json`` followed by ``parse_tolerant``."""
    return parse_tolerant(extract_json(text, expect=expect))


# canonical field -> accepted keys, in priority order
FIELD_ALIASES: Dict[str, Sequence[str]] = {
    'solution': ('lösung', 'loesung', 'losung', 'antwort', 'solution', 'answer'),
    'explanation': ('erklärung', 'erklaerung', 'erklarung', 'explanation'),
    'grading_table': ('bewertungstabelle', 'bewertung', 'grading_table', 'gradingTable'),
    'summary': ('zusammenfassung', 'summary'),
    'mnemonic': ('eselsbrücke', 'eselsbruecke', 'eselsbrucke', 'mnemonic'),
    'reference': ('referenz', 'reference', 'quelle', 'source'),
    'extra': ('extra1', 'Extra 1', 'extra_1', 'extra'),
}

ROW_ALIASES: Dict[str, Sequence[str]] = {
    'statement': ('aussage', 'option', 'statement'),
    'verdict': ('bewertung', 'richtig', 'korrekt', 'correct', 'verdict'),
    'justification': ('begründung', 'begruendung', 'begrundung', 'grund', 'justification', 'reason'),
}

_TRUE_WORDS = ('richtig', 'korrekt', 'trifft zu', 'wahr', 'true', 'correct', 'ja', 'yes', '1')


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def pick_field(parsed: Dict[str, Any], aliases: Sequence[str]) -> Any:
    for key in aliases:
        value = parsed.get(key)
        if not _is_empty(value):
            return value
    return None


def _as_text(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        return '\n'.join(_as_text(v) for v in value if not _is_empty(v))
    if isinstance(value, dict):
        return '\n'.join(f'{k}: {_as_text(v)}' for k, v in value.items() if not _is_empty(v))
    return str(value)


def _as_verdict(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    text = _as_text(value).lower()
    if text.startswith(('falsch', 'nicht', 'trifft nicht', 'false', 'incorrect', 'wrong', 'nein', 'no')):
        return False
    return text.startswith(_TRUE_WORDS)


def _normalize_grading_table(value: Any) -> Optional[List[Dict[str, Any]]]:
    if not isinstance(value, list):
        return None
    rows = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        statement = _as_text(pick_field(entry, ROW_ALIASES['statement']))
        verdict = pick_field(entry, ROW_ALIASES['verdict'])
        rows.append({
            'statement': statement,
            'correct': _as_verdict(verdict),
            'justification': _as_text(pick_field(entry, ROW_ALIASES['justification'])),
        })
    return rows or None


def normalize_enrichment(parsed: Any, fallback_answer: str = '') -> Dict[str, Any]:
    """Map a parsed model response onto canonical enrichment fields.

    The first non-empty alias wins. ``solution`` falls back to
    ``fallback_answer`` so a card never ends up without one.
    """
    if not isinstance(parsed, dict):
        raise LLMValidationError(f'Expected a JSON object, got {type(parsed).__name__}')
    summary = _as_text(pick_field(parsed, FIELD_ALIASES['summary']))
    return {
        'solution': _as_text(pick_field(parsed, FIELD_ALIASES['solution'])) or (fallback_answer or ''),
        'explanation': _as_text(pick_field(parsed, FIELD_ALIASES['explanation'])),
        'grading_table': _normalize_grading_table(pick_field(parsed, FIELD_ALIASES['grading_table'])),
        'summary': summary or None,
        'mnemonic': _as_text(pick_field(parsed, FIELD_ALIASES['mnemonic'])),
        'reference': _as_text(pick_field(parsed, FIELD_ALIASES['reference'])),
        'extra': _as_text(pick_field(parsed, FIELD_ALIASES['extra'])),
    }

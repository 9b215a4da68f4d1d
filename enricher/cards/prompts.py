"""Prompt construction for single-card enrichment.

Three templates: multiple choice with a binary answer key, multiple choice
without one, and free-form cards. All of them ask for strict JSON with the same
German key set and show a literal skeleton to anchor the format.
"""
from __future__ import annotations

import re
import json
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from enricher.utils import sanitize_for_prompt

_BINARY_RE = re.compile(r'^[01\s,;|]+$')


class TemplateKind(str, Enum):
    MC_WITH_KEY = 'mc_with_key'
    MC_WITHOUT_KEY = 'mc_without_key'
    FREE_FORM = 'free_form'


class PromptContext(BaseModel):
    front: str
    back: str
    # positional; empty strings keep the numbering of the source fields
    options: List[str] = Field(default_factory=list)
    answer_key: Optional[str] = None
    marked: List[Tuple[int, str, bool]] = Field(default_factory=list)

    @property
    def has_options(self) -> bool:
        return any(o.strip() for o in self.options)

    @property
    def template(self) -> TemplateKind:
        if not self.has_options:
            return TemplateKind.FREE_FORM
        return TemplateKind.MC_WITH_KEY if self.answer_key else TemplateKind.MC_WITHOUT_KEY

    @property
    def correct_options(self) -> List[str]:
        return [text for _, text, ok in self.marked if ok]

    @property
    def incorrect_options(self) -> List[str]:
        return [text for _, text, ok in self.marked if not ok]


def is_binary_answer(value: Optional[str]) -> bool:
    if not value:
        return False
    t = value.strip()
    return bool(t) and bool(_BINARY_RE.match(t))


def parse_answer_bits(value: str) -> List[bool]:
    return [c == '1' for c in value if c in '01']


def build_prompt_context(front: str, back: str, options: Optional[List[str]] = None, answers: Optional[str] = None) -> PromptContext:
    """Sanitize a card and work out which options its answer key marks correct.

    An explicit binary ``answers`` wins. Without one, a purely binary ``back``
    is used as the key.
    """
    clean_options = [sanitize_for_prompt(o) for o in (options or [])]
    ctx = PromptContext(front=sanitize_for_prompt(front), back=sanitize_for_prompt(back), options=clean_options)
    if not ctx.has_options:
        return ctx

    if is_binary_answer(answers):
        key = answers.strip()
    elif is_binary_answer(back):
        key = back.strip()
    else:
        return ctx

    marked = []
    for i, bit in enumerate(parse_answer_bits(key)):
        if i < len(clean_options) and clean_options[i]:
            marked.append((i, clean_options[i], bit))
    ctx.answer_key = key
    ctx.marked = marked
    return ctx


_INTRO = (
    'Du bist ein hilfreicher Tutor für Universitätsprüfungen.\n'
    'Ergänze die folgende Lernkarte mit einer klaren, strukturierten Erklärung auf Deutsch.'
)

_FORMAT_INTRO = {
    TemplateKind.MC_WITH_KEY: 'WICHTIG - Dies ist eine Multiple-Choice Frage mit den oben genannten Optionen und dem angegebenen Binärcode! Bitte erstelle die Erklärung im folgenden EXAKTEN Format:',
    TemplateKind.MC_WITHOUT_KEY: 'WICHTIG - Dies ist eine Multiple-Choice Frage mit den oben genannten Optionen! Bitte bestimme die richtigen Antworten und erstelle die Erklärung im folgenden EXAKTEN Format:',
    TemplateKind.FREE_FORM: 'WICHTIG - Dies ist eine Lernkarte ohne Antwortoptionen. Bitte erstelle die Erklärung im folgenden EXAKTEN Format:',
}

_SOLUTION_RULES = {
    TemplateKind.MC_WITH_KEY: (
        '1. LÖSUNG: Beginne mit "Die richtige Antwort lautet: [Liste der richtigen Optionen]."\n'
        '   - Verwende die oben angegebenen richtigen Antworten aus dem Binärcode\n'
        '   - Falls die Frage nach "trifft nicht zu" fragt, identifiziere welche Aussage NICHT zutrifft'
    ),
    TemplateKind.MC_WITHOUT_KEY: (
        '1. LÖSUNG: Beginne mit "Die richtige Antwort lautet: [Liste der richtigen Optionen]."\n'
        '   - Bestimme die richtigen Optionen aus dem Inhalt der Frage\n'
        '   - Falls die Frage nach "trifft nicht zu" fragt, identifiziere welche Aussage NICHT zutrifft'
    ),
    TemplateKind.FREE_FORM: (
        '1. LÖSUNG: Beginne mit "Die richtige Antwort lautet: [Kurzantwort]."\n'
        '   - Antworte kurz und präzise'
    ),
}

_MC_EXPLANATION = (
    '2. ERKLÄRUNG: Strukturiere die Erklärung wie folgt:\n'
    '   a) Zuerst eine allgemeine Einführung zum Konzept/Erkrankung (2-3 Sätze)\n'
    '   b) Dann "Erläuterung der richtigen Antwort(en):" - erkläre detailliert warum jede richtige Option richtig ist\n'
    '   c) Dann "Warum die anderen Optionen nicht korrekt sind:" - erkläre für jede falsche Option warum sie falsch ist\n'
    '   Zusätzlich: BEWERTUNGSTABELLE mit einer Zeile pro Option (aussage, bewertung "richtig"/"falsch", begründung)\n'
    '   und eine ZUSAMMENFASSUNG in einem Satz.'
)

_FREE_EXPLANATION = (
    '2. ERKLÄRUNG: Strukturiere die Erklärung wie folgt:\n'
    '   a) Zuerst eine allgemeine Einführung zum Konzept/Erkrankung (2-3 Sätze)\n'
    '   b) Dann "Erläuterung der Antwort:" - erkläre warum die Antwort korrekt ist (2-4 Sätze)'
)

_TAIL_RULES = (
    '3. ESELSBRÜCKE: Eine Eselsbrücke (falls sinnvoll), die beim Merken hilft. Wenn keine gute Eselsbrücke möglich ist, lasse dieses Feld leer.\n\n'
    '4. REFERENZ: Gib eine passende Referenz an, z.B. ein Standardlehrbuch oder eine Leitlinie.\n\n'
    '5. EXTRA 1: Zusätzliche Informationen, die für das Verständnis hilfreich sein können '
    '(Klinische Relevanz, Differenzialdiagnosen, Praktische Tipps). Falls nicht nötig, leer lassen.'
)


def _skeleton(kind: TemplateKind) -> str:
    if kind == TemplateKind.FREE_FORM:
        skeleton = {
            'lösung': 'Die richtige Antwort lautet: [Kurzantwort].',
            'erklärung': '[Allgemeine Einführung]. Erläuterung der Antwort: [...].',
        }
    else:
        skeleton = {
            'lösung': 'Die richtige Antwort lautet: [Liste der richtigen Optionen].',
            'erklärung': '[Allgemeine Einführung]. Erläuterung der richtigen Antwort(en): [...]. Warum die anderen Optionen nicht korrekt sind: [...].',
            'bewertungstabelle': [
                {'aussage': '[Option 1]', 'bewertung': 'richtig', 'begründung': '[...]'},
                {'aussage': '[Option 2]', 'bewertung': 'falsch', 'begründung': '[...]'},
            ],
            'zusammenfassung': '[Ein Satz]',
        }
    skeleton.update({
        'eselsbrücke': 'Eselsbrücke hier oder leer lassen wenn nicht sinnvoll',
        'referenz': 'Passende Quelle/Lehrbuch/Leitlinie',
        'extra1': 'Zusätzliche Informationen oder leer lassen',
    })
    return json.dumps(skeleton, ensure_ascii=False, indent=2)


def build_prompt(ctx: PromptContext) -> str:
    kind = ctx.template
    parts = [_INTRO, '', f'FRAGE: {ctx.front}']

    if ctx.has_options:
        lines = [f'{i + 1}. {o}' for i, o in enumerate(ctx.options) if o]
        parts += ['', 'OPTIONEN:'] + lines

    if kind == TemplateKind.MC_WITH_KEY:
        correct = [f'{i + 1}. {text}' for i, text, ok in ctx.marked if ok]
        incorrect = [f'{i + 1}. {text}' for i, text, ok in ctx.marked if not ok]
        if correct:
            parts += ['', 'RICHTIGE ANTWORTEN (laut Binärcode):'] + correct
        if incorrect:
            parts += ['', 'FALSCHE ANTWORTEN:'] + incorrect
        parts += ['', f'ANTWORT (Binärcode): {ctx.answer_key}']
    elif ctx.back:
        parts += ['', f'ANTWORT: {ctx.back}']

    explanation = _FREE_EXPLANATION if kind == TemplateKind.FREE_FORM else _MC_EXPLANATION
    parts += [
        '',
        _FORMAT_INTRO[kind],
        '',
        _SOLUTION_RULES[kind],
        '',
        explanation,
        '',
        _TAIL_RULES,
        '',
        'Antworte ausschließlich im folgenden JSON-Format:',
        _skeleton(kind),
    ]
    return '\n'.join(parts)

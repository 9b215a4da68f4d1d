"""
Flashcard enrichment service: LLM orchestration with provider fallback,
batch enrichment with checkpoints, and AnkiConnect write-back.
"""

__version__ = '0.1.0'

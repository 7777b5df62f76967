"""
InfraScope AI Module
====================

Model-backed layers on top of retrieval:
- Cited answer synthesis and item summaries
- Living context (corpus + live web)
- Connections, evolution timelines, predictions
- Principle alignment scoring
"""

from .llm_client import LLMClient, LLMError, LLMResponse, get_llm_client
from .answer_synthesizer import AnswerSynthesizer
from .summarizer import DocumentSummarizer
from .living_context import LivingContextEngine
from .connection_engine import ConnectionEngine
from .evolution_tracker import EvolutionTracker
from .predictive_reasoner import PredictiveReasoner
from .principle_alignment import PrincipleAlignmentAnalyzer

__all__ = [
    "LLMClient",
    "LLMError",
    "LLMResponse",
    "get_llm_client",
    "AnswerSynthesizer",
    "DocumentSummarizer",
    "LivingContextEngine",
    "ConnectionEngine",
    "EvolutionTracker",
    "PredictiveReasoner",
    "PrincipleAlignmentAnalyzer",
]

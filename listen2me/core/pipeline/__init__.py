"""
Listen2Me Pipeline
==================

Ingestion, adaptive batching, LLM extraction, the operator command
channel and the event lifecycle.
"""

from .llm_client import ExtractedEvent, LLMAnalysisClient, LLMError, LLMResponseError
from .batcher import AnalysisBatcher, AnalysisUnit, Lane, PassResult, plan_units
from .admin import AdminCommand, AdminCommandInterpreter, parse_command
from .ingestion import IngestionController
from .lifecycle import EventLifecycleManager
from .scheduler import Scheduler

__all__ = [
    "ExtractedEvent",
    "LLMAnalysisClient",
    "LLMError",
    "LLMResponseError",
    "AnalysisBatcher",
    "AnalysisUnit",
    "Lane",
    "PassResult",
    "plan_units",
    "AdminCommand",
    "AdminCommandInterpreter",
    "parse_command",
    "IngestionController",
    "EventLifecycleManager",
    "Scheduler",
]

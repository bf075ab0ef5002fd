from .documentation import generate_documentation
from .documents import DocumentIngest, DocumentPipeline
from .emergency import EmergencyAssessment, detect_emergency
from .extraction import ContentExtractor, LocalContentExtractor
from .llm import HttpLanguageModel, LanguageModel, PromptSegment
from .metrics import MetricsExtraction, extract_health_metrics
from .responder import AIResponder

__all__ = [
    "AIResponder",
    "ContentExtractor",
    "DocumentIngest",
    "DocumentPipeline",
    "EmergencyAssessment",
    "HttpLanguageModel",
    "LanguageModel",
    "LocalContentExtractor",
    "MetricsExtraction",
    "PromptSegment",
    "detect_emergency",
    "extract_health_metrics",
    "generate_documentation",
]

"""Inference-facing components: client, gate, service, and analyzers."""

from .client import InferenceHTTPClient
from .density import DensityAnalysis, DensityAnalyzer, LogprobDensityEstimator
from .gate import SingleFlightGate
from .lenient_json import LenientJSONError, parse_lenient_object
from .prompts import PromptLibrary
from .rate_limiter import RateLimiter
from .service import DEFAULT_MODEL_TIERS, HttpInferenceBackend, InferenceBackend, InferenceService
from .summarizer import SummaryAnalysis, Summarizer

__all__ = [
    "DEFAULT_MODEL_TIERS",
    "DensityAnalysis",
    "DensityAnalyzer",
    "HttpInferenceBackend",
    "InferenceBackend",
    "InferenceHTTPClient",
    "InferenceService",
    "LenientJSONError",
    "LogprobDensityEstimator",
    "PromptLibrary",
    "RateLimiter",
    "SingleFlightGate",
    "SummaryAnalysis",
    "Summarizer",
    "parse_lenient_object",
]

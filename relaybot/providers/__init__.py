"""Outbound collaborators: backend agent API and image analysis."""

from relaybot.providers.backend import BackendClient
from relaybot.providers.vision import ImageAnalysisResult, VisionAnalyzer

__all__ = ["BackendClient", "ImageAnalysisResult", "VisionAnalyzer"]

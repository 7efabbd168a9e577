"""
CryWatch - Services Package

Contains the analysis services:
- Feature extraction
- Streaming cry detection
- Alert analysis
- Diagnosis mapping

The pipeline is configured with concrete instances at startup, so tests can
swap any stage for a fake.
"""

from .features import FeatureExtractor, extract_features
from .detector import CryDetector, create_detector
from .alerts import HeuristicAlertAnalyzer
from .diagnosis import DiagnosisEngine, diagnose

__all__ = [
    "FeatureExtractor",
    "extract_features",
    "CryDetector",
    "create_detector",
    "HeuristicAlertAnalyzer",
    "DiagnosisEngine",
    "diagnose",
]

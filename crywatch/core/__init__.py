"""
CryWatch - Core Package

Contains the domain types and the persistence layer:
- types: Domain dataclasses and enums
- storage: Key-value storage port and adapters
- history_store: Capped cry history with audio attachments

The pipeline orchestrator lives in crywatch.core.pipeline and is imported
explicitly, since it depends on the services package.
"""

from .types import (
    Alert,
    AlertType,
    AudioFeatures,
    CryAnalytics,
    CryInstance,
    DetectionResult,
    Diagnosis,
    MedicalAttention,
    RiskLevel,
    Severity,
)
from .storage import KeyValueStorage, InMemoryStorage, DirectoryStorage, create_storage
from .history_store import CryHistoryStore, create_history_store

__all__ = [
    # Types
    "Alert",
    "AlertType",
    "AudioFeatures",
    "CryAnalytics",
    "CryInstance",
    "DetectionResult",
    "Diagnosis",
    "MedicalAttention",
    "RiskLevel",
    "Severity",
    # Storage
    "KeyValueStorage",
    "InMemoryStorage",
    "DirectoryStorage",
    "create_storage",
    "CryHistoryStore",
    "create_history_store",
]

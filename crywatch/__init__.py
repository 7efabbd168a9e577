"""
CryWatch - Infant Cry Analysis Package

This package contains the analysis core:
- Streaming cry detection on microphone blocks
- Acoustic feature extraction
- Heuristic alerts and diagnosis mapping
- Bounded cry history with audio attachments
"""

__version__ = "0.1.0"

"""
Hardware Module
===============

Provides the camera based visual reference with pluggable implementations:
- Chessboard yaw estimator (OpenCV)
- Scripted mock for testing

Uses Adapter and Factory patterns for hardware abstraction.
"""

from .visual_reference import (
    VisualReferenceBase,
    ChessboardYawEstimator,
    MockVisualReference,
    create_visual_reference,
    load_calibration,
)

__all__ = [
    'VisualReferenceBase',
    'ChessboardYawEstimator',
    'MockVisualReference',
    'create_visual_reference',
    'load_calibration',
]

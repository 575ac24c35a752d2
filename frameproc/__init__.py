"""Post-processing algorithms for camera frames: geometry, negation, motion detection, object detection and pose decoding."""

__version__ = "1.10.0"
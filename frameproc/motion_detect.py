"""A simple frame-difference motion detector for low resolution images."""

from __future__ import annotations

import logging
import struct
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from frameproc.geometry import Rectangle

logger = logging.getLogger(__name__)


def _f32(value: float) -> float:
    """Round a value to single precision."""
    return struct.unpack("f", struct.pack("f", value))[0]


@dataclass
class MotionDetectConfig:
    """Motion detector settings; ROI dimensions are fractions of the image size."""

    roi_x: float = 0.0
    roi_y: float = 0.0
    roi_width: float = 1.0
    roi_height: float = 1.0
    hskip: int = 1
    vskip: int = 1
    difference_m: float = 0.1
    difference_c: int = 10
    region_threshold: float = 0.005
    frame_period: int = 5
    verbose: bool = False
    region_name: str = ""


def read_config(params: Mapping[str, Any]) -> MotionDetectConfig:
    """Build a configuration from a parameter mapping, using defaults for absent keys."""
    defaults = MotionDetectConfig()
    return MotionDetectConfig(
        roi_x=_f32(float(params.get("roi_x", defaults.roi_x))),
        roi_y=_f32(float(params.get("roi_y", defaults.roi_y))),
        roi_width=_f32(float(params.get("roi_width", defaults.roi_width))),
        roi_height=_f32(float(params.get("roi_height", defaults.roi_height))),
        hskip=int(params.get("hskip", defaults.hskip)),
        vskip=int(params.get("vskip", defaults.vskip)),
        difference_m=_f32(float(params.get("difference_m", defaults.difference_m))),
        difference_c=int(params.get("difference_c", defaults.difference_c)),
        region_threshold=_f32(float(params.get("region_threshold", defaults.region_threshold))),
        frame_period=int(params.get("frame_period", defaults.frame_period)),
        verbose=bool(int(params.get("verbose", 0))),
        region_name=str(params.get("region_name", defaults.region_name)),
    )


def _to_unsigned(value: float) -> int:
    return max(0, int(value))


class MotionDetector:
    """Compares each processed frame's ROI against the previous one."""

    def __init__(self, config: MotionDetectConfig, width: int, height: int, stride: int) -> None:
        self.config = config
        self.hskip = max(config.hskip, 1)
        self.vskip = max(config.vskip, 1)
        width //= self.hskip
        height //= self.vskip
        self.width = width
        self.height = height
        self.row_stride = stride * self.vskip

        roi_x = _to_unsigned(_f32(config.roi_x * width))
        roi_y = _to_unsigned(_f32(config.roi_y * height))
        roi_width = _to_unsigned(_f32(config.roi_width * width))
        roi_height = _to_unsigned(_f32(config.roi_height * height))
        threshold = _to_unsigned(_f32(_f32(config.region_threshold * roi_width) * roi_height))

        roi_x = min(roi_x, width)
        roi_y = min(roi_y, height)
        roi_width = min(roi_width, width - roi_x)
        roi_height = min(roi_height, height - roi_y)
        self.roi = Rectangle(roi_x, roi_y, roi_width, roi_height)
        self.region_threshold = min(threshold, roi_width * roi_height)

        if config.verbose:
            logger.info(
                "Lores: %dx%d roi: (%d,%d) %dx%d threshold: %d",
                width, height, roi_x, roi_y, roi_width, roi_height, self.region_threshold,
            )

        self._previous = bytearray(roi_width * roi_height)
        self._first_time = True
        self._motion_detected = False
        self._lock = threading.Lock()

    def _roi_rows(self, image):
        view = memoryview(image).cast("B")
        roi = self.roi
        for y in range(roi.height):
            start = (roi.y + y) * self.row_stride + roi.x * self.hskip
            yield view[start : start + roi.width * self.hskip : self.hskip]

    def process(self, image, sequence: int) -> bool | None:
        """Process one frame; return the motion result, or None if the frame is skipped."""
        config = self.config
        if config.frame_period and sequence % config.frame_period:
            return None

        roi_width = self.roi.width
        with self._lock:
            if self._first_time:
                self._first_time = False
                for y, row in enumerate(self._roi_rows(image)):
                    self._previous[y * roi_width : (y + 1) * roi_width] = row
                return self._motion_detected

            regions = 0
            for y, row in enumerate(self._roi_rows(image)):
                start = y * roi_width
                old_row = self._previous[start : start + roi_width]
                for new_value, old_value in zip(row, old_row):
                    limit = _f32(_f32(config.difference_m * old_value) + config.difference_c)
                    if abs(new_value - old_value) > limit:
                        regions += 1
                self._previous[start : start + roi_width] = row

            motion_detected = roi_width * self.roi.height > 0 and regions >= self.region_threshold

            if config.verbose and motion_detected != self._motion_detected:
                suffix = f" in region {config.region_name}" if config.region_name else ""
                logger.info("Motion %s%s", "detected" if motion_detected else "stopped", suffix)

            self._motion_detected = motion_detected
            return motion_detected
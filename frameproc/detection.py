"""Image classification and object detection result handling."""

from __future__ import annotations

import heapq
import logging
import struct
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from frameproc.geometry import Rectangle, Size

logger = logging.getLogger(__name__)

# The detection network is fed NETWORK_WIDTH x NETWORK_HEIGHT images.
NETWORK_WIDTH = 300
NETWORK_HEIGHT = 300


def _f32(value: float) -> float:
    """Round a value to single precision."""
    return struct.unpack("f", struct.pack("f", value))[0]


def _trunc_div(numerator: int, denominator: int) -> int:
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def _clamp(value: int, low: int, high: int) -> int:
    return min(max(value, low), high)


@dataclass
class Detection:
    """One detected object: its class, label, confidence and bounding box."""

    category: int
    name: str
    confidence: float
    box: Rectangle

    def __str__(self) -> str:
        box = self.box
        return (
            f"{self.name}[{self.category}] ({self.confidence:.2f}) "
            f"@ {box.x},{box.y} {box.width}x{box.height}"
        )


def read_labels(path, skip_first=False, padding=1):
    """Read one label per line.

    Returns the labels, padded with empty strings to a multiple of ``padding``,
    and the number of labels actually read.
    """
    if padding < 1:
        raise ValueError("padding must be at least 1")
    with open(path, encoding="utf-8", newline="") as file:
        text = file.read()
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    if skip_first:
        lines = lines[1:]
    count = len(lines)
    while len(lines) % padding:
        lines.append("")
    return lines, count


class TopResultsClassifier:
    """Keeps the most likely classes, with hysteresis between two thresholds.

    A class is reported if its confidence reaches ``threshold_high``, or if it
    was reported last time and its confidence is still at least ``threshold_low``.
    """

    def __init__(
        self,
        labels: Sequence[str],
        number_of_results: int = 3,
        threshold_high: float = 0.2,
        threshold_low: float = 0.1,
        label_count: int | None = None,
    ) -> None:
        self.labels = list(labels)
        self.number_of_results = number_of_results
        self.threshold_high = _f32(threshold_high)
        self.threshold_low = _f32(threshold_low)
        self.label_count = label_count
        self._top: list[tuple[float, int]] = []
        self.results: list[tuple[str, float]] = []

    def update(self, prediction) -> list[tuple[str, float]]:
        """Take a vector of 8-bit scores and return (label, confidence) pairs, best first."""
        values = bytes(prediction)
        if self.label_count is not None and len(values) != self.label_count:
            raise ValueError("Label count mismatch")
        previous = {index for _, index in self._top}
        limit = self.number_of_results
        heap: list[tuple[float, int]] = []
        for index, value in enumerate(values):
            confidence = _f32(value / 255.0)
            if confidence < self.threshold_low:
                continue
            if confidence >= self.threshold_high or index in previous:
                heapq.heappush(heap, (confidence, index))
                if limit >= 0 and len(heap) > limit:
                    heapq.heappop(heap)
        self._top = sorted(heap, reverse=True)
        self.results = [(self.labels[index], confidence) for confidence, index in self._top]
        for label, confidence in self.results:
            logger.debug("%s : %f", label, confidence)
        return self.results


def _short_label(text: str) -> str:
    colon = text.find(":")
    begin = colon + 1 if colon >= 0 else 0
    comma = text.find(",")
    if comma >= begin:
        return text[begin:comma]
    return text[begin:]


def format_classification(results: Iterable[tuple[str, float]]) -> str:
    """Build the annotation text for classification results."""
    parts = [f"{_short_label(label)} {confidence:.2g}" for label, confidence in results]
    return "Detected: " + ", ".join(parts)


def _area(rect: Rectangle) -> int:
    return rect.width * rect.height


def interpret_detections(
    boxes,
    classes,
    scores,
    labels,
    confidence_threshold,
    overlap_threshold,
    lores_size: Size,
    main_size: Size,
):
    """Turn network outputs into detections in main image coordinates.

    ``boxes`` holds (ymin, xmin, ymax, xmax) fractions of the network input,
    which is a centred crop of the low resolution image.
    """
    threshold = _f32(confidence_threshold)
    overlap_limit = _f32(overlap_threshold)
    results: list[Detection] = []
    for box, cls, score in zip(boxes, classes, scores):
        score = _f32(score)
        if score < threshold:
            continue
        ymin, xmin, ymax, xmax = box
        y = _clamp(int(_f32(NETWORK_HEIGHT * ymin)), 0, NETWORK_HEIGHT)
        x = _clamp(int(_f32(NETWORK_WIDTH * xmin)), 0, NETWORK_WIDTH)
        h = _clamp(int(_f32(NETWORK_HEIGHT * ymax) - y), 0, NETWORK_HEIGHT)
        w = _clamp(int(_f32(NETWORK_WIDTH * xmax) - x), 0, NETWORK_WIDTH)
        y += _trunc_div(lores_size.height - NETWORK_HEIGHT, 2)
        x += _trunc_div(lores_size.width - NETWORK_WIDTH, 2)
        y = _trunc_div(y * main_size.height, lores_size.height)
        x = _trunc_div(x * main_size.width, lores_size.width)
        h = _trunc_div(h * main_size.height, lores_size.height)
        w = _trunc_div(w * main_size.width, lores_size.width)

        category = int(_f32(cls))
        detection = Detection(category, labels[category], score, Rectangle(x, y, w, h))

        overlapped = False
        for i, previous in enumerate(results):
            if previous.category != category:
                continue
            prev_area = _area(previous.box)
            new_area = _area(detection.box)
            overlap = _area(previous.box.bounded_to(detection.box))
            if overlap > overlap_limit * prev_area or overlap > overlap_limit * new_area:
                if detection.confidence > previous.confidence:
                    results[i] = detection
                overlapped = True
                break
        if not overlapped:
            results.append(detection)

    for detection in results:
        logger.debug("%s", detection)
    return results
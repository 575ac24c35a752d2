"""Object detection from IMX500 output tensors, with optional temporal filtering."""

from __future__ import annotations

import dataclasses
import logging
import struct
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from frameproc.detection import Detection
from frameproc.geometry import Rectangle, Size
from frameproc.imx500 import CnnOutputTensorInfo

logger = logging.getLogger(__name__)

Converter = Callable[[Sequence[float]], Rectangle]

_UINT32 = 0xFFFFFFFF


def _f32(value: float) -> float:
    """Round a value to single precision."""
    return struct.unpack("f", struct.pack("f", value))[0]


@dataclass(frozen=True)
class BoundingBox:
    """A box given by its corners as fractions of the inference image."""

    x0: float
    y0: float
    x1: float
    y1: float


@dataclass
class ObjectDetectionOutput:
    """Decoded contents of an object detection output tensor."""

    num_detections: int = 0
    bboxes: list[BoundingBox] = field(default_factory=list)
    scores: list[float] = field(default_factory=list)
    classes: list[float] = field(default_factory=list)


def parse_detection_tensor(data, total_detections):
    """Split a flat tensor into boxes, scores, classes and the detection count.

    The layout is four planes of box coordinates (y0, x0, y1, x1), then the
    scores, then the class indices, then the number of valid detections.
    """
    n = int(total_detections)
    if n < 0:
        raise ValueError("total_detections must not be negative")
    values = list(data)
    if len(values) < 6 * n + 1:
        raise ValueError(f"detection tensor needs {6 * n + 1} values, got {len(values)}")
    bboxes = [
        BoundingBox(
            x0=_f32(values[i + n]),
            y0=_f32(values[i]),
            x1=_f32(values[i + 3 * n]),
            y1=_f32(values[i + 2 * n]),
        )
        for i in range(n)
    ]
    scores = [_f32(v) for v in values[4 * n : 5 * n]]
    classes = [_f32(v) for v in values[5 * n : 6 * n]]
    num_detections = max(0, int(_f32(values[6 * n])))
    if num_detections > n:
        logger.info("Unexpected value for num_detections: %d, setting it to %d", num_detections, n)
        num_detections = n
    return ObjectDetectionOutput(num_detections, bboxes, scores, classes)


@dataclass
class _LtObject:
    params: Detection
    visible: int
    hidden: int
    matched: bool


def _blend(factor: float, new: int, old: int) -> int:
    return int(_f32(_f32(factor * new) + _f32(_f32(1 - factor) * old)))


class TemporalFilter:
    """Smooths detections over frames and hides short-lived ones.

    A newly seen object stays hidden until it has been matched for
    ``hidden_frames`` frames, unless the list was empty when it appeared. An
    object that stops being seen stays for ``visible_frames`` frames.
    """

    def __init__(
        self,
        tolerance: float = 0.05,
        factor: float = 0.2,
        visible_frames: int = 5,
        hidden_frames: int = 2,
    ) -> None:
        self.tolerance = _f32(tolerance)
        self.factor = _f32(factor)
        self.visible_frames = int(visible_frames)
        self.hidden_frames = int(hidden_frames)
        self._objects: list[_LtObject] = []

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> TemporalFilter:
        return cls(
            tolerance=float(params.get("tolerance", 0.05)),
            factor=float(params.get("factor", 0.2)),
            visible_frames=int(params.get("visible_frames", 5)),
            hidden_frames=int(params.get("hidden_frames", 2)),
        )

    def reset(self) -> None:
        self._objects.clear()

    def __len__(self) -> int:
        return len(self._objects)

    def visible(self) -> list[Detection]:
        """The tracked objects that are not hidden."""
        return [dataclasses.replace(obj.params) for obj in self._objects if not obj.hidden]

    def _matches(self, obj: Detection, tracked: Detection, output_size: Size) -> bool:
        tol_w = _f32(self.tolerance * output_size.width)
        tol_h = _f32(self.tolerance * output_size.height)
        a, b = obj.box, tracked.box
        return (
            obj.category == tracked.category
            and abs(a.x - b.x) < tol_w
            and abs(a.y - b.y) < tol_h
            and abs(a.width - b.width) < tol_w
            and abs(a.height - b.height) < tol_h
        )

    def update(self, objects, output_size):
        """Merge this frame's detections and return the visible tracked objects."""
        empty = not self._objects
        for tracked in self._objects:
            tracked.matched = False

        factor = self.factor
        for obj in objects:
            for tracked in self._objects:
                if not self._matches(obj, tracked.params, output_size):
                    continue
                old = tracked.params.box
                new = obj.box
                tracked.params = dataclasses.replace(
                    tracked.params,
                    confidence=obj.confidence,
                    box=Rectangle(
                        _blend(factor, new.x, old.x),
                        _blend(factor, new.y, old.y),
                        _blend(factor, new.width, old.width),
                        _blend(factor, new.height, old.height),
                    ),
                )
                tracked.matched = True
                tracked.visible = self.visible_frames
                tracked.hidden = max(0, tracked.hidden - 1)
                break
            else:
                hidden = 0 if empty else self.hidden_frames
                self._objects.append(
                    _LtObject(dataclasses.replace(obj), self.visible_frames, hidden, True)
                )

        for tracked in self._objects:
            if not tracked.matched:
                if tracked.hidden:
                    tracked.visible = 0
                else:
                    tracked.visible = (tracked.visible - 1) & _UINT32

        self._objects = [t for t in self._objects if t.matched or t.visible]
        return self.visible()


class ObjectDetector:
    """Turns IMX500 object detection tensors into detections in output coordinates."""

    def __init__(
        self,
        classes: Sequence[str],
        max_detections: int,
        threshold: float = 0.5,
        temporal_filter: TemporalFilter | None = None,
    ) -> None:
        self.classes = list(classes)
        self.max_detections = int(max_detections)
        self.threshold = _f32(threshold)
        self.temporal_filter = temporal_filter
        self._last: list[Detection] = []
        self._lock = threading.Lock()

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> ObjectDetector:
        try:
            max_detections = int(params["max_detections"])
        except KeyError:
            raise ValueError("missing parameter 'max_detections'") from None
        temporal = params.get("temporal_filter")
        return cls(
            classes=[str(c) for c in params.get("classes", [])],
            max_detections=max_detections,
            threshold=float(params.get("threshold", 0.5)),
            temporal_filter=TemporalFilter.from_params(temporal) if temporal is not None else None,
        )

    def reset(self) -> None:
        """Forget all objects remembered from earlier frames."""
        with self._lock:
            self._last = []
            if self.temporal_filter is not None:
                self.temporal_filter.reset()

    def _decode(self, output_tensor, tensor_info: CnnOutputTensorInfo, converter: Converter) -> list[Detection]:
        if tensor_info.num_tensors != 4:
            logger.error("Invalid number of tensors %d, expected 4", tensor_info.num_tensors)
            return []
        total = tensor_info.info[0].tensor_data_num // 4
        values = list(output_tensor)
        if len(values) != 6 * total + 1:
            logger.error("Invalid tensor size %d, expected %d", len(values), 6 * total + 1)
            return []
        output = parse_detection_tensor(values, total)

        objects: list[Detection] = []
        for i in range(min(output.num_detections, self.max_detections)):
            class_index = int(output.classes[i]) & 0xFF
            score = output.scores[i]
            if score < self.threshold or class_index >= len(self.classes):
                continue
            box = output.bboxes[i]
            coords = [box.x0, box.y0, _f32(box.x1 - box.x0), _f32(box.y1 - box.y0)]
            objects.append(Detection(class_index, self.classes[class_index], score, converter(coords)))

        logger.debug("Number of objects detected: %d", len(objects))
        for i, obj in enumerate(objects):
            logger.debug("[%d] : %s", i, obj)
        return objects

    def process(self, output_tensor, tensor_info, converter, output_size):
        """Decode one frame's output; with no tensor, repeat the last results.

        ``converter`` maps (x, y, w, h) inference fractions to an output Rectangle.
        """
        with self._lock:
            if output_tensor is None or tensor_info is None:
                if self.temporal_filter is not None:
                    return self.temporal_filter.visible()
                return [dataclasses.replace(d) for d in self._last]

            if not isinstance(tensor_info, CnnOutputTensorInfo):
                tensor_info = CnnOutputTensorInfo.from_bytes(tensor_info)
            objects = self._decode(output_tensor, tensor_info, converter)

            if self.temporal_filter is not None:
                return self.temporal_filter.update(objects, output_size)
            self._last = [dataclasses.replace(d) for d in objects]
            return objects
"""Multi-person pose estimation from IMX500 PoseNet output tensors."""

from __future__ import annotations

import logging
import struct
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from frameproc.geometry import Point, Rectangle, Size
from frameproc.posenet_decode import (
    INPUT_TENSOR_SIZE,
    MAP_SIZE,
    NUM_HEATMAPS,
    NUM_KEYPOINTS,
    NUM_MID_OFFSETS,
    NUM_SHORT_OFFSETS,
    STRIDE,
    PosePoint,
    backtrack_decode_pose,
    build_adjacency_list,
    build_keypoint_queue,
    decreasing_arg_sort,
    format_tensor,
    log_odds,
    sigmoid,
    squared_distance,
)

logger = logging.getLogger(__name__)

Converter = Callable[[Sequence[float]], Rectangle]

_UINT32 = 0xFFFFFFFF


def _f32(value: float) -> float:
    """Round a value to single precision."""
    return struct.unpack("f", struct.pack("f", value))[0]


@dataclass
class PoseResult:
    """One detected pose: its score, keypoint positions and keypoint scores."""

    pose_score: float
    pose_keypoints: list[PosePoint]
    pose_keypoint_scores: list[float]

    def copy(self) -> PoseResult:
        return PoseResult(self.pose_score, list(self.pose_keypoints), list(self.pose_keypoint_scores))


def split_output_tensor(output):
    """Split the raw network output into score, short offset and mid offset tensors.

    Each is returned in (height, width, channel) order; offsets are divided by the stride.
    """
    values = list(output)
    needed = NUM_HEATMAPS + NUM_SHORT_OFFSETS + NUM_MID_OFFSETS
    if len(values) < needed:
        raise ValueError(f"Unexpected output tensor size: {len(values)}")
    plane = MAP_SIZE.width * MAP_SIZE.height
    short_end = NUM_HEATMAPS + NUM_SHORT_OFFSETS
    scores = format_tensor(values[:NUM_HEATMAPS], NUM_HEATMAPS // plane, 1)
    short_offsets = format_tensor(values[NUM_HEATMAPS:short_end], NUM_SHORT_OFFSETS // plane, STRIDE)
    mid_offsets = format_tensor(values[short_end:needed], NUM_MID_OFFSETS // plane, STRIDE)
    return scores, short_offsets, mid_offsets


def perform_soft_keypoint_nms(decreasing_indices, keypoint_coords, keypoint_scores, squared_nms_radius):
    """Rescore instances, ignoring keypoints that overlap those of higher-scoring instances.

    Returns the new instance scores, indexed like ``keypoint_coords``.
    """
    order = list(decreasing_indices)
    instance_scores = [0.0] * len(order)
    for i, current in enumerate(order):
        earlier = order[:i]
        occluded = [
            any(squared_distance(point, keypoint_coords[previous][k]) <= squared_nms_radius for previous in earlier)
            for k, point in enumerate(keypoint_coords[current])
        ]
        total = sum(score for score, hidden in zip(keypoint_scores[current], occluded) if not hidden)
        instance_scores[current] = total / NUM_KEYPOINTS
    return instance_scores


@dataclass
class _LtResult:
    result: PoseResult
    visible: int
    hidden: int
    matched: bool


class PoseTemporalFilter:
    """Smooths poses over frames and hides short-lived ones.

    A newly seen pose stays hidden until it has been matched for ``hidden_frames``
    frames. A pose that stops being seen is kept for ``visible_frames`` frames.
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
        self._results: list[_LtResult] = []

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> PoseTemporalFilter:
        return cls(
            tolerance=float(params.get("tolerance", 0.05)),
            factor=float(params.get("factor", 0.2)),
            visible_frames=int(params.get("visible_frames", 5)),
            hidden_frames=int(params.get("hidden_frames", 2)),
        )

    def reset(self) -> None:
        self._results.clear()

    def __len__(self) -> int:
        return len(self._results)

    def visible(self) -> list[PoseResult]:
        """The tracked poses that are not hidden."""
        return [lt.result.copy() for lt in self._results if not lt.hidden]

    def _matches(self, tracked: PoseResult, new: PoseResult, output_size: Size) -> bool:
        tol_w = self.tolerance * output_size.width
        tol_h = self.tolerance * output_size.height
        return all(
            abs(old.x - cur.x) <= tol_w and abs(old.y - cur.y) <= tol_h
            for old, cur in zip(tracked.pose_keypoints, new.pose_keypoints)
        )

    def _blend(self, new: float, old: float) -> float:
        return self.factor * new + (1 - self.factor) * old

    def update(self, results, output_size):
        """Merge this frame's poses and return the visible tracked poses."""
        for lt in self._results:
            lt.matched = False

        for result in results:
            for lt in self._results:
                if not self._matches(lt.result, result, output_size):
                    continue
                old = lt.result
                lt.result = PoseResult(
                    result.pose_score,
                    [
                        PosePoint(self._blend(new.y, prev.y), self._blend(new.x, prev.x))
                        for new, prev in zip(result.pose_keypoints, old.pose_keypoints)
                    ],
                    [
                        self._blend(new, prev)
                        for new, prev in zip(result.pose_keypoint_scores, old.pose_keypoint_scores)
                    ],
                )
                lt.matched = True
                lt.visible = self.visible_frames
                lt.hidden = max(0, lt.hidden - 1)
                break
            else:
                self._results.append(_LtResult(result.copy(), self.visible_frames, self.hidden_frames, True))

        for lt in self._results:
            if not lt.matched:
                if lt.hidden:
                    lt.visible = 0
                else:
                    lt.visible = (lt.visible - 1) & _UINT32

        self._results = [lt for lt in self._results if lt.matched or lt.visible]
        return self.visible()


class PoseNet:
    """Decodes PoseNet outputs into poses in ISP output coordinates."""

    def __init__(
        self,
        threshold: float = 0.5,
        max_detections: int = 10,
        offset_refinement_steps: int = 5,
        nms_radius: float = 10.0,
        temporal_filter: PoseTemporalFilter | None = None,
    ) -> None:
        self.threshold = _f32(threshold)
        self.max_detections = int(max_detections)
        self.offset_refinement_steps = int(offset_refinement_steps)
        # Held in map units rather than pixels.
        self.nms_radius = _f32(_f32(nms_radius) / STRIDE)
        self.temporal_filter = temporal_filter
        self._lock = threading.Lock()

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> PoseNet:
        temporal = params.get("temporal_filter")
        return cls(
            threshold=float(params.get("threshold", 0.5)),
            max_detections=int(params.get("max_detections", 10)),
            offset_refinement_steps=int(params.get("offset_refinement_steps", 5)),
            nms_radius=float(params.get("nms_radius", 10)),
            temporal_filter=PoseTemporalFilter.from_params(temporal) if temporal is not None else None,
        )

    def reset(self) -> None:
        with self._lock:
            if self.temporal_filter is not None:
                self.temporal_filter.reset()

    def decode_all_poses(self, scores, short_offsets, mid_offsets):
        """Decode poses from formatted tensors; keypoints come back in input pixels."""
        queue = build_keypoint_queue(scores, short_offsets, log_odds(self.threshold))
        adjacency = build_adjacency_list()
        squared_radius = self.nms_radius * self.nms_radius

        poses: list[list[PosePoint]] = []
        pose_scores: list[list[float]] = []
        instance_scores: list[float] = []

        for root in queue:
            if len(poses) >= self.max_detections:
                break
            # Reject roots close to the same keypoint of an earlier pose.
            if any(squared_distance(root.point, pose[root.id]) <= squared_radius for pose in poses):
                continue
            keypoints, logits = backtrack_decode_pose(
                scores, short_offsets, mid_offsets, root, adjacency, self.offset_refinement_steps
            )
            probabilities = [sigmoid(s) for s in logits]
            instance_score = sum(probabilities) / NUM_KEYPOINTS
            if instance_score >= self.threshold:
                poses.append(keypoints)
                pose_scores.append(probabilities)
                instance_scores.append(instance_score)

        order = decreasing_arg_sort(instance_scores)
        rescored = perform_soft_keypoint_nms(order, poses, pose_scores, squared_radius)
        order = decreasing_arg_sort(rescored)

        results: list[PoseResult] = []
        for index in order:
            if rescored[index] < self.threshold:
                break
            keypoints = [PosePoint(p.y * STRIDE, p.x * STRIDE) for p in poses[index]]
            results.append(PoseResult(rescored[index], keypoints, list(pose_scores[index])))
        return results

    @staticmethod
    def _translate(results: list[PoseResult], converter: Converter) -> None:
        fw = INPUT_TENSOR_SIZE.width - 1
        fh = INPUT_TENSOR_SIZE.height - 1
        for result in results:
            translated = []
            for keypoint in result.pose_keypoints:
                rect = converter([keypoint.x / fw, keypoint.y / fh, 0.0, 0.0])
                translated.append(PosePoint(float(rect.y), float(rect.x)))
            result.pose_keypoints = translated

    def process(self, output, converter, output_size):
        """Decode one frame's output tensor.

        ``converter`` maps (x, y, w, h) inference fractions to an output Rectangle.
        Returns the keypoint locations and confidences of each visible pose.
        """
        if output is None:
            raise ValueError("No output tensor found in metadata")
        scores, short_offsets, mid_offsets = split_output_tensor(output)
        results = self.decode_all_poses(scores, short_offsets, mid_offsets)
        self._translate(results, converter)

        if self.temporal_filter is not None:
            with self._lock:
                shown = self.temporal_filter.update(results, output_size)
        else:
            shown = results

        locations = [[Point(int(k.x), int(k.y)) for k in r.pose_keypoints] for r in shown]
        confidences = [list(r.pose_keypoint_scores) for r in shown]
        return locations, confidences
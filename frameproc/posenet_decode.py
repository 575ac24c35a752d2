"""Decoding of PoseNet heatmaps and offset fields into keypoint poses."""

from __future__ import annotations

import heapq
import itertools
import math
from collections.abc import Sequence
from dataclasses import dataclass
from enum import IntEnum

from frameproc.geometry import Size

INPUT_TENSOR_SIZE = Size(481, 353)
MAP_SIZE = Size(31, 23)
NUM_KEYPOINTS = 17
# Edges that allow traversing the pose graph along the mid-range offsets.
NUM_EDGES = 16
STRIDE = 16
NUM_HEATMAPS = NUM_KEYPOINTS * MAP_SIZE.width * MAP_SIZE.height
NUM_SHORT_OFFSETS = 2 * NUM_KEYPOINTS * MAP_SIZE.width * MAP_SIZE.height
NUM_MID_OFFSETS = 64 * MAP_SIZE.width * MAP_SIZE.height

_LOCAL_MAXIMUM_RADIUS = 1


class KeypointType(IntEnum):
    """The body keypoints the network detects."""

    NOSE = 0
    LEFT_EYE = 1
    RIGHT_EYE = 2
    LEFT_EAR = 3
    RIGHT_EAR = 4
    LEFT_SHOULDER = 5
    RIGHT_SHOULDER = 6
    LEFT_ELBOW = 7
    RIGHT_ELBOW = 8
    LEFT_WRIST = 9
    RIGHT_WRIST = 10
    LEFT_HIP = 11
    RIGHT_HIP = 12
    LEFT_KNEE = 13
    RIGHT_KNEE = 14
    LEFT_ANKLE = 15
    RIGHT_ANKLE = 16


_K = KeypointType
_FORWARD_EDGES = [
    (_K.NOSE, _K.LEFT_EYE),
    (_K.LEFT_EYE, _K.LEFT_EAR),
    (_K.NOSE, _K.RIGHT_EYE),
    (_K.RIGHT_EYE, _K.RIGHT_EAR),
    (_K.NOSE, _K.LEFT_SHOULDER),
    (_K.LEFT_SHOULDER, _K.LEFT_ELBOW),
    (_K.LEFT_ELBOW, _K.LEFT_WRIST),
    (_K.LEFT_SHOULDER, _K.LEFT_HIP),
    (_K.LEFT_HIP, _K.LEFT_KNEE),
    (_K.LEFT_KNEE, _K.LEFT_ANKLE),
    (_K.NOSE, _K.RIGHT_SHOULDER),
    (_K.RIGHT_SHOULDER, _K.RIGHT_ELBOW),
    (_K.RIGHT_ELBOW, _K.RIGHT_WRIST),
    (_K.RIGHT_SHOULDER, _K.RIGHT_HIP),
    (_K.RIGHT_HIP, _K.RIGHT_KNEE),
    (_K.RIGHT_KNEE, _K.RIGHT_ANKLE),
]
# Forward edges followed by the same edges reversed.
EDGE_LIST = _FORWARD_EDGES + [(child, parent) for parent, child in _FORWARD_EDGES]


@dataclass(frozen=True)
class PosePoint:
    """A point in map (or pixel) coordinates, y first."""

    y: float
    x: float


@dataclass(frozen=True)
class KeypointWithScore:
    """A keypoint candidate: position, keypoint type id and score."""

    point: PosePoint
    id: int
    score: float

    def __str__(self) -> str:
        return f"{self.point.y}, {self.point.x}, {self.id}, {self.score}"


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def sigmoid(x):
    """The logistic function."""
    try:
        return 1.0 / (1.0 + math.exp(-x))
    except OverflowError:
        return 0.0


def log_odds(x):
    """Inverse of the logistic function, for probabilities in [0, 1)."""
    return -math.log(1.0 / (x + 1e-6) - 1.0)


def squared_distance(a, b):
    """Squared distance between two points."""
    dy = b.y - a.y
    dx = b.x - a.x
    return dy * dy + dx * dx


def format_tensor(data, size, div):
    """Reorder a channel-major, column-major tensor into (height, width, channel) order and divide it."""
    w, h = MAP_SIZE.width, MAP_SIZE.height
    plane_size = w * h
    values = list(data)
    if len(values) < size * plane_size:
        raise ValueError(f"tensor needs {size * plane_size} values, got {len(values)}")
    tensor = [0.0] * (size * plane_size)
    for channel in range(size):
        plane = values[channel * plane_size : (channel + 1) * plane_size]
        tensor[channel::size] = [plane[j * h + k] / div for k in range(h) for j in range(w)]
    return tensor


def build_adjacency_list():
    """For each keypoint, the (child keypoint, edge id) pairs of edges leaving it."""
    adjacency: list[list[tuple[int, int]]] = [[] for _ in range(NUM_KEYPOINTS)]
    for edge_id, (parent, child) in enumerate(EDGE_LIST):
        adjacency[int(parent)].append((int(child), edge_id))
    return adjacency


def decreasing_arg_sort(scores):
    """Indices of the scores in decreasing score order."""
    values = list(scores)
    return sorted(range(len(values)), key=lambda i: values[i], reverse=True)


def _linear_interpolation(x: float, n: int) -> tuple[int, int, float]:
    x_proj = _clamp(x, 0.0, n - 1.0)
    x_floor = math.floor(x_proj)
    x_ceil = math.ceil(x_proj)
    return x_floor, x_ceil, x - x_floor


def sample_tensor(tensor, point, channels, num_channels):
    """Bilinearly sample a (height, width, num_channels) tensor at a point for each channel."""
    w = MAP_SIZE.width
    y_floor, y_ceil, y_lerp = _linear_interpolation(point.y, MAP_SIZE.height)
    x_floor, x_ceil, x_lerp = _linear_interpolation(point.x, w)
    top_left = (y_floor * w + x_floor) * num_channels
    top_right = (y_floor * w + x_ceil) * num_channels
    bottom_left = (y_ceil * w + x_floor) * num_channels
    bottom_right = (y_ceil * w + x_ceil) * num_channels
    return [
        (1 - y_lerp) * ((1 - x_lerp) * tensor[top_left + c] + x_lerp * tensor[top_right + c])
        + y_lerp * ((1 - x_lerp) * tensor[bottom_left + c] + x_lerp * tensor[bottom_right + c])
        for c in channels
    ]


def _is_local_maximum(scores: Sequence[float], y: int, x: int, j: int, score: float) -> bool:
    w, h = MAP_SIZE.width, MAP_SIZE.height
    r = _LOCAL_MAXIMUM_RADIUS
    for y_current in range(max(y - r, 0), min(y + r + 1, h)):
        for x_current in range(max(x - r, 0), min(x + r + 1, w)):
            if scores[(y_current * w + x_current) * NUM_KEYPOINTS + j] > score:
                return False
    return True


def build_keypoint_queue(scores, short_offsets, score_threshold):
    """Find local maxima above the threshold, refined by the short-range offsets.

    Returns the candidates in decreasing score order.
    """
    w, h = MAP_SIZE.width, MAP_SIZE.height
    candidates: list[KeypointWithScore] = []
    for y in range(h):
        for x in range(w):
            cell = y * w + x
            for j in range(NUM_KEYPOINTS):
                score = scores[cell * NUM_KEYPOINTS + j]
                if score < score_threshold or not _is_local_maximum(scores, y, x, j, score):
                    continue
                offset_index = 2 * cell * NUM_KEYPOINTS + j
                dy = short_offsets[offset_index]
                dx = short_offsets[offset_index + NUM_KEYPOINTS]
                point = PosePoint(_clamp(y + dy, 0.0, h - 1.0), _clamp(x + dx, 0.0, w - 1.0))
                candidates.append(KeypointWithScore(point, j, score))
    return sorted(candidates, key=lambda k: k.score, reverse=True)


def find_displaced_position(short_offsets, mid_offsets, source, edge_id, target_id, offset_refinement_steps):
    """Follow the mid-range offsets along an edge, then refine with the short-range offsets."""
    max_y = MAP_SIZE.height - 1.0
    max_x = MAP_SIZE.width - 1.0
    dy, dx = sample_tensor(mid_offsets, source, [edge_id, NUM_EDGES + edge_id], 2 * 2 * NUM_EDGES)
    y = _clamp(source.y + dy, 0.0, max_y)
    x = _clamp(source.x + dx, 0.0, max_x)
    channels = [target_id, NUM_KEYPOINTS + target_id]
    for _ in range(offset_refinement_steps):
        dy, dx = sample_tensor(short_offsets, PosePoint(y, x), channels, 2 * NUM_KEYPOINTS)
        y = _clamp(y + dy, 0.0, max_y)
        x = _clamp(x + dx, 0.0, max_x)
    return PosePoint(y, x)


def backtrack_decode_pose(scores, short_offsets, mid_offsets, root, adjacency_list, offset_refinement_steps):
    """Decode a whole pose from a root keypoint, highest scoring keypoints first.

    Returns the keypoint positions and their scores (as logits). Keypoints that
    cannot be reached keep the position (-1, -1) and the score -1e5.
    """
    keypoints = [PosePoint(-1.0, -1.0)] * NUM_KEYPOINTS
    keypoint_scores = [-1e5] * NUM_KEYPOINTS

    root_score = sample_tensor(scores, root.point, [NUM_KEYPOINTS], root.id)[0]
    counter = itertools.count()
    queue = [(-root_score, next(counter), KeypointWithScore(root.point, root.id, root_score))]
    decoded = [False] * NUM_KEYPOINTS

    while queue:
        _, _, current = heapq.heappop(queue)
        if decoded[current.id]:
            continue
        keypoints[current.id] = current.point
        keypoint_scores[current.id] = current.score
        decoded[current.id] = True

        for child_id, edge_id in adjacency_list[current.id]:
            if decoded[child_id]:
                continue
            # Mid offsets hold [fwd y][fwd x][bwd y][bwd x] blocks of NUM_EDGES.
            if edge_id > NUM_EDGES:
                edge_id += NUM_EDGES
            child_point = find_displaced_position(
                short_offsets, mid_offsets, current.point, edge_id, child_id, offset_refinement_steps
            )
            child_score = sample_tensor(scores, child_point, [child_id], NUM_KEYPOINTS)[0]
            heapq.heappush(queue, (-child_score, next(counter), KeypointWithScore(child_point, child_id, child_score)))

    return keypoints, keypoint_scores
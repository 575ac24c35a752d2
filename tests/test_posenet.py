import pytest

from frameproc.geometry import Rectangle, Size
from frameproc.posenet import (
    PoseNet,
    PoseResult,
    PoseTemporalFilter,
    perform_soft_keypoint_nms,
    split_output_tensor,
)
from frameproc.posenet_decode import (
    MAP_SIZE,
    NUM_HEATMAPS,
    NUM_KEYPOINTS,
    NUM_MID_OFFSETS,
    NUM_SHORT_OFFSETS,
    STRIDE,
    PosePoint,
)

PLANE = MAP_SIZE.width * MAP_SIZE.height
TOTAL = NUM_HEATMAPS + NUM_SHORT_OFFSETS + NUM_MID_OFFSETS
OUTPUT_SIZE = Size(1000, 1000)


def _pose(x, y, score=0.9, keypoint_score=0.8):
    return PoseResult(score, [PosePoint(float(y), float(x))] * NUM_KEYPOINTS, [keypoint_score] * NUM_KEYPOINTS)


def _raw_output(score=10.0):
    return [score] * NUM_HEATMAPS + [0.0] * (NUM_SHORT_OFFSETS + NUM_MID_OFFSETS)


def _formatted(score=10.0):
    return [score] * NUM_HEATMAPS, [0.0] * NUM_SHORT_OFFSETS, [0.0] * NUM_MID_OFFSETS


def _identity_converter(coords):
    return Rectangle(round(coords[0] * 480), round(coords[1] * 352), 0, 0)


def test_split_output_tensor_rejects_short_input():
    with pytest.raises(ValueError):
        split_output_tensor([0.0] * (TOTAL - 1))


def test_split_output_tensor_sizes_and_scaling():
    output = [float(STRIDE)] * TOTAL
    scores, short, mid = split_output_tensor(output)
    assert len(scores) == NUM_HEATMAPS
    assert len(short) == NUM_SHORT_OFFSETS
    assert len(mid) == NUM_MID_OFFSETS
    assert set(scores) == {float(STRIDE)}
    assert set(short) == {1.0}
    assert set(mid) == {1.0}


def test_soft_nms_single_instance_is_mean_of_scores():
    coords = [[PosePoint(0.0, 0.0)] * NUM_KEYPOINTS]
    scores = [[0.5] * NUM_KEYPOINTS]
    result = perform_soft_keypoint_nms([0], coords, scores, 1.0)
    assert result == pytest.approx([0.5])


def test_soft_nms_duplicate_instance_is_suppressed():
    coords = [[PosePoint(3.0, 3.0)] * NUM_KEYPOINTS] * 2
    scores = [[0.9] * NUM_KEYPOINTS, [0.7] * NUM_KEYPOINTS]
    result = perform_soft_keypoint_nms([0, 1], coords, scores, 1.0)
    assert result[0] == pytest.approx(0.9)
    assert result[1] == 0.0


def test_soft_nms_distant_instances_keep_scores():
    coords = [[PosePoint(0.0, 0.0)] * NUM_KEYPOINTS, [PosePoint(10.0, 10.0)] * NUM_KEYPOINTS]
    scores = [[0.9] * NUM_KEYPOINTS, [0.7] * NUM_KEYPOINTS]
    result = perform_soft_keypoint_nms([0, 1], coords, scores, 1.0)
    assert result == pytest.approx([0.9, 0.7])


def test_temporal_filter_hides_new_pose_until_matched():
    flt = PoseTemporalFilter(hidden_frames=2)
    pose = _pose(100, 100)
    assert flt.update([pose], OUTPUT_SIZE) == []
    assert flt.update([pose], OUTPUT_SIZE) == []
    shown = flt.update([pose], OUTPUT_SIZE)
    assert len(shown) == 1
    assert shown[0].pose_keypoints[0] == pose.pose_keypoints[0]


def test_temporal_filter_keeps_vanished_pose_for_visible_frames():
    flt = PoseTemporalFilter(visible_frames=2, hidden_frames=0)
    pose = _pose(100, 100)
    assert len(flt.update([pose], OUTPUT_SIZE)) == 1
    assert len(flt.update([], OUTPUT_SIZE)) == 1
    assert flt.update([], OUTPUT_SIZE) == []
    assert len(flt) == 0


def test_temporal_filter_factor_one_follows_new_pose():
    flt = PoseTemporalFilter(factor=1.0, hidden_frames=0)
    flt.update([_pose(100, 100)], OUTPUT_SIZE)
    moved = _pose(110, 105, score=0.6)
    shown = flt.update([moved], OUTPUT_SIZE)
    assert len(shown) == 1
    assert shown[0].pose_keypoints[0] == moved.pose_keypoints[0]
    assert shown[0].pose_score == moved.pose_score


def test_temporal_filter_factor_zero_keeps_old_pose():
    flt = PoseTemporalFilter(factor=0.0, hidden_frames=0)
    first = _pose(100, 100)
    flt.update([first], OUTPUT_SIZE)
    shown = flt.update([_pose(110, 105)], OUTPUT_SIZE)
    assert len(shown) == 1
    assert shown[0].pose_keypoints[0] == first.pose_keypoints[0]


def test_temporal_filter_distant_poses_tracked_separately():
    flt = PoseTemporalFilter(hidden_frames=0)
    shown = flt.update([_pose(100, 100), _pose(800, 800)], OUTPUT_SIZE)
    assert len(shown) == 2
    assert len(flt) == 2


def test_decode_low_scores_gives_no_poses():
    net = PoseNet()
    assert net.decode_all_poses(*_formatted(score=-10.0)) == []


def test_decode_uniform_high_scores_limited_by_max_detections():
    net = PoseNet(max_detections=3)
    results = net.decode_all_poses(*_formatted())
    assert len(results) == 3
    scores = [r.pose_score for r in results]
    assert scores == sorted(scores, reverse=True)
    for result in results:
        assert result.pose_score >= net.threshold
        assert len(result.pose_keypoints) == NUM_KEYPOINTS
        assert all(s > 0.5 for s in result.pose_keypoint_scores)
        for point in result.pose_keypoints:
            assert point.x % STRIDE == 0 and point.y % STRIDE == 0
            assert 0 <= point.x <= (MAP_SIZE.width - 1) * STRIDE
    firsts = {(r.pose_keypoints[0].x, r.pose_keypoints[0].y) for r in results}
    assert len(firsts) == 3


def test_decode_large_nms_radius_gives_single_pose():
    net = PoseNet(max_detections=5, nms_radius=1000.0)
    results = net.decode_all_poses(*_formatted())
    assert len(results) == 1


def test_process_without_output_raises():
    with pytest.raises(ValueError):
        PoseNet().process(None, _identity_converter, OUTPUT_SIZE)


def test_process_returns_locations_and_confidences():
    net = PoseNet(max_detections=2)
    seen = []

    def converter(coords):
        seen.append(list(coords))
        return _identity_converter(coords)

    locations, confidences = net.process(_raw_output(), converter, OUTPUT_SIZE)
    assert len(locations) == len(confidences) == 2
    assert all(len(pose) == NUM_KEYPOINTS for pose in locations)
    assert all(len(c) == NUM_KEYPOINTS for c in confidences)
    assert all(p.x % STRIDE == 0 and p.y % STRIDE == 0 for pose in locations for p in pose)
    assert all(0.0 <= c[0] <= 1.0 and 0.0 <= c[1] <= 1.0 and c[2:] == [0.0, 0.0] for c in seen)


def test_process_with_temporal_filter_delays_results():
    net = PoseNet(max_detections=1, temporal_filter=PoseTemporalFilter(hidden_frames=1))
    first = net.process(_raw_output(), _identity_converter, OUTPUT_SIZE)
    assert first == ([], [])
    locations, confidences = net.process(_raw_output(), _identity_converter, OUTPUT_SIZE)
    assert len(locations) == 1
    assert len(confidences) == 1


def test_from_params_defaults():
    net = PoseNet.from_params({})
    assert net.max_detections == 10
    assert net.offset_refinement_steps == 5
    assert net.temporal_filter is None
    with_filter = PoseNet.from_params({"temporal_filter": {"hidden_frames": 4}})
    assert with_filter.temporal_filter.hidden_frames == 4
    assert with_filter.temporal_filter.visible_frames == 5
import pytest

from frameproc.detection import (
    Detection,
    TopResultsClassifier,
    format_classification,
    interpret_detections,
    read_labels,
)
from frameproc.geometry import Rectangle, Size


def _labels_file(tmp_path, text):
    path = tmp_path / "labels.txt"
    path.write_bytes(text.encode("utf-8"))
    return path


def test_read_labels_plain(tmp_path):
    labels, count = read_labels(_labels_file(tmp_path, "cat\ndog\nbird\n"), False, 1)
    assert labels == ["cat", "dog", "bird"]
    assert count == 3


def test_read_labels_padding(tmp_path):
    labels, count = read_labels(_labels_file(tmp_path, "cat\ndog\nbird\n"), False, 16)
    assert len(labels) == 16
    assert count == 3
    assert labels[:3] == ["cat", "dog", "bird"]
    assert all(label == "" for label in labels[3:])


def test_read_labels_skip_first(tmp_path):
    labels, count = read_labels(_labels_file(tmp_path, "???\ndog\nbird"), True, 1)
    assert labels == ["dog", "bird"]
    assert count == 2


def test_read_labels_missing_file(tmp_path):
    with pytest.raises(OSError):
        read_labels(tmp_path / "absent.txt", False, 1)


def test_read_labels_bad_padding(tmp_path):
    with pytest.raises(ValueError):
        read_labels(_labels_file(tmp_path, "a\n"), False, 0)


def _labels(n):
    return [f"l{i}" for i in range(n)]


def test_classifier_top_results_descending():
    classifier = TopResultsClassifier(_labels(8), number_of_results=3)
    results = classifier.update([255, 128, 200, 100, 0, 60, 30, 250])
    assert [label for label, _ in results] == ["l0", "l7", "l2"]
    assert [conf for _, conf in results] == pytest.approx([1.0, 250 / 255, 200 / 255])


def test_classifier_low_scores_dropped():
    classifier = TopResultsClassifier(_labels(4))
    assert classifier.update([20, 20, 20, 20]) == []


def test_classifier_hysteresis():
    classifier = TopResultsClassifier(_labels(4))
    first = classifier.update([0, 80, 0, 0])
    assert [label for label, _ in first] == ["l1"]
    second = classifier.update([0, 40, 40, 0])
    assert [label for label, _ in second] == ["l1"]
    assert second[0][1] == pytest.approx(40 / 255)
    assert classifier.update([0, 20, 40, 0]) == []


def test_classifier_zero_results():
    classifier = TopResultsClassifier(_labels(3), number_of_results=0)
    assert classifier.update([255, 255, 255]) == []


def test_classifier_label_count_mismatch():
    classifier = TopResultsClassifier(_labels(16), label_count=4)
    with pytest.raises(ValueError):
        classifier.update(bytes(5))


def test_format_classification_labels():
    text = format_classification([("1:tabby, tabby cat", 0.5), ("2:tiger cat", 0.25)])
    assert text == "Detected: tabby 0.5, tiger cat 0.25"


def test_format_classification_no_colon_and_empty():
    assert format_classification([]) == "Detected: "
    assert format_classification([("tabby, cat", 0.5)]) == "Detected: tabby 0.5"


def test_format_classification_comma_before_colon():
    assert format_classification([("a,b:c", 0.5)]) == "Detected: c 0.5"


BOX = (0.25, 0.5, 0.75, 1.0)


def test_interpret_identity():
    results = interpret_detections(
        [BOX], [1.0], [0.9], ["bg", "cat"], 0.5, 0.5, Size(300, 300), Size(300, 300)
    )
    assert len(results) == 1
    assert results[0].box == Rectangle(150, 75, 150, 150)
    assert results[0].name == "cat"
    assert "cat" in str(results[0])


def test_interpret_scales_to_main():
    small = interpret_detections([BOX], [1.0], [0.9], ["bg", "cat"], 0.5, 0.5, Size(300, 300), Size(300, 300))
    big = interpret_detections([BOX], [1.0], [0.9], ["bg", "cat"], 0.5, 0.5, Size(300, 300), Size(600, 600))
    assert big[0].box == small[0].box.scaled_by(Size(600, 600), Size(300, 300))


def test_interpret_threshold():
    results = interpret_detections([BOX], [1.0], [0.4], ["bg", "cat"], 0.5, 0.5, Size(300, 300), Size(300, 300))
    assert results == []


def test_interpret_overlap_keeps_more_confident():
    results = interpret_detections(
        [BOX, BOX], [1.0, 1.0], [0.6, 0.9], ["bg", "cat"], 0.5, 0.5, Size(300, 300), Size(300, 300)
    )
    assert len(results) == 1
    assert results[0].confidence == pytest.approx(0.9)


def test_interpret_overlap_other_class_kept():
    results = interpret_detections(
        [BOX, BOX], [1.0, 0.0], [0.6, 0.9], ["bg", "cat"], 0.5, 0.5, Size(300, 300), Size(300, 300)
    )
    assert [d.name for d in results] == ["cat", "bg"]


def test_interpret_disjoint_same_class_kept():
    boxes = [(0.0, 0.0, 0.2, 0.2), (0.5, 0.5, 0.9, 0.9)]
    results = interpret_detections(boxes, [1.0, 1.0], [0.6, 0.9], ["bg", "cat"], 0.5, 0.5, Size(300, 300), Size(300, 300))
    assert len(results) == 2
    assert all(isinstance(d, Detection) for d in results) and results[0].box != results[1].box


def test_interpret_clamps_boxes():
    results = interpret_detections(
        [(-0.5, -0.5, 2.0, 2.0)], [0.0], [0.9], ["bg"], 0.5, 0.5, Size(300, 300), Size(300, 300)
    )
    box = results[0].box
    assert 0 <= box.x <= 300 and 0 <= box.y <= 300
    assert 0 <= box.width <= 300 and 0 <= box.height <= 300
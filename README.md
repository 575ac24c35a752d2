# frameproc

Pure-Python post-processing algorithms for camera frames. Everything works on
plain byte buffers, lists of numbers and small dataclasses. No camera stack is
needed, and the package has no dependencies outside the standard library.

## What is inside

- `frameproc.geometry`: the frozen dataclasses `Point`, `Size` and
  `Rectangle`. A `Rectangle` has `top_left()`, `size()`, `center()`,
  `bounded_to()` (intersection), `translated_by()`, `scaled_by()` (scales by
  numerator / denominator sizes, truncating) and `enclosed_in()`. A `Size` has
  `bounded_to_aspect_ratio()` and `centered_to()`.
- `frameproc.negate`: `negate(buffer)` inverts every byte of a writable buffer
  in place and returns the same buffer. A read-only buffer raises `TypeError`.
- `frameproc.motion_detect`: `MotionDetectConfig`, `read_config(params)` and
  `MotionDetector`. The detector compares a region of interest, subsampled by
  `hskip`/`vskip`, in successive low resolution luminance frames. It reports
  motion when enough pixels change by more than
  `difference_m * old + difference_c`.
- `frameproc.detection`:
  - `Detection` holds a category, name, confidence and box.
  - `read_labels(path, skip_first, padding)` returns the labels, padded with
    empty strings to a multiple of `padding`, and the number of labels read.
  - `TopResultsClassifier.update(prediction)` keeps the top classes from 8-bit
    scores, with hysteresis between a high and a low threshold.
  - `format_classification(results)` builds a `"Detected: ..."` annotation
    string.
  - `interpret_detections(...)` turns SSD-style box, class and score outputs
    into `Detection` objects in main image coordinates. It merges overlapping
    boxes of the same class.
- `frameproc.imx500`:
  - `OutputTensorInfo` and `CnnOutputTensorInfo` describe output tensors, with
    `from_bytes` / `to_bytes` for the binary layout.
  - `conv_reg_signed(reg)` decodes a normalisation register value.
  - `InputTensorWriter` writes de-normalised input tensors to a binary stream
    and closes it after a set number of tensors. `from_params` opens a named
    file.
  - `convert_inference_coordinates(...)` maps (x, y, w, h) inference fractions
    into ISP output pixels.
  - `inference_roi_auto(...)` gives the largest centred sensor region with a
    given aspect ratio. `FULL_SENSOR_RESOLUTION` holds the default sensor
    rectangle.
  - `parse_fw_progress(fw_text, block_text)` returns an `FwProgress` and
    `format_progress(progress)` formats it.
- `frameproc.imx500_detection`:
  - `parse_detection_tensor(data, total_detections)` returns an
    `ObjectDetectionOutput` holding `BoundingBox` entries, scores and classes.
  - `TemporalFilter` smooths detections across frames and hides short-lived
    ones.
  - `ObjectDetector.process(output_tensor, tensor_info, converter, output_size)`
    decodes one frame. When the frame has no tensor, it repeats the last
    results.
- `frameproc.posenet_decode`: the pieces of multi-person pose decoding:
  - `KeypointType`, `PosePoint`, `KeypointWithScore`.
  - `sigmoid`, `log_odds`, `squared_distance`.
  - `format_tensor`, `build_adjacency_list`, `decreasing_arg_sort`,
    `sample_tensor` (bilinear).
  - `build_keypoint_queue`, `find_displaced_position`,
    `backtrack_decode_pose`.
- `frameproc.posenet`:
  - `split_output_tensor(output)`.
  - `perform_soft_keypoint_nms(...)`.
  - `PoseResult` and `PoseTemporalFilter`.
  - `PoseNet`, whose `decode_all_poses` returns poses in input pixels. Its
    `process(output, converter, output_size)` returns keypoint locations and
    confidences for each visible pose.

## Install

    pip install .

For running the tests:

    pip install ".[test]"
    pytest

## Examples

Inverting an image buffer in place:

    from frameproc.negate import negate

    frame = bytearray([0, 255, 16, 32])
    negate(frame)            # frame is now bytearray([255, 0, 239, 223])

Motion detection on a stream of low resolution luminance frames:

    from frameproc.motion_detect import MotionDetector, read_config

    config = read_config({"frame_period": 1, "difference_c": 10})
    detector = MotionDetector(config, width=128, height=96, stride=128)
    for sequence, frame in enumerate(frames):
        moving = detector.process(frame, sequence)

`process` returns `None` for frames it skips because of `frame_period`. The
first processed frame only records the reference image and returns `False`.
After that, it returns whether motion was seen.

Object detection from on-sensor output, mapped into a 1920x1080 output:

    from frameproc.geometry import Rectangle, Size
    from frameproc.imx500 import FULL_SENSOR_RESOLUTION, convert_inference_coordinates
    from frameproc.imx500_detection import ObjectDetector

    output_size = Size(1920, 1080)

    def converter(coords):
        return convert_inference_coordinates(
            coords,
            Rectangle(0, 0, 4056, 3040),   # scaler crop
            output_size,
            Size(2028, 1520),              # sensor output size
            FULL_SENSOR_RESOLUTION,
        )

    detector = ObjectDetector(classes=["person", "car"], max_detections=10)
    detections = detector.process(tensor, tensor_info_bytes, converter, output_size)

## What it does not do

The package only processes data that it is given. It does not open cameras,
capture or display frames, or run neural networks. It does not load firmware
onto a sensor, and it does not draw boxes or text onto images. Tensors, frames
and stream sizes must come from elsewhere. There is no command-line program.
"""IMX500 on-sensor inference helpers: tensor info, input tensor dumps, coordinates."""

from __future__ import annotations

import logging
import math
import re
import struct
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, BinaryIO

from frameproc.geometry import Rectangle, Size

logger = logging.getLogger(__name__)

MAX_NUM_TENSORS = 16
MAX_NUM_DIMENSIONS = 16
NETWORK_NAME_LEN = 64
FULL_SENSOR_RESOLUTION = Rectangle(0, 0, 4056, 3040)

_TENSOR_INFO = struct.Struct(f"<II{MAX_NUM_DIMENSIONS}H")
_CNN_HEADER = struct.Struct(f"<{NETWORK_NAME_LEN}sI")

_DNN_NORM_SIGNED_SHIFT = 8
_DNN_NORM_MASK = 0x01FF


def _f32(value: float) -> float:
    return struct.unpack("f", struct.pack("f", value))[0]


def _int16(value: int) -> int:
    return ((int(value) + 0x8000) & 0xFFFF) - 0x8000


def _trunc_div(numerator: int, denominator: int) -> int:
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def _round(value: float) -> int:
    """Round half away from zero."""
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


@dataclass
class OutputTensorInfo:
    """Description of one output tensor."""

    tensor_data_num: int = 0
    num_dimensions: int = 0
    size: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        size = tuple(int(v) for v in self.size)
        if len(size) > MAX_NUM_DIMENSIONS:
            raise ValueError(f"at most {MAX_NUM_DIMENSIONS} dimensions are supported")
        self.size = size + (0,) * (MAX_NUM_DIMENSIONS - len(size))


@dataclass
class CnnOutputTensorInfo:
    """Network name and output tensor descriptions, as sent by the sensor."""

    network_name: str = ""
    num_tensors: int = 0
    info: list[OutputTensorInfo] = field(default_factory=list)

    SIZE = _CNN_HEADER.size + MAX_NUM_TENSORS * _TENSOR_INFO.size

    def __post_init__(self) -> None:
        info = list(self.info)
        if len(info) > MAX_NUM_TENSORS:
            raise ValueError(f"at most {MAX_NUM_TENSORS} tensors are supported")
        self.info = info + [OutputTensorInfo() for _ in range(MAX_NUM_TENSORS - len(info))]

    @classmethod
    def from_bytes(cls, data) -> CnnOutputTensorInfo:
        raw = bytes(data)
        if len(raw) < cls.SIZE:
            raise ValueError(f"tensor info needs {cls.SIZE} bytes, got {len(raw)}")
        name, num_tensors = _CNN_HEADER.unpack_from(raw, 0)
        info = []
        for i in range(MAX_NUM_TENSORS):
            values = _TENSOR_INFO.unpack_from(raw, _CNN_HEADER.size + i * _TENSOR_INFO.size)
            info.append(OutputTensorInfo(values[0], values[1], values[2:]))
        return cls(name.split(b"\0", 1)[0].decode("utf-8", "replace"), num_tensors, info)

    def to_bytes(self) -> bytes:
        parts = [_CNN_HEADER.pack(self.network_name.encode("utf-8"), self.num_tensors)]
        for item in self.info:
            parts.append(_TENSOR_INFO.pack(item.tensor_data_num, item.num_dimensions, *item.size))
        return b"".join(parts)


def conv_reg_signed(reg):
    """Interpret the low 9 bits of a normalisation register as a signed value."""
    reg = _int16(reg)
    if not (reg >> _DNN_NORM_SIGNED_SHIFT) & 1:
        return reg
    return -((-reg) & _DNN_NORM_MASK)


def _channels(values: Sequence[int], name: str) -> list[int]:
    values = list(values)
    if len(values) < 3:
        raise ValueError(f"{name} needs a value for each of the 3 channels")
    return values


class InputTensorWriter:
    """Writes de-normalised copies of the input tensor to a binary stream.

    The stream is closed once ``num_tensors`` tensors have been written.
    """

    def __init__(
        self,
        stream: BinaryIO,
        num_tensors: int = 1,
        norm_val: Sequence[int] = (0, 0, 0, 0),
        norm_shift: Sequence[int] = (0, 0, 0, 0),
        div_val: Sequence[int] = (1, 1, 1, 1),
        div_shift: int = 0,
    ) -> None:
        self._norm = [conv_reg_signed(_int16(v)) for v in _channels(norm_val, "norm_val")]
        self._norm_shift = [int(v) & 0xFF for v in _channels(norm_shift, "norm_shift")]
        self._div = [_int16(v) for v in _channels(div_val, "div_val")]
        if any(v == 0 for v in self._div[:3]):
            raise ValueError("div_val must not be zero")
        self._div_shift = int(div_shift)
        self._stream: BinaryIO | None = stream
        self._remaining = int(num_tensors)
        self._lock = threading.Lock()

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> InputTensorWriter:
        """Open the file named in a ``save_input_tensor`` parameter block."""
        try:
            filename = str(params["filename"])
        except KeyError:
            raise ValueError("save_input_tensor needs a filename") from None
        writer_args = dict(
            num_tensors=int(params.get("num_tensors", 1)),
            norm_val=params.get("norm_val", (0, 0, 0, 0)),
            norm_shift=params.get("norm_shift", (0, 0, 0, 0)),
            div_val=params.get("div_val", (1, 1, 1, 1)),
            div_shift=int(params.get("div_shift", 0)),
        )
        stream = open(filename, "wb")
        try:
            return cls(stream, **writer_args)
        except Exception:
            stream.close()
            raise

    @property
    def closed(self) -> bool:
        return self._stream is None

    def close(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    def __enter__(self) -> InputTensorWriter:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def write(self, tensor) -> bytes:
        """Convert and write one interleaved RGB tensor; return the bytes written."""
        with self._lock:
            if self._stream is None:
                return b""
            data = bytes(tensor)
            out = bytearray(len(data))
            for i, value in enumerate(data):
                channel = i % 3
                sample = value - 256 if value > 127 else value
                sample = _int16((sample << self._norm_shift[channel]) - self._norm[channel])
                out[i] = _trunc_div(sample << self._div_shift, self._div[channel]) & 0xFF
            self._stream.write(out)
            self._remaining -= 1
            if self._remaining == 0:
                self.close()
            return bytes(out)


def convert_inference_coordinates(
    coords,
    scaler_crop: Rectangle,
    isp_output_size: Size,
    sensor_output_size: Size,
    full_sensor_resolution: Rectangle,
):
    """Map (x, y, w, h) fractions of the inference image into ISP output pixels."""
    full_size = full_sensor_resolution.size()
    sensor_crop = scaler_crop.scaled_by(sensor_output_size, full_size)
    if len(coords) != 4:
        return Rectangle()
    fw = full_sensor_resolution.width - 1
    fh = full_sensor_resolution.height - 1
    obj = Rectangle(
        _round(_f32(coords[0] * fw)),
        _round(_f32(coords[1] * fh)),
        max(_round(_f32(coords[2] * fw)), 0),
        max(_round(_f32(coords[3] * fh)), 0),
    )
    obj_sensor = obj.scaled_by(sensor_output_size, full_size)
    obj_bound = obj_sensor.bounded_to(sensor_crop)
    obj_translated = obj_bound.translated_by(-sensor_crop.top_left())
    obj_scaled = obj_translated.scaled_by(isp_output_size, sensor_crop.size())
    logger.debug(
        "%s -> (sensor) %s -> (bound) %s -> (translate) %s -> (scaled) %s",
        obj, obj_sensor, obj_bound, obj_translated, obj_scaled,
    )
    return obj_scaled


def inference_roi_auto(full_sensor_resolution: Rectangle, width: int, height: int) -> Rectangle:
    """Largest centred region of the sensor with the given aspect ratio."""
    size = full_sensor_resolution.size().bounded_to_aspect_ratio(Size(width, height))
    roi = size.centered_to(full_sensor_resolution.center()).enclosed_in(full_sensor_resolution)
    return roi.bounded_to(full_sensor_resolution)


@dataclass(frozen=True)
class FwProgress:
    """Network firmware upload progress in bytes."""

    current: int
    total: int
    done: bool


def _read_uints(text: str) -> list[int]:
    values = []
    for token in text.split():
        match = re.match(r"\+?\d+", token)
        if not match:
            break
        values.append(int(match.group().lstrip("+")))
        if match.end() != len(token):
            break
    return values


def parse_fw_progress(fw_text: str, block_text: str) -> FwProgress | None:
    """Parse the firmware state and block progress; None unless an upload is running."""
    progress = _read_uints(fw_text)
    blocks = _read_uints(block_text)
    block_progress = blocks[0] if blocks else 0
    # [0] is the firmware state, [1] the current size, [2] the total size.
    if len(progress) != 3 or progress[0] != 2:
        return None
    _, current, total = progress
    return FwProgress(current + block_progress, total, bool(total) and current == total)


def format_progress(progress: FwProgress) -> str:
    return (
        f"Network Firmware Upload: {progress.current * 100 // progress.total}% "
        f"({progress.current // 1024}/{progress.total // 1024} KB)"
    )
"""Image negation effect."""

from __future__ import annotations

_INVERT = bytes(255 - value for value in range(256))


def negate(buffer):
    """Invert every byte of a writable buffer in place and return the buffer."""
    view = memoryview(buffer).cast("B")
    if view.readonly:
        raise TypeError("negate needs a writable buffer")
    view[:] = view.tobytes().translate(_INVERT)
    return buffer
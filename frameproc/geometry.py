"""Integer image geometry: points, sizes and rectangles."""

from __future__ import annotations

from dataclasses import dataclass


def _trunc_div(numerator: int, denominator: int) -> int:
    """Integer division rounding towards zero."""
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


@dataclass(frozen=True)
class Point:
    """A point in integer pixel coordinates."""

    x: int = 0
    y: int = 0

    def __neg__(self) -> Point:
        return Point(-self.x, -self.y)

    def __add__(self, other: Point) -> Point:
        return Point(self.x + other.x, self.y + other.y)

    def __str__(self) -> str:
        return f"({self.x}, {self.y})"


@dataclass(frozen=True)
class Size:
    """A two-dimensional size in pixels."""

    width: int = 0
    height: int = 0

    def is_null(self) -> bool:
        return not self.width and not self.height

    def bounded_to_aspect_ratio(self, ratio: Size) -> Size:
        """Return the largest size within this one that has the given aspect ratio."""
        if not ratio.width or not ratio.height:
            raise ValueError("aspect ratio must have non-zero width and height")
        ratio1 = self.width * ratio.height
        ratio2 = ratio.width * self.height
        if ratio1 > ratio2:
            return Size(ratio2 // ratio.height, self.height)
        return Size(self.width, ratio1 // ratio.width)

    def centered_to(self, center: Point) -> Rectangle:
        """Return a rectangle of this size centred on the given point."""
        return Rectangle(
            center.x - self.width // 2,
            center.y - self.height // 2,
            self.width,
            self.height,
        )

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class Rectangle:
    """An axis-aligned rectangle with an integer top-left corner."""

    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0

    def is_null(self) -> bool:
        return not self.width and not self.height

    def top_left(self) -> Point:
        return Point(self.x, self.y)

    def size(self) -> Size:
        return Size(self.width, self.height)

    def center(self) -> Point:
        return Point(self.x + self.width // 2, self.y + self.height // 2)

    def bounded_to(self, other: Rectangle) -> Rectangle:
        """Return the intersection of this rectangle with another."""
        left = max(self.x, other.x)
        top = max(self.y, other.y)
        right = min(self.x + self.width, other.x + other.width)
        bottom = min(self.y + self.height, other.y + other.height)
        return Rectangle(left, top, max(right - left, 0), max(bottom - top, 0))

    def translated_by(self, point: Point) -> Rectangle:
        return Rectangle(self.x + point.x, self.y + point.y, self.width, self.height)

    def scaled_by(self, numerator: Size, denominator: Size) -> Rectangle:
        """Scale position and size by numerator / denominator, truncating."""
        if not denominator.width or not denominator.height:
            raise ZeroDivisionError("cannot scale by a size with a zero dimension")
        return Rectangle(
            _trunc_div(self.x * numerator.width, denominator.width),
            _trunc_div(self.y * numerator.height, denominator.height),
            self.width * numerator.width // denominator.width,
            self.height * numerator.height // denominator.height,
        )

    def enclosed_in(self, boundary: Rectangle) -> Rectangle:
        """Shrink and shift this rectangle so that it lies inside the boundary."""
        width = min(self.width, boundary.width)
        height = min(self.height, boundary.height)
        x = min(max(self.x, boundary.x), boundary.x + boundary.width - width)
        y = min(max(self.y, boundary.y), boundary.y + boundary.height - height)
        return Rectangle(x, y, width, height)

    def __str__(self) -> str:
        return f"({self.x}, {self.y})/{self.width}x{self.height}"
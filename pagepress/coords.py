"""Map preview-image selections onto PDF page coordinates.

Preview UIs report selections as fractions of the rendered image with the
origin at the top-left corner, the same origin PyMuPDF page rectangles use.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Tuple

Box = Tuple[float, float, float, float]


@dataclass(frozen=True)
class PercentRect:
    """A rectangle expressed as fractions of the page, origin top-left."""

    x: float
    y: float
    width: float
    height: float

    def validate(self) -> "PercentRect":
        """Raise ``ValueError`` unless the rectangle lies within the page."""
        values = (self.x, self.y, self.width, self.height)
        if any(value < 0 or value > 1 for value in values):
            raise ValueError("Selection must be within the page")
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Selection must have a positive size")
        # Small tolerance for float noise from percentage conversion.
        if self.x + self.width > 1.0001 or self.y + self.height > 1.0001:
            raise ValueError("Selection extends past the page")
        return self


def parse_percent_rect(raw: Mapping[str, Any]) -> PercentRect:
    """
    Build a validated :class:`PercentRect` from a mapping.

    Accepts fractions (``0.1``) or percentages (``10``); if any of the four
    values is greater than 1 the whole record is treated as percentages.
    """
    try:
        values = [float(raw[key]) for key in ("x", "y", "width", "height")]
    except KeyError as error:
        raise ValueError(f"Selection is missing '{error.args[0]}'") from error
    except (TypeError, ValueError) as error:
        raise ValueError("Selection values must be numeric") from error
    if any(value > 1 for value in values):
        values = [value / 100 for value in values]
    return PercentRect(*values).validate()


def to_top_left_box(rect: PercentRect, page_width: float, page_height: float) -> Box:
    """Return ``(x0, y0, x1, y1)`` with the origin at the top-left corner."""
    x0 = rect.x * page_width
    y0 = rect.y * page_height
    return (x0, y0, x0 + rect.width * page_width, y0 + rect.height * page_height)

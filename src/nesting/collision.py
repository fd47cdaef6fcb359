"""Axis-aligned geometry checks for placed parts.

Pure functions with no state. The packer relies on them to build layouts
and callers use them to re-validate a layout after editing it by hand.
"""

from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from src.nesting.models import Placement, Rotation


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned bounding box."""
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height


def effective_box(item: Any, rotation: Optional[Rotation] = None) -> BoundingBox:
    """Footprint of a part or placement on the sheet.

    A :class:`Placement` already stores its post-rotation footprint and is
    returned as-is. Any other object is read as unrotated ``width``/``height``
    plus a ``rotation`` (and optional ``x``/``y``, default 0); quarter turns
    of 90 or 270 degrees swap the two sides. The position never changes.
    """
    x = float(getattr(item, "x", 0.0))
    y = float(getattr(item, "y", 0.0))
    if isinstance(item, Placement) and rotation is None:
        return BoundingBox(x, y, item.width, item.height)

    if rotation is None:
        rotation = getattr(item, "rotation", Rotation.R0)
    if not isinstance(rotation, Rotation):
        rotation = Rotation.from_degrees(rotation)

    if rotation.swaps_axes:
        return BoundingBox(x, y, item.height, item.width)
    return BoundingBox(x, y, item.width, item.height)


def overlaps(a: BoundingBox, b: BoundingBox) -> bool:
    """Strict overlap test; boxes that only share an edge do not collide."""
    return (
        a.x < b.x + b.width
        and a.x + a.width > b.x
        and a.y < b.y + b.height
        and a.y + a.height > b.y
    )


def out_of_bounds(box: BoundingBox, sheet_width: float, sheet_height: float) -> bool:
    """Whether any part of the box lies outside the sheet."""
    return (
        box.x < 0
        or box.y < 0
        or box.x + box.width > sheet_width
        or box.y + box.height > sheet_height
    )


def utilization(boxes: Iterable[BoundingBox], sheet_width: float, sheet_height: float) -> float:
    """Summed box area over sheet area.

    Returns 0 for a zero-area sheet. Overlapping inputs are not detected,
    so the ratio can exceed 1.
    """
    sheet_area = sheet_width * sheet_height
    if sheet_area == 0:
        return 0.0
    return sum(box.area for box in boxes) / sheet_area


def find_collisions(placements: Sequence[Placement]) -> List[Tuple[int, int]]:
    """Index pairs of placements that overlap on the same sheet."""
    boxes = [effective_box(p) for p in placements]
    pairs = []
    for i in range(len(placements)):
        for j in range(i + 1, len(placements)):
            if placements[i].sheet_index != placements[j].sheet_index:
                continue
            if overlaps(boxes[i], boxes[j]):
                pairs.append((i, j))
    return pairs


def collides_with_any(target: Placement, others: Iterable[Placement]) -> bool:
    """Whether a placement overlaps any other placement on its sheet."""
    box = effective_box(target)
    for other in others:
        if other is target or other.sheet_index != target.sheet_index:
            continue
        if overlaps(box, effective_box(other)):
            return True
    return False

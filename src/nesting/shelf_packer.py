"""Shelf packing (First-Fit-Decreasing-Height) across multiple sheets.

This is the always-available nesting baseline. It is deterministic: the same
parts in the same order always produce the same placements, which pricing and
previews depend on.

Layout rules:
- Units are sorted tallest first (stable), then placed first-fit.
- An existing shelf admits a unit when the unit is no taller than the shelf
  and ``x_cursor + width + kerf`` stays within the sheet width.
- A new shelf starts at the current stack height, plus one kerf unless it is
  the first shelf on the sheet, and needs ``y + height + kerf`` within the
  sheet height.
- Every step tries the unit as given, then turned 90 degrees.
- A unit that fits no empty sheet in either orientation is dropped without
  opening a sheet.
"""

from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional, Sequence, Tuple

from src.nesting.collision import effective_box, utilization
from src.nesting.exceptions import InvalidConfigError
from src.nesting.models import (
    NestingResult,
    Part,
    Placement,
    Rotation,
    Sheet,
    UnitItem,
    expand_parts,
)
from src.utils import get_logger

logger = get_logger("nesting.shelf_packer")


@dataclass
class Shelf:
    """A horizontal strip whose height is set by its first unit."""
    y: float
    height: float
    x_cursor: float = 0.0

    def admits(self, width: float, height: float, kerf: float, sheet_width: float) -> bool:
        return height <= self.height and self.x_cursor + width + kerf <= sheet_width


@dataclass
class SheetLayout:
    """Shelves opened on one physical sheet."""
    index: int
    shelves: List[Shelf] = field(default_factory=list)

    @property
    def stack_height(self) -> float:
        """Bottom edge of the lowest shelf."""
        return max((s.y + s.height for s in self.shelves), default=0.0)

    def next_shelf_y(self, kerf: float) -> float:
        if not self.shelves:
            return 0.0
        return self.stack_height + kerf

    def can_open_shelf(self, width: float, height: float, kerf: float, sheet: Sheet) -> bool:
        y = self.next_shelf_y(kerf)
        return y + height + kerf <= sheet.height and width + kerf <= sheet.width

    def open_shelf(self, width: float, height: float, kerf: float) -> Shelf:
        shelf = Shelf(y=self.next_shelf_y(kerf), height=height, x_cursor=width + kerf)
        self.shelves.append(shelf)
        return shelf


class ShelfPacker:
    """Incremental shelf packer over a growable list of sheets.

    Usage:
        packer = ShelfPacker(Sheet(3000, 1500), kerf=2)
        for item in items:
            packer.place(item.id, item.width, item.height)
        result = packer.result()
    """

    def __init__(self, sheet: Sheet, kerf: float = 2.0):
        self.sheet = sheet
        self.kerf = kerf
        self.sheets: List[SheetLayout] = []
        self.placements: List[Placement] = []
        self.unplaced: List[str] = []

    def _orientations(self, width: float, height: float, allow_rotation: bool):
        yield width, height, Rotation.R0
        if allow_rotation:
            yield height, width, Rotation.R90

    def _record(self, part_id: str, layout: SheetLayout, x: float, y: float,
                width: float, height: float, rotation: Rotation) -> Placement:
        placement = Placement(
            part_id=part_id,
            sheet_index=layout.index,
            x=x,
            y=y,
            width=width,
            height=height,
            rotation=rotation,
        )
        self.placements.append(placement)
        return placement

    def place(self, part_id: str, width: float, height: float,
              allow_rotation: bool = True) -> Optional[Placement]:
        """Place one unit, returning its placement or None if it cannot fit."""
        kerf = self.kerf
        orientations = list(self._orientations(width, height, allow_rotation))

        # Existing shelves, first-fit by creation order
        for layout in self.sheets:
            for shelf in layout.shelves:
                for w, h, rotation in orientations:
                    if shelf.admits(w, h, kerf, self.sheet.width):
                        x = shelf.x_cursor
                        shelf.x_cursor += w + kerf
                        return self._record(part_id, layout, x, shelf.y, w, h, rotation)

        # New shelf on an existing sheet
        for layout in self.sheets:
            for w, h, rotation in orientations:
                if layout.can_open_shelf(w, h, kerf, self.sheet):
                    shelf = layout.open_shelf(w, h, kerf)
                    return self._record(part_id, layout, 0.0, shelf.y, w, h, rotation)

        # Fresh sheet, only opened when the unit fits on it
        empty = SheetLayout(index=len(self.sheets))
        for w, h, rotation in orientations:
            if empty.can_open_shelf(w, h, kerf, self.sheet):
                self.sheets.append(empty)
                shelf = empty.open_shelf(w, h, kerf)
                return self._record(part_id, empty, 0.0, shelf.y, w, h, rotation)

        logger.debug(f"Unit of {part_id} ({width}x{height}) does not fit the sheet")
        self.unplaced.append(part_id)
        return None

    def place_all(self, items: Iterable[UnitItem], allow_rotation: bool = True) -> None:
        for item in items:
            self.place(item.id, item.width, item.height, allow_rotation=allow_rotation)

    def sheet_utilization(self) -> List[float]:
        """Utilization per sheet index, from the placements on each sheet."""
        boxes_by_sheet = [[] for _ in self.sheets]
        for placement in self.placements:
            boxes_by_sheet[placement.sheet_index].append(effective_box(placement))
        return [
            utilization(boxes, self.sheet.width, self.sheet.height)
            for boxes in boxes_by_sheet
        ]

    def result(self) -> NestingResult:
        return NestingResult(
            placements=list(self.placements),
            sheets_used=len(self.sheets),
            utilization=self.sheet_utilization(),
        )


def sort_by_height(items: Sequence[UnitItem]) -> List[UnitItem]:
    """Tallest first; equal heights keep their input order."""
    return sorted(items, key=lambda item: item.height, reverse=True)


def validate_request(parts: Sequence[Part], sheet: Sheet, kerf: float) -> None:
    """Reject a request before any packing happens.

    Raises:
        InvalidConfigError: On negative kerf, a bad sheet or a bad part.
    """
    if kerf is None or kerf != kerf or kerf < 0:
        raise InvalidConfigError(f"kerf must be a non-negative number, got {kerf}")
    sheet.validate()
    for part in parts:
        part.validate()


def shelf_pack(parts: Sequence[Part], sheet: Sheet, kerf: float = 2.0) -> NestingResult:
    """Pack parts onto as many copies of ``sheet`` as needed.

    Args:
        parts: Parts to nest; each is expanded into ``quantity`` units
        sheet: Sheet definition
        kerf: Gap left between neighbouring parts (mm)

    Returns:
        NestingResult; units that fit no sheet are left out
    """
    validate_request(parts, sheet, kerf)

    items = sort_by_height(expand_parts(parts))
    packer = ShelfPacker(sheet, kerf)
    packer.place_all(items)
    result = packer.result()

    if packer.unplaced:
        logger.debug(f"{len(packer.unplaced)} unit(s) left unplaced")
    return result


def pack_sequence(
    items: Sequence[Tuple[str, float, float, Rotation]],
    sheet: Sheet,
    kerf: float,
) -> Tuple[List[Placement], List[int], int]:
    """Pack pre-oriented units in the given order, without sorting or turning.

    Each item is ``(part_id, width, height, rotation)`` where width and height
    are already the footprint for ``rotation``. Placements come back in item
    order with the unplaced items skipped.

    Returns:
        (placements, indices of unplaced items, sheets used)
    """
    packer = ShelfPacker(sheet, kerf)
    placements = []
    unplaced = []
    for index, (part_id, width, height, rotation) in enumerate(items):
        placement = packer.place(part_id, width, height, allow_rotation=False)
        if placement is not None:
            if rotation != Rotation.R0:
                placement = replace(placement, rotation=rotation)
            placements.append(placement)
        else:
            unplaced.append(index)
    return placements, unplaced, len(packer.sheets)

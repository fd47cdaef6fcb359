"""Request-scoped holder for one nesting outcome while a caller edits it.

The packer never re-checks a layout once it has been returned. A session
keeps the parts, the sheet and the placements together so an editor can move
or turn placements and then ask whether the layout is still valid.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Sequence, Tuple

from src.nesting.collision import effective_box, find_collisions, out_of_bounds, utilization
from src.nesting.models import NestingResult, Part, Placement, Sheet, find_unplaced


@dataclass
class NestingSession:
    """Parts, sheet and editable placements for one nesting request."""
    parts: Sequence[Part]
    sheet: Sheet
    placements: List[Placement] = field(default_factory=list)
    sheets_used: int = 0

    @classmethod
    def from_result(cls, parts: Sequence[Part], sheet: Sheet, result: NestingResult) -> "NestingSession":
        return cls(
            parts=list(parts),
            sheet=sheet,
            placements=list(result.placements),
            sheets_used=result.sheets_used,
        )

    def move(self, index: int, x: float, y: float) -> Placement:
        """Move a placement to a new position on its sheet."""
        self.placements[index] = self.placements[index].moved(x, y)
        return self.placements[index]

    def rotate(self, index: int) -> Placement:
        """Turn a placement a quarter turn, keeping its top-left corner."""
        placement = self.placements[index]
        rotation = placement.rotation.next()
        # Footprint is stored post-rotation, so every quarter turn swaps it
        self.placements[index] = replace(
            placement,
            rotation=rotation,
            width=placement.height,
            height=placement.width,
        )
        return self.placements[index]

    def collisions(self) -> List[Tuple[int, int]]:
        """Index pairs of overlapping placements on the same sheet."""
        return find_collisions(self.placements)

    def out_of_bounds(self) -> List[int]:
        """Indices of placements that leave the sheet."""
        return [
            i for i, p in enumerate(self.placements)
            if out_of_bounds(effective_box(p), self.sheet.width, self.sheet.height)
        ]

    def is_valid(self) -> bool:
        return not self.collisions() and not self.out_of_bounds()

    def utilization(self) -> List[float]:
        """Per-sheet utilization of the current placements; above 1 if they overlap."""
        boxes: List[list] = [[] for _ in range(self.sheets_used)]
        for placement in self.placements:
            if placement.sheet_index < self.sheets_used:
                boxes[placement.sheet_index].append(effective_box(placement))
        return [utilization(b, self.sheet.width, self.sheet.height) for b in boxes]

    def unplaced(self) -> Dict[str, int]:
        """Requested units that have no placement."""
        return find_unplaced(self.parts, self.to_result())

    def to_result(self) -> NestingResult:
        return NestingResult(
            placements=list(self.placements),
            sheets_used=self.sheets_used,
            utilization=self.utilization(),
        )

"""Value types shared by the packer, the optimizer and the coordinator.

Every value here is request-scoped: it is built for one nesting call and
thrown away once the result has been handed back.
"""

import math
from collections import Counter
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from src.nesting.exceptions import InvalidConfigError


class Rotation(int, Enum):
    """Allowed part rotations in degrees."""
    R0 = 0
    R90 = 90
    R180 = 180
    R270 = 270

    @property
    def swaps_axes(self) -> bool:
        """Whether this rotation swaps width and height."""
        return self in (Rotation.R90, Rotation.R270)

    def next(self) -> "Rotation":
        """Next quarter turn, wrapping 270 back to 0."""
        return Rotation((self.value + 90) % 360)

    @classmethod
    def from_degrees(cls, degrees: float) -> "Rotation":
        """Snap an angle in degrees to the nearest quarter turn."""
        return cls(int(round(degrees / 90.0)) % 4 * 90)


@dataclass(frozen=True)
class Part:
    """A flat part to nest, already unit-converted to millimeters."""
    id: str
    width: float
    height: float
    quantity: int = 1
    polygon: Optional[Tuple[float, ...]] = None  # flat [x0, y0, x1, y1, ...]

    def __post_init__(self):
        if self.polygon is not None and not isinstance(self.polygon, tuple):
            object.__setattr__(self, "polygon", tuple(self.polygon))

    @property
    def area(self) -> float:
        """Bounding rectangle area."""
        return self.width * self.height

    def validate(self) -> None:
        """Reject dimensions the packer cannot reason about."""
        if not (math.isfinite(self.width) and math.isfinite(self.height)):
            raise InvalidConfigError(f"Part {self.id!r} has non-finite dimensions")
        if self.width < 0 or self.height < 0:
            raise InvalidConfigError(
                f"Part {self.id!r} has negative dimensions {self.width}x{self.height}"
            )
        if self.quantity < 0:
            raise InvalidConfigError(f"Part {self.id!r} has negative quantity {self.quantity}")
        if self.polygon is not None and len(self.polygon) % 2 != 0:
            raise InvalidConfigError(f"Part {self.id!r} polygon has an odd number of coordinates")

    def to_dict(self) -> dict:
        """Convert to wire dictionary."""
        d = {
            "id": self.id,
            "width": self.width,
            "height": self.height,
            "quantity": self.quantity,
        }
        if self.polygon is not None:
            d["polygon"] = list(self.polygon)
        return d

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Part":
        """Create from wire dictionary."""
        polygon = data.get("polygon")
        return cls(
            id=str(data["id"]),
            width=float(data["width"]),
            height=float(data["height"]),
            quantity=int(data.get("quantity", 1)),
            polygon=tuple(float(v) for v in polygon) if polygon is not None else None,
        )


@dataclass(frozen=True)
class Sheet:
    """Sheet definition, reused for every physical sheet instance."""
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    def validate(self) -> None:
        """Reject non-positive or non-finite sheet dimensions."""
        if not (math.isfinite(self.width) and math.isfinite(self.height)):
            raise InvalidConfigError("Sheet dimensions must be finite")
        if self.width <= 0 or self.height <= 0:
            raise InvalidConfigError(
                f"Sheet dimensions must be positive, got {self.width}x{self.height}"
            )

    def to_dict(self) -> dict:
        return {"width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Sheet":
        return cls(width=float(data["width"]), height=float(data["height"]))


@dataclass(frozen=True)
class Placement:
    """A placed unit; width and height are the post-rotation footprint."""
    part_id: str
    sheet_index: int
    x: float
    y: float
    width: float
    height: float
    rotation: Rotation = Rotation.R0

    def __post_init__(self):
        if not isinstance(self.rotation, Rotation):
            object.__setattr__(self, "rotation", Rotation.from_degrees(self.rotation))

    @property
    def area(self) -> float:
        return self.width * self.height

    def moved(self, x: float, y: float) -> "Placement":
        """Copy of this placement at a new position."""
        return replace(self, x=x, y=y)

    def to_dict(self) -> dict:
        """Convert to wire dictionary."""
        return {
            "partId": self.part_id,
            "sheetIndex": self.sheet_index,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "rotation": int(self.rotation),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Placement":
        """Create from wire dictionary."""
        return cls(
            part_id=str(data["partId"]),
            sheet_index=int(data["sheetIndex"]),
            x=float(data["x"]),
            y=float(data["y"]),
            width=float(data["width"]),
            height=float(data["height"]),
            rotation=Rotation.from_degrees(float(data.get("rotation", 0))),
        )


@dataclass(frozen=True)
class NestingResult:
    """Outcome of one nesting run."""
    placements: List[Placement] = field(default_factory=list)
    sheets_used: int = 0
    utilization: List[float] = field(default_factory=list)  # one entry per sheet index

    def placements_on(self, sheet_index: int) -> List[Placement]:
        """Placements on a single sheet, in placement order."""
        return [p for p in self.placements if p.sheet_index == sheet_index]

    @property
    def total_utilization(self) -> float:
        """Used area over the area of every sheet used."""
        if not self.utilization:
            return 0.0
        return sum(self.utilization) / len(self.utilization)

    def to_dict(self) -> dict:
        """Convert to wire dictionary."""
        return {
            "placements": [p.to_dict() for p in self.placements],
            "sheetsUsed": self.sheets_used,
            "utilization": list(self.utilization),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NestingResult":
        """Create from wire dictionary."""
        return cls(
            placements=[Placement.from_dict(p) for p in data.get("placements", [])],
            sheets_used=int(data.get("sheetsUsed", 0)),
            utilization=[float(u) for u in data.get("utilization", [])],
        )


@dataclass(frozen=True)
class NestingProgress:
    """Optimizer progress snapshot."""
    iteration: int
    total_iterations: int
    utilization: float

    @property
    def fraction(self) -> float:
        """Completed share of the iteration budget."""
        if self.total_iterations <= 0:
            return 1.0
        return min(1.0, self.iteration / self.total_iterations)


class Backend(str, Enum):
    """Which algorithm path a nesting job takes."""
    AUTO = "auto"
    HEURISTIC = "heuristic"
    ADVANCED = "advanced"


VALID_ROTATION_STEPS = (1, 2, 4)

# wire name -> attribute name
_CONFIG_ALIASES = {
    "spacing": "spacing",
    "rotationSteps": "rotation_steps",
    "rotation_steps": "rotation_steps",
    "iterations": "iterations",
    "populationSize": "population_size",
    "population_size": "population_size",
    "mutationRate": "mutation_rate",
    "mutation_rate": "mutation_rate",
    "backend": "backend",
    "seed": "seed",
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_int(value: Any) -> Optional[int]:
    if _is_number(value) and math.isfinite(value) and float(value).is_integer():
        return int(value)
    return None


@dataclass(frozen=True)
class NestingConfig:
    """Fully resolved nesting configuration.

    Build one with :meth:`resolve`; the packer and optimizer trust every
    field and never re-default them.
    """
    spacing: float = 2.0
    rotation_steps: int = 4
    iterations: int = 100
    population_size: int = 50
    mutation_rate: float = 0.1
    backend: Backend = Backend.AUTO
    seed: Optional[int] = None

    @classmethod
    def from_settings(cls, settings) -> "NestingConfig":
        """Defaults taken from a :class:`src.config.Settings` instance."""
        return cls.resolve(
            {
                "spacing": settings.default_spacing,
                "rotation_steps": settings.default_rotation_steps,
                "iterations": settings.default_iterations,
                "population_size": settings.default_population_size,
                "mutation_rate": settings.default_mutation_rate,
                "backend": settings.default_backend,
                "seed": settings.random_seed,
            }
        )

    @classmethod
    def resolve(
        cls,
        overrides: Optional[Mapping[str, Any]] = None,
        defaults: Optional["NestingConfig"] = None,
    ) -> "NestingConfig":
        """Merge partial overrides onto defaults.

        Accepts wire (camelCase) or attribute (snake_case) keys. Unknown
        keys are ignored and out-of-range values fall back to the default.
        Negative spacing is the one value that is rejected outright.

        Raises:
            InvalidConfigError: If spacing is negative or not finite.
        """
        base = defaults or cls()
        if overrides is None:
            return base
        if isinstance(overrides, NestingConfig):
            overrides = overrides.to_dict()

        values: Dict[str, Any] = {}
        for key, value in overrides.items():
            name = _CONFIG_ALIASES.get(key)
            if name is not None and value is not None:
                values[name] = value

        spacing = base.spacing
        if "spacing" in values and _is_number(values["spacing"]):
            spacing = float(values["spacing"])
            if not math.isfinite(spacing) or spacing < 0:
                raise InvalidConfigError(f"spacing must be a non-negative number, got {spacing}")

        rotation_steps = _as_int(values.get("rotation_steps"))
        if rotation_steps not in VALID_ROTATION_STEPS:
            rotation_steps = base.rotation_steps

        iterations = _as_int(values.get("iterations"))
        if iterations is None or iterations < 1:
            iterations = base.iterations

        population_size = _as_int(values.get("population_size"))
        if population_size is None or population_size < 2:
            population_size = base.population_size

        mutation_rate = values.get("mutation_rate")
        if not (_is_number(mutation_rate) and 0.0 <= mutation_rate <= 1.0):
            mutation_rate = base.mutation_rate

        try:
            backend = Backend(values.get("backend", base.backend))
        except ValueError:
            backend = base.backend

        seed = _as_int(values.get("seed"))
        if seed is None:
            seed = base.seed

        return cls(
            spacing=spacing,
            rotation_steps=rotation_steps,
            iterations=iterations,
            population_size=population_size,
            mutation_rate=float(mutation_rate),
            backend=backend,
            seed=seed,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary (attribute names)."""
        return {
            "spacing": self.spacing,
            "rotation_steps": self.rotation_steps,
            "iterations": self.iterations,
            "population_size": self.population_size,
            "mutation_rate": self.mutation_rate,
            "backend": self.backend.value,
            "seed": self.seed,
        }

    def to_wire(self) -> dict:
        """The config block of a NEST payload."""
        return {
            "spacing": self.spacing,
            "rotationSteps": self.rotation_steps,
            "iterations": self.iterations,
            "populationSize": self.population_size,
            "mutationRate": self.mutation_rate,
        }


@dataclass(frozen=True)
class UnitItem:
    """One placeable unit after quantity expansion."""
    id: str
    width: float
    height: float


def expand_parts(parts: Iterable[Part]) -> List[UnitItem]:
    """Expand each part into ``quantity`` independent units, in input order."""
    items: List[UnitItem] = []
    for part in parts:
        for _ in range(max(0, part.quantity)):
            items.append(UnitItem(part.id, part.width, part.height))
    return items


def find_unplaced(parts: Sequence[Part], result: NestingResult) -> Dict[str, int]:
    """Units requested but missing from a result, keyed by part id."""
    requested: Counter = Counter()
    for part in parts:
        requested[part.id] += max(0, part.quantity)
    placed = Counter(p.part_id for p in result.placements)
    return {
        part_id: count - placed[part_id]
        for part_id, count in requested.items()
        if count > placed[part_id]
    }

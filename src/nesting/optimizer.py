"""Advanced nesting backends.

An optimizer is a drop-in replacement for the shelf packer that runs on the
worker thread. It gets the whole NEST payload (true outlines included),
reports progress at least once per generation, checks for cancellation
between generations and must return a layout that is non-overlapping and
inside the sheet once spacing is accounted for.

:class:`GeneticOptimizer` is the bundled backend. It searches over unit
order and per-unit rotation and decodes each candidate with the shelf rules,
so every candidate it can return already satisfies the layout invariants.
"""

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from shapely.errors import GEOSException
from shapely.geometry import Polygon, box

from src.nesting.exceptions import OptimizerError
from src.nesting.models import Part, Placement, Rotation, Sheet
from src.nesting.protocol import Algorithm, NestRequestPayload, NestResultPayload
from src.nesting.shelf_packer import pack_sequence
from src.utils import get_logger

logger = get_logger("nesting.optimizer")

ProgressCallback = Callable[[int, int, float], None]
CancelCheck = Callable[[], bool]


class NestingOptimizer(ABC):
    """Contract every advanced nesting backend implements."""

    name: str = "optimizer"

    @abstractmethod
    def nest(
        self,
        request: NestRequestPayload,
        progress: ProgressCallback,
        is_cancelled: CancelCheck,
    ) -> NestResultPayload:
        """
        Run one nesting job.

        Args:
            request: Sheet, parts and resolved config
            progress: Called as ``progress(iteration, total, utilization)``
            is_cancelled: Polled at least once per generation

        Returns:
            Best layout found; partial if the job was cancelled
        """


@dataclass(frozen=True)
class Outline:
    """True outline of one part, normalised to its bounding box origin."""
    part_id: str
    width: float
    height: float
    area: float

    def footprint(self, rotation: Rotation) -> Tuple[float, float]:
        if rotation.swaps_axes:
            return self.height, self.width
        return self.width, self.height


def build_outline(part: Part) -> Outline:
    """Outline from the part polygon, or its rectangle when it has none."""
    if part.polygon is None:
        shape = box(0.0, 0.0, part.width, part.height)
    else:
        points = list(zip(part.polygon[0::2], part.polygon[1::2]))
        try:
            shape = Polygon(points)
            if not shape.is_valid:
                shape = shape.buffer(0)
        except (ValueError, GEOSException) as e:
            raise OptimizerError(f"Part {part.id!r} has an unusable outline: {e}") from e
        if shape.is_empty or shape.area <= 0:
            raise OptimizerError(f"Part {part.id!r} outline has no area")

    min_x, min_y, max_x, max_y = shape.bounds
    return Outline(
        part_id=part.id,
        width=max_x - min_x,
        height=max_y - min_y,
        area=shape.area,
    )


def rotation_choices(rotation_steps: int) -> List[Rotation]:
    """Quarter turns reachable with ``rotation_steps`` evenly spaced angles."""
    steps = max(1, rotation_steps)
    return [Rotation.from_degrees(i * 360.0 / steps) for i in range(steps)]


@dataclass
class Genome:
    """Candidate layout: unit order plus one rotation index per unit."""
    order: List[int]
    rotations: List[int]

    def key(self) -> Tuple[Tuple[int, ...], Tuple[int, ...]]:
        return tuple(self.order), tuple(self.rotations)


@dataclass
class Evaluation:
    """Decoded genome with its score (lower is better)."""
    placements: List[Placement]
    unplaced: int
    sheets_used: int
    sheet_utilization: List[float]
    utilization: float

    @property
    def score(self) -> Tuple[int, int, float]:
        emptiest = min(self.sheet_utilization, default=0.0)
        return (self.unplaced, self.sheets_used, emptiest)


class GeneticOptimizer(NestingOptimizer):
    """
    Genetic search over part order and rotation.

    Usage:
        optimizer = GeneticOptimizer(seed=42)
        payload = optimizer.nest(request, progress=print, is_cancelled=lambda: False)
    """

    name = "genetic"

    TOURNAMENT_SIZE = 3
    ELITE_FRACTION = 0.1

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed

    def nest(
        self,
        request: NestRequestPayload,
        progress: ProgressCallback,
        is_cancelled: CancelCheck,
    ) -> NestResultPayload:
        config = request.config
        sheet = request.sheet
        rng = random.Random(config.seed if config.seed is not None else self.seed)

        # One outline per Part object; ids are not required to be unique
        units = [
            outline
            for part in request.parts
            if part.quantity > 0
            for outline in [build_outline(part)] * part.quantity
        ]
        rotations = rotation_choices(config.rotation_steps)

        if not units:
            return NestResultPayload(iterations_run=0, algorithm=Algorithm.ADVANCED)

        cache: Dict[tuple, Evaluation] = {}

        def evaluate(genome: Genome) -> Evaluation:
            key = genome.key()
            if key not in cache:
                cache[key] = self._decode(genome, units, rotations, sheet, config.spacing)
            return cache[key]

        population = self._initial_population(units, len(rotations), config.population_size, rng)
        best: Optional[Evaluation] = None
        iterations_run = 0

        for generation in range(config.iterations):
            if is_cancelled():
                logger.debug(f"Cancelled before generation {generation + 1}")
                break

            ranked = sorted(population, key=lambda g: evaluate(g).score)
            leader = evaluate(ranked[0])
            if best is None or leader.score < best.score:
                best = leader

            iterations_run = generation + 1
            progress(iterations_run, config.iterations, best.utilization)

            if iterations_run < config.iterations:
                population = self._next_generation(ranked, config, len(rotations), rng, evaluate)

        if best is None:
            best = evaluate(population[0])

        return NestResultPayload(
            placements=best.placements,
            sheets_used=best.sheets_used,
            utilization=best.sheet_utilization,
            iterations_run=iterations_run,
            algorithm=Algorithm.ADVANCED,
        )

    def _decode(
        self,
        genome: Genome,
        units: Sequence[Outline],
        rotations: Sequence[Rotation],
        sheet: Sheet,
        spacing: float,
    ) -> Evaluation:
        items = []
        for index in genome.order:
            outline = units[index]
            rotation = rotations[genome.rotations[index]]
            width, height = outline.footprint(rotation)
            items.append((outline.part_id, width, height, rotation))

        placements, unplaced, sheets_used = pack_sequence(items, sheet, spacing)

        # Placements follow genome order with unplaced units skipped
        skipped = set(unplaced)
        placed_units = [units[index] for pos, index in enumerate(genome.order) if pos not in skipped]
        used = [0.0] * sheets_used
        for placement, outline in zip(placements, placed_units):
            used[placement.sheet_index] += outline.area
        sheet_area = sheet.width * sheet.height
        sheet_utilization = [a / sheet_area if sheet_area > 0 else 0.0 for a in used]
        overall = sum(used) / (sheet_area * sheets_used) if sheets_used and sheet_area > 0 else 0.0

        return Evaluation(
            placements=placements,
            unplaced=len(unplaced),
            sheets_used=sheets_used,
            sheet_utilization=sheet_utilization,
            utilization=overall,
        )

    def _initial_population(
        self,
        units: Sequence[Outline],
        rotation_count: int,
        size: int,
        rng: random.Random,
    ) -> List[Genome]:
        count = len(units)
        # Same start as the shelf packer: tallest first, unrotated
        ffdh = sorted(range(count), key=lambda i: units[i].height, reverse=True)
        population = [Genome(order=ffdh, rotations=[0] * count)]
        while len(population) < size:
            order = list(range(count))
            rng.shuffle(order)
            population.append(
                Genome(order=order, rotations=[rng.randrange(rotation_count) for _ in range(count)])
            )
        return population

    def _next_generation(
        self,
        ranked: List[Genome],
        config,
        rotation_count: int,
        rng: random.Random,
        evaluate: Callable[[Genome], Evaluation],
    ) -> List[Genome]:
        elite_count = max(1, int(len(ranked) * self.ELITE_FRACTION))
        population = ranked[:elite_count]
        while len(population) < config.population_size:
            mother = self._tournament(ranked, rng, evaluate)
            father = self._tournament(ranked, rng, evaluate)
            child = self._crossover(mother, father, rng)
            self._mutate(child, config.mutation_rate, rotation_count, rng)
            population.append(child)
        return population

    def _tournament(
        self,
        ranked: List[Genome],
        rng: random.Random,
        evaluate: Callable[[Genome], Evaluation],
    ) -> Genome:
        size = min(self.TOURNAMENT_SIZE, len(ranked))
        contenders = rng.sample(ranked, size)
        return min(contenders, key=lambda g: evaluate(g).score)

    @staticmethod
    def _crossover(mother: Genome, father: Genome, rng: random.Random) -> Genome:
        """Order crossover on the sequence, uniform crossover on rotations."""
        count = len(mother.order)
        rotations = [
            mother.rotations[i] if rng.random() < 0.5 else father.rotations[i]
            for i in range(count)
        ]
        if count < 2:
            return Genome(order=list(mother.order), rotations=rotations)

        start, end = sorted(rng.sample(range(count), 2))
        segment = mother.order[start:end + 1]
        taken = set(segment)
        rest = [gene for gene in father.order if gene not in taken]
        order = rest[:start] + segment + rest[start:]
        return Genome(order=order, rotations=rotations)

    @staticmethod
    def _mutate(genome: Genome, rate: float, rotation_count: int, rng: random.Random) -> None:
        count = len(genome.order)
        for i in range(count):
            if rng.random() < rate:
                j = rng.randrange(count)
                genome.order[i], genome.order[j] = genome.order[j], genome.order[i]
            if rotation_count > 1 and rng.random() < rate:
                genome.rotations[i] = rng.randrange(rotation_count)


def load_optimizer(name: str, seed: Optional[int] = None) -> NestingOptimizer:
    """
    Create the optimizer backend named in settings.

    Raises:
        OptimizerError: If the backend is disabled or unknown.
    """
    if name == GeneticOptimizer.name:
        return GeneticOptimizer(seed=seed)
    if name in ("none", "", None):
        raise OptimizerError("Advanced optimizer disabled")
    raise OptimizerError(f"Unknown optimizer backend: {name!r}")

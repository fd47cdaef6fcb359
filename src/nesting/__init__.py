"""Sheet nesting engine.

Packs flat parts onto fixed-size sheets with a deterministic shelf packer,
or hands the job to a background optimizer when one is available.
"""

from src.nesting.collision import (
    BoundingBox,
    effective_box,
    find_collisions,
    out_of_bounds,
    overlaps,
    utilization,
)
from src.nesting.coordinator import JobStatus, NestingCoordinator, NestingJob, normalize_result
from src.nesting.exceptions import (
    InvalidConfigError,
    NestingBusyError,
    NestingError,
    OptimizerError,
    ProtocolError,
)
from src.nesting.models import (
    Backend,
    NestingConfig,
    NestingProgress,
    NestingResult,
    Part,
    Placement,
    Rotation,
    Sheet,
    expand_parts,
    find_unplaced,
)
from src.nesting.optimizer import GeneticOptimizer, NestingOptimizer, load_optimizer
from src.nesting.session import NestingSession
from src.nesting.shelf_packer import shelf_pack

__all__ = [
    "Backend",
    "BoundingBox",
    "GeneticOptimizer",
    "InvalidConfigError",
    "JobStatus",
    "NestingBusyError",
    "NestingConfig",
    "NestingCoordinator",
    "NestingError",
    "NestingJob",
    "NestingOptimizer",
    "NestingProgress",
    "NestingResult",
    "NestingSession",
    "OptimizerError",
    "Part",
    "Placement",
    "ProtocolError",
    "Rotation",
    "Sheet",
    "effective_box",
    "expand_parts",
    "find_collisions",
    "find_unplaced",
    "load_optimizer",
    "normalize_result",
    "out_of_bounds",
    "overlaps",
    "shelf_pack",
    "utilization",
]

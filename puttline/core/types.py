"""Pydantic models for the putting pipeline and its artefacts.

Everything that flows between the pipeline stages lives here: the raw mesh
fragments handed in by the capture layer, the reconstructed green surface,
simulation results and the putting lines produced by the solver.  Units are
metres, radians, m/s and seconds throughout; +Y is up and the green lies in
the X/Z plane.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ── errors ────────────────────────────────────────────────────────────
class InsufficientDataError(ValueError):
    """Not enough usable surface data to build a green (caller must rescan)."""


class AnalysisInterrupted(Exception):
    """Raised inside a search when its token is cancelled or past its deadline."""

    def __init__(self, reason: str = "cancelled"):
        super().__init__(reason)
        self.reason = reason


# ── tiny helpers ──────────────────────────────────────────────────────
class Vec3(BaseModel):
    """A 3-component vector (x, y, z) in metres."""

    x: float
    y: float
    z: float

    @classmethod
    def from_array(cls, arr) -> "Vec3":
        return cls(x=float(arr[0]), y=float(arr[1]), z=float(arr[2]))

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=np.float64)

    def horizontal_distance(self, other: "Vec3") -> float:
        """Distance in the X/Z plane, ignoring height."""
        return math.hypot(self.x - other.x, self.z - other.z)


class BBox(BaseModel):
    """Axis-aligned bounding box."""

    min: Vec3
    max: Vec3

    @property
    def center(self) -> Vec3:
        return Vec3(
            x=(self.min.x + self.max.x) / 2,
            y=(self.min.y + self.max.y) / 2,
            z=(self.min.z + self.max.z) / 2,
        )

    @property
    def extent(self) -> Vec3:
        return Vec3(
            x=self.max.x - self.min.x,
            y=self.max.y - self.min.y,
            z=self.max.z - self.min.z,
        )

    @property
    def area(self) -> float:
        """Horizontal footprint (X × Z) in square metres."""
        ext = self.extent
        return ext.x * ext.z


# ── inbound mesh data ─────────────────────────────────────────────────
class MeshClassification(IntEnum):
    """Per-face labels delivered by the capture subsystem."""

    NONE = 0
    WALL = 1
    FLOOR = 2
    CEILING = 3
    TABLE = 4
    SEAT = 5
    WINDOW = 6
    DOOR = 7


class MeshFragment(BaseModel):
    """One raw mesh patch in its own local frame.

    ``transform`` is the 4×4 local → world matrix (row-major, column vectors).
    ``normals`` and ``classifications`` are optional.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    vertices: np.ndarray
    triangles: np.ndarray
    normals: Optional[np.ndarray] = None
    classifications: Optional[np.ndarray] = None
    transform: np.ndarray = Field(default_factory=lambda: np.eye(4))

    @field_validator("vertices", "normals", mode="before")
    @classmethod
    def _as_points(cls, v):
        if v is None:
            return None
        return np.asarray(v, dtype=np.float64).reshape(-1, 3)

    @field_validator("triangles", mode="before")
    @classmethod
    def _as_triangles(cls, v):
        return np.asarray(v, dtype=np.int64).reshape(-1, 3)

    @field_validator("classifications", mode="before")
    @classmethod
    def _as_labels(cls, v):
        if v is None:
            return None
        return np.asarray(v, dtype=np.int64).reshape(-1)

    @field_validator("transform", mode="before")
    @classmethod
    def _as_matrix(cls, v):
        m = np.asarray(v, dtype=np.float64)
        if m.shape != (4, 4):
            raise ValueError(f"transform must be 4x4, got shape {m.shape}")
        return m

    @model_validator(mode="after")
    def _check_normals(self) -> "MeshFragment":
        if self.normals is not None and len(self.normals) != len(self.vertices):
            raise ValueError(
                f"normals ({len(self.normals)}) must match vertices ({len(self.vertices)})"
            )
        return self


# ── reconstructed surface ─────────────────────────────────────────────
class SurfaceSummary(BaseModel):
    """Mesh-quality diagnostics for the UI layer (no geometry arrays)."""

    id: uuid.UUID
    vertex_count: int
    triangle_count: int
    bounds: BBox
    captured_at: datetime
    quality_score: float


class GreenSurface(BaseModel):
    """Immutable reconstructed green surface.

    ``id`` is the surface identity: derived caches key on it, and every
    operation that changes the geometry produces a surface with a new id.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    vertices: np.ndarray
    triangles: np.ndarray
    normals: np.ndarray
    bounding_box: BBox
    captured_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    quality_score: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("vertices", "normals", mode="before")
    @classmethod
    def _as_float32(cls, v):
        return np.array(v, dtype=np.float32).reshape(-1, 3)

    @field_validator("triangles", mode="before")
    @classmethod
    def _as_indices(cls, v):
        return np.array(v, dtype=np.int64).reshape(-1, 3)

    @model_validator(mode="after")
    def _check_invariants(self) -> "GreenSurface":
        n = len(self.vertices)
        if len(self.normals) != n:
            raise ValueError(f"normals ({len(self.normals)}) must match vertices ({n})")
        if len(self.triangles) and (self.triangles.min() < 0 or self.triangles.max() >= n):
            raise ValueError("triangle index out of range")
        for arr in (self.vertices, self.triangles, self.normals):
            arr.setflags(write=False)
        return self

    @classmethod
    def empty(cls) -> "GreenSurface":
        zero = Vec3(x=0.0, y=0.0, z=0.0)
        return cls(
            vertices=np.empty((0, 3)),
            triangles=np.empty((0, 3)),
            normals=np.empty((0, 3)),
            bounding_box=BBox(min=zero, max=zero),
        )

    @property
    def vertex_count(self) -> int:
        return len(self.vertices)

    @property
    def triangle_count(self) -> int:
        return len(self.triangles)

    def summary(self) -> SurfaceSummary:
        return SurfaceSummary(
            id=self.id,
            vertex_count=self.vertex_count,
            triangle_count=self.triangle_count,
            bounds=self.bounding_box,
            captured_at=self.captured_at,
            quality_score=self.quality_score,
        )


# ── ball / hole markers ───────────────────────────────────────────────
class BallPosition(BaseModel):
    world_position: Vec3
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class HolePosition(BaseModel):
    world_position: Vec3
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── simulation output ─────────────────────────────────────────────────
class SimulationStatus(str, Enum):
    HOLED = "holed"
    STOPPED = "stopped"
    OUT_OF_BOUNDS = "out_of_bounds"
    TIMEOUT = "timeout"
    LIP_OUT = "lip_out"


class PathPoint(BaseModel):
    position: Vec3
    velocity: Vec3
    time: float

    @property
    def speed(self) -> float:
        v = self.velocity
        return math.sqrt(v.x * v.x + v.y * v.y + v.z * v.z)


class SimulationResult(BaseModel):
    """Outcome of one simulated putt."""

    path: list[PathPoint]
    final_position: Vec3
    status: SimulationStatus
    entry_speed: Optional[float] = None
    entry_offset: Optional[float] = None
    closest_approach: float = math.inf
    lip_out: bool = False

    @property
    def holed(self) -> bool:
        return self.status == SimulationStatus.HOLED


# ── putting lines ─────────────────────────────────────────────────────
class PuttingStrategy(str, Enum):
    CONSERVATIVE = "conservative"  # die at the hole
    OPTIMAL = "optimal"            # ~9" past
    AGGRESSIVE = "aggressive"      # ~17" past


class BreakDirection(str, Enum):
    LEFT = "left"
    RIGHT = "right"
    STRAIGHT = "straight"


class PuttSpeed(str, Enum):
    GENTLE = "gentle"
    MODERATE = "moderate"
    FIRM = "firm"


class BreakInfo(BaseModel):
    total_break: float = 0.0
    direction: BreakDirection = BreakDirection.STRAIGHT
    profile: list[float] = Field(default_factory=list)

    @classmethod
    def straight(cls) -> "BreakInfo":
        return cls()

    @property
    def description(self) -> str:
        if self.direction == BreakDirection.STRAIGHT:
            return "Straight"
        cm = int(self.total_break * 100)
        if cm >= 100:
            return f"{cm / 100:.1f}m {self.direction.value}"
        return f"{cm}cm {self.direction.value}"


CONFIDENCE_CAP = 0.92


class PuttingLine(BaseModel):
    """The solver's recommendation for one strategy."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    strategy: PuttingStrategy
    path: list[PathPoint]
    aim_point: Vec3 = Field(description="Where to aim, not where the ball finishes")
    break_info: BreakInfo
    recommended_speed: PuttSpeed
    confidence: float = Field(ge=0.0, le=CONFIDENCE_CAP)
    distance: float = Field(description="Straight-line ball → hole distance (m)")
    launch_speed: float = 0.0
    aim_angle: float = Field(default=0.0, description="Offset from the direct line (rad)")
    holed: bool = False

    @property
    def distance_feet(self) -> float:
        return self.distance * 3.28084


class AnalysisStatus(str, Enum):
    COMPLETE = "complete"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    CANCELLED = "cancelled"
    INSUFFICIENT_DATA = "insufficient_data"
    DEGENERATE_INPUT = "degenerate_input"


class PuttAnalysis(BaseModel):
    """Everything one analysis run produced."""

    status: AnalysisStatus
    lines: dict[PuttingStrategy, PuttingLine] = Field(default_factory=dict)
    simulations: int = 0
    elapsed: float = 0.0
    surface: Optional[SurfaceSummary] = None

    def best_line(self) -> Optional[PuttingLine]:
        """Optimal first, then conservative, then aggressive."""
        for strategy in (
            PuttingStrategy.OPTIMAL,
            PuttingStrategy.CONSERVATIVE,
            PuttingStrategy.AGGRESSIVE,
        ):
            if strategy in self.lines:
                return self.lines[strategy]
        return None

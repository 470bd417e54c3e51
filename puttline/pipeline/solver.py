"""Putt solver: search aim angle × launch speed for each strategy.

Three strategies differ only in how far past the hole they aim to finish.
For each one the solver walks a grid of speed multipliers and angle offsets
(most plausible first), keeps the holing trial with the best confidence,
optionally refines it, and turns it into a :class:`PuttingLine`.

Everything runs under a wall-clock budget.  The caller's
:class:`CancellationToken` is polled between trials and inside long
simulations; an interrupted search still returns what it has.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import NamedTuple, Optional

from puttline.core.settings import SolverSettings
from puttline.core.types import (
    CONFIDENCE_CAP,
    AnalysisInterrupted,
    AnalysisStatus,
    BallPosition,
    BreakDirection,
    BreakInfo,
    GreenSurface,
    HolePosition,
    PathPoint,
    PuttAnalysis,
    PuttingLine,
    PuttingStrategy,
    PuttSpeed,
    SimulationResult,
    Vec3,
)
from puttline.pipeline.physics import (
    MAX_CAPTURE_SPEED,
    SIMPLE_CAPTURE_SPEED,
    PhysicsParameters,
)
from puttline.pipeline.simulate import PathSimulator, entry_angle
from puttline.pipeline.slope import SlopeData

logger = logging.getLogger(__name__)

STRATEGY_OVERSHOOT = {
    PuttingStrategy.CONSERVATIVE: 0.0,
    PuttingStrategy.OPTIMAL: 0.23,      # 9"
    PuttingStrategy.AGGRESSIVE: 0.43,   # 17"
}
STRATEGY_ORDER = (
    PuttingStrategy.OPTIMAL,
    PuttingStrategy.CONSERVATIVE,
    PuttingStrategy.AGGRESSIVE,
)

FALLBACK_SPEEDS = (0.9, 0.95, 1.0, 1.05, 1.1)
FALLBACK_ANGLES_DEG = (-5.0, -2.5, 0.0, 2.5, 5.0)
REFINE_ANGLES_DEG = (-1.0, -0.5, 0.0, 0.5, 1.0)
REFINE_SPEEDS = (0.97, 0.985, 1.0, 1.015, 1.03)
STRAIGHT_LINE_CONFIDENCE = 0.25
STRAIGHT_LINE_POINTS = 21
MIN_DISTANCE = 0.001


# ── cancellation ──────────────────────────────────────────────────────

class CancellationToken:
    """Thread-safe cancel flag with an optional monotonic deadline.

    A child token (``parent=...``) is stopped when either it or its parent
    is; the solver uses one to add its own budget to the caller's.
    """

    def __init__(self, timeout: float | None = None, parent: "CancellationToken | None" = None):
        self._event = threading.Event()
        self._deadline = None if timeout is None else time.monotonic() + timeout
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or (self._parent is not None and self._parent.cancelled)

    @property
    def deadline(self) -> float:
        own = math.inf if self._deadline is None else self._deadline
        if self._parent is not None:
            return min(own, self._parent.deadline)
        return own

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.deadline

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def raise_if_stopped(self) -> None:
        if self.cancelled:
            raise AnalysisInterrupted("cancelled")
        if self.expired:
            raise AnalysisInterrupted("deadline")


# ── scoring helpers ───────────────────────────────────────────────────

def _clamp01(v: float) -> float:
    return min(max(v, 0.0), 1.0)


def _rotate(dx: float, dz: float, angle: float) -> tuple[float, float]:
    c, s = math.cos(angle), math.sin(angle)
    return dx * c - dz * s, dx * s + dz * c


def compute_break(
    path: list[PathPoint], origin: Vec3, direction: tuple[float, float], distance: float
) -> BreakInfo:
    """Largest sideways deviation of *path* from the straight line.

    Positive deviations are to the left of the direction of travel (+Y up).
    The magnitude is capped at half the putt length.
    """
    dx, dz = direction
    profile = []
    peak = 0.0
    for pt in path:
        px = pt.position.x - origin.x
        pz = pt.position.z - origin.z
        dev = dz * px - dx * pz
        profile.append(dev)
        if abs(dev) > abs(peak):
            peak = dev

    total = min(abs(peak), 0.5 * distance)
    threshold = max(0.015, 0.005 * distance)
    if total < threshold:
        return BreakInfo(total_break=total, direction=BreakDirection.STRAIGHT, profile=profile)
    side = BreakDirection.LEFT if peak > 0 else BreakDirection.RIGHT
    return BreakInfo(total_break=total, direction=side, profile=profile)


def categorize_speed(launch_speed: float, reference_speed: float) -> PuttSpeed:
    """Compare a launch speed with the dead-weight speed for the same putt."""
    if reference_speed <= 0:
        return PuttSpeed.MODERATE
    ratio = launch_speed / reference_speed
    if ratio < 0.95:
        return PuttSpeed.GENTLE
    if ratio > 1.1:
        return PuttSpeed.FIRM
    return PuttSpeed.MODERATE


def data_quality_factor(distance: float) -> float:
    if distance < 0.5:
        return 0.95
    if distance <= 5.0:
        return 1.0
    return max(0.6, 1.0 - (distance - 5.0) * 0.03)


def speed_alignment(strategy: PuttingStrategy, speed: float, base_speed: float) -> float:
    """How well *speed* fits the strategy's target pace."""
    if base_speed <= 0:
        return 0.0
    dev = abs(speed - base_speed) / base_speed
    if strategy == PuttingStrategy.CONSERVATIVE:
        return 1.0 - dev if speed <= 1.05 * base_speed else 0.5
    if strategy == PuttingStrategy.AGGRESSIVE:
        return 1.0 - 0.5 * dev if speed >= 0.95 * base_speed else 0.5
    return 1.0 - 2.0 * dev


def score_confidence(
    result: SimulationResult,
    *,
    strategy: PuttingStrategy,
    speed: float,
    base_speed: float,
    distance: float,
    max_deviation: float,
    entry_angle: float,
    parameters: PhysicsParameters,
) -> float:
    """Weighted confidence in [0, CONFIDENCE_CAP] for one holing trial."""
    entry_speed = result.entry_speed or 0.0
    entry_offset = result.entry_offset or 0.0
    prob = parameters.hole_probability(entry_speed, entry_offset, entry_angle)
    entry = _clamp01(prob * 0.7 + (1.0 - min(entry_speed / MAX_CAPTURE_SPEED, 1.0)) * 0.3)
    pace = _clamp01(speed_alignment(strategy, speed, base_speed))
    straightness = _clamp01(1.0 - 2.0 * max_deviation / distance) if distance > 0 else 0.0
    quality = _clamp01(data_quality_factor(distance))

    score = 0.30 * entry + 0.25 * pace + 0.25 * straightness + 0.20 * quality
    if result.lip_out or entry_speed > SIMPLE_CAPTURE_SPEED:
        score -= 0.1
    return min(max(score, 0.0), CONFIDENCE_CAP)


def straight_line(
    ball: BallPosition, hole: HolePosition, parameters: Optional[PhysicsParameters] = None
) -> PuttingLine:
    """Low-confidence straight line used when no simulated line is available."""
    a, b = ball.world_position, hole.world_position
    distance = a.horizontal_distance(b)
    path = []
    for k in range(STRAIGHT_LINE_POINTS):
        t = k / (STRAIGHT_LINE_POINTS - 1)
        pos = Vec3(x=a.x + (b.x - a.x) * t, y=a.y + (b.y - a.y) * t, z=a.z + (b.z - a.z) * t)
        path.append(PathPoint(position=pos, velocity=Vec3(x=0.0, y=0.0, z=0.0), time=0.0))
    return PuttingLine(
        strategy=PuttingStrategy.OPTIMAL,
        path=path,
        aim_point=b,
        break_info=BreakInfo.straight(),
        recommended_speed=PuttSpeed.MODERATE,
        confidence=STRAIGHT_LINE_CONFIDENCE,
        distance=distance,
        launch_speed=parameters.speed_for_distance(distance) if parameters else 0.0,
    )


class _Candidate(NamedTuple):
    result: SimulationResult
    angle: float
    speed: float
    base_speed: float
    confidence: float
    break_info: BreakInfo


# ── solver ────────────────────────────────────────────────────────────

class PuttSolver:
    """Grid search + refinement over aim angle and launch speed."""

    def __init__(
        self,
        simulator: Optional[PathSimulator] = None,
        settings: Optional[SolverSettings] = None,
    ):
        self.simulator = simulator or PathSimulator()
        self.settings = settings or SolverSettings()
        self._trials = 0

    def find_putting_lines(
        self,
        ball: BallPosition,
        hole: HolePosition,
        surface: GreenSurface,
        slope_data: SlopeData,
        parameters: PhysicsParameters,
        *,
        token: Optional[CancellationToken] = None,
    ) -> PuttAnalysis:
        started = time.monotonic()
        self._trials = 0
        a, b = ball.world_position, hole.world_position
        distance = a.horizontal_distance(b)

        if slope_data.is_empty:
            logger.warning("No slope data, cannot solve")
            return PuttAnalysis(status=AnalysisStatus.INSUFFICIENT_DATA)
        if distance < MIN_DISTANCE:
            logger.warning("Ball and hole coincide (%.4f m)", distance)
            return PuttAnalysis(status=AnalysisStatus.DEGENERATE_INPUT)

        cfg = self.settings
        run = CancellationToken(timeout=cfg.deadline, parent=token)
        # Built up front so no trial pays for it mid-search
        self.simulator.height_cache.index_for(surface)
        window = min(cfg.refinement_window, 0.25 * cfg.deadline)
        grid_end = run.deadline - window
        direction = ((b.x - a.x) / distance, (b.z - a.z) / distance)
        rise = slope_data.elevation_change(a, b) / distance

        ctx = dict(
            ball=ball, hole=hole, surface=surface, slope_data=slope_data,
            parameters=parameters, token=run, direction=direction, distance=distance,
        )
        best: dict[PuttingStrategy, _Candidate] = {}
        status = AnalysisStatus.COMPLETE
        try:
            for k, strategy in enumerate(STRATEGY_ORDER):
                base = parameters.speed_for_distance(distance + STRATEGY_OVERSHOOT[strategy], rise)
                slice_end = time.monotonic() + (grid_end - time.monotonic()) / (len(STRATEGY_ORDER) - k)
                found = self._grid_search(strategy, base, slice_end, best, ctx)
                if found is not None:
                    best[strategy] = found

            if not best:
                base = parameters.speed_for_distance(
                    distance + STRATEGY_OVERSHOOT[PuttingStrategy.OPTIMAL], rise
                )
                fallback = self._closest_approach(base, ctx)
                if fallback is not None:
                    best[PuttingStrategy.OPTIMAL] = fallback

            for strategy in list(best):
                best[strategy] = self._refine(strategy, best[strategy], ctx)
        except AnalysisInterrupted as exc:
            status = (
                AnalysisStatus.CANCELLED if exc.reason == "cancelled"
                else AnalysisStatus.DEADLINE_EXCEEDED
            )
            logger.info("Search interrupted (%s) with %d strategies done", exc.reason, len(best))
        finally:
            self.simulator.height_cache.clear()

        reference = parameters.speed_for_distance(distance, rise)
        lines = {
            strategy: self._build_line(strategy, cand, ball, direction, distance, reference)
            for strategy, cand in best.items()
        }
        elapsed = time.monotonic() - started
        logger.info(
            "Solved %d strategies in %.2fs (%d simulations, %s)",
            len(lines), elapsed, self._trials, status.value,
        )
        return PuttAnalysis(
            status=status, lines=lines, simulations=self._trials, elapsed=elapsed,
        )

    def find_optimal_putt(self, *args, **kwargs) -> Optional[PuttingLine]:
        """Best single line: optimal, else conservative, else aggressive."""
        return self.find_putting_lines(*args, **kwargs).best_line()

    # ── trials ────────────────────────────────────────────────────────
    def _simulate(self, angle: float, speed: float, ctx: dict) -> SimulationResult:
        token: CancellationToken = ctx["token"]
        token.raise_if_stopped()
        self._trials += 1
        if self._trials % self.settings.yield_every == 0:
            time.sleep(0)
        dx, dz = _rotate(*ctx["direction"], angle)
        return self.simulator.simulate(
            ctx["ball"],
            Vec3(x=dx, y=0.0, z=dz),
            speed,
            ctx["surface"],
            ctx["slope_data"],
            ctx["hole"],
            ctx["parameters"],
            token=token,
        )

    def _evaluate(
        self, strategy: PuttingStrategy, angle: float, speed: float, base: float, ctx: dict
    ) -> Optional[_Candidate]:
        result = self._simulate(angle, speed, ctx)
        if not result.holed:
            return None
        info = compute_break(
            result.path, ctx["ball"].world_position, ctx["direction"], ctx["distance"]
        )
        confidence = score_confidence(
            result,
            strategy=strategy,
            speed=speed,
            base_speed=base,
            distance=ctx["distance"],
            max_deviation=info.total_break,
            entry_angle=entry_angle(result, ctx["hole"]),
            parameters=ctx["parameters"],
        )
        return _Candidate(result, angle, speed, base, confidence, info)

    def angle_offsets(self, distance: float) -> list[float]:
        """Angle offsets (rad), zero first, then alternating outward."""
        cfg = self.settings
        spread = math.radians(cfg.max_angle_deg) * min(1.5, 1.0 + distance / 10.0)
        half = (cfg.angle_steps - 1) // 2
        offsets = [0.0]
        for k in range(1, half + 1):
            step = spread * k / half
            offsets.extend((-step, step))
        return offsets

    def speed_multipliers(self) -> list[float]:
        return sorted(self.settings.speed_multipliers, key=lambda m: (abs(m - 1.0), m))

    def _grid_search(self, strategy, base, slice_end, best, ctx) -> Optional[_Candidate]:
        exit_at = (
            self.settings.optimal_exit_confidence if strategy == PuttingStrategy.OPTIMAL
            else self.settings.default_exit_confidence
        )
        angles = self.angle_offsets(ctx["distance"])
        top: Optional[_Candidate] = None
        for mult in self.speed_multipliers():
            for angle in angles:
                if time.monotonic() >= slice_end:
                    logger.debug("%s: time slice used up", strategy.value)
                    return top
                try:
                    cand = self._evaluate(strategy, angle, base * mult, base, ctx)
                except AnalysisInterrupted:
                    if top is not None:
                        best[strategy] = top
                    raise
                if cand is None:
                    continue
                if top is None or cand.confidence > top.confidence:
                    top = cand
                    logger.debug(
                        "%s: angle %.2f°, speed %.3f m/s → %.3f",
                        strategy.value, math.degrees(angle), cand.speed, cand.confidence,
                    )
                if top.confidence >= exit_at:
                    return top
        return top

    def _closest_approach(self, base: float, ctx: dict) -> Optional[_Candidate]:
        """Pick the trial that gets nearest the hole when nothing drops."""
        nearest = None
        for mult in FALLBACK_SPEEDS:
            for deg in FALLBACK_ANGLES_DEG:
                angle = math.radians(deg)
                result = self._simulate(angle, base * mult, ctx)
                if nearest is None or result.closest_approach < nearest[0].closest_approach:
                    nearest = (result, angle, base * mult)
        if nearest is None:
            return None
        result, angle, speed = nearest
        residual = result.closest_approach
        confidence = max(0.2, 0.7 * (1.0 - min(residual / 0.5, 1.0)))
        info = compute_break(
            result.path, ctx["ball"].world_position, ctx["direction"], ctx["distance"]
        )
        logger.warning("No holing line found, closest approach %.3f m", residual)
        return _Candidate(result, angle, speed, base, min(confidence, CONFIDENCE_CAP), info)

    def _refine(self, strategy, cand: _Candidate, ctx: dict) -> _Candidate:
        if not cand.result.holed or cand.confidence >= CONFIDENCE_CAP:
            return cand
        token: CancellationToken = ctx["token"]
        trials = [
            (cand.angle + math.radians(d), cand.speed * m)
            for d in REFINE_ANGLES_DEG
            for m in REFINE_SPEEDS
            if (d, m) != (0.0, 1.0)
        ]
        top = cand
        for angle, speed in trials:
            if token.cancelled:
                raise AnalysisInterrupted("cancelled")
            if token.expired:
                break
            try:
                trial = self._evaluate(strategy, angle, speed, cand.base_speed, ctx)
            except AnalysisInterrupted as exc:
                if exc.reason == "cancelled":
                    raise
                break
            if trial is not None and trial.confidence > top.confidence:
                top = trial
        return top

    # ── output ────────────────────────────────────────────────────────
    def _build_line(self, strategy, cand: _Candidate, ball, direction, distance, reference) -> PuttingLine:
        origin = ball.world_position
        ax, az = _rotate(*direction, cand.angle)
        aim = Vec3(x=origin.x + ax * distance, y=origin.y, z=origin.z + az * distance)
        return PuttingLine(
            strategy=strategy,
            path=cand.result.path,
            aim_point=aim,
            break_info=cand.break_info,
            recommended_speed=categorize_speed(cand.speed, reference),
            confidence=cand.confidence,
            distance=distance,
            launch_speed=cand.speed,
            aim_angle=cand.angle,
            holed=cand.result.holed,
        )

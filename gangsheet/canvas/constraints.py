from __future__ import annotations

import math
import logging
from dataclasses import dataclass, field
from typing import List, Tuple, TYPE_CHECKING

from gangsheet.core import GangSheetConfig, SceneObject

if TYPE_CHECKING:
    from gangsheet.canvas.scene import LiveScene

logger = logging.getLogger(__name__)

EPSILON = 1e-6


def rotated_bounds(w: float, h: float, angle_deg: float) -> tuple[float, float]:
    """Compute axis-aligned bounding box of a rotated rectangle.

    Args:
        w: Width of the source rectangle.
        h: Height of the source rectangle.
        angle_deg: Rotation angle in degrees (clockwise).

    Returns:
        Tuple of (width, height) for the smallest axis-aligned box
        that fully contains the rotated rectangle.
    """
    a = math.radians(float(angle_deg) % 360.0)
    ca = abs(math.cos(a))
    sa = abs(math.sin(a))
    # Snap right angles so 90/270 swap exactly instead of leaving 1e-14 residue
    if ca < 1e-9:
        ca = 0.0
    if sa < 1e-9:
        sa = 0.0
    bw = (float(w) * ca) + (float(h) * sa)
    bh = (float(w) * sa) + (float(h) * ca)
    return max(0.0, bw), max(0.0, bh)


def bounding_rect(obj: SceneObject) -> Tuple[float, float, float, float]:
    """Return (left, top, width, height) of the object's drawn bounds in sheet pixels."""
    bw, bh = rotated_bounds(obj.width * obj.scale_x, obj.height * obj.scale_y, obj.angle)
    return obj.left, obj.top, bw, bh


@dataclass
class SnapResult:
    dx: float = 0.0
    dy: float = 0.0
    # ('v', x) for vertical guide lines, ('h', y) for horizontal ones
    guides: List[Tuple[str, float]] = field(default_factory=list)

    @property
    def snapped(self) -> bool:
        return bool(self.guides)


class ConstraintEngine:
    """Keeps objects inside the sheet and grows the sheet downward when needed.

    Position is clamped against the full sheet width and the maximum sheet
    height; the current sheet height only matters for auto-grow.
    """

    def __init__(self, config: GangSheetConfig) -> None:
        self.config = config

    def constrain(self, obj: SceneObject, scene: "LiveScene") -> bool:
        """Clamp ``obj`` into the sheet and auto-grow ``scene`` height.

        Returns True when the sheet height was increased.
        """
        if obj is None:
            return False
        cfg = self.config
        if obj.scale_x < cfg.min_scale:
            obj.scale_x = cfg.min_scale
        if obj.scale_y < cfg.min_scale:
            obj.scale_y = cfg.min_scale

        self._clamp(obj, scene.width_px, scene.max_height_px)

        _, top, _, bh = bounding_rect(obj)
        bottom = top + bh
        if bottom > scene.height_px + EPSILON:
            new_h = min(scene.max_height_px, bottom + cfg.grow_increment_cm * cfg.px_per_cm)
            if new_h > scene.height_px:
                logger.debug(f"Auto-grow sheet height {scene.height_px:.0f}px -> {new_h:.0f}px")
                scene.height_px = new_h
                return True
        return False

    def enforce_hard_limit(self, obj: SceneObject, scene: "LiveScene") -> None:
        self._clamp(obj, scene.width_px, scene.max_height_px)

    @staticmethod
    def _clamp(obj: SceneObject, max_x: float, max_y: float) -> None:
        left, top, bw, bh = bounding_rect(obj)
        dx = dy = 0.0
        if left < 0:
            dx = -left
        if left + bw > max_x + EPSILON:
            dx = max_x - (left + bw)
        if top < 0:
            dy = -top
        if top + bh > max_y + EPSILON:
            dy = max_y - (top + bh)
        if dx or dy:
            obj.left += dx
            obj.top += dy

    def is_inside(self, obj: SceneObject, width_px: float, height_px: float, tolerance: float = 1.0) -> bool:
        left, top, bw, bh = bounding_rect(obj)
        return not (
            left < -tolerance
            or top < -tolerance
            or left + bw > width_px + tolerance
            or top + bh > height_px + tolerance
        )

    def snap(self, obj: SceneObject, scene: "LiveScene", zoom: float = 1.0) -> SnapResult:
        """Snap ``obj`` to the sheet and to other visible objects.

        Per axis the first target (sheet targets first, then objects in
        stacking order) that the object's center, near edge or far edge
        (checked in that order) lies within tolerance of wins.
        """
        snap_dist = self.config.snap_tolerance_px / max(float(zoom), 1e-6)
        left, top, bw, bh = bounding_rect(obj)

        xs: List[float] = [0.0, scene.width_px / 2.0, scene.width_px]
        ys: List[float] = [0.0]
        for other in scene.objects:
            if other is obj or other.id == obj.id or not other.visible:
                continue
            ol, ot, ow, oh = bounding_rect(other)
            xs.extend((ol, ol + ow / 2.0, ol + ow))
            ys.extend((ot, ot + oh / 2.0, ot + oh))

        result = SnapResult()
        hit = self._first_snap((left + bw / 2.0, left, left + bw), xs, snap_dist)
        if hit is not None:
            result.dx, target = hit
            result.guides.append(("v", target))
        hit = self._first_snap((top + bh / 2.0, top, top + bh), ys, snap_dist)
        if hit is not None:
            result.dy, target = hit
            result.guides.append(("h", target))

        if result.dx or result.dy:
            obj.left += result.dx
            obj.top += result.dy
        return result

    @staticmethod
    def _first_snap(edges: Tuple[float, float, float], targets: List[float], dist: float):
        for t in targets:
            for edge in edges:
                if abs(edge - t) <= dist:
                    return t - edge, t
        return None

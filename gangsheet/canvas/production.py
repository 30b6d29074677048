from __future__ import annotations

import logging
from typing import List, Tuple

from gangsheet.core import SceneObject
from gangsheet.canvas.constraints import ConstraintEngine, SnapResult
from gangsheet.canvas.scene import LiveScene

logger = logging.getLogger(__name__)


class ProductionMode:
    """Strict editing: magnetic snapping, hard sheet limits and export gating.

    Validation is against the *current* sheet height (what will be printed),
    not the maximum height the constraint engine clamps to.
    """

    TOLERANCE_PX = 1.0

    def __init__(self, scene: LiveScene, engine: ConstraintEngine) -> None:
        self.scene = scene
        self.engine = engine
        self.enabled = False
        self.invalid_ids: set[str] = set()
        self.guides: List[Tuple[str, float]] = []

    def set_mode(self, enabled: bool) -> bool:
        self.enabled = bool(enabled)
        self.guides = []
        if self.enabled:
            ok = self.validate_all()
            logger.info(f"Production mode on ({len(self.invalid_ids)} object(s) outside the sheet)")
            return ok
        self.invalid_ids.clear()
        logger.info("Production mode off")
        return True

    def snap_move(self, obj: SceneObject) -> SnapResult:
        """Snap a moved object and clamp it inside the sheet; records the guides."""
        result = self.engine.snap(obj, self.scene, self.scene.zoom)
        self.engine.enforce_hard_limit(obj, self.scene)
        self.guides = list(result.guides)
        self.validate_object(obj)
        return result

    def validate_object(self, obj: SceneObject) -> bool:
        if obj is None:
            return True
        ok = self.engine.is_inside(obj, self.scene.width_px, self.scene.height_px, self.TOLERANCE_PX)
        if ok:
            self.invalid_ids.discard(obj.id)
        else:
            self.invalid_ids.add(obj.id)
        return ok

    def validate_all(self) -> bool:
        self.invalid_ids.clear()
        ok = True
        for obj in self.scene.objects:
            if not self.validate_object(obj):
                ok = False
        return ok

    def can_export(self) -> bool:
        if not self.enabled:
            return True
        ok = self.validate_all()
        if not ok:
            logger.warning(f"Export blocked: {len(self.invalid_ids)} object(s) outside the printable area")
        return ok

from __future__ import annotations

import math
import logging
from dataclasses import dataclass
from typing import Iterable, Sequence, Tuple, Union

from gangsheet.core import GangSheetConfig, SceneObject
from gangsheet.canvas.constraints import bounding_rect

logger = logging.getLogger(__name__)


def compute_price(used_height_cm: float, tiers: Sequence[Tuple[int, int]]) -> int:
    """Price for a sheet of ``used_height_cm``.

    Proportional up to the first breakpoint, linear between breakpoints,
    capped at the last one. Rounded down.
    """
    if used_height_cm <= 0 or not tiers:
        return 0
    h0, p0 = tiers[0]
    if used_height_cm <= h0:
        return int(math.floor(used_height_cm / h0 * p0))
    for (ha, pa), (hb, pb) in zip(tiers, tiers[1:]):
        if used_height_cm <= hb:
            return int(math.floor(pa + (used_height_cm - ha) / (hb - ha) * (pb - pa)))
    return int(tiers[-1][1])


@dataclass
class SheetMetrics:
    object_count: int
    used_height_cm: int
    area_cm2: float
    suggested_height_cm: int
    price: int


def compute_metrics(objects: Union[Iterable[SceneObject], Iterable[dict]], config: GangSheetConfig) -> SheetMetrics:
    """Used height, occupied area, suggested height and price of a scene.

    The suggested height is informational and never applied to the sheet.
    """
    px2 = float(config.px_per_cm) ** 2
    max_y = 0.0
    area_px = 0.0
    count = 0
    for o in objects:
        obj = SceneObject.from_record(o) if isinstance(o, dict) else o
        if not obj.visible:
            continue
        _, top, bw, bh = bounding_rect(obj)
        max_y = max(max_y, top + bh)
        area_px += bw * bh
        count += 1
    used_cm = int(math.ceil(max_y / config.px_per_cm)) if max_y > 0 else 0
    suggested = max(config.default_height_cm, min(config.max_height_cm, used_cm + 5))
    return SheetMetrics(
        object_count=count,
        used_height_cm=used_cm,
        area_cm2=round(area_px / px2, 2),
        suggested_height_cm=int(suggested),
        price=compute_price(used_cm, config.price_tiers),
    )

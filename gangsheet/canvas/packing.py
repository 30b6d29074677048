"""
Shelf Packing Module

Greedy first-fit-decreasing shelf allocator. Items are sorted by their longer
side, then dropped left-to-right onto horizontal shelves; an item may be turned
90 degrees when that is the only way it fits. The allocator is pure: it returns
placements and the items it could not place and never touches a live scene.
"""

from __future__ import annotations

import math
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence

from gangsheet.core import (
    ArtworkItem,
    GangSheetConfig,
    PackItem,
    Placement,
    SheetBounds,
)

logger = logging.getLogger(__name__)


@dataclass
class Shelf:
    """A horizontal band of the sheet holding items side by side."""
    y: float
    height: float
    free_width: float
    cursor_x: float


@dataclass
class PackResult:
    placements: List[Placement] = field(default_factory=list)
    skipped: List[PackItem] = field(default_factory=list)
    shelves: List[Shelf] = field(default_factory=list)
    used_height_px: float = 0.0
    used_height_cm: int = 0


def bounds_from_config(config: GangSheetConfig, max_height_px: float | None = None) -> SheetBounds:
    return SheetBounds(
        width_px=config.sheet_width_px,
        max_height_px=config.max_height_px if max_height_px is None else float(max_height_px),
        margin_px=config.margin_px,
        max_objects=config.max_objects_per_sheet,
        px_per_cm=config.px_per_cm,
    )


def expand_items(artworks: Iterable[ArtworkItem], config: GangSheetConfig) -> List[PackItem]:
    """Turn each artwork into ``quantity`` allocator items sized in sheet pixels."""
    items: List[PackItem] = []
    for art in artworks:
        w = float(art.width_cm) * config.px_per_cm
        h = float(art.height_cm) * config.px_per_cm
        for _ in range(int(art.quantity)):
            items.append(PackItem(w=w, h=h, payload=art))
    return items


def fits_empty(item: PackItem, bounds: SheetBounds) -> bool:
    """True when ``item`` fits an empty sheet in at least one orientation."""
    safe = bounds.safe_width
    top = bounds.margin_px
    if item.w <= safe and top + item.h + bounds.margin_px <= bounds.max_height_px:
        return True
    return item.h <= safe and top + item.w + bounds.margin_px <= bounds.max_height_px


def _sort_key(item: PackItem):
    # Longer side first; ties broken on shape so permuted input packs identically
    return (-max(item.w, item.h), -min(item.w, item.h), -item.w)


def pack(items: Sequence[PackItem], bounds: SheetBounds) -> PackResult:
    """Pack ``items`` onto one sheet.

    Args:
        items: Rectangles in sheet pixels.
        bounds: Sheet width, maximum height, margin and object cap.

    Returns:
        PackResult with placements in placement order, the skipped items and
        the resulting shelves. ``used_height_px`` is the bottom of the lowest
        shelf.
    """
    result = PackResult()
    margin = bounds.margin_px
    safe_width = bounds.safe_width
    max_h = bounds.max_height_px
    current_y = margin

    ordered = sorted(items, key=_sort_key)
    logger.debug(f"Packing {len(ordered)} items into {bounds.width_px:.0f}x{max_h:.0f}px (safe width {safe_width:.0f})")

    for item in ordered:
        if len(result.placements) >= bounds.max_objects:
            result.skipped.append(item)
            continue

        w, h = float(item.w), float(item.h)
        placed = False

        for shelf in result.shelves:
            if w <= shelf.free_width and h <= shelf.height and shelf.y + h <= max_h:
                draw_w, draw_h, rotated = w, h, False
            elif h <= shelf.free_width and w <= shelf.height and shelf.y + w <= max_h:
                draw_w, draw_h, rotated = h, w, True
            else:
                continue
            result.placements.append(Placement(item, shelf.cursor_x, shelf.y, rotated, draw_w, draw_h))
            shelf.cursor_x += draw_w + margin
            shelf.free_width -= draw_w + margin
            placed = True
            break

        if placed:
            continue

        if w <= safe_width and current_y + h + margin <= max_h:
            draw_w, draw_h, rotated = w, h, False
        elif h <= safe_width and current_y + w + margin <= max_h:
            draw_w, draw_h, rotated = h, w, True
        else:
            result.skipped.append(item)
            continue

        shelf = Shelf(y=current_y, height=draw_h, free_width=safe_width, cursor_x=margin)
        result.shelves.append(shelf)
        result.placements.append(Placement(item, shelf.cursor_x, shelf.y, rotated, draw_w, draw_h))
        shelf.cursor_x += draw_w + margin
        shelf.free_width -= draw_w + margin
        current_y += draw_h + margin

    if result.shelves:
        result.used_height_px = max(s.y + s.height for s in result.shelves)
    result.used_height_cm = int(math.ceil(result.used_height_px / bounds.px_per_cm)) if result.used_height_px else 0

    logger.info(
        f"Packed {len(result.placements)}/{len(ordered)} items on {len(result.shelves)} shelves, "
        f"{len(result.skipped)} skipped, used height {result.used_height_px:.0f}px"
    )
    return result
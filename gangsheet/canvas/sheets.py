"""
Sheet Orchestrator

Owns the sheet collection and the live scene of the current sheet, and drives
everything that touches more than one sheet: switching (persist, then chunked
reload), deletion and renumbering, overflow cascading onto new sheets, and
reference counting of the shared full-resolution cache.

Every scene mutation goes through ``_commit``: the constraint engine has
already run on the touched objects, then the cache references are synced and a
history snapshot is taken.

Long operations come in two flavours: ``*_steps`` generators that yield a
``Continue`` token per chunk, and plain methods that drain them.
"""

from __future__ import annotations

import math
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from gangsheet.core import (
    ArtworkItem,
    Continue,
    GangSheetConfig,
    PackItem,
    Placement,
    ProductionValidationError,
    SceneObject,
    Sheet,
    SheetIntegrityError,
    SheetResult,
    SheetStatus,
    Task,
    chunked,
    new_id,
    run_task,
)
from gangsheet.canvas.constraints import ConstraintEngine, bounding_rect
from gangsheet.canvas.export import (
    BatchResult,
    ExportBlob,
    ExportDescriptor,
    ExportHistory,
    ExportPipeline,
    ExportPreset,
    SinkFn,
)
from gangsheet.canvas.history import HistoryStack
from gangsheet.canvas.metrics import SheetMetrics, compute_metrics
from gangsheet.canvas.packing import PackResult, bounds_from_config, expand_items, fits_empty, pack
from gangsheet.canvas.production import ProductionMode
from gangsheet.canvas.render import SceneRenderer
from gangsheet.canvas.resources import BlobStore, ImageResolver, ResourceCache
from gangsheet.canvas.scene import LiveScene, Observable

logger = logging.getLogger(__name__)

PLACE_OFFSET_PX = 15
DUPLICATE_OFFSET_PX = 20


def sheet_name(index: int) -> str:
    return f"Sheet {index + 1}"


@dataclass
class SheetContext:
    """Everything the orchestrator mutates, owned by one editing session."""
    sheets: List[Sheet] = field(default_factory=list)
    current_index: int = 0
    cache: ResourceCache = field(default_factory=ResourceCache)

    @property
    def current(self) -> Sheet:
        if not 0 <= self.current_index < len(self.sheets):
            raise SheetIntegrityError(
                f"Current sheet index {self.current_index} out of range for {len(self.sheets)} sheets"
            )
        return self.sheets[self.current_index]


@dataclass
class AddSheetResult:
    code: SheetResult
    index: int
    sheets_created: int = 0
    # Items left over when the sheet ceiling stopped the overflow loop
    remainder: List[PackItem] = field(default_factory=list)
    # Items that do not fit an empty sheet in either orientation
    unplaceable: List[PackItem] = field(default_factory=list)


@dataclass
class PackSummary:
    code: SheetResult
    placed: int = 0
    skipped: int = 0
    used_height_cm: int = 0
    sheets_created: int = 0
    unplaced: int = 0
    unplaceable: int = 0


@dataclass
class EditResult:
    code: SheetResult
    object_ids: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.code == SheetResult.OK


Packable = Union[ArtworkItem, PackItem]


class SheetOrchestrator(Observable):
    """Multi-sheet editing session.

    Events: ``sheet:added``, ``sheet:loading``, ``sheet:preview``,
    ``sheet:switched``, ``sheet:deleted``, ``export:progress``. Scene-level
    events are on ``self.scene``.
    """

    def __init__(
        self,
        config: Optional[GangSheetConfig] = None,
        store: Optional[BlobStore] = None,
        context: Optional[SheetContext] = None,
        resolver: Optional[ImageResolver] = None,
    ) -> None:
        super().__init__()
        self.config = config or GangSheetConfig()
        self.store = store
        self.context = context or SheetContext()
        if not self.context.sheets:
            self.context.sheets.append(Sheet(name=sheet_name(0), height_cm=self.config.default_height_cm))
            self.context.current_index = 0

        self.scene = LiveScene(self.config)
        self.history = HistoryStack(self.config.max_history)
        self.engine = ConstraintEngine(self.config)
        self.production = ProductionMode(self.scene, self.engine)
        self.renderer = SceneRenderer(resolver or ImageResolver())
        self.exporter = ExportPipeline(self.config, cache=self.context.cache, store=store, renderer=self.renderer)
        self.artworks: Dict[str, ArtworkItem] = {}

        run_task(self._load_steps(self.context.current_index))

    # ----- accessors -----
    @property
    def sheets(self) -> List[Sheet]:
        return self.context.sheets

    @property
    def current_index(self) -> int:
        return self.context.current_index

    @property
    def current_sheet(self) -> Sheet:
        return self.context.current

    @property
    def cache(self) -> ResourceCache:
        return self.context.cache

    def register_artwork(self, art: ArtworkItem) -> None:
        self.artworks[art.id] = art
        if art.preview_path:
            self.renderer.resolver.register(art.id, art.preview_path)

    def refresh_artwork(self, art: ArtworkItem) -> None:
        """Drop decoded previews after an artwork's files changed (e.g. after a crop)."""
        self.renderer.resolver.forget(art.id)
        self.register_artwork(art)

    # ----- commit / resources -----
    def _attach_original(self, obj: SceneObject) -> None:
        if obj.original is not None or not obj.image_id:
            return
        data = self.cache.get(obj.image_id)
        if data is None:
            art = self.artworks.get(obj.image_id)
            data = art.original if art is not None else None
        obj.original = data

    def _sync_refs(self) -> None:
        self.cache.sync(self.current_sheet.id, self.scene.image_counts())

    def _commit(self) -> None:
        self._sync_refs()
        self.history.snapshot(self.scene.to_json())

    def _check_capacity(self) -> None:
        count = len(self.scene)
        if count > self.config.warn_objects_per_sheet:
            logger.warning(
                f"{self.current_sheet.name} holds {count} objects "
                f"(limit {self.config.max_objects_per_sheet}); performance may degrade"
            )

    # ----- sheet lifecycle -----
    def _sheet_preview(self, sheet: Sheet) -> Optional[bytes]:
        if not sheet.objects or not self.config.sheet_previews:
            return None
        return self.renderer.render_preview(
            sheet.objects,
            self.config.sheet_width_px,
            sheet.height_cm * self.config.px_per_cm,
            scale=self.config.sheet_preview_scale,
            quality=self.config.sheet_preview_quality,
        )

    def save_current_sheet(self) -> Sheet:
        """Persist the live scene into the current sheet.

        Full-resolution payloads move into the shared cache and are stripped
        from the stored records.
        """
        sheet = self.current_sheet
        records = self.scene.to_records(include_original=True)
        for rec in records:
            data = rec.pop("original", None)
            image_id = rec.get("image_id")
            if data is not None and image_id and image_id not in self.cache:
                self.cache.store(image_id, data)
        sheet.objects = records
        sheet.height_cm = int(math.ceil(self.scene.height_px / self.config.px_per_cm))
        sheet.preview = self._sheet_preview(sheet)
        sheet.status = SheetStatus.SAVED
        logger.debug(f"Saved {sheet.name}: {len(records)} objects, {sheet.height_cm} cm")
        return sheet

    def _load_steps(self, index: int) -> Task[int]:
        target = self.sheets[index]
        target.status = SheetStatus.LOADING
        self.emit("sheet:loading", {"index": index, "name": target.name})
        if target.preview:
            self.emit("sheet:preview", {"index": index, "preview": target.preview})

        self.scene.clear()
        self.history.clear()
        with self.history.suppress():
            loaded = yield from self.scene.load_records_steps(
                target.objects or [], self.config.chunk_size, attach=self._attach_original
            )
        self.scene.set_height_cm(target.height_cm)
        target.status = SheetStatus.ACTIVE
        # Baseline so the first edit on this sheet can be undone
        self._commit()
        return loaded

    def switch_to_sheet_steps(self, index: int) -> Task[bool]:
        if index == self.current_index:
            return False
        if not 0 <= index < len(self.sheets):
            raise IndexError(f"Sheet index {index} out of range (0..{len(self.sheets) - 1})")
        self.save_current_sheet()
        self.context.current_index = index
        loaded = yield from self._load_steps(index)
        logger.info(f"Switched to {self.sheets[index].name} ({loaded} objects)")
        self.emit("sheet:switched", {"index": index, "name": self.sheets[index].name})
        return True

    def switch_to_sheet(self, index: int) -> bool:
        return run_task(self.switch_to_sheet_steps(index))

    def _append_sheet(self) -> int:
        before = len(self.sheets)
        self.sheets.append(Sheet(name=sheet_name(before), height_cm=self.config.default_height_cm))
        if len(self.sheets) != before + 1:
            raise SheetIntegrityError(f"Sheet was not appended (expected {before + 1}, have {len(self.sheets)})")
        index = len(self.sheets) - 1
        logger.info(f"Created {self.sheets[index].name}")
        self.emit("sheet:added", {"index": index, "name": self.sheets[index].name})
        return index

    def _to_pack_items(self, items: Iterable[Packable]) -> List[PackItem]:
        out: List[PackItem] = []
        for it in items:
            if isinstance(it, ArtworkItem):
                self.register_artwork(it)
                out.extend(expand_items([it], self.config))
            else:
                out.append(it)
        return out

    def add_sheet_steps(self, overflow: Optional[Sequence[Packable]] = None) -> Task[AddSheetResult]:
        """Create a sheet, make it current and cascade ``overflow`` across new sheets.

        Each pass packs the pending items against the live scene, sizes the
        sheet to the used height plus padding and feeds the skipped items to
        the next new sheet, until nothing is left or the sheet ceiling is hit.
        """
        pending = self._to_pack_items(overflow or [])
        if len(self.sheets) >= self.config.max_sheets:
            logger.warning(f"Sheet limit of {self.config.max_sheets} reached; {len(pending)} item(s) not placed")
            return AddSheetResult(code=SheetResult.SHEET_LIMIT, index=self.current_index, remainder=pending)

        bounds = bounds_from_config(self.config)
        unplaceable = [it for it in pending if not fits_empty(it, bounds)]
        if unplaceable:
            logger.warning(f"{len(unplaceable)} item(s) cannot fit an empty sheet and were not placed")
            pending = [it for it in pending if fits_empty(it, bounds)]

        index = self._append_sheet()
        yield from self.switch_to_sheet_steps(index)
        created = 1
        code = SheetResult.OK

        while pending:
            result = yield from self._pack_into_scene_steps(pending)
            if result.used_height_cm > 0:
                self.scene.set_height_cm(result.used_height_cm + self.config.overflow_height_pad_cm)
            self._commit()
            pending = list(result.skipped)
            if not pending:
                break
            if len(self.sheets) >= self.config.max_sheets:
                logger.warning(
                    f"Sheet limit of {self.config.max_sheets} reached; {len(pending)} item(s) not placed"
                )
                code = SheetResult.SHEET_LIMIT
                break
            index = self._append_sheet()
            yield from self.switch_to_sheet_steps(index)
            created += 1

        if code == SheetResult.OK and unplaceable:
            code = SheetResult.UNPLACEABLE
        logger.info(f"Added {created} sheet(s); now {len(self.sheets)} total, {len(pending)} left over")
        return AddSheetResult(
            code=code,
            index=self.current_index,
            sheets_created=created,
            remainder=pending,
            unplaceable=unplaceable,
        )

    def add_sheet(self, overflow: Optional[Sequence[Packable]] = None) -> AddSheetResult:
        return run_task(self.add_sheet_steps(overflow))

    def delete_sheet_steps(self, index: int) -> Task[SheetResult]:
        if len(self.sheets) <= 1:
            logger.warning("Refusing to delete the only sheet")
            return SheetResult.LAST_SHEET
        if not 0 <= index < len(self.sheets):
            return SheetResult.NOT_FOUND

        removed = self.sheets.pop(index)
        removed.status = SheetStatus.DELETED
        self.cache.release_owner(removed.id)

        reload = False
        if index == self.current_index:
            self.context.current_index = max(0, index - 1)
            reload = True
        elif index < self.current_index:
            self.context.current_index -= 1
        for i, sheet in enumerate(self.sheets):
            sheet.name = sheet_name(i)
        if not 0 <= self.current_index < len(self.sheets):
            raise SheetIntegrityError(f"Cursor {self.current_index} invalid after deleting sheet {index}")

        if reload:
            yield from self._load_steps(self.current_index)
        logger.info(f"Deleted {removed.name}; {len(self.sheets)} sheet(s) left, current is {self.current_sheet.name}")
        self.emit("sheet:deleted", {"index": index, "current_index": self.current_index})
        return SheetResult.OK

    def delete_sheet(self, index: int) -> SheetResult:
        return run_task(self.delete_sheet_steps(index))

    # ----- packing -----
    def _object_for(self, placement: Placement) -> SceneObject:
        item = placement.item
        art = item.payload if isinstance(item.payload, ArtworkItem) else None
        if art is not None:
            nat_w = art.preview_width or art.original_width or item.w
            nat_h = art.preview_height or art.original_height or item.h
            obj = SceneObject(
                image_id=art.id,
                src=art.preview_path,
                width=float(nat_w),
                height=float(nat_h),
                original_width=art.original_width,
                original_height=art.original_height,
                name=art.file_name,
                original=art.original,
            )
        else:
            obj = SceneObject(image_id=str(getattr(item.payload, "id", "") or ""), width=float(item.w), height=float(item.h))
        obj.scale_x = item.w / obj.width
        obj.scale_y = item.h / obj.height
        obj.angle = 90.0 if placement.rotated else 0.0
        obj.left = placement.x
        obj.top = placement.y
        self._attach_original(obj)
        return obj

    def _pack_into_scene_steps(self, items: Sequence[PackItem]) -> Task[PackResult]:
        """Replace the live scene with a packing of ``items`` (always the current scene)."""
        self.scene.clear()
        result = pack(items, bounds_from_config(self.config))
        total = len(result.placements)
        for start, chunk in chunked(result.placements, self.config.chunk_size):
            for placement in chunk:
                obj = self.scene.add(self._object_for(placement))
                self.engine.constrain(obj, self.scene)
            yield Continue("render", min(start + len(chunk), total), total)
        return result

    def pack_items_steps(self, artworks: Sequence[Packable]) -> Task[PackSummary]:
        """Pack ``artworks`` (expanded by quantity) into the current sheet, overflowing onto new ones."""
        items = self._to_pack_items(artworks)
        bounds = bounds_from_config(self.config)
        unplaceable = [it for it in items if not fits_empty(it, bounds)]
        fitting = [it for it in items if fits_empty(it, bounds)]

        result = yield from self._pack_into_scene_steps(fitting)
        if result.used_height_cm > 0:
            self.scene.set_height_cm(result.used_height_cm + self.config.overflow_height_pad_cm)
        self._commit()
        self._check_capacity()

        summary = PackSummary(
            code=SheetResult.UNPLACEABLE if unplaceable else SheetResult.OK,
            placed=len(result.placements),
            skipped=len(result.skipped),
            used_height_cm=result.used_height_cm,
            unplaceable=len(unplaceable),
        )
        if result.skipped:
            added = yield from self.add_sheet_steps(result.skipped)
            summary.sheets_created = added.sheets_created
            summary.unplaced = len(added.remainder)
            if added.code != SheetResult.OK:
                summary.code = added.code
        logger.info(
            f"Pack: {summary.placed} placed, "
            f"{summary.sheets_created} overflow sheet(s), {summary.unplaced} unplaced, {summary.unplaceable} unplaceable"
        )
        return summary

    def pack_items(self, artworks: Sequence[Packable]) -> PackSummary:
        return run_task(self.pack_items_steps(artworks))

    # ----- object editing -----
    def place_item(
        self,
        art: ArtworkItem,
        left: Optional[float] = None,
        top: Optional[float] = None,
        angle: float = 0.0,
    ) -> EditResult:
        """Place ``art.quantity`` copies, each offset diagonally from the previous one."""
        qty = int(art.quantity)
        if len(self.scene) + qty > self.config.max_objects_per_sheet:
            logger.warning(f"Cannot place {qty} copies: {self.current_sheet.name} would exceed its object limit")
            return EditResult(SheetResult.OBJECT_LIMIT)
        self.register_artwork(art)
        x0 = self.config.margin_px if left is None else float(left)
        y0 = self.config.margin_px if top is None else float(top)
        item = expand_items([art], self.config)[0]
        ids: List[str] = []
        for i in range(qty):
            obj = self._object_for(Placement(item, x0 + i * PLACE_OFFSET_PX, y0 + i * PLACE_OFFSET_PX, False, item.w, item.h))
            obj.angle = float(angle) % 360.0
            self.scene.add(obj)
            self.engine.constrain(obj, self.scene)
            ids.append(obj.id)
        self._commit()
        self._check_capacity()
        return EditResult(SheetResult.OK, ids)

    def duplicate_objects(self, object_ids: Sequence[str]) -> EditResult:
        sources = [o for o in (self.scene.get(i) for i in object_ids) if o is not None]
        if not sources:
            return EditResult(SheetResult.NOT_FOUND)
        if len(self.scene) + len(sources) > self.config.max_objects_per_sheet:
            logger.warning(f"Cannot duplicate {len(sources)} object(s): object limit reached")
            return EditResult(SheetResult.OBJECT_LIMIT)
        ids: List[str] = []
        for src in sources:
            clone = SceneObject.from_record(src.to_record())
            clone.id = new_id("obj_")
            clone.original = src.original
            clone.left += DUPLICATE_OFFSET_PX
            clone.top += DUPLICATE_OFFSET_PX
            self.scene.add(clone)
            self.engine.constrain(clone, self.scene)
            ids.append(clone.id)
        self._commit()
        self._check_capacity()
        return EditResult(SheetResult.OK, ids)

    def remove_objects(self, object_ids: Sequence[str]) -> int:
        removed = sum(1 for i in object_ids if self.scene.remove(i) is not None)
        if removed:
            self._commit()
        return removed

    def clear_sheet(self) -> None:
        self.scene.clear()
        self._commit()

    def _edit(self, object_id: str, change: Callable[[SceneObject], None]) -> bool:
        obj = self.scene.get(object_id)
        if obj is None:
            return False
        change(obj)
        self.engine.constrain(obj, self.scene)
        if self.production.enabled:
            # constrain may have grown the sheet since the snap
            self.production.validate_object(obj)
        self.scene.modified(obj)
        self._commit()
        return True

    def move_object(self, object_id: str, left: float, top: float) -> bool:
        def change(obj: SceneObject) -> None:
            obj.left = float(left)
            obj.top = float(top)
            if self.production.enabled:
                self.production.snap_move(obj)

        return self._edit(object_id, change)

    def scale_object(self, object_id: str, scale_x: float, scale_y: Optional[float] = None) -> bool:
        def change(obj: SceneObject) -> None:
            obj.scale_x = float(scale_x)
            obj.scale_y = float(scale_x if scale_y is None else scale_y)

        return self._edit(object_id, change)

    def resize_object_cm(self, object_id: str, width_cm: float, height_cm: float) -> bool:
        """Scale an object so its unrotated size is ``width_cm`` x ``height_cm``."""
        if width_cm <= 0 or height_cm <= 0:
            raise ValueError(f"Size must be positive, got {width_cm}x{height_cm} cm")
        px = self.config.px_per_cm

        def change(obj: SceneObject) -> None:
            obj.scale_x = width_cm * px / obj.width
            obj.scale_y = height_cm * px / obj.height

        return self._edit(object_id, change)

    def rotate_object(self, object_id: str, angle: float) -> bool:
        return self._edit(object_id, lambda obj: setattr(obj, "angle", float(angle) % 360.0))

    def set_production_mode(self, enabled: bool) -> bool:
        return self.production.set_mode(enabled)

    # ----- history -----
    def undo(self) -> bool:
        state = self.history.undo()
        if state is None:
            return False
        with self.history.suppress():
            self.scene.restore_json(state, attach=self._attach_original)
        self._sync_refs()
        return True

    def redo(self) -> bool:
        state = self.history.redo()
        if state is None:
            return False
        with self.history.suppress():
            self.scene.restore_json(state, attach=self._attach_original)
        self._sync_refs()
        return True

    # ----- artwork removal -----
    def remove_artwork(self, image_id: str) -> int:
        """Remove every placement of ``image_id`` from every sheet and release its resources."""
        removed = 0
        for obj in [o for o in self.scene.objects if o.image_id == image_id]:
            self.scene.remove(obj.id)
            removed += 1
        for i, sheet in enumerate(self.sheets):
            if i == self.current_index or not sheet.objects:
                continue
            kept = [r for r in sheet.objects if r.get("image_id") != image_id]
            if len(kept) != len(sheet.objects):
                removed += len(sheet.objects) - len(kept)
                sheet.objects = kept
                counts: Dict[str, int] = {}
                for r in kept:
                    if r.get("image_id"):
                        counts[r["image_id"]] = counts.get(r["image_id"], 0) + 1
                self.cache.sync(sheet.id, counts)
                sheet.preview = self._sheet_preview(sheet)
        self._commit()
        self.cache.discard(image_id)
        if self.store is not None:
            self.store.delete(image_id)
        self.renderer.resolver.forget(image_id)
        self.artworks.pop(image_id, None)
        logger.info(f"Removed artwork {image_id} ({removed} placement(s))")
        return removed

    # ----- metrics -----
    def metrics(self) -> SheetMetrics:
        return compute_metrics(self.scene.objects, self.config)

    def object_bounds(self, object_id: str):
        obj = self.scene.get(object_id)
        return bounding_rect(obj) if obj is not None else None

    # ----- export -----
    def export_current(self, preset: Union[ExportPreset, ExportDescriptor] = ExportPreset.PRODUCTION) -> ExportBlob:
        if not self.production.can_export():
            raise ProductionValidationError(
                f"{len(self.production.invalid_ids)} object(s) are outside the printable area"
            )
        descriptor = preset.descriptor if isinstance(preset, ExportPreset) else preset
        return self.exporter.generate_blob(self.scene, descriptor)

    def export_all_steps(
        self,
        base_name: str,
        preset: Union[ExportPreset, ExportDescriptor] = ExportPreset.PRODUCTION,
        sink: Optional[SinkFn] = None,
        history: Optional[ExportHistory] = None,
    ) -> Task[BatchResult]:
        if not self.production.can_export():
            raise ProductionValidationError(
                f"{len(self.production.invalid_ids)} object(s) are outside the printable area"
            )
        descriptor = preset.descriptor if isinstance(preset, ExportPreset) else preset
        label = preset.name if isinstance(preset, ExportPreset) else f"{descriptor.dpi}dpi-{descriptor.extension}"
        self.save_current_sheet()
        self.current_sheet.status = SheetStatus.ACTIVE

        def progress(done: int, total: int, name: str) -> None:
            self.emit("export:progress", {"done": done, "total": total, "name": name})

        result = yield from self.exporter.export_batch_steps(
            list(self.sheets), base_name, descriptor, sink=sink, progress=progress
        )
        if history is not None:
            history.record(base_name, result, label)
        return result

    def export_all(
        self,
        base_name: str,
        preset: Union[ExportPreset, ExportDescriptor] = ExportPreset.PRODUCTION,
        sink: Optional[SinkFn] = None,
        history: Optional[ExportHistory] = None,
    ) -> BatchResult:
        return run_task(self.export_all_steps(base_name, preset, sink=sink, history=history))

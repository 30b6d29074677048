"""
Export Module

Turns a sheet (the live scene or a persisted sheet record) into a raster at a
production DPI. Before drawing, every object's preview is swapped for its
full-resolution original with the draw scale recomputed so the on-sheet
footprint does not change. Output size is clamped to configured pixel
ceilings; when clamped, the DPI actually achieved is reported.
"""

from __future__ import annotations

import json
import math
import re
import uuid
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from dataclasses import dataclass, field, asdict
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from PIL import Image

from gangsheet.core import (
    EXPORT_HISTORY_PATH,
    Continue,
    ExportError,
    GangSheetConfig,
    Sheet,
    Task,
    ensure_dir,
    run_task,
)
from gangsheet.canvas.render import SceneRenderer, encode_image
from gangsheet.canvas.resources import BlobStore, ImageResolver, ResourceCache
from gangsheet.canvas.scene import LiveScene

logger = logging.getLogger(__name__)

CM_PER_INCH = 2.54
EXPORT_HISTORY_LIMIT = 50


@dataclass(frozen=True)
class ExportDescriptor:
    dpi: int
    format: str
    background: Optional[str] = None
    quality: Optional[float] = None

    @property
    def extension(self) -> str:
        return "jpg" if self.format.lower() in ("jpg", "jpeg") else self.format.lower()


class ExportPreset(Enum):
    PRODUCTION = ExportDescriptor(dpi=300, format="png", background=None)
    HIGH_RES = ExportDescriptor(dpi=600, format="png", background=None)
    PREVIEW = ExportDescriptor(dpi=72, format="jpg", background="#ffffff", quality=0.8)

    @property
    def descriptor(self) -> ExportDescriptor:
        return self.value

    @classmethod
    def from_name(cls, name: str) -> "ExportPreset":
        key = str(name).strip().upper().replace("-", "_")
        try:
            return cls[key]
        except KeyError:
            raise ValueError(f"Unknown export preset {name!r}; expected one of {[p.name.lower() for p in cls]}")


@dataclass
class SafeDimensions:
    width: int
    height: int
    scale_factor: float
    dpi: int
    requested_dpi: int

    @property
    def reduced(self) -> bool:
        return self.dpi < self.requested_dpi


def compute_safe_dimensions(
    source_width_px: float,
    source_height_px: float,
    target_dpi: int,
    config: GangSheetConfig,
) -> SafeDimensions:
    """Convert a sheet-pixel canvas size to output pixels at ``target_dpi``.

    Args:
        source_width_px: Sheet width in sheet pixels.
        source_height_px: Sheet height in sheet pixels.
        target_dpi: Requested output DPI.
        config: Supplies ``px_per_cm`` and the dimension/area ceilings.

    Returns:
        SafeDimensions. When any ceiling is exceeded both sides are scaled by
        the same ratio and ``dpi`` is the resolution actually achieved.
    """
    scale_factor = (float(target_dpi) / CM_PER_INCH) / config.px_per_cm
    width = int(math.ceil(source_width_px * scale_factor))
    height = int(math.ceil(source_height_px * scale_factor))
    dpi = int(target_dpi)

    max_dim = config.max_safe_dimension
    max_area = config.max_safe_area
    if width > max_dim or height > max_dim or width * height > max_area:
        ratio = min(
            max_dim / width,
            max_dim / height,
            math.sqrt(max_area / (width * height)),
        )
        width = max(1, int(math.floor(width * ratio)))
        height = max(1, int(math.floor(height * ratio)))
        scale_factor *= ratio
        dpi = int(math.floor(target_dpi * ratio))
        logger.warning(
            f"Export at {target_dpi} DPI exceeds safety limits; reduced to {dpi} DPI ({width}x{height}px)"
        )
    return SafeDimensions(width=width, height=height, scale_factor=scale_factor, dpi=dpi, requested_dpi=int(target_dpi))


def sanitize(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9\-_]", "_", str(name))


def generate_name(base_name: str, sheet_name: str, extension: str) -> str:
    return f"{sanitize(base_name)}_{sanitize(sheet_name)}.{extension}"


@dataclass
class ExportBlob:
    data: bytes = field(repr=False)
    dpi: int
    width: int
    height: int
    format: str
    skipped_objects: int = 0

    def save(self, path: Union[str, Path]) -> Path:
        p = Path(path)
        ensure_dir(p.parent)
        p.write_bytes(self.data)
        return p


@dataclass
class BatchItemResult:
    sheet_name: str
    status: str  # "success" | "error" | "skipped"
    file_name: str = ""
    dpi: int = 0
    error: str = ""


@dataclass
class BatchResult:
    items: List[BatchItemResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.items if r.status == "success")

    @property
    def error_count(self) -> int:
        return sum(1 for r in self.items if r.status == "error")

    @property
    def skipped_count(self) -> int:
        return sum(1 for r in self.items if r.status == "skipped")


SceneSource = Union[LiveScene, Sheet, dict, Sequence[dict]]
ProgressFn = Callable[[int, int, str], None]
SinkFn = Callable[[str, ExportBlob], None]


class ExportPipeline:
    """Resolves originals, computes safe dimensions and rasterizes sheets."""

    def __init__(
        self,
        config: GangSheetConfig,
        cache: Optional[ResourceCache] = None,
        store: Optional[BlobStore] = None,
        renderer: Optional[SceneRenderer] = None,
    ) -> None:
        self.config = config
        self.cache = cache if cache is not None else ResourceCache()
        self.store = store
        self.renderer = renderer or SceneRenderer()

    # ----- resolution swap-in -----
    def resolve_original(self, rec: dict) -> Optional[bytes]:
        data = rec.get("original")
        if data:
            return data
        image_id = str(rec.get("image_id", ""))
        if not image_id:
            return None
        data = self.cache.get(image_id)
        if data:
            return data
        if self.store is not None:
            try:
                return self.store.get(image_id)
            except OSError:
                logger.exception(f"Full-resolution store failed for {image_id}")
        return None

    def swap_in(
        self,
        rec: dict,
        decoded: Optional[Dict[str, Optional[Image.Image]]] = None,
    ) -> Tuple[dict, Optional[Image.Image]]:
        """Return (record, image) with the original drawn at an unchanged footprint.

        Falls back to the preview (record untouched) when no original resolves.
        ``decoded`` memoizes originals by artwork id so copies share one image.
        """
        image_id = str(rec.get("image_id", ""))
        if decoded is not None and image_id and image_id in decoded:
            original = decoded[image_id]
        else:
            data = self.resolve_original(rec)
            original = ImageResolver.decode(data) if data else None
            if original is None and (data is not None or image_id):
                logger.warning(f"Using preview for {image_id or rec.get('id')}: original unavailable")
            if decoded is not None and image_id:
                decoded[image_id] = original
        if original is None:
            return rec, self.renderer.preview_source(rec)

        ow, oh = original.size
        visual_w = float(rec.get("width", 1.0)) * float(rec.get("scale_x", 1.0))
        visual_h = float(rec.get("height", 1.0)) * float(rec.get("scale_y", 1.0))
        swapped = dict(rec)
        swapped["width"] = float(ow)
        swapped["height"] = float(oh)
        swapped["scale_x"] = visual_w / ow
        swapped["scale_y"] = visual_h / oh
        return swapped, original

    def _records_of(self, source: SceneSource) -> Tuple[List[dict], float, float]:
        cfg = self.config
        if isinstance(source, LiveScene):
            return source.to_records(include_original=True), source.width_px, source.height_px
        if isinstance(source, Sheet):
            return list(source.objects or []), cfg.sheet_width_px, float(source.height_cm * cfg.px_per_cm)
        if isinstance(source, dict):
            height_cm = source.get("height_cm", cfg.default_height_cm)
            return list(source.get("objects") or []), cfg.sheet_width_px, float(height_cm) * cfg.px_per_cm
        return list(source), cfg.sheet_width_px, cfg.min_height_px

    def generate_blob(self, source: SceneSource, descriptor: ExportDescriptor) -> ExportBlob:
        """Rasterize ``source`` with ``descriptor``.

        Raises:
            ExportError: the scene is empty or encoding failed.
        """
        records, width_px, height_px = self._records_of(source)
        if not records:
            raise ExportError("Nothing to export: the sheet has no objects")

        dims = compute_safe_dimensions(width_px, height_px, descriptor.dpi, self.config)
        # One decoded original per artwork, shared by all of its placements
        decoded: Dict[str, Optional[Image.Image]] = {}
        pairs = [self.swap_in(rec, decoded) for rec in records]
        images = {id(r): im for r, im in pairs}
        drawn = [r for r, _ in pairs]

        img, failed = self.renderer.render(
            drawn,
            dims.width,
            dims.height,
            dims.scale_factor,
            background=descriptor.background,
            source=lambda r: images.get(id(r)),
        )
        if failed:
            logger.warning(f"{failed} object(s) could not be drawn and were skipped")
        try:
            data = encode_image(img, descriptor.format, descriptor.quality)
        except (OSError, ValueError) as e:
            raise ExportError(f"Failed to encode {descriptor.format}: {e}") from e
        logger.info(f"Exported {len(records)} objects at {dims.dpi} DPI ({dims.width}x{dims.height}px)")
        return ExportBlob(
            data=data,
            dpi=dims.dpi,
            width=dims.width,
            height=dims.height,
            format=descriptor.extension,
            skipped_objects=failed,
        )

    def export_batch_steps(
        self,
        sheets: Sequence[Sheet],
        base_name: str,
        descriptor: ExportDescriptor,
        sink: Optional[SinkFn] = None,
        progress: Optional[ProgressFn] = None,
    ) -> Task[BatchResult]:
        result = BatchResult()
        total = len(sheets)
        for i, sheet in enumerate(sheets):
            if progress is not None:
                progress(i + 1, total, sheet.name)
            if not sheet.object_count:
                result.items.append(BatchItemResult(sheet_name=sheet.name, status="skipped", error="Empty"))
                yield Continue("export", i + 1, total)
                continue
            name = generate_name(base_name, sheet.name, descriptor.extension)
            try:
                blob = self.generate_blob(sheet, descriptor)
                if sink is not None:
                    sink(name, blob)
                result.items.append(BatchItemResult(sheet_name=sheet.name, status="success", file_name=name, dpi=blob.dpi))
            except Exception as e:
                logger.exception(f"Failed to export sheet {sheet.name!r}")
                result.items.append(BatchItemResult(sheet_name=sheet.name, status="error", file_name=name, error=str(e)))
            yield Continue("export", i + 1, total)
        logger.info(
            f"Batch export: {result.success_count} ok, {result.error_count} failed, {result.skipped_count} skipped"
        )
        return result

    def export_batch(
        self,
        sheets: Sequence[Sheet],
        base_name: str,
        descriptor: ExportDescriptor,
        sink: Optional[SinkFn] = None,
        progress: Optional[ProgressFn] = None,
    ) -> BatchResult:
        return run_task(self.export_batch_steps(sheets, base_name, descriptor, sink=sink, progress=progress))


def directory_sink(out_dir: Union[str, Path]) -> SinkFn:
    root = Path(out_dir)

    def sink(name: str, blob: ExportBlob) -> None:
        blob.save(root / name)

    return sink


class ExportHistory:
    """Newest-first JSON log of batch exports."""

    def __init__(self, path: Optional[Path] = None, limit: int = EXPORT_HISTORY_LIMIT) -> None:
        self.path = Path(path) if path is not None else EXPORT_HISTORY_PATH
        self.limit = limit

    def load(self) -> List[dict]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.exception(f"Failed to read export history {self.path}")
            return []
        return data if isinstance(data, list) else []

    def record(self, base_name: str, result: BatchResult, preset: str) -> dict:
        entry = {
            "id": uuid.uuid4().hex,
            "timestamp": datetime.now().isoformat(timespec="seconds"),
            "base_name": base_name,
            "total_sheets": len(result.items),
            "success_count": result.success_count,
            "preset": preset,
            "items": [asdict(r) for r in result.items],
        }
        entries = [entry] + self.load()
        ensure_dir(self.path.parent)
        with self.path.open("w", encoding="utf-8") as f:
            json.dump(entries[: self.limit], f, ensure_ascii=False, indent=2)
        return entry

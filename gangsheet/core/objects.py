from __future__ import annotations

import uuid
import base64
from enum import Enum
from typing import Any, Optional, List
from dataclasses import dataclass, field


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex}"


@dataclass
class ArtworkItem:
    """
    A piece of artwork the user wants printed.

    Attributes:
        id: Identity shared by every placement of this artwork (the resource key).
        width_cm: Physical width in centimetres.
        height_cm: Physical height in centimetres.
        quantity: How many copies to place.
        preview_path: Memory-light image used for on-sheet placement.
        original: Full-resolution bytes, or None when offloaded to the blob store.
        original_width: Pixel width of the full-resolution source.
        original_height: Pixel height of the full-resolution source.
        preview_width: Pixel width of the preview image.
        preview_height: Pixel height of the preview image.
        thumb_path: Small thumbnail for listings.
        file_name: Name of the imported file.
    """
    id: str
    width_cm: float
    height_cm: float
    quantity: int = 1
    preview_path: str = ""
    original: Optional[bytes] = None
    original_width: int = 0
    original_height: int = 0
    preview_width: int = 0
    preview_height: int = 0
    thumb_path: str = ""
    file_name: str = ""

    def __post_init__(self) -> None:
        if int(self.quantity) < 1:
            raise ValueError(f"Artwork {self.id!r}: quantity must be >= 1, got {self.quantity}")
        if float(self.width_cm) <= 0 or float(self.height_cm) <= 0:
            raise ValueError(
                f"Artwork {self.id!r}: physical size must be positive, got {self.width_cm}x{self.height_cm}"
            )

    @property
    def aspect_ratio(self) -> float:
        if self.original_width > 0 and self.original_height > 0:
            return self.original_width / self.original_height
        return self.width_cm / self.height_cm


@dataclass
class PackItem:
    """A rectangle fed to the allocator; ``payload`` is opaque to it."""
    w: float
    h: float
    payload: Any = None


@dataclass
class Placement:
    """Where the allocator put one item, in sheet-pixel space (top-left of the drawn box)."""
    item: PackItem
    x: float
    y: float
    rotated: bool
    draw_w: float
    draw_h: float


@dataclass
class SheetBounds:
    width_px: float
    max_height_px: float
    margin_px: float
    max_objects: int
    px_per_cm: float = 10.0

    @property
    def safe_width(self) -> float:
        return self.width_px - 2 * self.margin_px


@dataclass
class SceneObject:
    """One image placed on the live sheet.

    ``left``/``top`` is the top-left of the rotated (axis-aligned) bounds in
    sheet pixels. ``width``/``height`` are the natural pixel size of the
    source currently drawn (the preview while editing); the drawn size is
    that times ``scale_x``/``scale_y``.
    """
    image_id: str
    src: str = ""
    left: float = 0.0
    top: float = 0.0
    width: float = 1.0
    height: float = 1.0
    scale_x: float = 1.0
    scale_y: float = 1.0
    # Rotation angle in degrees (clockwise)
    angle: float = 0.0
    visible: bool = True
    original_width: int = 0
    original_height: int = 0
    name: str = ""
    type: str = "image"
    id: str = field(default_factory=lambda: new_id("obj_"))
    # Runtime-only full resolution payload; never part of history snapshots
    original: Optional[bytes] = field(default=None, repr=False, compare=False)

    def to_record(self, include_original: bool = False) -> dict:
        rec = {
            "id": self.id,
            "type": self.type,
            "image_id": self.image_id,
            "src": self.src,
            "name": self.name,
            "left": float(self.left),
            "top": float(self.top),
            "width": float(self.width),
            "height": float(self.height),
            "scale_x": float(self.scale_x),
            "scale_y": float(self.scale_y),
            "angle": float(self.angle),
            "visible": bool(self.visible),
            "original_width": int(self.original_width),
            "original_height": int(self.original_height),
        }
        if include_original and self.original is not None:
            rec["original"] = self.original
        return rec

    @classmethod
    def from_record(cls, rec: dict) -> "SceneObject":
        return cls(
            id=str(rec.get("id") or new_id("obj_")),
            type=str(rec.get("type", "image")),
            image_id=str(rec.get("image_id", "")),
            src=str(rec.get("src", "")),
            name=str(rec.get("name", "")),
            left=float(rec.get("left", 0.0)),
            top=float(rec.get("top", 0.0)),
            width=float(rec.get("width", 1.0)),
            height=float(rec.get("height", 1.0)),
            scale_x=float(rec.get("scale_x", 1.0)),
            scale_y=float(rec.get("scale_y", 1.0)),
            angle=float(rec.get("angle", 0.0) or 0.0),
            visible=bool(rec.get("visible", True)),
            original_width=int(rec.get("original_width", 0) or 0),
            original_height=int(rec.get("original_height", 0) or 0),
            original=rec.get("original"),
        )


class SheetStatus(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    ACTIVE = "active"
    SAVED = "saved"
    DELETED = "deleted"


@dataclass
class Sheet:
    """A print sheet: its persisted scene plus a cached low-fidelity preview."""
    name: str
    height_cm: int = 50
    objects: Optional[List[dict]] = None
    preview: Optional[bytes] = field(default=None, repr=False)
    id: str = field(default_factory=lambda: new_id("sheet_"))
    status: SheetStatus = SheetStatus.UNLOADED

    @property
    def object_count(self) -> int:
        return len(self.objects or [])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "height_cm": int(self.height_cm),
            "objects": list(self.objects) if self.objects is not None else None,
            "preview": base64.b64encode(self.preview).decode("ascii") if self.preview else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Sheet":
        preview = data.get("preview")
        return cls(
            id=str(data.get("id") or new_id("sheet_")),
            name=str(data.get("name", "")),
            height_cm=int(data.get("height_cm", 50)),
            objects=data.get("objects"),
            preview=base64.b64decode(preview) if preview else None,
        )

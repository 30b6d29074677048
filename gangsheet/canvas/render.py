from __future__ import annotations

import io
import logging
from typing import Callable, Optional, Sequence, Tuple

from PIL import Image, ImageColor

from gangsheet.canvas.resources import ImageResolver

logger = logging.getLogger(__name__)

SourceFn = Callable[[dict], Optional[Image.Image]]


def parse_background(background: Optional[str]) -> Tuple[int, int, int, int]:
    if not background:
        return (255, 255, 255, 0)
    try:
        rgb = ImageColor.getrgb(str(background))
    except ValueError:
        logger.warning(f"Unknown background color {background!r}; using white")
        return (255, 255, 255, 255)
    if len(rgb) == 4:
        return tuple(rgb)  # type: ignore[return-value]
    return (rgb[0], rgb[1], rgb[2], 255)


def encode_image(img: Image.Image, fmt: str, quality: Optional[float] = None) -> bytes:
    """Encode ``img`` as PNG/JPEG/WEBP; ``quality`` is 0..1 like the export presets."""
    fmt = fmt.lower()
    q = int(round(float(quality) * 100)) if quality is not None else 90
    q = max(1, min(100, q))
    with io.BytesIO() as buffer:
        if fmt in ("jpg", "jpeg"):
            if img.mode != "RGB":
                flat = Image.new("RGB", img.size, (255, 255, 255))
                rgba = img.convert("RGBA")
                flat.paste(rgba, mask=rgba.split()[-1])
                img = flat
            img.save(buffer, format="JPEG", quality=q)
        elif fmt == "webp":
            img.save(buffer, format="WEBP", quality=q)
        else:
            img.save(buffer, format="PNG")
        return buffer.getvalue()


class SceneRenderer:
    """Rasterizes serialized scene records with Pillow."""

    def __init__(self, resolver: Optional[ImageResolver] = None) -> None:
        self.resolver = resolver or ImageResolver()

    def preview_source(self, rec: dict) -> Optional[Image.Image]:
        return self.resolver.resolve(str(rec.get("image_id", "")), str(rec.get("src", "")))

    def render(
        self,
        records: Sequence[dict],
        out_w: int,
        out_h: int,
        scale_factor: float,
        background: Optional[str] = None,
        source: Optional[SourceFn] = None,
    ) -> Tuple[Image.Image, int]:
        """Draw ``records`` (sheet-pixel geometry) onto an ``out_w`` x ``out_h`` canvas.

        Args:
            records: Scene object records in stacking order.
            out_w: Output width in pixels.
            out_h: Output height in pixels.
            scale_factor: Output pixels per sheet pixel.
            background: Color string, or None for transparent.
            source: Returns the image to draw for a record; defaults to the preview.

        Returns:
            Tuple of (RGBA image, number of objects that could not be drawn).
        """
        source = source or self.preview_source
        img = Image.new("RGBA", (max(1, int(out_w)), max(1, int(out_h))), parse_background(background))
        failed = 0
        for rec in records:
            if not rec.get("visible", True) or rec.get("type", "image") != "image":
                continue
            try:
                im = source(rec)
            except Exception:
                logger.exception(f"Failed to resolve image for object {rec.get('id')}")
                im = None
            if im is None:
                failed += 1
                continue
            w_px = max(1, int(round(float(rec.get("width", 1.0)) * float(rec.get("scale_x", 1.0)) * scale_factor)))
            h_px = max(1, int(round(float(rec.get("height", 1.0)) * float(rec.get("scale_y", 1.0)) * scale_factor)))
            if im.mode != "RGBA":
                im = im.convert("RGBA")
            im_resized = im.resize((w_px, h_px), Image.LANCZOS)
            ang = float(rec.get("angle", 0.0) or 0.0)
            if abs(ang) > 1e-6:
                im_resized = im_resized.rotate(-ang, expand=True, resample=Image.BICUBIC, fillcolor=(0, 0, 0, 0))
            left_px = int(round(float(rec.get("left", 0.0)) * scale_factor))
            top_px = int(round(float(rec.get("top", 0.0)) * scale_factor))
            try:
                img.alpha_composite(im_resized, (left_px, top_px))
            except ValueError:
                # alpha_composite refuses negative offsets
                img.paste(im_resized, (left_px, top_px), im_resized.split()[-1])
        return img, failed

    def render_preview(
        self,
        records: Sequence[dict],
        width_px: float,
        height_px: float,
        scale: float = 0.2,
        quality: float = 0.3,
    ) -> Optional[bytes]:
        """Low-fidelity JPEG of a sheet drawn from preview sources."""
        if not records:
            return None
        out_w = max(1, int(round(width_px * scale)))
        out_h = max(1, int(round(height_px * scale)))
        img, _ = self.render(records, out_w, out_h, scale, background="#ffffff")
        return encode_image(img, "jpeg", quality)


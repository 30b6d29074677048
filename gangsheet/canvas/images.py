"""
Artwork Loading Module

Decodes user files into ``ArtworkItem`` records: the image is downsized to a
workable maximum, fully transparent borders are trimmed, the full-resolution
bytes are offloaded to the blob store and light preview/thumbnail files are
written for on-sheet placement.
"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from PIL import Image

from gangsheet.core import (
    PREVIEWS_PATH,
    ArtworkItem,
    Continue,
    GangSheetConfig,
    ImageLoadError,
    Task,
    chunked,
    ensure_dir,
    new_id,
    run_task,
)
from gangsheet.canvas.render import encode_image
from gangsheet.canvas.resources import BlobStore

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp"}


@dataclass
class CropResult:
    """A cropped image handle, as produced by auto-crop or background removal.

    Attributes:
        image: The cropped RGBA image (None when only the ratios are known).
        width: Cropped pixel width.
        height: Cropped pixel height.
        crop_ratio_x: Cropped width divided by source width.
        crop_ratio_y: Cropped height divided by source height.
        is_empty: True when nothing visible was left.
    """
    image: Optional[Image.Image]
    width: int
    height: int
    crop_ratio_x: float = 1.0
    crop_ratio_y: float = 1.0
    is_empty: bool = False


def autocrop(img: Image.Image, threshold: int = 10) -> CropResult:
    """Trim rows/columns whose alpha never exceeds ``threshold``."""
    rgba = img if img.mode == "RGBA" else img.convert("RGBA")
    w, h = rgba.size
    alpha = np.asarray(rgba.getchannel("A"))
    mask = alpha > threshold
    rows = np.flatnonzero(mask.any(axis=1))
    cols = np.flatnonzero(mask.any(axis=0))
    if rows.size == 0 or cols.size == 0:
        return CropResult(image=None, width=0, height=0, crop_ratio_x=0.0, crop_ratio_y=0.0, is_empty=True)
    top, bottom = int(rows[0]), int(rows[-1]) + 1
    left, right = int(cols[0]), int(cols[-1]) + 1
    if (left, top, right, bottom) == (0, 0, w, h):
        return CropResult(image=rgba, width=w, height=h)
    cropped = rgba.crop((left, top, right, bottom))
    return CropResult(
        image=cropped,
        width=right - left,
        height=bottom - top,
        crop_ratio_x=(right - left) / w,
        crop_ratio_y=(bottom - top) / h,
    )


def physical_size_cm(width_px: int, height_px: int, config: GangSheetConfig) -> Tuple[float, float]:
    """Pixel size at the import density, capped so the longer side is at most ``max_import_size_cm``."""
    w_cm = width_px / config.import_dpi_px_per_cm
    h_cm = height_px / config.import_dpi_px_per_cm
    longest = max(w_cm, h_cm)
    if longest > config.max_import_size_cm:
        k = config.max_import_size_cm / longest
        w_cm *= k
        h_cm *= k
    return round(w_cm, 2), round(h_cm, 2)


def _fit(img: Image.Image, max_px: int) -> Image.Image:
    out = img.copy()
    if max(out.size) > max_px:
        out.thumbnail((max_px, max_px), Image.LANCZOS)
    return out


def _write_variants(art: ArtworkItem, img: Image.Image, config: GangSheetConfig, out_dir: Path) -> None:
    ensure_dir(out_dir)
    preview = _fit(img, config.preview_px)
    preview_path = out_dir / f"{art.id}_preview.png"
    preview.save(preview_path, format="PNG")
    thumb = _fit(img, config.thumb_px)
    thumb_path = out_dir / f"{art.id}_thumb.png"
    thumb.save(thumb_path, format="PNG")
    art.preview_path = str(preview_path)
    art.thumb_path = str(thumb_path)
    art.preview_width, art.preview_height = preview.size


def validate_file(path: Path, config: GangSheetConfig) -> None:
    if path.suffix.lower() not in ALLOWED_EXTENSIONS:
        raise ImageLoadError(f"{path.name}: unsupported file type {path.suffix or '(none)'}")
    if not path.exists():
        raise ImageLoadError(f"{path.name}: file not found")
    size_mb = path.stat().st_size / (1024 * 1024)
    if size_mb > config.max_file_size_mb:
        raise ImageLoadError(f"{path.name}: file is {size_mb:.1f} MB, limit is {config.max_file_size_mb:.0f} MB")


def load_artwork(
    path: Union[str, Path],
    store: BlobStore,
    config: GangSheetConfig,
    out_dir: Optional[Path] = None,
    width_cm: Optional[float] = None,
    height_cm: Optional[float] = None,
    quantity: int = 1,
) -> ArtworkItem:
    """Load one image file as an artwork.

    Args:
        path: Image file.
        store: Receives the cropped full-resolution bytes under the artwork id.
        config: Loading limits.
        out_dir: Where preview/thumbnail files go (defaults to the previews dir).
        width_cm: Physical width override; height follows the aspect ratio when omitted.
        height_cm: Physical height override.
        quantity: Copies to place.

    Returns:
        ArtworkItem with ``original`` offloaded (None) and previews written.

    Raises:
        ImageLoadError: unsupported type, too large, undecodable or fully transparent.
    """
    p = Path(path)
    validate_file(p, config)
    try:
        with Image.open(p) as im:
            img = im.convert("RGBA")
    except (OSError, ValueError) as e:
        raise ImageLoadError(f"{p.name}: cannot decode image ({e})") from e

    if max(img.size) > config.max_image_px:
        logger.debug(f"Downsizing {p.name} from {img.size} to fit {config.max_image_px}px")
        img.thumbnail((config.max_image_px, config.max_image_px), Image.LANCZOS)

    crop = autocrop(img, config.alpha_threshold)
    if crop.is_empty:
        raise ImageLoadError(f"{p.name}: image is fully transparent")
    img = crop.image

    auto_w, auto_h = physical_size_cm(img.width, img.height, config)
    if width_cm and height_cm:
        auto_w, auto_h = float(width_cm), float(height_cm)
    elif width_cm:
        auto_w, auto_h = float(width_cm), round(float(width_cm) * img.height / img.width, 2)
    elif height_cm:
        auto_w, auto_h = round(float(height_cm) * img.width / img.height, 2), float(height_cm)

    art = ArtworkItem(
        id=new_id("art_"),
        width_cm=auto_w,
        height_cm=auto_h,
        quantity=quantity,
        original_width=img.width,
        original_height=img.height,
        file_name=p.name,
    )
    store.save(art.id, encode_image(img, "webp", config.compression_quality))
    _write_variants(art, img, config, Path(out_dir) if out_dir is not None else PREVIEWS_PATH)
    logger.info(f"Loaded {p.name} as {art.id} ({art.width_cm}x{art.height_cm} cm, {img.width}x{img.height}px)")
    return art


def load_files_steps(
    paths: Sequence[Union[str, Path]],
    store: BlobStore,
    config: GangSheetConfig,
    out_dir: Optional[Path] = None,
) -> Task[Tuple[List[ArtworkItem], List[Tuple[str, str]]]]:
    loaded: List[ArtworkItem] = []
    errors: List[Tuple[str, str]] = []
    total = len(paths)
    for start, chunk in chunked(list(paths), config.chunk_size):
        for path in chunk:
            try:
                loaded.append(load_artwork(path, store, config, out_dir=out_dir))
            except ImageLoadError as e:
                logger.warning(str(e))
                errors.append((str(path), str(e)))
            except Exception as e:
                logger.exception(f"Unexpected failure loading {path}")
                errors.append((str(path), str(e)))
        yield Continue("load_files", min(start + len(chunk), total), total)
    logger.info(f"Loaded {len(loaded)}/{total} files, {len(errors)} failed")
    return loaded, errors


def load_files(
    paths: Sequence[Union[str, Path]],
    store: BlobStore,
    config: GangSheetConfig,
    out_dir: Optional[Path] = None,
) -> Tuple[List[ArtworkItem], List[Tuple[str, str]]]:
    return run_task(load_files_steps(paths, store, config, out_dir=out_dir))


def apply_crop(
    art: ArtworkItem,
    crop: CropResult,
    store: Optional[BlobStore] = None,
    config: Optional[GangSheetConfig] = None,
    out_dir: Optional[Path] = None,
) -> ArtworkItem:
    """Apply a cropped image handle (e.g. after background removal) to ``art``.

    The physical size shrinks by the crop ratios. When the handle carries an
    image and a store is given, the stored original and previews are replaced.
    """
    if crop.is_empty:
        raise ImageLoadError(f"{art.file_name or art.id}: cropping left nothing visible")
    art.width_cm = round(art.width_cm * crop.crop_ratio_x, 2)
    art.height_cm = round(art.height_cm * crop.crop_ratio_y, 2)
    art.original_width = int(crop.width)
    art.original_height = int(crop.height)
    if crop.image is not None and store is not None:
        cfg = config or GangSheetConfig()
        with io.BytesIO() as buffer:
            crop.image.save(buffer, format="PNG")
            store.save(art.id, buffer.getvalue())
        art.original = None
        _write_variants(art, crop.image, cfg, Path(out_dir) if out_dir is not None else PREVIEWS_PATH)
    logger.info(f"Applied crop to {art.id}: now {art.width_cm}x{art.height_cm} cm")
    return art

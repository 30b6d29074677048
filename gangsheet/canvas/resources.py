"""
Resource Module

Full-resolution artwork is expensive, so it lives in three places:

* ``BlobStore`` - on-disk key/value store the loader offloads originals to.
* ``ResourceCache`` - in-memory originals shared by every sheet, reference
  counted per artwork id so an entry is released when its last placement goes.
* ``ImageResolver`` - decodes preview files or original bytes into Pillow
  images ready to draw, caching decoded previews by artwork id.
"""

from __future__ import annotations

import io
import re
import logging
from collections import Counter
from pathlib import Path
from typing import Dict, Mapping, Optional

from PIL import Image

from gangsheet.core import BLOBS_PATH, ensure_dir

logger = logging.getLogger(__name__)


class BlobStore:
    """Directory-backed ``save/get/delete`` store keyed by artwork id."""

    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root) if root is not None else BLOBS_PATH

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^a-zA-Z0-9\-_]", "_", str(key))
        return self.root / f"{safe}.bin"

    def save(self, key: str, data: bytes) -> None:
        ensure_dir(self.root)
        self._path(key).write_bytes(data)
        logger.debug(f"Stored blob {key} ({len(data)} bytes)")

    def get(self, key: str) -> Optional[bytes]:
        p = self._path(key)
        if not p.exists():
            return None
        try:
            return p.read_bytes()
        except OSError:
            logger.exception(f"Failed to read blob {key}")
            return None

    def delete(self, key: str) -> None:
        p = self._path(key)
        try:
            p.unlink()
        except FileNotFoundError:
            pass


class ResourceCache:
    """Identity-keyed cache of full-resolution bytes with explicit reference counts.

    Owners (sheets) report how many placements of each artwork they hold via
    ``sync``; the cache retains/releases the difference. A payload is dropped
    when its count reaches zero. The cache never owns an artwork's lifecycle.
    """

    def __init__(self) -> None:
        self._payloads: Dict[str, bytes] = {}
        self._refs: Counter = Counter()
        self._owners: Dict[str, Counter] = {}

    def __contains__(self, image_id: str) -> bool:
        return image_id in self._payloads

    def __len__(self) -> int:
        return len(self._payloads)

    def get(self, image_id: str) -> Optional[bytes]:
        return self._payloads.get(image_id)

    def store(self, image_id: str, data: bytes) -> None:
        if image_id and data is not None:
            self._payloads[image_id] = data

    def refcount(self, image_id: str) -> int:
        return self._refs.get(image_id, 0)

    def retain(self, image_id: str, count: int = 1) -> None:
        self._refs[image_id] += count

    def release(self, image_id: str, count: int = 1) -> None:
        left = self._refs.get(image_id, 0) - count
        if left > 0:
            self._refs[image_id] = left
            return
        self._refs.pop(image_id, None)
        if self._payloads.pop(image_id, None) is not None:
            logger.debug(f"Released cached original for {image_id}")

    def sync(self, owner: str, counts: Mapping[str, int]) -> None:
        """Make ``owner``'s references equal to ``counts`` (image_id -> placements)."""
        new = Counter({k: v for k, v in counts.items() if v > 0})
        old = self._owners.get(owner, Counter())
        for image_id in set(old) | set(new):
            delta = new.get(image_id, 0) - old.get(image_id, 0)
            if delta > 0:
                self.retain(image_id, delta)
            elif delta < 0:
                self.release(image_id, -delta)
        if new:
            self._owners[owner] = new
        else:
            self._owners.pop(owner, None)

    def release_owner(self, owner: str) -> None:
        self.sync(owner, {})

    def discard(self, image_id: str) -> None:
        """Forget ``image_id`` entirely, whatever its reference count."""
        self._refs.pop(image_id, None)
        self._payloads.pop(image_id, None)
        for counts in self._owners.values():
            counts.pop(image_id, None)


class ImageResolver:
    """Turns an artwork identity into a decoded RGBA image."""

    def __init__(self) -> None:
        self._sources: Dict[str, str] = {}
        self._decoded: Dict[str, Image.Image] = {}

    def register(self, image_id: str, src: str) -> None:
        if self._sources.get(image_id) != src:
            self._decoded.pop(image_id, None)
        self._sources[image_id] = src

    def forget(self, image_id: str) -> None:
        self._sources.pop(image_id, None)
        self._decoded.pop(image_id, None)

    def resolve(self, image_id: str, src: str = "") -> Optional[Image.Image]:
        """Decode the preview source for ``image_id`` (cached); None when unreadable."""
        pil = self._decoded.get(image_id)
        if pil is not None:
            return pil
        path = src or self._sources.get(image_id, "")
        if not path or not Path(path).exists():
            logger.warning(f"No preview source for {image_id}: {path!r}")
            return None
        try:
            with Image.open(path) as im:
                pil = im.convert("RGBA")
        except (OSError, ValueError):
            logger.exception(f"Failed to decode preview {path}")
            return None
        if image_id:
            self._decoded[image_id] = pil
        return pil

    @staticmethod
    def decode(data: bytes) -> Optional[Image.Image]:
        try:
            with Image.open(io.BytesIO(data)) as im:
                return im.convert("RGBA")
        except (OSError, ValueError):
            logger.exception("Failed to decode full-resolution image")
            return None

from __future__ import annotations

import json
import logging
from typing import Callable, Dict, List, Optional, Sequence

from gangsheet.core import Continue, GangSheetConfig, SceneObject, Task, chunked

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict], None]


class Observable:
    """Minimal subscription point; listeners get ``(event, payload)``."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: str, payload: Optional[dict] = None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, payload or {})
            except Exception:
                logger.exception(f"Listener failed for {event!r}")


class LiveScene(Observable):
    """The editable view of the current sheet.

    Holds the placed objects in stacking order plus the sheet's current
    pixel height. Observers receive ``(event, payload)`` for
    ``object:added``, ``object:removed``, ``object:modified``,
    ``scene:loaded`` and ``scene:cleared``.
    """

    def __init__(self, config: GangSheetConfig) -> None:
        super().__init__()
        self.config = config
        self.objects: List[SceneObject] = []
        self.width_px: float = config.sheet_width_px
        self.max_height_px: float = config.max_height_px
        self.height_px: float = config.min_height_px
        self.zoom: float = 1.0

    def __len__(self) -> int:
        return len(self.objects)

    def __iter__(self):
        return iter(self.objects)

    # ----- height -----
    @property
    def height_cm(self) -> int:
        return int(round(self.height_px / self.config.px_per_cm))

    def set_height_cm(self, height_cm: float) -> None:
        self.height_px = float(self.config.clamp_height_cm(height_cm) * self.config.px_per_cm)

    # ----- objects -----
    def get(self, obj_id: str) -> Optional[SceneObject]:
        for obj in self.objects:
            if obj.id == obj_id:
                return obj
        return None

    def add(self, obj: SceneObject) -> SceneObject:
        self.objects.append(obj)
        self.emit("object:added", {"id": obj.id, "image_id": obj.image_id})
        return obj

    def remove(self, obj_id: str) -> Optional[SceneObject]:
        obj = self.get(obj_id)
        if obj is None:
            return None
        self.objects.remove(obj)
        self.emit("object:removed", {"id": obj.id, "image_id": obj.image_id})
        return obj

    def modified(self, obj: SceneObject) -> None:
        self.emit("object:modified", {"id": obj.id})

    def clear(self) -> None:
        self.objects.clear()
        self.emit("scene:cleared", {})

    # ----- serialization -----
    def to_records(self, include_original: bool = False) -> List[dict]:
        return [o.to_record(include_original=include_original) for o in self.objects]

    def to_json(self) -> str:
        """History snapshot: records without full-resolution payloads, plus the height."""
        return json.dumps(
            {"height_px": float(self.height_px), "objects": self.to_records()},
            ensure_ascii=False,
            separators=(",", ":"),
        )

    def image_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for o in self.objects:
            if o.image_id:
                counts[o.image_id] = counts.get(o.image_id, 0) + 1
        return counts

    def load_records_steps(
        self,
        records: Sequence[dict],
        chunk_size: Optional[int] = None,
        attach: Optional[Callable[[SceneObject], None]] = None,
    ) -> Task[int]:
        """Replace the scene with ``records``, reviving objects chunk by chunk.

        ``attach`` is called on every revived object before it is added
        (used to reattach cached full-resolution payloads).
        """
        size = chunk_size or self.config.chunk_size
        self.objects.clear()
        total = len(records)
        loaded = 0
        for start, chunk in chunked(list(records), size):
            for rec in chunk:
                try:
                    obj = SceneObject.from_record(rec)
                except (TypeError, ValueError):
                    logger.exception(f"Skipping malformed scene record #{start}")
                    continue
                if attach is not None:
                    attach(obj)
                self.objects.append(obj)
                loaded += 1
            logger.debug(f"Loaded scene chunk {start}..{start + len(chunk)} of {total}")
            yield Continue("load", min(start + len(chunk), total), total)
        self.emit("scene:loaded", {"count": loaded})
        return loaded

    def restore_json(self, scene_json: str, attach: Optional[Callable[[SceneObject], None]] = None) -> None:
        """Apply a history snapshot in one step; full-resolution payloads are kept by object id."""
        data = json.loads(scene_json)
        originals = {o.id: o.original for o in self.objects if o.original is not None}
        self.objects = [SceneObject.from_record(r) for r in data.get("objects", [])]
        for o in self.objects:
            if o.id in originals:
                o.original = originals[o.id]
            elif attach is not None:
                attach(o)
        self.height_px = float(data.get("height_px", self.height_px))
        self.emit("scene:loaded", {"count": len(self.objects)})

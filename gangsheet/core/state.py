import os
import json
import logging
from pathlib import Path
from typing import Optional, Tuple
from dataclasses import dataclass, field, asdict, fields

from dotenv import load_dotenv


APP_TITLE = "GangSheet 1.0"

INTERNAL_PATH = Path.cwd() / "_internal"
BLOBS_PATH    = INTERNAL_PATH / "blobs"
PREVIEWS_PATH = INTERNAL_PATH / "previews"
LOGS_PATH     = INTERNAL_PATH / "logs"
OUTPUT_PATH   = Path.cwd() / "outputs"

ENV_PATH = INTERNAL_PATH / "env"
CONFIG_PATH = INTERNAL_PATH / "config.json"
EXPORT_HISTORY_PATH = INTERNAL_PATH / "export_history.json"

ENV_PREFIX = "GANGSHEET_"

logger = logging.getLogger(__name__)


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


@dataclass
class GangSheetConfig:
    """Every tunable limit of the layout engine.

    Physical sizes are in centimetres, everything ending in ``_px`` is in
    sheet-pixel space (``px_per_cm`` pixels per centimetre).
    """
    px_per_cm: int = 10

    # Sheet geometry
    sheet_width_cm: float = 58.0
    default_height_cm: int = 50
    max_height_cm: int = 200
    margin_px: float = 5.0

    # Capacity ceilings
    max_objects_per_sheet: int = 100
    warn_objects_per_sheet: int = 80
    max_sheets: int = 20

    # Editing
    max_history: int = 50
    min_scale: float = 0.05
    snap_tolerance_px: float = 8.0
    grow_increment_cm: float = 5.0
    overflow_height_pad_cm: int = 2

    # Export safety ceilings (output pixels)
    max_safe_dimension: int = 24000
    max_safe_area: int = 150 * 1024 * 1024

    # Cooperative chunking
    chunk_size: int = 10

    # Image loading
    max_image_px: int = 3000
    preview_px: int = 1024
    thumb_px: int = 300
    max_file_size_mb: float = 50.0
    import_dpi_px_per_cm: float = 118.11
    max_import_size_cm: float = 30.0
    compression_quality: float = 0.85
    alpha_threshold: int = 10

    # Low-fidelity sheet previews used for instant switching
    sheet_previews: bool = True
    sheet_preview_scale: float = 0.2
    sheet_preview_quality: float = 0.3

    # (height_cm, price) breakpoints, linear in between
    price_tiers: Tuple[Tuple[int, int], ...] = field(
        default_factory=lambda: ((50, 15000), (100, 22000), (200, 44000))
    )

    @property
    def sheet_width_px(self) -> float:
        return self.sheet_width_cm * self.px_per_cm

    @property
    def safe_width_px(self) -> float:
        return self.sheet_width_px - 2 * self.margin_px

    @property
    def max_height_px(self) -> float:
        return float(self.max_height_cm * self.px_per_cm)

    @property
    def min_height_px(self) -> float:
        return float(self.default_height_cm * self.px_per_cm)

    def clamp_height_cm(self, height_cm: float) -> int:
        return int(max(self.default_height_cm, min(self.max_height_cm, height_cm)))


def _coerce(current, raw):
    """Convert a raw (JSON or env string) value to the type of the current default."""
    if isinstance(current, bool):
        if isinstance(raw, str):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        return bool(raw)
    if isinstance(current, int):
        return int(float(raw))
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, tuple):
        data = json.loads(raw) if isinstance(raw, str) else raw
        return tuple(tuple(int(v) for v in pair) for pair in data)
    return raw


def _apply(config: GangSheetConfig, key: str, raw) -> None:
    try:
        setattr(config, key, _coerce(getattr(config, key), raw))
    except (TypeError, ValueError) as e:
        logger.warning(f"Ignoring invalid value for {key!r}: {raw!r} ({e})")


def load_config(path: Optional[str | Path] = None, env_path: Optional[Path] = None) -> GangSheetConfig:
    """Build a config from defaults, an optional JSON file and ``GANGSHEET_*`` env overrides."""
    config = GangSheetConfig()
    names = {f.name for f in fields(config)}

    p = Path(path) if path is not None else CONFIG_PATH
    if p.exists():
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.exception(f"Failed to read config file {p}; using defaults")
            data = {}
        if isinstance(data, dict):
            for k, v in data.items():
                if k in names:
                    _apply(config, k, v)

    env_file = env_path if env_path is not None else ENV_PATH
    if env_file.exists():
        load_dotenv(env_file)
    for name in names:
        raw = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None:
            _apply(config, name, raw)
    return config


def save_config(config: GangSheetConfig, path: str | Path) -> None:
    p = Path(path)
    ensure_dir(p.parent)
    with p.open("w", encoding="utf-8") as f:
        json.dump(asdict(config), f, ensure_ascii=False, indent=2)

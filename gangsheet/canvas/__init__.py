from .constraints import ConstraintEngine, SnapResult, rotated_bounds, bounding_rect
from .history import HistoryStack
from .packing import PackResult, pack, expand_items, fits_empty, bounds_from_config
from .scene import LiveScene, Observable
from .resources import BlobStore, ResourceCache, ImageResolver
from .render import SceneRenderer
from .export import (
    ExportDescriptor,
    ExportPreset,
    ExportPipeline,
    ExportBlob,
    ExportHistory,
    BatchResult,
    compute_safe_dimensions,
    generate_name,
    directory_sink,
)
from .images import CropResult, autocrop, load_artwork, load_files, apply_crop
from .metrics import SheetMetrics, compute_metrics, compute_price
from .production import ProductionMode
from .sheets import SheetOrchestrator, SheetContext, AddSheetResult, PackSummary, EditResult

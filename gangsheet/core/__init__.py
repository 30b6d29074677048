from .state import (
    APP_TITLE,
    INTERNAL_PATH,
    BLOBS_PATH,
    PREVIEWS_PATH,
    LOGS_PATH,
    OUTPUT_PATH,
    EXPORT_HISTORY_PATH,
    GangSheetConfig,
    load_config,
    save_config,
    ensure_dir,
)
from .objects import ArtworkItem, PackItem, Placement, SheetBounds, SceneObject, Sheet, SheetStatus, new_id
from .errors import (
    SheetResult,
    GangSheetError,
    SheetIntegrityError,
    ExportError,
    ProductionValidationError,
    ImageLoadError,
)
from .tasks import Continue, Task, run_task, chunked

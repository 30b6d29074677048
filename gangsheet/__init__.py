from .core import APP_TITLE, GangSheetConfig, load_config, ArtworkItem, SheetResult

__version__ = "1.0.0"

import sys
import logging
import argparse
from pathlib import Path

from gangsheet import APP_TITLE
from gangsheet.core import LOGS_PATH, OUTPUT_PATH, ArtworkItem, ensure_dir, load_config
from gangsheet.canvas import (
    BlobStore,
    ExportHistory,
    ExportPreset,
    SheetOrchestrator,
    directory_sink,
    load_artwork,
)

logger = logging.getLogger(__name__)


def parse_image_arg(arg: str):
    """``path[:width_cm[:height_cm[:qty]]]``; empty fields keep the automatic value."""
    parts = arg.split(":")
    # Keep Windows drive letters (C:\...) attached to the path
    if len(parts) > 1 and len(parts[0]) == 1 and parts[1].startswith(("\\", "/")):
        parts = [parts[0] + ":" + parts[1]] + parts[2:]
    path = parts[0]
    width = float(parts[1]) if len(parts) > 1 and parts[1] else None
    height = float(parts[2]) if len(parts) > 2 and parts[2] else None
    qty = int(parts[3]) if len(parts) > 3 and parts[3] else 1
    return path, width, height, qty


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gangsheet", description=APP_TITLE)
    parser.add_argument("--config", type=Path, default=None, help="JSON config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")
    parser.add_argument("--log-file", action="store_true", help="also log to the logs directory")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("pack", help="pack images onto sheets and export every sheet")
    p.add_argument("images", nargs="+", help="path[:width_cm[:height_cm[:qty]]]")
    p.add_argument("--out", type=Path, default=OUTPUT_PATH, help="output directory")
    p.add_argument("--preset", default="production", choices=[x.name.lower() for x in ExportPreset])
    p.add_argument("--base-name", default="gangsheet", help="output file name prefix")
    return parser


def setup_logging(verbose: bool, log_file: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s %(name)s] [%(levelname)s] %(message)s",
    )
    logging.getLogger("PIL").setLevel(logging.WARNING)
    if log_file:
        ensure_dir(LOGS_PATH)
        handler = logging.FileHandler(LOGS_PATH / "gangsheet.log", encoding="utf-8")
        handler.setFormatter(logging.Formatter("[%(asctime)s %(name)s] [%(levelname)s] %(message)s"))
        logging.getLogger().addHandler(handler)


def cmd_pack(args, config) -> int:
    store = BlobStore()
    artworks: list[ArtworkItem] = []
    failed = 0
    for arg in args.images:
        path, width, height, qty = parse_image_arg(arg)
        try:
            artworks.append(load_artwork(path, store, config, width_cm=width, height_cm=height, quantity=qty))
        except Exception as e:
            logger.error(f"Skipping {path}: {e}")
            failed += 1
    if not artworks:
        logger.error("No images could be loaded")
        return 1

    orch = SheetOrchestrator(config, store=store)
    summary = orch.pack_items(artworks)
    result = orch.export_all(
        args.base_name,
        ExportPreset.from_name(args.preset),
        sink=directory_sink(args.out),
        history=ExportHistory(),
    )

    print(f"{'Sheet':<10} {'Status':<8} {'DPI':>5}  File")
    for item in result.items:
        print(f"{item.sheet_name:<10} {item.status:<8} {item.dpi or '':>5}  {item.file_name or item.error}")
    placed = sum(sheet.object_count for sheet in orch.sheets)
    print(
        f"{placed} placed on {len(orch.sheets)} sheet(s), {summary.sheets_created} overflow sheet(s), "
        f"{summary.unplaced + summary.unplaceable} not placed, {failed} file(s) failed"
    )
    return 0 if result.error_count == 0 else 2


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, args.log_file)
    config = load_config(args.config)
    if args.command == "pack":
        return cmd_pack(args, config)
    return 1


if __name__ == "__main__":
    sys.exit(main())

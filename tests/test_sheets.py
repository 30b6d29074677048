from unittest.mock import Mock, patch

import pytest

from gangsheet.core import (
    GangSheetConfig,
    PackItem,
    ProductionValidationError,
    SheetIntegrityError,
    SheetResult,
    SheetStatus,
)
from gangsheet.canvas import ExportHistory, ExportPreset, ImageResolver, SheetOrchestrator
from gangsheet.canvas.sheets import SheetContext


def short_config(**kw):
    # A 58x50 cm sheet that cannot grow: two 50x45 cm items never share one
    params = dict(max_height_cm=50, max_safe_dimension=1200, max_safe_area=1_000_000)
    params.update(kw)
    return GangSheetConfig(**params)


def events(listener):
    return [c.args[0] for c in listener.call_args_list]


class TestLifecycle:
    def test_starts_with_one_active_sheet(self, orchestrator):
        assert [s.name for s in orchestrator.sheets] == ["Sheet 1"]
        assert orchestrator.current_index == 0
        assert orchestrator.current_sheet.status == SheetStatus.ACTIVE
        assert orchestrator.scene.height_cm == 50

    def test_add_sheet_switches_to_it(self, orchestrator):
        listener = Mock()
        orchestrator.subscribe(listener)
        result = orchestrator.add_sheet()
        assert result.code == SheetResult.OK
        assert result.sheets_created == 1
        assert len(orchestrator.sheets) == 2
        assert orchestrator.current_index == 1
        assert orchestrator.sheets[0].status == SheetStatus.SAVED
        assert "sheet:added" in events(listener)
        assert events(listener)[-1] == "sheet:switched"

    def test_sheet_limit_is_a_result_code(self, store):
        orch = SheetOrchestrator(GangSheetConfig(max_sheets=2), store=store)
        assert orch.add_sheet().code == SheetResult.OK
        result = orch.add_sheet([PackItem(10, 10)])
        assert result.code == SheetResult.SHEET_LIMIT
        assert len(result.remainder) == 1
        assert len(orch.sheets) == 2

    def test_integrity_error_on_bad_cursor(self):
        with pytest.raises(SheetIntegrityError):
            SheetContext(sheets=[], current_index=0).current

    def test_switch_to_same_sheet_is_noop(self, orchestrator):
        assert orchestrator.switch_to_sheet(0) is False

    def test_switch_out_of_range(self, orchestrator):
        with pytest.raises(IndexError):
            orchestrator.switch_to_sheet(3)

    def test_switch_persists_and_restores(self, orchestrator, make_artwork):
        art = make_artwork()
        placed = orchestrator.place_item(art, left=50, top=60)
        orchestrator.add_sheet()

        saved = orchestrator.sheets[0]
        assert saved.object_count == 1
        assert "original" not in saved.objects[0]
        assert art.id in orchestrator.cache
        assert saved.preview is not None and saved.preview[:2] == b"\xff\xd8"

        listener = Mock()
        orchestrator.subscribe(listener)
        orchestrator.switch_to_sheet(0)
        assert events(listener)[:2] == ["sheet:loading", "sheet:preview"]
        obj = orchestrator.scene.get(placed.object_ids[0])
        assert (obj.left, obj.top) == (50, 60)
        assert obj.original == art.original

    def test_switch_is_chunked(self, orchestrator, make_artwork):
        orchestrator.place_item(make_artwork(width_cm=2, height_cm=2, quantity=25))
        orchestrator.add_sheet()
        tokens = list(orchestrator.switch_to_sheet_steps(0))
        assert [t.done for t in tokens if t.stage == "load"] == [10, 20, 25]
        assert len(orchestrator.scene) == 25

    def test_switch_resets_history(self, orchestrator, make_artwork):
        orchestrator.place_item(make_artwork())
        orchestrator.add_sheet()
        orchestrator.switch_to_sheet(0)
        assert len(orchestrator.history) == 1
        assert orchestrator.undo() is False

    def test_height_is_persisted(self, orchestrator, make_artwork):
        orchestrator.place_item(make_artwork(), top=475)
        assert orchestrator.scene.height_px == 600
        height = orchestrator.scene.height_cm
        orchestrator.add_sheet()
        assert orchestrator.sheets[0].height_cm == height
        orchestrator.switch_to_sheet(0)
        assert orchestrator.scene.height_cm == height


class TestOverflow:
    def test_overflow_fills_exactly_two_new_sheets(self, store, make_artwork):
        orch = SheetOrchestrator(short_config(), store=store)
        result = orch.add_sheet([make_artwork(width_cm=50, height_cm=45, quantity=2)])
        assert result.code == SheetResult.OK
        assert result.sheets_created == 2
        assert result.remainder == []
        assert len(orch.sheets) == 3
        assert orch.sheets[1].object_count == 1
        assert len(orch.scene) == 1
        assert orch.current_index == 2

    def test_overflow_halts_at_sheet_ceiling(self, store, make_artwork):
        orch = SheetOrchestrator(short_config(max_sheets=2), store=store)
        result = orch.add_sheet([make_artwork(width_cm=50, height_cm=45, quantity=3)])
        assert result.code == SheetResult.SHEET_LIMIT
        assert len(result.remainder) == 2
        assert len(orch.sheets) == 2

    def test_overflow_sheet_height_fits_content(self, orchestrator, make_artwork):
        orchestrator.add_sheet([make_artwork(width_cm=50, height_cm=60)])
        # 60 cm item plus 0.5 cm top margin -> 61 cm used, padded by 2 cm
        assert orchestrator.scene.height_cm == 63

    def test_unplaceable_items_reported_up_front(self, store, make_artwork):
        orch = SheetOrchestrator(short_config(), store=store)
        summary = orch.pack_items([make_artwork(width_cm=80, height_cm=60), make_artwork(width_cm=10, height_cm=10)])
        assert summary.code == SheetResult.UNPLACEABLE
        assert summary.unplaceable == 1
        assert summary.placed == 1
        assert len(orch.sheets) == 1

    def test_pack_items_overflows_onto_new_sheets(self, store, make_artwork):
        orch = SheetOrchestrator(short_config(), store=store)
        summary = orch.pack_items([make_artwork(width_cm=50, height_cm=45, quantity=3)])
        assert summary.code == SheetResult.OK
        assert summary.placed == 1
        assert summary.skipped == 2
        assert summary.sheets_created == 2
        assert summary.unplaced == 0
        assert [s.name for s in orch.sheets] == ["Sheet 1", "Sheet 2", "Sheet 3"]

    def test_pack_items_sizes_sheet(self, orchestrator, make_artwork):
        summary = orchestrator.pack_items([make_artwork(width_cm=20, height_cm=10, quantity=4)])
        assert summary.placed == 4
        assert summary.sheets_created == 0
        assert orchestrator.scene.height_cm == 50
        assert orchestrator.metrics().object_count == 4


class TestDelete:
    def test_refuses_last_sheet(self, orchestrator):
        assert orchestrator.delete_sheet(0) == SheetResult.LAST_SHEET
        assert len(orchestrator.sheets) == 1

    def test_unknown_index(self, orchestrator):
        orchestrator.add_sheet()
        assert orchestrator.delete_sheet(5) == SheetResult.NOT_FOUND

    def test_delete_active_moves_to_previous(self, orchestrator):
        orchestrator.add_sheet()
        orchestrator.add_sheet()
        assert orchestrator.delete_sheet(2) == SheetResult.OK
        assert orchestrator.current_index == 1
        assert [s.name for s in orchestrator.sheets] == ["Sheet 1", "Sheet 2"]

    def test_delete_first_active_stays_at_zero(self, orchestrator):
        orchestrator.add_sheet()
        orchestrator.switch_to_sheet(0)
        orchestrator.delete_sheet(0)
        assert orchestrator.current_index == 0
        assert len(orchestrator.sheets) == 1

    def test_delete_earlier_sheet_shifts_cursor(self, orchestrator):
        orchestrator.add_sheet()
        orchestrator.add_sheet()
        current = orchestrator.current_sheet
        orchestrator.delete_sheet(0)
        assert orchestrator.current_index == 1
        assert orchestrator.current_sheet is current
        assert current.name == "Sheet 2"

    def test_delete_releases_cache_references(self, orchestrator, make_artwork):
        art = make_artwork()
        orchestrator.place_item(art)
        orchestrator.add_sheet()
        assert orchestrator.cache.refcount(art.id) == 1
        orchestrator.delete_sheet(0)
        assert orchestrator.cache.refcount(art.id) == 0
        assert art.id not in orchestrator.cache


class TestEditing:
    def test_place_item_copies_are_offset(self, orchestrator, make_artwork):
        result = orchestrator.place_item(make_artwork(quantity=3))
        assert result.ok
        objs = [orchestrator.scene.get(i) for i in result.object_ids]
        assert [(o.left, o.top) for o in objs] == [(5, 5), (20, 20), (35, 35)]
        assert orchestrator.cache.refcount(objs[0].image_id) == 3

    def test_place_item_respects_object_limit(self, store, make_artwork):
        orch = SheetOrchestrator(GangSheetConfig(max_objects_per_sheet=5), store=store)
        result = orch.place_item(make_artwork(quantity=6))
        assert result.code == SheetResult.OBJECT_LIMIT
        assert len(orch.scene) == 0

    def test_place_item_size_from_physical_size(self, orchestrator, make_artwork):
        result = orchestrator.place_item(make_artwork(width_cm=10, height_cm=7.5))
        left, top, w, h = orchestrator.object_bounds(result.object_ids[0])
        assert (w, h) == (100, 75)

    def test_duplicate(self, orchestrator, make_artwork):
        first = orchestrator.place_item(make_artwork(), left=100, top=100).object_ids[0]
        dup = orchestrator.duplicate_objects([first])
        assert dup.ok
        clone = orchestrator.scene.get(dup.object_ids[0])
        assert clone.id != first
        assert (clone.left, clone.top) == (120, 120)

    def test_duplicate_limit_and_missing(self, store, make_artwork):
        orch = SheetOrchestrator(GangSheetConfig(max_objects_per_sheet=1), store=store)
        first = orch.place_item(make_artwork()).object_ids[0]
        assert orch.duplicate_objects([first]).code == SheetResult.OBJECT_LIMIT
        assert orch.duplicate_objects(["nope"]).code == SheetResult.NOT_FOUND

    def test_remove_and_clear(self, orchestrator, make_artwork):
        ids = orchestrator.place_item(make_artwork(quantity=3)).object_ids
        assert orchestrator.remove_objects([ids[0], "missing"]) == 1
        assert len(orchestrator.scene) == 2
        orchestrator.clear_sheet()
        assert len(orchestrator.scene) == 0

    def test_move_is_constrained(self, orchestrator, make_artwork):
        oid = orchestrator.place_item(make_artwork()).object_ids[0]
        assert orchestrator.move_object(oid, -50, -50)
        obj = orchestrator.scene.get(oid)
        assert (obj.left, obj.top) == (0, 0)
        assert orchestrator.move_object("missing", 0, 0) is False

    def test_move_in_production_mode_snaps(self, orchestrator, make_artwork):
        oid = orchestrator.place_item(make_artwork(width_cm=10, height_cm=5)).object_ids[0]
        orchestrator.set_production_mode(True)
        orchestrator.move_object(oid, 237, 200)
        assert orchestrator.scene.get(oid).left == 240
        assert ("v", 290.0) in orchestrator.production.guides

    def test_production_move_that_grows_sheet_stays_valid(self, orchestrator, make_artwork):
        oid = orchestrator.place_item(make_artwork()).object_ids[0]
        orchestrator.set_production_mode(True)
        orchestrator.move_object(oid, 100, 460)
        assert orchestrator.scene.height_px > 535
        assert oid not in orchestrator.production.invalid_ids
        assert orchestrator.production.can_export()

    def test_resize_and_rotate(self, orchestrator, make_artwork):
        oid = orchestrator.place_item(make_artwork()).object_ids[0]
        orchestrator.resize_object_cm(oid, 20, 10)
        assert orchestrator.object_bounds(oid)[2:] == pytest.approx((200, 100))
        orchestrator.rotate_object(oid, 450)
        assert orchestrator.scene.get(oid).angle == 90
        assert orchestrator.object_bounds(oid)[2:] == pytest.approx((100, 200))
        with pytest.raises(ValueError):
            orchestrator.resize_object_cm(oid, 0, 10)

    def test_scale_clamped_to_minimum(self, orchestrator, make_artwork):
        oid = orchestrator.place_item(make_artwork()).object_ids[0]
        orchestrator.scale_object(oid, 0.001)
        assert orchestrator.scene.get(oid).scale_x == 0.05

    def test_undo_redo(self, orchestrator, make_artwork):
        art = make_artwork()
        oid = orchestrator.place_item(art).object_ids[0]
        orchestrator.move_object(oid, 100, 100)
        assert orchestrator.undo()
        assert orchestrator.scene.get(oid).left == 5
        assert orchestrator.undo()
        assert len(orchestrator.scene) == 0
        assert orchestrator.cache.refcount(art.id) == 0
        assert orchestrator.undo() is False
        assert orchestrator.redo()
        assert orchestrator.scene.get(oid).original == art.original
        assert orchestrator.cache.refcount(art.id) == 1
        assert orchestrator.redo()
        assert orchestrator.scene.get(oid).left == 100
        assert orchestrator.redo() is False

    def test_remove_artwork_everywhere(self, orchestrator, store, make_artwork):
        art = make_artwork()
        other = make_artwork()
        store.save(art.id, b"blob")
        orchestrator.place_item(art)
        orchestrator.place_item(other)
        orchestrator.add_sheet()
        orchestrator.place_item(art)

        assert orchestrator.remove_artwork(art.id) == 2
        assert all(o.image_id != art.id for o in orchestrator.scene)
        assert [r["image_id"] for r in orchestrator.sheets[0].objects] == [other.id]
        assert art.id not in orchestrator.cache
        assert orchestrator.cache.refcount(art.id) == 0
        assert store.get(art.id) is None
        assert orchestrator.cache.refcount(other.id) == 1

    def test_remove_artwork_drops_stale_preview(self, orchestrator, make_artwork):
        art = make_artwork()
        orchestrator.place_item(art)
        orchestrator.add_sheet()
        assert orchestrator.sheets[0].preview is not None

        orchestrator.remove_artwork(art.id)
        assert orchestrator.sheets[0].preview is None

        listener = Mock()
        orchestrator.subscribe(listener)
        orchestrator.switch_to_sheet(0)
        assert "sheet:preview" not in events(listener)

    def test_remove_artwork_rerenders_preview_of_remaining_objects(self, orchestrator, make_artwork):
        art = make_artwork()
        other = make_artwork()
        orchestrator.place_item(art)
        orchestrator.place_item(other, left=300, top=200)
        orchestrator.add_sheet()
        before = orchestrator.sheets[0].preview

        orchestrator.remove_artwork(art.id)
        after = orchestrator.sheets[0].preview
        assert after is not None and after[:2] == b"\xff\xd8"
        assert after != before


class TestExport:
    def test_original_decoded_once_per_artwork(self, orchestrator, make_artwork):
        orchestrator.place_item(make_artwork(quantity=50))
        with patch.object(ImageResolver, "decode", wraps=ImageResolver.decode) as decode:
            blob = orchestrator.export_current(ExportPreset.PRODUCTION)
        assert decode.call_count == 1
        assert blob.skipped_objects == 0

    def test_export_current_at_high_res_reports_reduced_dpi(self, orchestrator, make_artwork):
        orchestrator.place_item(make_artwork())
        blob = orchestrator.export_current(ExportPreset.HIGH_RES)
        assert 0 < blob.dpi < 600
        assert blob.width * blob.height <= orchestrator.config.max_safe_area

    def test_production_mode_blocks_export(self, orchestrator, make_artwork):
        orchestrator.place_item(make_artwork(), top=100)
        orchestrator.set_production_mode(True)
        orchestrator.scene.height_px = 100
        with pytest.raises(ProductionValidationError):
            orchestrator.export_current()
        with pytest.raises(ProductionValidationError):
            orchestrator.export_all("order")

    def test_export_all(self, orchestrator, make_artwork, tmp_path):
        orchestrator.place_item(make_artwork())
        orchestrator.add_sheet()
        orchestrator.add_sheet()
        orchestrator.place_item(make_artwork())
        listener = Mock()
        orchestrator.subscribe(listener)
        sink = Mock()
        history = ExportHistory(tmp_path / "history.json")

        result = orchestrator.export_all("order", ExportPreset.PREVIEW, sink=sink, history=history)

        assert [r.status for r in result.items] == ["success", "skipped", "success"]
        assert [c.args[0] for c in sink.call_args_list] == ["order_Sheet_1.jpg", "order_Sheet_3.jpg"]
        progress = [c.args[1] for c in listener.call_args_list if c.args[0] == "export:progress"]
        assert [p["done"] for p in progress] == [1, 2, 3]
        entry = history.load()[0]
        assert entry["preset"] == "PREVIEW"
        assert entry["success_count"] == 2
        assert orchestrator.current_sheet.status == SheetStatus.ACTIVE

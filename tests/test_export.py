import io
import json
import logging
from unittest.mock import Mock, patch

import pytest
from PIL import Image

from gangsheet.core import ExportError, GangSheetConfig, SceneObject, Sheet
from gangsheet.canvas.resources import ImageResolver
from gangsheet.canvas.export import (
    BatchItemResult,
    BatchResult,
    ExportBlob,
    ExportHistory,
    ExportPipeline,
    ExportPreset,
    compute_safe_dimensions,
    generate_name,
)


class TestSafeDimensions:
    def test_no_reduction_under_ceilings(self):
        dims = compute_safe_dimensions(580, 500, 300, GangSheetConfig())
        assert (dims.width, dims.height) == (6851, 5906)
        assert dims.dpi == 300
        assert not dims.reduced
        assert dims.scale_factor == pytest.approx(300 / 2.54 / 10)

    def test_600_dpi_over_area_is_reduced(self, caplog):
        config = GangSheetConfig()
        with caplog.at_level(logging.WARNING):
            dims = compute_safe_dimensions(580, 500, 600, config)
        assert dims.reduced
        assert 0 < dims.dpi < 600
        assert dims.width * dims.height <= config.max_safe_area
        assert dims.width / dims.height == pytest.approx(13701 / 11812, rel=1e-3)
        assert "reduced" in caplog.text

    @pytest.mark.parametrize("w,h,dpi", [
        (580, 500, 72),
        (580, 2000, 300),
        (580, 2000, 600),
        (5000, 100, 300),
        (100, 5000, 1200),
    ])
    def test_ceilings_hold(self, config, w, h, dpi):
        dims = compute_safe_dimensions(w, h, dpi, config)
        assert dims.width * dims.height <= config.max_safe_area
        assert dims.width <= config.max_safe_dimension
        assert dims.height <= config.max_safe_dimension
        full_w = w * dpi / 2.54 / 10
        full_h = h * dpi / 2.54 / 10
        if dims.reduced:
            assert dims.width / full_w == pytest.approx(dims.height / full_h, rel=0.02)


def test_generate_name():
    assert generate_name("My Order #1", "Sheet 2", "png") == "My_Order__1_Sheet_2.png"


def test_presets():
    assert ExportPreset.PRODUCTION.descriptor.dpi == 300
    assert ExportPreset.PRODUCTION.descriptor.background is None
    assert ExportPreset.HIGH_RES.descriptor.dpi == 600
    preview = ExportPreset.PREVIEW.descriptor
    assert (preview.dpi, preview.extension, preview.background, preview.quality) == (72, "jpg", "#ffffff", 0.8)
    assert ExportPreset.from_name("high-res") is ExportPreset.HIGH_RES
    with pytest.raises(ValueError):
        ExportPreset.from_name("poster")


def record(make_png, **kw):
    rec = SceneObject(image_id="art_x", src=str(make_png("p.png")), left=10, top=10,
                      width=40, height=30, scale_x=2.5, scale_y=2.5).to_record()
    rec.update(kw)
    return rec


class TestSwapIn:
    def test_original_keeps_footprint(self, config, make_png, make_png_bytes):
        pipeline = ExportPipeline(config)
        rec = record(make_png, original=make_png_bytes((80, 60)))
        swapped, img = pipeline.swap_in(rec)
        assert img.size == (80, 60)
        assert (swapped["width"], swapped["height"]) == (80, 60)
        assert swapped["scale_x"] * swapped["width"] == pytest.approx(100)
        assert swapped["scale_y"] * swapped["height"] == pytest.approx(75)

    def test_resolves_from_cache_then_store(self, config, store, make_png, make_png_bytes):
        pipeline = ExportPipeline(config, store=store)
        store.save("art_x", make_png_bytes((20, 15)))
        _, img = pipeline.swap_in(record(make_png))
        assert img.size == (20, 15)
        pipeline.cache.store("art_x", make_png_bytes((160, 120)))
        _, img = pipeline.swap_in(record(make_png))
        assert img.size == (160, 120)

    def test_falls_back_to_preview(self, config, make_png):
        pipeline = ExportPipeline(config)
        rec = record(make_png)
        swapped, img = pipeline.swap_in(rec)
        assert swapped is rec
        assert img.size == (40, 30)

    def test_failing_store_falls_back_to_preview(self, config, make_png):
        store = Mock()
        store.get.side_effect = OSError("disk gone")
        pipeline = ExportPipeline(config, store=store)
        _, img = pipeline.swap_in(record(make_png))
        assert img.size == (40, 30)


class TestGenerateBlob:
    def test_sheet_record_png(self, config, make_png, make_png_bytes):
        pipeline = ExportPipeline(config)
        sheet = Sheet(name="Sheet 1", height_cm=50, objects=[record(make_png, original=make_png_bytes())])
        blob = pipeline.generate_blob(sheet, ExportPreset.PRODUCTION.descriptor)
        img = Image.open(io.BytesIO(blob.data))
        assert img.format == "PNG"
        assert img.size == (blob.width, blob.height)
        assert blob.width * blob.height <= config.max_safe_area
        assert blob.dpi < 300
        # Transparent background outside the artwork
        assert img.convert("RGBA").getpixel((img.width - 1, img.height - 1))[3] == 0

    def test_preview_preset_is_jpeg(self, config, make_png):
        pipeline = ExportPipeline(config)
        blob = pipeline.generate_blob([record(make_png)], ExportPreset.PREVIEW.descriptor)
        assert blob.data[:2] == b"\xff\xd8"
        assert blob.format == "jpg"
        assert 0 < blob.dpi <= 72

    def test_copies_share_one_decoded_original(self, config, make_png, make_png_bytes):
        pipeline = ExportPipeline(config)
        original = make_png_bytes((80, 60))
        records = [record(make_png, left=10 + 20 * i, original=original) for i in range(6)]
        records.append(record(make_png, image_id="art_y", original=make_png_bytes((20, 15))))
        with patch.object(ImageResolver, "decode", wraps=ImageResolver.decode) as decode:
            blob = pipeline.generate_blob(records, ExportPreset.PRODUCTION.descriptor)
        assert decode.call_count == 2
        assert blob.skipped_objects == 0

    def test_empty_scene_raises(self, config):
        with pytest.raises(ExportError):
            ExportPipeline(config).generate_blob(Sheet(name="Sheet 1"), ExportPreset.PRODUCTION.descriptor)

    def test_unresolvable_object_is_skipped(self, config, make_png, tmp_path):
        pipeline = ExportPipeline(config)
        good = record(make_png)
        bad = record(make_png, id="obj_bad", image_id="art_missing", src=str(tmp_path / "gone.png"))
        blob = pipeline.generate_blob([good, bad], ExportPreset.PRODUCTION.descriptor)
        assert blob.skipped_objects == 1


class TestBatch:
    def test_success_error_skipped(self, config, make_png):
        pipeline = ExportPipeline(config)
        sheets = [
            Sheet(name="Sheet 1", objects=[record(make_png)]),
            Sheet(name="Sheet 2", objects=[]),
            Sheet(name="Sheet 3", objects=[record(make_png)]),
        ]
        blob = ExportBlob(data=b"img", dpi=300, width=1, height=1, format="png")
        sink = Mock()
        progress = Mock()
        with patch.object(pipeline, "generate_blob", side_effect=[blob, ExportError("boom")]):
            result = pipeline.export_batch(sheets, "order", ExportPreset.PRODUCTION.descriptor, sink=sink, progress=progress)

        assert [r.status for r in result.items] == ["success", "skipped", "error"]
        assert result.items[1].error == "Empty"
        assert result.items[2].error == "boom"
        assert (result.success_count, result.skipped_count, result.error_count) == (1, 1, 1)
        sink.assert_called_once_with("order_Sheet_1.png", blob)
        assert [c.args for c in progress.call_args_list] == [(1, 3, "Sheet 1"), (2, 3, "Sheet 2"), (3, 3, "Sheet 3")]

    def test_sink_failure_is_recorded(self, config, make_png):
        pipeline = ExportPipeline(config)
        sheets = [Sheet(name="Sheet 1", objects=[record(make_png)]), Sheet(name="Sheet 2", objects=[record(make_png)])]
        sink = Mock(side_effect=[OSError("disk full"), None])
        result = pipeline.export_batch(sheets, "o", ExportPreset.PREVIEW.descriptor, sink=sink)
        assert [r.status for r in result.items] == ["error", "success"]


def test_export_history_newest_first_and_capped(tmp_path):
    history = ExportHistory(tmp_path / "history.json", limit=3)
    for i in range(5):
        result = BatchResult(items=[BatchItemResult(sheet_name="Sheet 1", status="success")])
        history.record(f"run{i}", result, "PRODUCTION")
    entries = history.load()
    assert [e["base_name"] for e in entries] == ["run4", "run3", "run2"]
    assert entries[0]["success_count"] == 1
    assert entries[0]["total_sheets"] == 1
    assert json.loads((tmp_path / "history.json").read_text())[0]["preset"] == "PRODUCTION"


def test_export_history_unreadable_file(tmp_path):
    path = tmp_path / "history.json"
    path.write_text("{broken")
    assert ExportHistory(path).load() == []

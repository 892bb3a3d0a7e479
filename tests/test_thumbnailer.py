import json
import os
from pathlib import Path

import cv2
import numpy as np
import pytest
from PIL import Image

import thumbcrop.thumbnailer as thumbnailer
from thumbcrop.saliency import Region
from thumbcrop.thumbnailer import CropSettings, DecodeError, EncodeError


def _write_noisy_scene(path: Path, width: int = 1200, height: int = 800) -> tuple[int, int, int, int]:
    """Solid red square centered on a low-amplitude noisy grey background. Returns the square's xywh."""
    rng = np.random.default_rng(42)
    img = rng.integers(110, 131, size=(height, width, 3), dtype=np.uint8)
    side = 300
    x0 = (width - side) // 2
    y0 = (height - side) // 2
    img[y0 : y0 + side, x0 : x0 + side] = (0, 0, 230)  # BGR red
    cv2.imwrite(str(path), img)
    return x0, y0, side, side


def _write_striped_scene(path: Path) -> tuple[int, int, int, int]:
    """High-frequency striped object right of center on a flat background."""
    img = np.full((800, 1200, 3), 128, dtype=np.uint8)
    x0, y0, side = 750, 250, 300
    for col in range(x0, x0 + side, 20):
        img[y0 : y0 + side, col : col + 10] = 255
        img[y0 : y0 + side, col + 10 : col + 20] = 0
    cv2.imwrite(str(path), img)
    return x0, y0, side, side


def _write_flat(path: Path, width: int, height: int, value: int = 120) -> None:
    cv2.imwrite(str(path), np.full((height, width, 3), value, dtype=np.uint8))


# ---------------------------------------------------------------------------
# Decode / analysis raster
# ---------------------------------------------------------------------------


def test_load_source_image_returns_rgb_array(tmp_path) -> None:
    src = tmp_path / "rgba.png"
    Image.new("RGBA", (64, 32), (10, 200, 30, 128)).save(src)

    pixels = thumbnailer.load_source_image(src)

    assert pixels.shape == (32, 64, 3)
    assert pixels.dtype == np.uint8


def test_load_source_image_raises_decode_error_for_garbage(tmp_path) -> None:
    src = tmp_path / "broken.jpg"
    src.write_bytes(b"definitely not an image")

    with pytest.raises(DecodeError, match="Cannot read"):
        thumbnailer.load_source_image(src)


def test_load_source_image_raises_decode_error_for_missing_file(tmp_path) -> None:
    with pytest.raises(DecodeError):
        thumbnailer.load_source_image(tmp_path / "missing.png")
    # Callers that only know about ValueError still catch it.
    with pytest.raises(ValueError):
        thumbnailer.load_source_image(tmp_path / "missing.png")


def _write_16bit_gradient(path: Path, width: int = 600, height: int = 400) -> None:
    row = np.linspace(0, 65535, width).astype(np.uint16)
    cv2.imwrite(str(path), np.tile(row, (height, 1)))


def test_load_source_image_scales_16bit_grey_to_8bit(tmp_path) -> None:
    src = tmp_path / "gradient16.png"
    _write_16bit_gradient(src)
    with Image.open(src) as img:
        assert img.mode in ("I", "I;16")

    pixels = thumbnailer.load_source_image(src)

    assert pixels.shape == (400, 600, 3)
    assert pixels[:, 0].max() <= 1
    assert pixels[:, -1].min() == 255
    assert 120 <= pixels[0, 300, 0] <= 135


def test_process_image_keeps_contrast_of_16bit_source(tmp_path) -> None:
    src = tmp_path / "gradient16.png"
    out = tmp_path / "thumb.jpg"
    _write_16bit_gradient(src)

    result = thumbnailer.process_image(src, out)

    assert int(result.image.max()) - int(result.image.min()) > 80
    with Image.open(out) as img:
        grey = np.asarray(img.convert("L"))
    assert int(grey.max()) - int(grey.min()) > 80


def test_build_analysis_raster_bounds_size_and_keeps_aspect() -> None:
    pixels = np.zeros((800, 1200, 3), dtype=np.uint8)
    raster = thumbnailer.build_analysis_raster(pixels)
    assert (raster.width, raster.height) == (400, 267)
    assert raster.scale == pytest.approx(1 / 3)
    assert (raster.source_width, raster.source_height) == (1200, 800)

    small = np.zeros((100, 300, 3), dtype=np.uint8)
    raster = thumbnailer.build_analysis_raster(small)
    assert (raster.width, raster.height) == (400, 133)


def test_build_analysis_raster_stretches_contrast() -> None:
    pixels = np.full((100, 200, 3), 100, dtype=np.uint8)
    pixels[:, 100:] = 150

    raster = thumbnailer.build_analysis_raster(pixels)

    assert raster.pixels.ndim == 2
    assert raster.pixels.min() == 0
    assert raster.pixels.max() == 255


def test_build_analysis_raster_flat_image_is_left_unchanged() -> None:
    pixels = np.full((300, 600, 3), 77, dtype=np.uint8)
    raster = thumbnailer.build_analysis_raster(pixels)
    assert np.all(raster.pixels == 77)


# ---------------------------------------------------------------------------
# Crop / encode helpers
# ---------------------------------------------------------------------------


def test_map_region_to_source_scales_all_fields_consistently() -> None:
    region = Region(x=10, y=20, width=100, height=100, score=61.5)

    mapped = thumbnailer.map_region_to_source(region, scale=0.5, src_w=800, src_h=600)

    assert mapped == Region(x=20, y=40, width=200, height=200, score=61.5)


def test_map_region_to_source_clamps_to_source_bounds() -> None:
    region = Region(x=300, y=180, width=100, height=100)

    mapped = thumbnailer.map_region_to_source(region, scale=0.4, src_w=1000, src_h=500)

    assert mapped.width == mapped.height == 250
    assert mapped.x + mapped.width <= 1000
    assert mapped.y + mapped.height <= 500
    assert mapped.y == 250


def test_cover_resize_fills_square_without_padding() -> None:
    pixels = np.zeros((100, 300, 3), dtype=np.uint8)
    pixels[..., 0] = 255

    out = thumbnailer.cover_resize(pixels, 500)

    assert out.shape == (500, 500, 3)
    assert out[..., 0].min() >= 250
    assert out[..., 1].max() <= 5


def test_encode_jpeg_wraps_encoder_failures(monkeypatch) -> None:
    def broken_save(self, *_args, **_kwargs):
        raise OSError("encoder exploded")

    monkeypatch.setattr(thumbnailer.Image.Image, "save", broken_save)

    with pytest.raises(EncodeError, match="encoder exploded"):
        thumbnailer.encode_jpeg(np.zeros((8, 8, 3), dtype=np.uint8))


def test_write_atomically_replaces_target_and_keeps_mode(tmp_path) -> None:
    target = tmp_path / "photo.jpg"
    target.write_bytes(b"old")
    target.chmod(0o644)

    thumbnailer.write_atomically(b"new", target)

    assert target.read_bytes() == b"new"
    assert target.stat().st_mode & 0o777 == 0o644
    assert sorted(p.name for p in tmp_path.iterdir()) == ["photo.jpg"]


def _umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def test_write_atomically_new_file_gets_umask_default_mode(tmp_path) -> None:
    target = tmp_path / "fresh.jpg"

    thumbnailer.write_atomically(b"new", target)

    assert target.read_bytes() == b"new"
    assert target.stat().st_mode & 0o777 == 0o666 & ~_umask()
    assert sorted(p.name for p in tmp_path.iterdir()) == ["fresh.jpg"]


def test_process_image_new_output_is_not_owner_only(tmp_path) -> None:
    src = tmp_path / "scene.png"
    out = tmp_path / "thumbs" / "scene.jpg"
    out.parent.mkdir()
    _write_noisy_scene(src, width=600, height=400)

    thumbnailer.process_image(src, out)

    assert out.stat().st_mode & 0o777 == 0o666 & ~_umask()


# ---------------------------------------------------------------------------
# Full pipeline
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "width,height",
    [(1200, 800), (800, 1200), (1000, 333), (40, 30), (500, 500), (2000, 2000)],
)
def test_process_image_always_outputs_target_square(tmp_path, width, height) -> None:
    src = tmp_path / "source.jpg"
    rng = np.random.default_rng(width * height)
    cv2.imwrite(str(src), rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8))

    result = thumbnailer.process_image_in_place(src)

    assert result.image.shape == (500, 500, 3)
    with Image.open(src) as img:
        assert img.size == (500, 500)
        assert img.format == "JPEG"


def test_process_image_honours_custom_target_size(tmp_path) -> None:
    src = tmp_path / "source.png"
    out = tmp_path / "thumb.jpg"
    _write_noisy_scene(src, width=900, height=600)

    thumbnailer.process_image(src, out, settings=CropSettings(target_size=128, jpeg_quality=80))

    with Image.open(out) as img:
        assert img.size == (128, 128)
    with Image.open(src) as img:
        assert img.size == (900, 600)


def test_process_image_square_source_skips_region_search(tmp_path, monkeypatch) -> None:
    src = tmp_path / "square.png"
    _write_flat(src, 640, 640)

    def fail(*_args, **_kwargs):
        raise AssertionError("square sources must not be searched")

    monkeypatch.setattr(thumbnailer, "_find_crop_box", fail)

    result = thumbnailer.process_image_in_place(src)

    assert result.cropped is False
    assert result.crop_box is None
    assert result.source_size == (640, 640)
    assert result.image.shape == (500, 500, 3)


def test_process_image_is_deterministic(tmp_path) -> None:
    first = tmp_path / "first.jpg"
    second = tmp_path / "second.jpg"
    _write_noisy_scene(first)
    second.write_bytes(first.read_bytes())

    thumbnailer.process_image_in_place(first)
    thumbnailer.process_image_in_place(second)

    assert first.read_bytes() == second.read_bytes()


def test_centered_object_crop_center_lies_inside_object(tmp_path) -> None:
    src = tmp_path / "scene.png"
    ox, oy, ow, oh = _write_noisy_scene(src)

    result = thumbnailer.process_image_in_place(src)

    assert result.cropped is True
    box = result.crop_box
    assert box.width == box.height
    assert 0 <= box.x and box.x + box.width <= 1200
    assert 0 <= box.y and box.y + box.height <= 800
    cx, cy = box.center
    assert ox <= cx <= ox + ow
    assert oy <= cy <= oy + oh


def test_off_center_textured_object_is_found_by_saliency(tmp_path) -> None:
    src = tmp_path / "striped.png"
    ox, oy, ow, oh = _write_striped_scene(src)

    box = thumbnailer.detect_subject_region(src)

    assert box.score >= 50
    cx, cy = box.center
    assert ox <= cx <= ox + ow
    assert oy <= cy <= oy + oh
    # A plain center crop would be centered on the image instead.
    assert cx > 700


def test_process_image_reports_confident_crop(tmp_path) -> None:
    src = tmp_path / "striped.png"
    _write_striped_scene(src)

    result = thumbnailer.process_image_in_place(src)

    assert result.cropped is True
    assert result.confident is True


def test_encode_failure_leaves_original_untouched(tmp_path, monkeypatch) -> None:
    src = tmp_path / "upload.jpg"
    _write_noisy_scene(src)
    original = src.read_bytes()

    def broken_encode(*_args, **_kwargs):
        raise EncodeError("simulated encoder failure")

    monkeypatch.setattr(thumbnailer, "encode_jpeg", broken_encode)

    with pytest.raises(EncodeError):
        thumbnailer.process_image_in_place(src)

    assert src.read_bytes() == original
    assert sorted(p.name for p in tmp_path.iterdir()) == ["upload.jpg"]


def test_rename_failure_leaves_original_untouched_and_cleans_temp(tmp_path, monkeypatch) -> None:
    src = tmp_path / "upload.jpg"
    _write_noisy_scene(src)
    original = src.read_bytes()

    def broken_replace(*_args, **_kwargs):
        raise OSError("simulated rename failure")

    monkeypatch.setattr(thumbnailer.os, "replace", broken_replace)

    with pytest.raises(OSError, match="simulated rename failure"):
        thumbnailer.process_image_in_place(src)

    assert src.read_bytes() == original
    assert sorted(p.name for p in tmp_path.iterdir()) == ["upload.jpg"]


def test_process_image_writes_debug_artifacts(tmp_path) -> None:
    src = tmp_path / "scene.png"
    out = tmp_path / "thumb.jpg"
    _write_striped_scene(src)

    result = thumbnailer.process_image(src, out, save_debug=True)

    overlay = tmp_path / "debug_thumbcrop_thumb.jpg"
    meta_path = tmp_path / "debug_thumbcrop_thumb.json"
    assert overlay.exists()
    payload = json.loads(meta_path.read_text(encoding="utf-8"))
    assert payload["image_size"] == {"width": 1200, "height": 800}
    assert payload["analysis_size"] == {"width": 400, "height": 267}
    assert payload["crop_window_xywh"] == result.crop_box.as_xywh()
    assert payload["center_fallback"] is False
    assert payload["target_size"] == {"width": 500, "height": 500}


# ---------------------------------------------------------------------------
# Upload wrapper
# ---------------------------------------------------------------------------


def test_process_upload_keeps_original_on_failure(tmp_path, capsys) -> None:
    src = tmp_path / "upload.png"
    src.write_bytes(b"\x89PNG\r\n\x1a\n truncated")
    original = src.read_bytes()

    assert thumbnailer.process_upload(src, settings=CropSettings()) is False

    assert src.read_bytes() == original
    assert "using original image" in capsys.readouterr().out


def test_process_upload_replaces_file_on_success(tmp_path) -> None:
    src = tmp_path / "upload.jpg"
    _write_noisy_scene(src, width=640, height=480)

    assert thumbnailer.process_upload(src, settings=CropSettings()) is True

    with Image.open(src) as img:
        assert img.size == (500, 500)

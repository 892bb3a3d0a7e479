#!/usr/bin/env python3
"""
Product Thumbnail Pipeline
=================================================

Turns an uploaded product photo into a square grid thumbnail, in place.

Pipeline:
  1. Decode the source (EXIF orientation applied) and read its size
  2. Downscale to max 400px, greyscale, stretch contrast (analysis raster)
  3. Sobel edge map over the analysis raster
  4. Sliding-window saliency search for the subject (fallback: center square)
  5. Map the box back, crop, cover-resize to 500x500, JPEG encode, atomic replace

Usage:
  thumbcrop ./uploads/product-123.jpg
  thumbcrop ./uploads --workers 4
  python -m thumbcrop ./photos --output ./thumbs --size 600 --save-debug

Requirements:
  pip install Pillow opencv-python-headless numpy tqdm
"""

import argparse
import io
import json
import math
import os
import shutil
import sys
import tempfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import cv2
import numpy as np
from PIL import Image, ImageOps
from tqdm.auto import tqdm

from thumbcrop.saliency import Region, build_edge_map, is_confident, select_subject_region

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ANALYSIS_SIZE = 400  # longest edge of the analysis raster
TARGET_SIZE = 500  # square output side
JPEG_QUALITY = 92
DEFAULT_WORKERS = 4
NORMALIZE_LOW_PERCENTILE = 1.0
NORMALIZE_HIGH_PERCENTILE = 99.0
SUPPORTED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}
DEBUG_PREFIX = "debug_thumbcrop_"
TARGET_SIZE_ENV_VAR = "THUMBCROP_TARGET_SIZE"
JPEG_QUALITY_ENV_VAR = "THUMBCROP_JPEG_QUALITY"
ANALYSIS_SIZE_ENV_VAR = "THUMBCROP_ANALYSIS_SIZE"
WORKERS_ENV_VAR = "THUMBCROP_WORKERS"

PathLike = Union[str, os.PathLike]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ThumbcropError(Exception):
    """Base class for thumbnail pipeline failures."""


class DecodeError(ThumbcropError, ValueError):
    """The source image could not be read or decoded."""


class EncodeError(ThumbcropError, RuntimeError):
    """The processed image could not be encoded."""


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------


def _read_env_file(env_path: Path) -> dict[str, str]:
    """Parse KEY=VALUE lines from a .env file; comments, `export` and quotes allowed."""
    if not env_path.is_file():
        return {}
    try:
        lines = env_path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return {}

    values: dict[str, str] = {}
    for line in (raw.strip() for raw in lines):
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key or key.startswith("#"):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        values[key] = value
    return values


def _resolve_env_int(var_name: str, default: int) -> int:
    """Integer setting from the process environment, else ./.env, else default."""
    raw = (os.environ.get(var_name) or "").strip()
    if not raw:
        raw = _read_env_file(Path.cwd() / ".env").get(var_name, "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


@dataclass(frozen=True)
class CropSettings:
    target_size: int = TARGET_SIZE
    jpeg_quality: int = JPEG_QUALITY
    analysis_size: int = ANALYSIS_SIZE
    workers: int = DEFAULT_WORKERS


def resolve_settings(
    target_size: Optional[int] = None,
    jpeg_quality: Optional[int] = None,
    analysis_size: Optional[int] = None,
    workers: Optional[int] = None,
) -> CropSettings:
    """Resolve settings from explicit overrides, then env/.env, then defaults.

    Values are clamped to sane ranges; unparseable env values use the default.
    """
    if target_size is None:
        target_size = _resolve_env_int(TARGET_SIZE_ENV_VAR, TARGET_SIZE)
    if jpeg_quality is None:
        jpeg_quality = _resolve_env_int(JPEG_QUALITY_ENV_VAR, JPEG_QUALITY)
    if analysis_size is None:
        analysis_size = _resolve_env_int(ANALYSIS_SIZE_ENV_VAR, ANALYSIS_SIZE)
    if workers is None:
        workers = _resolve_env_int(WORKERS_ENV_VAR, DEFAULT_WORKERS)

    return CropSettings(
        target_size=min(4096, max(64, target_size)),
        jpeg_quality=min(100, max(30, jpeg_quality)),
        analysis_size=min(2000, max(100, analysis_size)),
        workers=min(32, max(1, workers)),
    )


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class AnalysisRaster:
    pixels: np.ndarray  # greyscale uint8, H x W
    scale: float  # analysis px per source px
    source_width: int
    source_height: int

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


@dataclass
class ProcessingResult:
    image: np.ndarray  # RGB uint8, target_size x target_size
    source_path: Path
    output_path: Path
    cropped: bool
    crop_box: Optional[Region] = None
    source_size: tuple[int, int] = (0, 0)
    confident: bool = False


@dataclass
class BatchItem:
    source_path: Path
    output_path: Path
    result: Optional[ProcessingResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Stage 1: Decode
# ---------------------------------------------------------------------------


def _to_8bit(img: Image.Image) -> Image.Image:
    """Scale 16-bit integer modes (I;16*, I) down to 8-bit greyscale."""
    data = np.asarray(img).astype(np.float64) / 256.0
    return Image.fromarray(np.clip(data, 0, 255).astype(np.uint8))


def load_source_image(image_path: PathLike) -> np.ndarray:
    """Decode an image file into an RGB uint8 array (EXIF orientation applied)."""
    try:
        with Image.open(image_path) as img:
            img = ImageOps.exif_transpose(img)
            # Pillow's convert() clips high-bit-depth grey at 255 instead of scaling it.
            if img.mode == "I" or img.mode.startswith("I;16"):
                img = _to_8bit(img)
            if img.mode != "RGB":
                img = img.convert("RGB")
            pixels = np.array(img, dtype=np.uint8)
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise DecodeError(f"Cannot read {image_path}: {e}") from e

    if pixels.ndim != 3 or pixels.shape[0] == 0 or pixels.shape[1] == 0:
        raise DecodeError(f"Cannot read {image_path}: empty image")
    return pixels


# ---------------------------------------------------------------------------
# Stage 2: Analysis raster
# ---------------------------------------------------------------------------


def _normalize_contrast(gray: np.ndarray) -> np.ndarray:
    """Linearly stretch the 1st..99th luminance percentiles to the full 0..255 range."""
    lo, hi = np.percentile(gray, (NORMALIZE_LOW_PERCENTILE, NORMALIZE_HIGH_PERCENTILE))
    if hi <= lo:
        return gray.copy()
    stretched = (gray.astype(np.float64) - lo) * (255.0 / (hi - lo))
    return np.clip(np.rint(stretched), 0, 255).astype(np.uint8)


def build_analysis_raster(pixels: np.ndarray, analysis_size: int = ANALYSIS_SIZE) -> AnalysisRaster:
    """Downscale an RGB source to fit analysis_size, then greyscale and normalize."""
    h, w = pixels.shape[:2]
    scale = min(analysis_size / w, analysis_size / h)
    analysis_w = max(1, _round_half_up(w * scale))
    analysis_h = max(1, _round_half_up(h * scale))

    if (analysis_w, analysis_h) == (w, h):
        resized = pixels
    else:
        interp = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR
        resized = cv2.resize(pixels, (analysis_w, analysis_h), interpolation=interp)

    gray = cv2.cvtColor(resized, cv2.COLOR_RGB2GRAY)
    return AnalysisRaster(
        pixels=_normalize_contrast(gray),
        scale=scale,
        source_width=w,
        source_height=h,
    )


# ---------------------------------------------------------------------------
# Stage 5: Crop / encode
# ---------------------------------------------------------------------------


def map_region_to_source(region: Region, scale: float, src_w: int, src_h: int) -> Region:
    """Scale an analysis-space square back to source pixels, clamped and kept square."""
    side = _round_half_up(region.width / scale)
    side = max(1, min(side, src_w, src_h))
    x = min(max(0, _round_half_up(region.x / scale)), src_w - side)
    y = min(max(0, _round_half_up(region.y / scale)), src_h - side)
    return Region(x=x, y=y, width=side, height=side, score=region.score)


def cover_resize(pixels: np.ndarray, size: int) -> np.ndarray:
    """Scale to fill a size x size square, center-cropping any overflow. Never pads."""
    h, w = pixels.shape[:2]
    scale = max(size / w, size / h)
    fill_w = max(size, _round_half_up(w * scale))
    fill_h = max(size, _round_half_up(h * scale))

    interp = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LANCZOS4
    resized = cv2.resize(pixels, (fill_w, fill_h), interpolation=interp)

    x0 = (fill_w - size) // 2
    y0 = (fill_h - size) // 2
    return np.ascontiguousarray(resized[y0 : y0 + size, x0 : x0 + size])


def encode_jpeg(pixels: np.ndarray, quality: int = JPEG_QUALITY) -> bytes:
    buffer = io.BytesIO()
    try:
        Image.fromarray(pixels).save(buffer, "JPEG", quality=quality)
    except (OSError, ValueError, TypeError) as e:
        raise EncodeError(f"JPEG encoding failed: {e}") from e
    return buffer.getvalue()


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


# mkstemp creates 0600 files; new outputs get the mode open() would give them.
NEW_FILE_MODE = 0o666 & ~_current_umask()


def write_atomically(data: bytes, target: Path) -> None:
    """Write data next to target and rename over it; target is untouched on failure."""
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        if target.exists():
            shutil.copymode(target, tmp_path)
        else:
            os.chmod(tmp_path, NEW_FILE_MODE)
        os.replace(tmp_path, target)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def _find_crop_box(
    pixels: np.ndarray, analysis_size: int, debug: bool = False
) -> tuple[Region, Region, AnalysisRaster]:
    """Run stages 2-4; returns (source-space box, analysis-space region, raster)."""
    raster = build_analysis_raster(pixels, analysis_size)
    edges = build_edge_map(raster.pixels)
    region = select_subject_region(edges, debug=debug)
    box = map_region_to_source(region, raster.scale, raster.source_width, raster.source_height)
    return box, region, raster


def detect_subject_region(
    image_path: PathLike, analysis_size: int = ANALYSIS_SIZE, debug: bool = False
) -> Region:
    """Locate the subject of an image and return a square box in source pixels."""
    pixels = load_source_image(image_path)
    box, _region, _raster = _find_crop_box(pixels, analysis_size, debug=debug)
    return box


def _write_debug_artifacts(
    source: np.ndarray,
    output_path: Path,
    source_path: Path,
    crop_box: Optional[Region],
    region: Optional[Region],
    raster: Optional[AnalysisRaster],
    target_size: int,
) -> tuple[Path, Path]:
    overlay = cv2.cvtColor(source, cv2.COLOR_RGB2BGR)
    if crop_box is not None:
        thickness = max(2, min(overlay.shape[:2]) // 200)
        cv2.rectangle(
            overlay,
            (crop_box.x, crop_box.y),
            (crop_box.x + crop_box.width, crop_box.y + crop_box.height),
            (0, 255, 0) if is_confident(crop_box) else (0, 140, 255),
            thickness,
        )
        cx, cy = crop_box.center
        cv2.circle(overlay, (int(cx), int(cy)), thickness * 3, (0, 0, 255), -1)

    overlay_path = output_path.parent / f"{DEBUG_PREFIX}{output_path.stem}.jpg"
    cv2.imwrite(str(overlay_path), overlay, [cv2.IMWRITE_JPEG_QUALITY, 85])

    h, w = source.shape[:2]
    meta = {
        "image_path": str(source_path),
        "output_path": str(output_path),
        "image_size": {"width": w, "height": h},
        "analysis_size": (
            {"width": raster.width, "height": raster.height} if raster is not None else None
        ),
        "scale": round(raster.scale, 6) if raster is not None else None,
        "analysis_region_xywh": region.as_xywh() if region is not None else None,
        "score": round(region.score, 4) if region is not None else None,
        "center_fallback": bool(region is not None and not is_confident(region)),
        "crop_window_xywh": crop_box.as_xywh() if crop_box is not None else None,
        "target_size": {"width": target_size, "height": target_size},
    }
    meta_path = output_path.parent / f"{DEBUG_PREFIX}{output_path.stem}.json"
    meta_path.write_text(json.dumps(meta, indent=2), encoding="utf-8")
    return overlay_path, meta_path


def process_image(
    input_path: PathLike,
    output_path: PathLike,
    settings: Optional[CropSettings] = None,
    debug: bool = False,
    save_debug: bool = False,
) -> ProcessingResult:
    """Crop the subject of input_path to a square JPEG thumbnail at output_path.

    Non-square sources go through the saliency search; square sources are
    resized directly. The output is written atomically, so on any error
    output_path keeps whatever it held before (the source, for in-place runs).

    Raises DecodeError, EncodeError, or OSError for filesystem failures.
    """
    settings = settings or CropSettings()
    input_path = Path(input_path)
    output_path = Path(output_path)

    pixels = load_source_image(input_path)
    h, w = pixels.shape[:2]
    if debug:
        print(f"📸 Processing image: {input_path.name} {w}x{h}")

    crop_box: Optional[Region] = None
    region: Optional[Region] = None
    raster: Optional[AnalysisRaster] = None
    if w != h:
        crop_box, region, raster = _find_crop_box(pixels, settings.analysis_size, debug=debug)
        subject = pixels[
            crop_box.y : crop_box.y + crop_box.height,
            crop_box.x : crop_box.x + crop_box.width,
        ]
        if debug:
            method = "saliency" if is_confident(crop_box) else "center_fallback"
            print(
                f"✂️  Cropping to square ({method}, score={crop_box.score:.2f}): "
                f"x={crop_box.x}, y={crop_box.y}, w={crop_box.width}, h={crop_box.height}"
            )
    else:
        subject = pixels

    final = cover_resize(subject, settings.target_size)
    data = encode_jpeg(final, settings.jpeg_quality)
    write_atomically(data, output_path)

    if save_debug:
        overlay_path, meta_path = _write_debug_artifacts(
            pixels, output_path, input_path, crop_box, region, raster, settings.target_size
        )
        if debug:
            print(f"Debug overlay saved to {overlay_path}")
            print(f"Debug metadata saved to {meta_path}")

    if debug:
        print(
            f"✅ Processed image: {input_path.name} -> {output_path.name} "
            f"({settings.target_size}x{settings.target_size})"
        )

    return ProcessingResult(
        image=final,
        source_path=input_path,
        output_path=output_path,
        cropped=crop_box is not None,
        crop_box=crop_box,
        source_size=(w, h),
        confident=crop_box is not None and is_confident(crop_box),
    )


def process_image_in_place(
    image_path: PathLike,
    settings: Optional[CropSettings] = None,
    debug: bool = False,
    save_debug: bool = False,
) -> ProcessingResult:
    """Replace image_path with its square thumbnail."""
    return process_image(image_path, image_path, settings=settings, debug=debug, save_debug=save_debug)


def process_upload(
    image_path: PathLike, settings: Optional[CropSettings] = None, debug: bool = False
) -> bool:
    """Fail-soft entry point for upload handlers.

    Processes a freshly written upload in place. On any pipeline or
    filesystem error the original file is left as-is so it can still be
    served, and False is returned instead of raising.
    """
    image_path = Path(image_path)
    if settings is None:
        settings = resolve_settings()
    try:
        process_image_in_place(image_path, settings=settings, debug=debug)
    except (ThumbcropError, OSError) as e:
        print(f"⚠️ Image processing failed, using original image {image_path.name}: {e}")
        return False
    print(f"✅ Image processing completed: {image_path.name}")
    return True


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


def collect_images(inputs: list[PathLike]) -> list[Path]:
    """Expand files and folders into a de-duplicated, ordered list of image paths."""
    images: list[Path] = []
    seen: set[Path] = set()

    for raw in inputs:
        path = Path(raw)
        if path.is_dir():
            found = [
                p
                for p in sorted(path.iterdir())
                if p.is_file()
                and p.suffix.lower() in SUPPORTED_EXTENSIONS
                and not p.name.startswith(DEBUG_PREFIX)
            ]
        elif path.is_file():
            found = [path]
        else:
            print(f"  ⚠ Skipping {path}: not found")
            continue

        for p in found:
            resolved = p.resolve()
            if resolved in seen:
                continue
            seen.add(resolved)
            images.append(p)

    return images


def _plan_outputs(images: list[Path], output_folder: Optional[Path]) -> list[Path]:
    """Pick an output path per image; outputs never collide within one batch."""
    if output_folder is None:
        return list(images)

    outputs: list[Path] = []
    taken: set[str] = set()
    for img_path in images:
        name = f"{img_path.stem}.jpg"
        if name in taken:
            name = f"{img_path.stem}_{img_path.suffix.lstrip('.').lower()}.jpg"
        counter = 2
        base = name[: -len(".jpg")]
        while name in taken:
            name = f"{base}_{counter}.jpg"
            counter += 1
        taken.add(name)
        outputs.append(output_folder / name)
    return outputs


def process_batch(
    images: list[Path],
    output_folder: Optional[Path] = None,
    settings: Optional[CropSettings] = None,
    debug: bool = False,
    save_debug: bool = False,
) -> list[BatchItem]:
    """Process images on a thread pool; returns one BatchItem per input, in input order.

    Without output_folder each image is replaced in place. Failures are
    recorded on the item and never stop the rest of the batch.
    """
    settings = settings or CropSettings()
    if output_folder is not None:
        output_folder.mkdir(parents=True, exist_ok=True)

    items = [
        BatchItem(source_path=src, output_path=dest)
        for src, dest in zip(images, _plan_outputs(images, output_folder))
    ]
    if not items:
        return items

    progress_bar = tqdm(total=len(items), desc="  Cropping", unit="img", disable=debug)

    def run_one(item: BatchItem) -> ProcessingResult:
        return process_image(
            item.source_path,
            item.output_path,
            settings=settings,
            debug=debug,
            save_debug=save_debug,
        )

    try:
        with ThreadPoolExecutor(max_workers=settings.workers) as executor:
            futures = {executor.submit(run_one, item): item for item in items}
            for future in as_completed(futures):
                item = futures[future]
                try:
                    item.result = future.result()
                except (ThumbcropError, OSError) as e:
                    item.error = str(e)
                    tqdm.write(f"  ⚠ Could not process {item.source_path.name}: {e}")
                progress_bar.update(1)
    finally:
        progress_bar.close()

    return items


def run_batch(
    inputs: list[PathLike],
    output_folder: Optional[PathLike] = None,
    settings: Optional[CropSettings] = None,
    debug: bool = False,
    save_debug: bool = False,
) -> list[BatchItem]:
    settings = settings or resolve_settings()
    out = Path(output_folder) if output_folder is not None else None

    print("=" * 60)
    print("🖼️  Product Thumbnail Pipeline")
    print(f"   Inputs:  {', '.join(str(p) for p in inputs)}")
    print(f"   Output:  {out if out is not None else 'in place'}")
    print(f"   Size:    {settings.target_size}x{settings.target_size} (JPEG q={settings.jpeg_quality})")
    print(f"   Workers: {settings.workers}")
    print("=" * 60)

    images = collect_images(inputs)
    print(f"📁 Found {len(images)} images")
    if not images:
        print("❌ No valid images found.")
        return []

    items = process_batch(images, out, settings=settings, debug=debug, save_debug=save_debug)

    succeeded = [item for item in items if item.ok]
    fallback = [item for item in succeeded if item.result.cropped and not item.result.confident]
    print(f"\n{'=' * 60}")
    print(f"🏁 Done! {len(succeeded)}/{len(items)} images processed")
    if fallback:
        print(f"   ↪ {len(fallback)} used the center-crop fallback")
    failed = len(items) - len(succeeded)
    if failed:
        print(f"   ⚠ {failed} failed; originals left untouched")
    print(f"{'=' * 60}")
    return items


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class _HelpOnErrorArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that prints full help text on parse errors."""

    def error(self, message):
        self.exit(2, f"{self.format_help()}\n{self.prog}: error: {message}\n")


def main(argv: Optional[list[str]] = None) -> int:
    parser = _HelpOnErrorArgumentParser(
        prog="thumbcrop",
        description="Detect the subject of product photos and crop them to square thumbnails.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Environment:
  {TARGET_SIZE_ENV_VAR}, {JPEG_QUALITY_ENV_VAR}, {ANALYSIS_SIZE_ENV_VAR}, {WORKERS_ENV_VAR}
  (also read from ./.env)

Examples:
  %(prog)s ./uploads/product-123.jpg
  %(prog)s ./uploads --workers 8
  %(prog)s ./photos --output ./thumbs --size 600 --save-debug
        """,
    )
    parser.add_argument("inputs", nargs="+", help="Image files or folders to process")
    parser.add_argument(
        "--output", "-o", default=None, help="Output folder (default: overwrite inputs in place)"
    )
    parser.add_argument(
        "--size", type=int, default=None, help=f"Square output side in px (default: {TARGET_SIZE})"
    )
    parser.add_argument(
        "--quality", type=int, default=None, help=f"JPEG quality (default: {JPEG_QUALITY})"
    )
    parser.add_argument(
        "--analysis-size",
        type=int,
        default=None,
        help=f"Longest edge of the analysis raster (default: {ANALYSIS_SIZE})",
    )
    parser.add_argument(
        "--workers", "-j", type=int, default=None, help=f"Parallel workers (default: {DEFAULT_WORKERS})"
    )
    parser.add_argument("--debug", action="store_true", help="Print per-image detection details.")
    parser.add_argument(
        "--save-debug",
        action="store_true",
        help="Write a box overlay and JSON metadata next to each output.",
    )

    args = parser.parse_args(argv)

    settings = resolve_settings(
        target_size=args.size,
        jpeg_quality=args.quality,
        analysis_size=args.analysis_size,
        workers=args.workers,
    )
    items = run_batch(
        inputs=args.inputs,
        output_folder=args.output,
        settings=settings,
        debug=args.debug,
        save_debug=args.save_debug,
    )
    if not items or not all(item.ok for item in items):
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

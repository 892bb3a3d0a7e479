"""Edge-density saliency search used to locate the subject of a product photo."""

import math
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PADDING_RATIO = 0.1  # expand the winning window by 10% on each side
MIN_WINDOW_FRACTION = 0.4
MAX_WINDOW_FRACTION = 0.8
MIN_WINDOW_SIZE = 50  # px in analysis space; smaller windows are skipped
MIN_WINDOW_STEP = 5
STRONG_EDGE_THRESHOLD = 100
FALLBACK_SCORE_THRESHOLD = 50.0
FALLBACK_CROP_FRACTION = 0.7

DENSITY_WEIGHT = 0.4
STRONG_EDGE_WEIGHT = 0.4
CENTER_WEIGHT = 0.2
CENTER_MAX_PENALTY = 0.5


@dataclass(frozen=True)
class Region:
    """Axis-aligned box in the pixel space of one specific raster."""

    x: int
    y: int
    width: int
    height: int
    score: float = 0.0

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    def as_xywh(self) -> list[int]:
        return [int(self.x), int(self.y), int(self.width), int(self.height)]


# ---------------------------------------------------------------------------
# Edge map
# ---------------------------------------------------------------------------


def build_edge_map(gray: np.ndarray) -> np.ndarray:
    """Sobel gradient magnitude of a greyscale raster, as uint8 in [0, 255].

    The outermost row and column are left at zero so the result only depends
    on full 3x3 neighbourhoods.
    """
    if gray.ndim != 2:
        raise ValueError(f"Expected a 2-D greyscale raster, got shape {gray.shape}")

    h, w = gray.shape
    edges = np.zeros((h, w), dtype=np.uint8)
    if h < 3 or w < 3:
        return edges

    gx = cv2.Sobel(gray, cv2.CV_64F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_64F, 0, 1, ksize=3)
    magnitude = np.sqrt(gx * gx + gy * gy)

    # astype truncates toward zero, same as storing a float into a byte buffer.
    inner = np.minimum(magnitude[1:-1, 1:-1], 255.0).astype(np.uint8)
    edges[1:-1, 1:-1] = inner
    return edges


# ---------------------------------------------------------------------------
# Region selection
# ---------------------------------------------------------------------------


def candidate_window_sizes(width: int, height: int) -> list[int]:
    """Return the window sides to scan, smallest first, skipping unusable ones."""
    min_dim = min(width, height)
    smallest = min_dim * MIN_WINDOW_FRACTION
    largest = min_dim * MAX_WINDOW_FRACTION
    sizes = [
        math.floor(smallest),
        math.floor((smallest + largest) / 2),
        math.floor(largest),
    ]
    return [s for s in sizes if s >= MIN_WINDOW_SIZE and s <= width and s <= height]


def _window_sums(integral: np.ndarray, size: int, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    """Sum over every size x size window whose top-left corner is (xs[j], ys[i])."""
    y0 = ys[:, None]
    x0 = xs[None, :]
    y1 = y0 + size
    x1 = x0 + size
    return integral[y1, x1] - integral[y0, x1] - integral[y1, x0] + integral[y0, x0]


def _score_windows(
    edge_integral: np.ndarray,
    strong_integral: np.ndarray,
    size: int,
    xs: np.ndarray,
    ys: np.ndarray,
    width: int,
    height: int,
) -> np.ndarray:
    pixel_count = size * size
    avg_density = _window_sums(edge_integral, size, xs, ys) / pixel_count
    strong_ratio = _window_sums(strong_integral, size, xs, ys) / pixel_count

    center_x = width / 2
    center_y = height / 2
    region_cx = (xs + size / 2)[None, :]
    region_cy = (ys + size / 2)[:, None]
    distance = np.sqrt((region_cx - center_x) ** 2 + (region_cy - center_y) ** 2)
    max_distance = math.sqrt(center_x * center_x + center_y * center_y)
    center_weight = 1 - (distance / max_distance) * CENTER_MAX_PENALTY

    return (
        avg_density * DENSITY_WEIGHT
        + strong_ratio * 255 * STRONG_EDGE_WEIGHT
        + center_weight * 100 * CENTER_WEIGHT
    )


def _center_fallback(width: int, height: int, score: float) -> Region:
    side = min(width, height) * FALLBACK_CROP_FRACTION
    return Region(
        x=math.floor((width - side) / 2),
        y=math.floor((height - side) / 2),
        width=max(1, math.floor(side)),
        height=max(1, math.floor(side)),
        score=score,
    )


def _pad_and_square(x: int, y: int, size: int, width: int, height: int, score: float) -> Region:
    pad = math.floor(size * PADDING_RATIO)
    padded = math.floor(size * (1 + 2 * PADDING_RATIO))

    x0 = max(0, x - pad)
    y0 = max(0, y - pad)
    box_w = min(padded, width - x0)
    box_h = min(padded, height - y0)

    side = min(box_w, box_h)
    center_x = x0 + box_w / 2
    center_y = y0 + box_h / 2
    sx = min(max(0, math.floor(center_x - side / 2)), width - side)
    sy = min(max(0, math.floor(center_y - side / 2)), height - side)
    return Region(x=sx, y=sy, width=side, height=side, score=score)


def select_subject_region(edges: np.ndarray, debug: bool = False) -> Region:
    """Find the square window most likely to contain the subject.

    Three window sizes (40%, 60%, 80% of the short side) are slid over the
    edge map. Each position is scored from mean edge magnitude, the share of
    strong edges and proximity to the image center. The best window wins on
    strict ``>``, so on ties the smaller size and earlier row-major position
    are kept. Below FALLBACK_SCORE_THRESHOLD a centered square covering 70%
    of the short side is returned instead.

    Window sums come from summed-area tables; the scores equal a direct
    per-pixel scan.
    """
    height, width = edges.shape
    edge_integral = cv2.integral(edges).astype(np.int64)
    strong_mask = (edges > STRONG_EDGE_THRESHOLD).astype(np.uint8)
    strong_integral = cv2.integral(strong_mask).astype(np.int64)

    best_score = 0.0
    best: Optional[tuple[int, int, int]] = None

    for size in candidate_window_sizes(width, height):
        step = max(MIN_WINDOW_STEP, size // 8)
        xs = np.arange(0, width - size + 1, step, dtype=np.int64)
        ys = np.arange(0, height - size + 1, step, dtype=np.int64)
        scores = _score_windows(edge_integral, strong_integral, size, xs, ys, width, height)

        # argmax returns the first maximum in row-major (y, then x) order.
        flat_idx = int(np.argmax(scores))
        iy, ix = divmod(flat_idx, len(xs))
        size_best = float(scores[iy, ix])
        if debug:
            print(
                f"  Window {size}px (step {step}): {scores.size} positions, "
                f"best={size_best:.2f} at ({int(xs[ix])},{int(ys[iy])})"
            )
        if size_best > best_score:
            best_score = size_best
            best = (int(xs[ix]), int(ys[iy]), size)

    if best is None or best_score < FALLBACK_SCORE_THRESHOLD:
        if debug:
            print(f"  No salient window (best={best_score:.2f}), using center fallback")
        return _center_fallback(width, height, best_score)

    x, y, size = best
    return _pad_and_square(x, y, size, width, height, best_score)


def is_confident(region: Region) -> bool:
    """True when the region came from the saliency search rather than the fallback."""
    return region.score >= FALLBACK_SCORE_THRESHOLD

"""
Image preprocessing for slot suggestion.

Normalizes arbitrary input (bytes, data URLs, base64, numpy arrays) onto a
fixed-size square RGBA canvas with a binary foreground mask, then cuts the
canvas into per-slot regions of interest with a visibility flag.

Nothing in here raises for undecodable bytes: an input that cv2 cannot read
is replaced by a deterministic synthetic canvas derived from its digest, so
image quality problems surface as "low" visibility rather than exceptions.
"""

import base64
import binascii
import hashlib
import logging
import re
from typing import Dict, Optional, Tuple, Union

import cv2
import numpy as np

from .config import SuggestionConfig
from .models import BoundingBox

logger = logging.getLogger(__name__)

ImageInput = Union[bytes, bytearray, str, np.ndarray]

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=\s]+$")

# Alpha above which a pixel of a transparent image counts as foreground
ALPHA_FOREGROUND = 110


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """Ensure image is uint8 RGBA format."""
    if image_np.dtype != np.uint8:
        if image_np.dtype == np.uint16:
            image_np = (image_np / 257).astype(np.uint8)
        elif image_np.max() <= 1.0:
            image_np = (image_np * 255).astype(np.uint8)
        else:
            image_np = np.clip(image_np, 0, 255).astype(np.uint8)

    if image_np.ndim == 2:
        return cv2.cvtColor(image_np, cv2.COLOR_GRAY2RGBA)
    if image_np.ndim != 3:
        raise TypeError(f"Unsupported image shape: {image_np.shape}")
    if image_np.shape[2] == 1:
        return cv2.cvtColor(np.ascontiguousarray(image_np[:, :, 0]), cv2.COLOR_GRAY2RGBA)
    if image_np.shape[2] == 2:
        # Gray plus alpha
        rgba = cv2.cvtColor(np.ascontiguousarray(image_np[:, :, 0]), cv2.COLOR_GRAY2RGBA)
        rgba[:, :, 3] = image_np[:, :, 1]
        return rgba
    if image_np.shape[2] == 3:
        return cv2.cvtColor(image_np, cv2.COLOR_RGB2RGBA)
    return image_np[:, :, :4].copy()


def decode_input(image: ImageInput) -> bytes:
    """Turn a bytes / data URL / base64 payload into raw bytes."""
    if isinstance(image, (bytes, bytearray)):
        return bytes(image)
    if not isinstance(image, str):
        raise TypeError(f"Unsupported image input: {type(image).__name__}")

    trimmed = image.strip()
    if trimmed.startswith("data:"):
        trimmed = trimmed.split(",", 1)[-1]
        try:
            return base64.b64decode(trimmed)
        except (binascii.Error, ValueError):
            return trimmed.encode("utf-8")
    if trimmed and _BASE64_RE.match(trimmed):
        try:
            return base64.b64decode(trimmed, validate=False)
        except (binascii.Error, ValueError):
            pass
    return trimmed.encode("utf-8")


def _decode_bytes(buffer: bytes):
    """Decode with cv2, returning an RGBA array or None."""
    if not buffer:
        return None
    try:
        decoded = cv2.imdecode(np.frombuffer(buffer, dtype=np.uint8),
                               cv2.IMREAD_UNCHANGED)
    except cv2.error as e:
        logger.warning(f"cv2 could not decode input: {e}")
        return None
    if decoded is None:
        return None

    # cv2 decodes to BGR(A); flip to RGB(A) before normalizing
    if decoded.ndim == 3 and decoded.shape[2] == 3:
        decoded = cv2.cvtColor(decoded, cv2.COLOR_BGR2RGB)
    elif decoded.ndim == 3 and decoded.shape[2] == 4:
        decoded = cv2.cvtColor(decoded, cv2.COLOR_BGRA2RGBA)
    return normalize_image(decoded)


def synthetic_canvas(buffer: bytes, size: int) -> np.ndarray:
    """
    Build a deterministic RGBA canvas from the SHA-1 digest of ``buffer``.

    Colors blend diagonally between two digest-derived endpoints and the
    alpha channel follows a digest-scaled sine band, so identical bytes
    always yield the identical canvas.
    """
    digest = hashlib.sha1(buffer).digest()
    variation = digest[0] / 255.0

    ys, xs = np.mgrid[0:size, 0:size].astype(np.float64)
    mix = (xs + ys) / (2 * size)

    canvas = np.empty((size, size, 4), dtype=np.uint8)
    for channel in range(3):
        start, end = digest[1 + channel], digest[4 + channel]
        canvas[:, :, channel] = np.floor(start * (1 - mix) + end * mix) % 256
    canvas[:, :, 3] = 160 + np.floor(
        95 * np.abs(np.sin(xs * ys * variation / (2 * size + 1)))
    )
    return canvas


def _letterbox(image: np.ndarray, size: int,
               interpolation: Optional[int] = None) -> np.ndarray:
    """Fit an image (RGBA or mask) into a zero-filled size×size canvas, centered."""
    h, w = image.shape[:2]
    scale = size / max(h, w)
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    if interpolation is None:
        interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR
    resized = cv2.resize(image, (new_w, new_h), interpolation=interpolation)

    canvas = np.zeros((size, size) + image.shape[2:], dtype=np.uint8)
    y0 = (size - new_h) // 2
    x0 = (size - new_w) // 2
    canvas[y0:y0 + new_h, x0:x0 + new_w] = resized
    return canvas


def foreground_mask(image: np.ndarray, use_alpha: bool) -> np.ndarray:
    """
    Compute a 0/1 foreground mask for an RGBA image.

    Images that carry transparency use their alpha channel. Opaque images
    fall back to an Otsu split on the blurred luminance, inverted when the
    chosen side covers most of the frame. Expects the decoded image, before
    any letterbox padding is added.
    """
    alpha = image[:, :, 3]
    if use_alpha:
        return (alpha > ALPHA_FOREGROUND).astype(np.uint8)

    gray = cv2.cvtColor(image, cv2.COLOR_RGBA2GRAY)
    blurred = cv2.GaussianBlur(gray, (5, 5), 0)
    _, binary = cv2.threshold(blurred, 0, 255,
                              cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU)

    # Invert if background dominates
    if np.mean(binary) > 127:
        binary = cv2.bitwise_not(binary)

    return (binary > 0).astype(np.uint8)


def normalize_input(image: ImageInput,
                    size: int = 512) -> Tuple[np.ndarray, np.ndarray]:
    """
    Normalize an input image onto a fixed square canvas plus mask.

    Args:
        image: Raw encoded bytes, a ``data:`` URL, a base64 string, or a
            decoded numpy image (gray, RGB or RGBA).
        size: Side length of the output canvas.

    Returns:
        Tuple of (canvas, mask): canvas is size×size×4 uint8 RGBA, mask is
        size×size uint8 with 1 for foreground.
    """
    if isinstance(image, np.ndarray):
        decoded = normalize_image(image) if image.size else None
        buffer = None
    else:
        buffer = decode_input(image)
        decoded = _decode_bytes(buffer)

    if decoded is None or decoded.size == 0:
        logger.warning("Undecodable image input, using synthetic canvas")
        canvas = synthetic_canvas(buffer or b"", size)
        return canvas, foreground_mask(canvas, use_alpha=True)

    has_alpha = bool(np.any(decoded[:, :, 3] < 255))
    mask = foreground_mask(decoded, use_alpha=has_alpha)
    canvas = _letterbox(decoded, size)
    return canvas, _letterbox(mask, size, interpolation=cv2.INTER_NEAREST)


def roi_box(slot: str, width: int, height: int,
            config: SuggestionConfig) -> BoundingBox:
    """Convert a slot's fractional ROI to a pixel box clamped to the canvas."""
    roi = config.roi[slot]
    x = min(max(0, int(roi.x * width)), width - 1)
    y = min(max(0, int(roi.y * height)), height - 1)
    w = max(1, min(width - x, int(round(roi.w * width))))
    h = max(1, min(height - y, int(round(roi.h * height))))
    return BoundingBox(x, y, w, h)


def estimate_coverage(mask: np.ndarray, box: BoundingBox, stride: int = 2) -> float:
    """Fraction of sampled mask pixels inside ``box`` that are foreground."""
    region = mask[box.y:box.y + box.h:stride, box.x:box.x + box.w:stride]
    if region.size == 0:
        return 0.0
    return float(np.count_nonzero(region)) / region.size


def estimate_edge_density(canvas: np.ndarray, box: BoundingBox,
                          stride: int = 2) -> float:
    """
    Mean luminance gradient (left + up neighbour differences) in ``box``,
    scaled to [0, 1].
    """
    rgb = canvas[:, :, :3].astype(np.float64)
    lum = rgb[:, :, 0] * 0.299 + rgb[:, :, 1] * 0.587 + rgb[:, :, 2] * 0.114

    y0, x0 = max(1, box.y), max(1, box.x)
    y1 = min(canvas.shape[0], box.y + box.h)
    x1 = min(canvas.shape[1], box.x + box.w)
    if y1 <= y0 or x1 <= x0:
        return 0.0

    centre = lum[y0:y1:stride, x0:x1:stride]
    left = lum[y0:y1:stride, x0 - 1:x1 - 1:stride]
    up = lum[y0 - 1:y1 - 1:stride, x0:x1:stride]
    gradient = np.abs(centre - left) + np.abs(centre - up)
    return float(np.mean(gradient) / 255.0)


def locate_slots(canvas: np.ndarray, mask: np.ndarray,
                 config: SuggestionConfig
                 ) -> Tuple[Dict[str, BoundingBox], Dict[str, str]]:
    """
    Place each configured slot's ROI and grade its visibility.

    A slot is "ok" when both foreground coverage and edge density inside
    its ROI reach the configured minimums, otherwise "low".

    Returns:
        Tuple of (boxes, visibility) keyed by slot.
    """
    height, width = canvas.shape[:2]
    boxes = {}
    visibility = {}

    for slot in config.slots:
        box = roi_box(slot, width, height, config)
        coverage = estimate_coverage(mask, box)
        edge_density = estimate_edge_density(canvas, box)
        boxes[slot] = box
        visibility[slot] = (
            "ok" if coverage >= config.min_coverage
            and edge_density >= config.min_edge_density else "low"
        )
        logger.debug(f"{slot}: coverage={coverage:.3f} edges={edge_density:.3f} "
                     f"→ {visibility[slot]}")

    return boxes, visibility


def crop(canvas: np.ndarray, box: BoundingBox) -> np.ndarray:
    """Extract ``box`` from the canvas, clamped to bounds, at least 1×1."""
    h, w = canvas.shape[:2]
    x0 = min(max(0, box.x), w - 1)
    y0 = min(max(0, box.y), h - 1)
    x1 = min(w, max(x0 + 1, box.x + box.w))
    y1 = min(h, max(y0 + 1, box.y + box.h))
    return canvas[y0:y1, x0:x1].copy()

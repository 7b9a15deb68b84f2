"""
Reference patches for catalog items.

Item mode compares the slot patch against a template of each candidate.
When the candidate's thumbnail points at a readable local image, that image
is the template; otherwise a deterministic pseudo-template is synthesized
from a digest of the item identity so structural metrics stay stable.
"""

import hashlib
import logging
import os
from functools import lru_cache
from typing import Optional, Tuple

import cv2
import numpy as np

from .models import CandidateRef
from .preprocessing import normalize_image

logger = logging.getLogger(__name__)


@lru_cache(maxsize=256)
def load_reference_image(path: str) -> Optional[np.ndarray]:
    """Load a local image file as RGBA, or None if it is not readable."""
    if not path or not os.path.isfile(path):
        return None
    image = cv2.imread(path, cv2.IMREAD_UNCHANGED)
    if image is None:
        logger.warning(f"Could not read reference image: {path}")
        return None

    if image.ndim == 3 and image.shape[2] == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
    elif image.ndim == 3 and image.shape[2] == 4:
        image = cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA)
    return normalize_image(image)


def synthetic_template(ref: CandidateRef, shape: Tuple[int, int]) -> np.ndarray:
    """Digest-derived RGBA template of ``shape`` (height, width)."""
    height, width = max(1, shape[0]), max(1, shape[1])
    seed = f"{ref.item_id}-{ref.label}-{ref.thumbnail or ''}".encode("utf-8")
    digest = np.frombuffer(hashlib.sha1(seed).digest(), dtype=np.uint8).astype(np.int64)
    n = len(digest)

    ys, xs = np.mgrid[0:height, 0:width]
    mix = (xs * 512 + ys) % n
    base = digest[mix]

    template = np.empty((height, width, 4), dtype=np.uint8)
    template[:, :, 0] = (base + digest[(mix + 3) % n]) % 256
    template[:, :, 1] = (base + digest[(mix + 7) % n]) % 256
    template[:, :, 2] = (base + digest[(mix + 11) % n]) % 256
    template[:, :, 3] = 200
    return template


def render_template(ref: CandidateRef, shape: Tuple[int, int]) -> np.ndarray:
    """
    Template for ``ref`` sized to ``shape`` (height, width).

    Uses the thumbnail image when available, else the synthetic template.
    """
    image = load_reference_image(ref.thumbnail) if ref.thumbnail else None
    if image is None:
        return synthetic_template(ref, shape)

    height, width = max(1, shape[0]), max(1, shape[1])
    if image.shape[:2] == (height, width):
        return image.copy()
    return cv2.resize(image, (width, height), interpolation=cv2.INTER_AREA)

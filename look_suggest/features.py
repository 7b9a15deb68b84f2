"""
Visual feature extraction for slot patches.

Provides the four structural signals used by item mode plus the pose gate:

    embed                    96-dim pixel-statistics descriptor, L2-normalized
    edge_similarity          SSIM between Sobel magnitude maps
    orientation_match_ratio  correlation of 36-bin gradient orientation histograms
    silhouette_distance      1 - edge_similarity
    pose_align               coarse embedding-similarity gate

The descriptor layout is:
    [0:64]   4×4×4 RGB histogram of opaque pixels
    [64:80]  16-bin luminance histogram
    [80:96]  4×4 spatial luminance grid (alpha-weighted)

These are deterministic proxies for a learned model. The FeatureExtractor
base class is the seam where a model-backed implementation plugs in; the
matching and reranking code only talks to that interface.
"""

import logging
from abc import ABC, abstractmethod
from typing import NamedTuple, Sequence

import cv2
import numpy as np

logger = logging.getLogger(__name__)

EMBED_DIM = 96
EDGE_MAP_SIZE = 64
ORIENTATION_BINS = 36

# Pixels with alpha below this are treated as transparent
ALPHA_OPAQUE = 64

# SSIM stabilizers for maps in [0, 1]
_C1 = 0.01 ** 2
_C2 = 0.03 ** 2


class PoseAlignment(NamedTuple):
    ok: bool
    aligned_patch: np.ndarray
    aligned_template: np.ndarray


def l2_normalize(vector: Sequence[float]) -> np.ndarray:
    """L2-normalize; the zero vector stays zero."""
    v = np.asarray(vector, dtype=np.float32).ravel()
    norm = float(np.linalg.norm(v))
    if norm == 0 or not np.isfinite(norm):
        return np.zeros_like(v)
    return v / norm


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity over the shared prefix; 0.0 if either side is zero."""
    length = min(len(a), len(b))
    if length == 0:
        return 0.0
    va = l2_normalize(np.asarray(a, dtype=np.float32)[:length])
    vb = l2_normalize(np.asarray(b, dtype=np.float32)[:length])
    return float(np.clip(np.dot(va, vb), -1.0, 1.0))


def _luminance(patch: np.ndarray) -> np.ndarray:
    """Alpha-weighted luminance as float64 in [0, 255]."""
    rgb = patch[:, :, :3].astype(np.float64)
    lum = rgb[:, :, 0] * 0.299 + rgb[:, :, 1] * 0.587 + rgb[:, :, 2] * 0.114
    return lum * (patch[:, :, 3].astype(np.float64) / 255.0)


def embed(patch: np.ndarray) -> np.ndarray:
    """
    Compute the pixel-statistics embedding of an RGBA patch.

    Returns:
        EMBED_DIM float32 vector, L2-normalized. A fully transparent patch
        (or any extraction failure) yields the zero vector.
    """
    try:
        opaque = patch[:, :, 3] >= ALPHA_OPAQUE
        if not np.any(opaque):
            return np.zeros(EMBED_DIM, dtype=np.float32)

        pixels = patch[opaque][:, :3].astype(np.int64)

        # 4×4×4 color histogram
        quantized = pixels // 64
        bins = quantized[:, 0] * 16 + quantized[:, 1] * 4 + quantized[:, 2]
        color_hist = np.bincount(bins, minlength=64).astype(np.float64)
        color_hist /= color_hist.sum()

        # Luminance histogram
        lum = (pixels[:, 0] * 0.299 + pixels[:, 1] * 0.587
               + pixels[:, 2] * 0.114)
        lum_hist, _ = np.histogram(lum, bins=16, range=(0, 256))
        lum_hist = lum_hist.astype(np.float64) / max(lum_hist.sum(), 1)

        # Coarse spatial layout
        grid = cv2.resize(_luminance(patch).astype(np.float32), (4, 4),
                          interpolation=cv2.INTER_AREA).ravel() / 255.0

        descriptor = np.concatenate([color_hist, lum_hist, grid])
        return l2_normalize(descriptor)

    except Exception as e:
        logger.error(f"Embedding extraction failed: {e}")
        return np.zeros(EMBED_DIM, dtype=np.float32)


def _gradients(patch: np.ndarray):
    """Sobel gradients of the patch resized to EDGE_MAP_SIZE²."""
    lum = _luminance(patch).astype(np.float32)
    lum = cv2.resize(lum, (EDGE_MAP_SIZE, EDGE_MAP_SIZE),
                     interpolation=cv2.INTER_AREA)
    gx = cv2.Sobel(lum, cv2.CV_64F, 1, 0, ksize=3)
    gy = cv2.Sobel(lum, cv2.CV_64F, 0, 1, ksize=3)
    return gx, gy


def edge_map(patch: np.ndarray) -> np.ndarray:
    """Gradient magnitude scaled to [0, 1] by its own maximum."""
    gx, gy = _gradients(patch)
    magnitude = np.hypot(gx, gy)
    peak = magnitude.max()
    if peak <= 0:
        return np.zeros_like(magnitude)
    return magnitude / peak


def _ssim(x: np.ndarray, y: np.ndarray) -> float:
    """Gaussian-windowed SSIM between two maps in [0, 1]."""
    blur = lambda img: cv2.GaussianBlur(img, (11, 11), 1.5)

    mu_x = blur(x)
    mu_y = blur(y)
    sigma_x = blur(x * x) - mu_x ** 2
    sigma_y = blur(y * y) - mu_y ** 2
    sigma_xy = blur(x * y) - mu_x * mu_y

    numerator = (2 * mu_x * mu_y + _C1) * (2 * sigma_xy + _C2)
    denominator = (mu_x ** 2 + mu_y ** 2 + _C1) * (sigma_x + sigma_y + _C2)
    return float(np.mean(numerator / denominator))


def edge_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Structural similarity between the edge maps of two patches.

    Returns:
        Score in [0, 1]; 1.0 for identical inputs, 0.0 on failure.
    """
    try:
        score = _ssim(edge_map(a), edge_map(b))
        if not np.isfinite(score):
            return 0.0
        return float(np.clip(score, 0.0, 1.0))
    except Exception as e:
        logger.error(f"Edge similarity failed: {e}")
        return 0.0


def orientation_histogram(patch: np.ndarray) -> np.ndarray:
    """
    Magnitude-weighted histogram of gradient orientations.

    Only gradients above 10% of the strongest one vote, which keeps flat
    regions from flooding the histogram with noise.
    """
    gx, gy = _gradients(patch)
    magnitude = np.hypot(gx, gy)
    peak = magnitude.max()
    if peak <= 0:
        return np.zeros(ORIENTATION_BINS, dtype=np.float64)

    strong = magnitude > 0.1 * peak
    angles = np.degrees(np.arctan2(gy[strong], gx[strong])) % 360
    hist, _ = np.histogram(angles, bins=ORIENTATION_BINS, range=(0, 360),
                           weights=magnitude[strong])
    return hist.astype(np.float64)


def orientation_match_ratio(a: np.ndarray, b: np.ndarray) -> float:
    """
    Correlation of orientation histograms, standing in for a keypoint
    match ratio.

    Returns:
        Value in [0, 1]. Patches without gradients score 0.0.
    """
    try:
        ha = orientation_histogram(a)
        hb = orientation_histogram(b)
        na = np.linalg.norm(ha)
        nb = np.linalg.norm(hb)
        if na == 0 or nb == 0:
            return 0.0
        return float(np.clip(np.dot(ha, hb) / (na * nb), 0.0, 1.0))
    except Exception as e:
        logger.error(f"Orientation matching failed: {e}")
        return 0.0


def silhouette_distance(a: np.ndarray, b: np.ndarray) -> float:
    """Silhouette distance in [0, 1], decreasing as edge similarity rises."""
    return float(np.clip(1.0 - edge_similarity(a, b), 0.0, 1.0))


def pose_align(patch: np.ndarray, template: np.ndarray,
               floor: float) -> PoseAlignment:
    """
    Gate structural matching on a coarse embedding similarity.

    No geometric transform is applied: inputs come back unmodified and
    ``ok`` tells whether the pair is similar enough to compare.
    """
    similarity = cosine_similarity(embed(patch), embed(template))
    return PoseAlignment(similarity >= floor, patch, template)


class FeatureExtractor(ABC):
    """
    Strategy interface for visual features.

    Implementations must be deterministic and return embeddings of a fixed
    length matching the item index they are used with.
    """

    dim: int = EMBED_DIM

    @abstractmethod
    def embed(self, patch: np.ndarray) -> np.ndarray:
        ...

    @abstractmethod
    def edge_similarity(self, a: np.ndarray, b: np.ndarray) -> float:
        ...

    @abstractmethod
    def orientation_match_ratio(self, a: np.ndarray, b: np.ndarray) -> float:
        ...

    def silhouette_distance(self, a: np.ndarray, b: np.ndarray) -> float:
        return float(np.clip(1.0 - self.edge_similarity(a, b), 0.0, 1.0))

    def pose_align(self, patch: np.ndarray, template: np.ndarray,
                   floor: float) -> PoseAlignment:
        similarity = cosine_similarity(self.embed(patch), self.embed(template))
        return PoseAlignment(similarity >= floor, patch, template)


class PixelFeatureExtractor(FeatureExtractor):
    """Default extractor backed by the pixel-statistics functions above."""

    def embed(self, patch: np.ndarray) -> np.ndarray:
        return embed(patch)

    def edge_similarity(self, a: np.ndarray, b: np.ndarray) -> float:
        return edge_similarity(a, b)

    def orientation_match_ratio(self, a: np.ndarray, b: np.ndarray) -> float:
        return orientation_match_ratio(a, b)

    def silhouette_distance(self, a: np.ndarray, b: np.ndarray) -> float:
        return silhouette_distance(a, b)

    def pose_align(self, patch: np.ndarray, template: np.ndarray,
                   floor: float) -> PoseAlignment:
        return pose_align(patch, template, floor)

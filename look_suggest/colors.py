"""
Color engine: sRGB → CIE Lab, CIEDE2000 distance, k-means dominant colors,
and snapping to the fixed Dofus reference palette.

All functions are pure. Lab values are only used for perceptual distance
and never persisted; palettes travel as 6-digit hex strings.
"""

import math
import logging
import string
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from .config import MAX_DELTA_E
from .models import DofusPalette, Lab

logger = logging.getLogger(__name__)

# D65 reference white
REF_X = 0.95047
REF_Y = 1.0
REF_Z = 1.08883

_EPSILON = 216 / 24389
_KAPPA = 24389 / 27

FALLBACK_COLOR = "#C8C5BE"

# Reference dye colors a palette is snapped onto.
DOFUS_REFERENCE_COLORS = [
    "#1B1B1B", "#4A4A4A", "#8C8C8C", "#C8C5BE", "#F4F1EA",
    "#7A1F1F", "#C0392B", "#E67E22", "#E8C380", "#F1C40F",
    "#6B8E23", "#27AE60", "#1ABC9C", "#2E86C1", "#1F3A5F",
    "#6C3483", "#C2185B", "#8D5524", "#5A3F2F", "#B58B52",
]


class DominantColor(NamedTuple):
    rgb: Tuple[int, int, int]
    hex: str
    weight: float


def normalize_hex(value: str) -> Optional[str]:
    """Return ``#RRGGBB`` upper-case, or None when ``value`` is not a color."""
    if not value or not isinstance(value, str):
        return None
    cleaned = value.strip().lstrip("#")
    if len(cleaned) not in (3, 6):
        return None
    if any(c not in string.hexdigits for c in cleaned):
        return None
    if len(cleaned) == 3:
        cleaned = "".join(c * 2 for c in cleaned)
    return "#" + cleaned.upper()


def hex_to_rgb(value: str) -> Tuple[int, int, int]:
    normalized = normalize_hex(value)
    if normalized is None:
        raise ValueError(f"Not a hex color: {value!r}")
    return (int(normalized[1:3], 16), int(normalized[3:5], 16),
            int(normalized[5:7], 16))


def rgb_to_hex(r: float, g: float, b: float) -> str:
    return "#" + "".join(
        f"{int(max(0, min(255, round(c)))):02X}" for c in (r, g, b)
    )


def _pivot_rgb(channel: float) -> float:
    c = channel / 255.0
    return c / 12.92 if c <= 0.04045 else ((c + 0.055) / 1.055) ** 2.4


def _pivot_xyz(value: float) -> float:
    return value ** (1.0 / 3.0) if value > _EPSILON else (_KAPPA * value + 16) / 116


def rgb_to_lab(r: float, g: float, b: float) -> Lab:
    """Convert 8-bit sRGB to CIE Lab (D65)."""
    rr, gg, bb = _pivot_rgb(r), _pivot_rgb(g), _pivot_rgb(b)

    x = rr * 0.4124 + gg * 0.3576 + bb * 0.1805
    y = rr * 0.2126 + gg * 0.7152 + bb * 0.0722
    z = rr * 0.0193 + gg * 0.1192 + bb * 0.9505

    fx = _pivot_xyz(x / REF_X)
    fy = _pivot_xyz(y / REF_Y)
    fz = _pivot_xyz(z / REF_Z)

    return Lab(116 * fy - 16, 500 * (fx - fy), 200 * (fy - fz))


def hex_to_lab(value: str) -> Lab:
    return rgb_to_lab(*hex_to_rgb(value))


def delta_e_2000(c1: Lab, c2: Lab) -> float:
    """
    CIEDE2000 color difference between two Lab colors.

    Symmetric, non-negative and zero for identical inputs. Returns
    MAX_DELTA_E if the computation ends up non-finite.
    """
    L1, a1, b1 = c1
    L2, a2, b2 = c2

    c1_ab = math.hypot(a1, b1)
    c2_ab = math.hypot(a2, b2)
    c_mean7 = ((c1_ab + c2_ab) / 2) ** 7
    g = 0.5 * (1 - math.sqrt(c_mean7 / (c_mean7 + 25 ** 7)))

    a1p = (1 + g) * a1
    a2p = (1 + g) * a2
    c1p = math.hypot(a1p, b1)
    c2p = math.hypot(a2p, b2)
    h1p = math.degrees(math.atan2(b1, a1p)) % 360 if c1p else 0.0
    h2p = math.degrees(math.atan2(b2, a2p)) % 360 if c2p else 0.0

    delta_lp = L2 - L1
    delta_cp = c2p - c1p

    if c1p * c2p == 0:
        delta_hp = 0.0
    else:
        delta_hp = h2p - h1p
        if delta_hp > 180:
            delta_hp -= 360
        elif delta_hp < -180:
            delta_hp += 360
    delta_big_hp = 2 * math.sqrt(c1p * c2p) * math.sin(math.radians(delta_hp / 2))

    l_mean = (L1 + L2) / 2
    c_mean_p = (c1p + c2p) / 2
    if c1p * c2p == 0:
        h_mean = h1p + h2p
    elif abs(h1p - h2p) <= 180:
        h_mean = (h1p + h2p) / 2
    elif h1p + h2p < 360:
        h_mean = (h1p + h2p + 360) / 2
    else:
        h_mean = (h1p + h2p - 360) / 2

    t = (1
         - 0.17 * math.cos(math.radians(h_mean - 30))
         + 0.24 * math.cos(math.radians(2 * h_mean))
         + 0.32 * math.cos(math.radians(3 * h_mean + 6))
         - 0.20 * math.cos(math.radians(4 * h_mean - 63)))
    delta_theta = 30 * math.exp(-(((h_mean - 275) / 25) ** 2))
    c_mean_p7 = c_mean_p ** 7
    r_c = 2 * math.sqrt(c_mean_p7 / (c_mean_p7 + 25 ** 7))
    s_l = 1 + (0.015 * (l_mean - 50) ** 2) / math.sqrt(20 + (l_mean - 50) ** 2)
    s_c = 1 + 0.045 * c_mean_p
    s_h = 1 + 0.015 * c_mean_p * t
    r_t = -math.sin(math.radians(2 * delta_theta)) * r_c

    term_l = delta_lp / s_l
    term_c = delta_cp / s_c
    term_h = delta_big_hp / s_h
    squared = term_l ** 2 + term_c ** 2 + term_h ** 2 + r_t * term_c * term_h

    result = math.sqrt(max(0.0, squared))
    return result if math.isfinite(result) else MAX_DELTA_E


def kmeans_dominant_colors(pixels: np.ndarray,
                           k: int = 4,
                           max_iterations: int = 8,
                           seed: int = 0) -> List[DominantColor]:
    """
    Cluster RGB pixels and return dominant colors by member count.

    Centroids start at evenly spaced samples of ``pixels`` so identical
    input order gives identical output. A cluster that goes empty is
    re-seeded from a random pixel (seeded generator). The result always has
    ``k`` entries: when fewer clusters are populated, the last color is
    repeated with zero weight.

    Args:
        pixels: (N, 3) array of RGB values.
        k: Number of clusters.
        max_iterations: Upper bound on assignment/update rounds.
        seed: Seed for empty-cluster re-seeding.

    Returns:
        List of DominantColor sorted by descending weight. Empty if there
        are no pixels.
    """
    data = np.asarray(pixels, dtype=np.float64).reshape(-1, 3)
    n = len(data)
    if n == 0 or k <= 0:
        return []

    rng = np.random.default_rng(seed)
    step = max(1, n // k)
    centroids = np.array([data[min(i * step, n - 1)] for i in range(k)])
    assignments = np.full(n, -1, dtype=np.int64)

    for _ in range(max(1, max_iterations)):
        distances = ((data[:, None, :] - centroids[None, :, :]) ** 2).sum(axis=2)
        new_assignments = np.argmin(distances, axis=1)
        if np.array_equal(new_assignments, assignments):
            break
        assignments = new_assignments

        for c in range(k):
            members = data[assignments == c]
            if len(members):
                centroids[c] = members.mean(axis=0)
            else:
                centroids[c] = data[rng.integers(0, n)]

    counts = np.bincount(assignments, minlength=k)
    order = sorted(range(k), key=lambda c: -counts[c])

    result = []
    for c in order:
        if counts[c] == 0:
            continue
        rgb = tuple(int(round(v)) for v in centroids[c])
        result.append(DominantColor(rgb, rgb_to_hex(*rgb), float(counts[c]) / n))

    while len(result) < k:
        last = result[-1]
        result.append(DominantColor(last.rgb, last.hex, 0.0))

    return result


def nearest_reference(lab: Lab,
                      references: Sequence[str] = DOFUS_REFERENCE_COLORS) -> str:
    best_hex = references[0]
    best_delta = float("inf")
    for ref in references:
        delta = delta_e_2000(lab, hex_to_lab(ref))
        if delta < best_delta:
            best_delta = delta
            best_hex = ref
    return best_hex


def snap_to_dofus_palette(labs: Iterable[Lab]) -> DofusPalette:
    """
    Map colors (most dominant first) to the nearest reference dyes.

    Missing secondary/tertiary entries repeat the previous one; an empty
    input snaps the neutral fallback color.
    """
    snapped = [nearest_reference(lab) for lab in list(labs)[:3]]
    if not snapped:
        snapped = [nearest_reference(hex_to_lab(FALLBACK_COLOR))]
    while len(snapped) < 3:
        snapped.append(snapped[-1])
    return DofusPalette(*snapped)


def palette_from_hex(colors: Iterable[str]) -> DofusPalette:
    """Build a palette from user-chosen colors, ignoring invalid entries."""
    valid = [c for c in (normalize_hex(v) for v in colors) if c]
    if not valid:
        valid = [FALLBACK_COLOR]
    while len(valid) < 3:
        valid.append(valid[-1])
    return DofusPalette(*valid[:3])


def extract_palette(image: np.ndarray,
                    mask: Optional[np.ndarray] = None,
                    k: int = 4,
                    sample_stride: int = 4,
                    min_pixels: int = 1) -> Optional[DofusPalette]:
    """
    Extract a snapped palette from the opaque foreground of an RGBA image.

    Returns None when fewer than ``min_pixels`` foreground samples exist,
    letting the caller fall back to another palette.
    """
    sampled = image[::sample_stride, ::sample_stride]
    keep = sampled[:, :, 3] >= 64
    if mask is not None:
        keep &= mask[::sample_stride, ::sample_stride] > 0

    pixels = sampled[keep][:, :3]
    if len(pixels) < min_pixels:
        return None

    dominant = kmeans_dominant_colors(pixels, k=k)
    # Padding repeats the last color; only populated clusters feed the palette
    labs = [rgb_to_lab(*d.rgb) for d in dominant if d.weight > 0]
    return snap_to_dofus_palette(labs)


def average_palette_delta(candidate_palette: Sequence[str],
                          target: DofusPalette,
                          penalty: float = MAX_DELTA_E) -> float:
    """
    Mean over candidate colors of the smallest deltaE to any target color.

    Candidates without a usable palette get ``penalty``.
    """
    targets = [hex_to_lab(c) for c in target.colors()]
    deltas = []
    for value in candidate_palette or []:
        if normalize_hex(value) is None:
            continue
        lab = hex_to_lab(value)
        deltas.append(min(delta_e_2000(lab, t) for t in targets))
    if not deltas:
        return penalty
    return float(sum(deltas) / len(deltas))

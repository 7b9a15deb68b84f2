"""
look_suggest — Per-slot cosmetic item suggestion from character images.

For each equipment slot, either confirms a catalog item structurally
(item mode) or falls back to ranking items by perceptual palette
proximity (color mode), then reranks with set synergy and hints.

Modules:
    engine          Main SuggestionEngine class
    preprocessing   Input decoding, canvas normalization, slot ROIs
    features        Embeddings, edge / orientation / silhouette metrics
    colors          Lab conversion, CIEDE2000, k-means palettes
    index           Per-slot FAISS item index with query cache
    index_builder   Batch index construction from a catalog snapshot
    item_mode       Structural item confirmation
    color_mode      Palette-based fallback ranking
    rerank          Set rules, dedup, verified-first capping
    scoring         Score formulas and ranking
    catalog         Catalog entries and default catalog
    templates       Candidate reference patches
    config          Thresholds, weights and environment overrides
    models          Shared data model
"""

__version__ = "1.0.0"

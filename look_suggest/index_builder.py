"""
Batch item index construction from a catalog snapshot.

Reads a catalog JSON file (a flat list of entries with a ``slot`` field, or
a mapping of slot → entries), embeds every item and writes the index file
that ItemIndex loads on startup:
    - items with an ``embedding`` of the right length keep it
    - items with a readable local ``thumbnail`` are embedded from the image
    - everything else gets a deterministic text embedding of its label

Slots outside the known slot list are skipped with a warning.
"""

import logging
from typing import Optional

from .catalog import load_catalog
from .config import KNOWN_SLOTS, SuggestionConfig
from .features import FeatureExtractor
from .index import ItemIndex

logger = logging.getLogger(__name__)


def build_index_from_file(catalog_path: str,
                          config: Optional[SuggestionConfig] = None,
                          output_path: Optional[str] = None,
                          extractor: Optional[FeatureExtractor] = None) -> dict:
    """
    Build and persist the item index from a catalog snapshot.

    Args:
        catalog_path: Catalog JSON file.
        config: Pipeline configuration. Defaults to SuggestionConfig.from_env().
        output_path: Where to write the index. Defaults to config.index_path.
        extractor: Feature extractor used for thumbnail embeddings.

    Returns:
        Dict with 'success', 'processed' (items per slot), 'vectors',
        'dimensions', 'skipped_slots' and 'index_path'; on failure
        'success' is False and 'error' explains why.
    """
    config = config or SuggestionConfig.from_env()

    try:
        catalog = load_catalog(catalog_path)
    except (OSError, ValueError) as e:
        logger.error(f"Could not read catalog {catalog_path}: {e}")
        return {"success": False, "error": str(e)}

    skipped = sorted(slot for slot in catalog if slot not in KNOWN_SLOTS)
    for slot in skipped:
        logger.warning(f"Skipping unknown slot '{slot}' "
                       f"({len(catalog[slot])} items)")
    catalog = {slot: items for slot, items in catalog.items()
               if slot in KNOWN_SLOTS}

    if not any(catalog.values()):
        return {"success": False, "error": "No valid catalog entries",
                "skipped_slots": skipped}

    logger.info(f"Building item index from {catalog_path}: "
                f"{sum(len(v) for v in catalog.values())} items")

    index = ItemIndex(config, extractor=extractor, index_path=output_path)
    index.build(catalog)

    processed = {slot: len(entries) for slot, entries in index.items.items()}
    return {
        "success": True,
        "processed": processed,
        "vectors": sum(processed.values()),
        "dimensions": index.dim,
        "skipped_slots": skipped,
        "index_path": index.index_path,
    }

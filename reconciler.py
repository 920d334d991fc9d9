"""
Reconciler: folds source collections into the canonical license mapping.
"""
import logging
from typing import Any, Dict, Iterable, Mapping

from normalization import normalize_key, recency

logger = logging.getLogger(__name__)


def merge(collections: Iterable[Iterable[Any]]) -> Dict[str, Mapping[str, Any]]:
    """
    Merge source collections, given in precedence order, into one mapping
    from normalized key to license record.

    The first record seen for a key is kept until a later one carries a
    strictly newer ``updated`` timestamp. On equal timestamps (or both
    missing) the earlier-processed record stays in place.
    """
    canonical: Dict[str, Mapping[str, Any]] = {}

    for collection in collections:
        for record in collection:
            if not isinstance(record, Mapping) or not record.get("key"):
                continue
            key = normalize_key(record["key"])
            if not key:
                continue

            existing = canonical.get(key)
            if existing is None:
                canonical[key] = record
            elif recency(record) > recency(existing):
                logger.debug(
                    "Keeping newer version of key %s (%s vs %s)",
                    key, record.get("updated"), existing.get("updated"),
                )
                canonical[key] = record

    return canonical

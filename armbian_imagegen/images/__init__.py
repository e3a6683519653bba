"""Base image management module.

This module handles:
- Resolving archive URLs on the Armbian download server
- Downloading and decompressing base images
- Cache management with freshness and locking
- Offline and placeholder fallbacks
"""

from armbian_imagegen.images.fetch import (
    decompress_archive,
    download_file,
    ensure_nonempty,
    get_cache_size,
    prune_cache,
)
from armbian_imagegen.images.resolver import resolve_image_url
from armbian_imagegen.images.service import (
    AcquisitionResult,
    acquire_base_image,
    find_cached_image,
)

__all__ = [
    "AcquisitionResult",
    "acquire_base_image",
    "decompress_archive",
    "download_file",
    "ensure_nonempty",
    "find_cached_image",
    "get_cache_size",
    "prune_cache",
    "resolve_image_url",
]

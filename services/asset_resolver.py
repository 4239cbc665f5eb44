from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

from services.errors import ResolutionError
from services.models import AssetStore, FormatFound, FormatNotFound, FormatResolution, StoredFile

PRODUCT_NAME_DELIMITER = " - "

logger = logging.getLogger(__name__)


def normalize_product_name(raw_name: str) -> str:
    """Drop the marketing text the shop appends after the first ' - '."""
    return (raw_name or "").split(PRODUCT_NAME_DELIMITER, 1)[0].strip()


def extract_variation_value(raw_size: str) -> str:
    # "Size: A4" and "A4" both yield "A4"
    raw = (raw_size or "").strip()
    if ":" in raw:
        return raw.split(":", 1)[1].strip()
    return raw


def _same_name(a: str, b: str) -> bool:
    return a.strip().casefold() == b.strip().casefold()


class AssetResolver:
    """Locates deliverable folders: root -> collection -> product -> format.

    Lookups are cached per instance; call ``for_order()`` to get a resolver
    whose cache lives only as long as one order's processing.
    """

    def __init__(
        self,
        store: AssetStore,
        *,
        root_folder_id: str,
        collections: Sequence[str],
        format_variants: Sequence[str],
        thank_you_folder_id: str = "",
        thank_you_folder_name: str = "",
        match_order_size: bool = False,
    ):
        self.store = store
        self.root_folder_id = root_folder_id
        self.collections = list(collections)
        self.format_variants = list(format_variants)
        self.thank_you_folder_id = thank_you_folder_id
        self.thank_you_folder_name = thank_you_folder_name
        self.match_order_size = match_order_size
        self._subfolders: Dict[str, List[StoredFile]] = {}

    def for_order(self) -> "AssetResolver":
        return AssetResolver(
            self.store,
            root_folder_id=self.root_folder_id,
            collections=self.collections,
            format_variants=self.format_variants,
            thank_you_folder_id=self.thank_you_folder_id,
            thank_you_folder_name=self.thank_you_folder_name,
            match_order_size=self.match_order_size,
        )

    def _list_subfolders(self, parent_id: str) -> List[StoredFile]:
        cached = self._subfolders.get(parent_id)
        if cached is None:
            cached = self.store.list(parent_id, folders_only=True)
            self._subfolders[parent_id] = cached
        return cached

    def find_subfolder(self, parent_id: str, name: str) -> Optional[StoredFile]:
        for folder in self._list_subfolders(parent_id):
            if _same_name(folder.name, name):
                return folder
        return None

    def resolve_product(self, product_name: str) -> Optional[StoredFile]:
        """Search the collections in priority order; first match wins."""
        name = normalize_product_name(product_name)
        if not name:
            return None
        for collection_name in self.collections:
            collection = self.find_subfolder(self.root_folder_id, collection_name)
            if collection is None:
                logger.warning("collection folder missing name=%r root=%s", collection_name, self.root_folder_id)
                continue
            product = self.find_subfolder(collection.id, name)
            if product is not None:
                logger.info("product folder found product=%r collection=%r", name, collection_name)
                return product
        return None

    def format_priority(self, size_token: str = "") -> List[str]:
        variants = list(self.format_variants)
        preferred = extract_variation_value(size_token)
        if self.match_order_size and preferred:
            variants = [preferred] + [v for v in variants if not _same_name(v, preferred)]
        return variants

    def resolve_format(self, product_folder: StoredFile, size_token: str = "") -> FormatResolution:
        """Return the first existing format folder in priority order, not the best one."""
        attempted = self.format_priority(size_token)
        for variant in attempted:
            folder = self.find_subfolder(product_folder.id, variant)
            if folder is not None:
                return FormatFound(folder=folder, variant=variant)
        return FormatNotFound(product=product_folder.name, attempted=tuple(attempted))

    def resolve_thank_you(self) -> StoredFile:
        if not self.thank_you_folder_id:
            raise ResolutionError("Thank-you", "THANK_YOU_FOLDER_ID is not set")
        if not self.thank_you_folder_name:
            return StoredFile(id=self.thank_you_folder_id, name="thank-you", is_folder=True)
        folder = self.find_subfolder(self.thank_you_folder_id, self.thank_you_folder_name)
        if folder is None:
            raise ResolutionError("Thank-you", self.thank_you_folder_name)
        return folder

    def list_files(self, folder: StoredFile) -> List[StoredFile]:
        return self.store.list(folder.id, folders_only=False)

"""
Supabase-backed catalog store.

The three backend calls the bulk upload pipeline makes: existing-SKU
lookup, product batch insert and product image upload. Backend errors are
raised unchanged so the retry controller can classify them.
"""

import time
from pathlib import Path
from typing import Optional
import structlog

from config import settings, get_supabase_client, get_admin_client, DatabaseSession
from models.bulk_upload import NormalizedImage

logger = structlog.get_logger(__name__)


class SupabaseCatalogStore:
    """
    Products table and product-images bucket.

    All methods are synchronous like the Supabase client; the async
    pipeline runs them with asyncio.to_thread.
    """

    def __init__(self, table: Optional[str] = None, bucket: Optional[str] = None):
        self.db = get_supabase_client()
        self.table = table or settings.products_table
        self.bucket = bucket or settings.product_images_bucket

    def lookup_existing_skus(self, skus: list[str], merchant_id: Optional[str] = None) -> dict[str, str]:
        """
        Find which SKUs already exist, in a single query.

        Args:
            skus: SKUs from the sheet
            merchant_id: Scope to one merchant's products

        Returns:
            {sku: existing product name} for SKUs that exist
        """
        if not skus:
            return {}

        query = self.db.table(self.table).select("sku, name").in_("sku", skus)
        if merchant_id:
            query = query.eq("user_id", merchant_id)

        result = query.execute()
        existing = {row["sku"]: row.get("name") or "" for row in (result.data or [])}

        logger.debug("existing_skus_looked_up", requested=len(skus), found=len(existing))
        return existing

    def persist_batch(self, records: list[dict]) -> list[dict]:
        """
        Insert one batch of product records in a single request.

        Returns:
            Inserted rows as returned by the backend
        """
        with DatabaseSession("persist_batch") as client:
            result = client.table(self.table).insert(records).execute()

        logger.info("product_batch_inserted", records=len(records))
        return result.data or []

    def upload_image(self, image: NormalizedImage, merchant_id: str) -> str:
        """
        Upload one product image and return its public URL.

        Path: {merchant_id}/{timestamp}_{image_id}{ext}
        """
        extension = Path(image.file_name).suffix.lower() or ".jpg"
        storage_path = f"{merchant_id}/{int(time.time() * 1000)}_{image.image_id}{extension}"
        client = get_admin_client() or self.db

        logger.debug(
            "uploading_product_image",
            storage_path=storage_path,
            size_bytes=image.size
        )

        bucket = client.storage.from_(self.bucket)
        bucket.upload(
            storage_path,
            image.content,
            file_options={"content-type": image.content_type}
        )
        public_url = bucket.get_public_url(storage_path)

        logger.info("product_image_uploaded", storage_path=storage_path)
        return public_url


_catalog_store: Optional[SupabaseCatalogStore] = None


def get_catalog_store() -> SupabaseCatalogStore:
    """Get or create catalog store instance."""
    global _catalog_store
    if _catalog_store is None:
        _catalog_store = SupabaseCatalogStore()
    return _catalog_store

"""
Blob storage adapter (Supabase Storage).

Uploaded CSVs and image archives are read from the import bucket; processed
images are written to the image bucket. An object that does not exist is an
input error (StorageObjectNotFoundError); every other failure is reported as
StorageUnavailableError so callers can retry the batch later instead of
marking rows as permanently failed.
"""

from typing import Optional
import structlog

from config import get_supabase_client, settings
from exceptions import StorageObjectNotFoundError, StorageUnavailableError

logger = structlog.get_logger(__name__)


def is_missing_object(error: Exception) -> bool:
    """
    True when a storage error reports an absent object.

    Supabase Storage answers 404, or 400 with "Object not found", and the
    client raises with the response body as its first argument.
    """
    body = error.args[0] if error.args and isinstance(error.args[0], dict) else {}
    status = str(getattr(error, "status", None) or body.get("statusCode") or "")
    message = str(body.get("message") or body.get("error") or error).lower()
    return status == "404" or "not found" in message or "not_found" in message


class StorageService:
    """
    Get/put access to blob storage.

    Timeouts come from the shared Supabase client options.
    """

    def __init__(
        self,
        import_bucket: Optional[str] = None,
        image_bucket: Optional[str] = None,
    ):
        self.client = get_supabase_client()
        self.import_bucket = import_bucket or settings.import_bucket
        self.image_bucket = image_bucket or settings.image_bucket

    def download(self, path: str, bucket: Optional[str] = None) -> bytes:
        """
        Download a blob.

        Args:
            path: Object path inside the bucket
            bucket: Bucket name (defaults to the import bucket)

        Returns:
            Object content

        Raises:
            StorageObjectNotFoundError: If the object does not exist
            StorageUnavailableError: If the object cannot be fetched
        """
        bucket = bucket or self.import_bucket
        logger.debug("storage_download_started", bucket=bucket, path=path)

        try:
            data = self.client.storage.from_(bucket).download(path)
        except Exception as e:
            if is_missing_object(e):
                logger.warning("storage_object_missing", bucket=bucket, path=path)
                raise StorageObjectNotFoundError(bucket, path) from e
            logger.error(
                "storage_download_failed",
                bucket=bucket,
                path=path,
                error=str(e),
                error_type=type(e).__name__
            )
            raise StorageUnavailableError(
                f"Failed to download {path}",
                details={"bucket": bucket, "path": path, "error": str(e)}
            ) from e

        logger.info("storage_downloaded", bucket=bucket, path=path, size=len(data))
        return data

    def upload(
        self,
        path: str,
        content: bytes,
        content_type: str,
        bucket: Optional[str] = None,
    ) -> str:
        """
        Upload (or overwrite) a blob and return its public URL.

        Args:
            path: Object path inside the bucket
            content: Bytes to store
            content_type: MIME type
            bucket: Bucket name (defaults to the image bucket)

        Returns:
            Public URL of the stored object

        Raises:
            StorageUnavailableError: If the upload fails
        """
        bucket = bucket or self.image_bucket

        try:
            store = self.client.storage.from_(bucket)
            store.upload(
                path,
                content,
                {"content-type": content_type, "upsert": "true"},
            )
            url = store.get_public_url(path)
        except Exception as e:
            logger.error(
                "storage_upload_failed",
                bucket=bucket,
                path=path,
                error=str(e),
                error_type=type(e).__name__
            )
            raise StorageUnavailableError(
                f"Failed to upload {path}",
                details={"bucket": bucket, "path": path, "error": str(e)}
            ) from e

        logger.info("storage_uploaded", bucket=bucket, path=path, size=len(content))
        return url


def image_storage_path(job_id: str, slug: str, row_index: int) -> str:
    """Storage path of a processed product image."""
    return f"ai-import/{job_id}/{slug}-{row_index}.webp"


# Singleton instance
_storage_service: Optional[StorageService] = None


def get_storage_service() -> StorageService:
    """Get or create StorageService instance."""
    global _storage_service
    if _storage_service is None:
        _storage_service = StorageService()
    return _storage_service

from __future__ import annotations
import asyncio
import io
import structlog
from minio import Minio
from minio.error import S3Error
from chainproof.config import settings
from chainproof.services.ports import BlobStore

log = structlog.get_logger()

def _parse_endpoint(ep: str) -> tuple[str, bool]:
    # Return (host:port, secure)
    secure = ep.startswith("https://")
    host = ep.replace("http://", "").replace("https://", "")
    return host, secure

def image_key(sha256_hash: str, unique: str, ext: str) -> str:
    # Per-upload suffix: a compensating delete must never hit another upload's object
    return f"images/{sha256_hash}/{unique}.{ext}"


async def discard_blob(blob_store: BlobStore, key: str) -> None:
    try:
        await blob_store.delete(key)
    except Exception as e:
        # orphaned objects are harmless; the row is the source of truth
        log.warning("blob_delete_failed", storage_key=key, error=str(e))


class MinioBlobStore:
    """BlobStore backed by a MinIO/S3 bucket. Client calls block, so they run in a thread."""

    def __init__(self, client: Minio, bucket: str):
        self._client = client
        self._bucket = bucket

    @classmethod
    def from_settings(cls) -> "MinioBlobStore":
        host, secure = _parse_endpoint(settings.s3_endpoint)
        client = Minio(host, access_key=settings.s3_access_key, secret_key=settings.s3_secret_key, secure=secure)
        store = cls(client, settings.s3_bucket_uploads)
        store.ensure_bucket()
        return store

    def ensure_bucket(self) -> None:
        try:
            if not self._client.bucket_exists(self._bucket):
                self._client.make_bucket(self._bucket)
        except S3Error as e:
            # concurrent creation by another process
            if e.code not in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists"):
                raise

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        await asyncio.to_thread(
            self._client.put_object, self._bucket, key, io.BytesIO(data), length=len(data), content_type=content_type
        )
        return key

    async def get(self, key: str) -> bytes:
        return await asyncio.to_thread(self._get, key)

    def _get(self, key: str) -> bytes:
        try:
            response = self._client.get_object(self._bucket, key)
        except S3Error as e:
            if e.code == "NoSuchKey":
                raise FileNotFoundError(f"Object not found: {key}") from e
            raise
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._client.remove_object, self._bucket, key)

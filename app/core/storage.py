"""
Report Output Storage

Persists files produced by report exports. `ReportExecution.file_path` holds
the storage key returned by `put`; pruning an execution deletes the key.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class FileStorage(ABC):
    """Blob storage interface."""

    @abstractmethod
    async def put(self, key: str, content: bytes) -> int:
        """Store content under key. Returns the stored size in bytes."""
        pass

    @abstractmethod
    async def read(self, key: str) -> bytes:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass


class LocalFileStorage(FileStorage):
    """Stores files below a root directory on the local filesystem."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.EXPORT_STORAGE_PATH)

    def path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Storage key escapes storage root: {key}")
        return path

    async def put(self, key: str, content: bytes) -> int:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return len(content)

    async def read(self, key: str) -> bytes:
        return self.path_for(key).read_bytes()

    async def delete(self, key: str) -> bool:
        path = self.path_for(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    async def exists(self, key: str) -> bool:
        return self.path_for(key).exists()


class S3FileStorage(FileStorage):
    """Stores files in an S3 bucket. boto3 calls run in the default executor."""

    def __init__(self, bucket: Optional[str] = None):
        import boto3
        from botocore.config import Config

        self.bucket = bucket or settings.S3_BUCKET_NAME
        self._client = boto3.client(
            "s3",
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            region_name=settings.AWS_REGION,
            config=Config(signature_version="s3v4")
        )

    async def _run(self, func, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(**kwargs))

    async def put(self, key: str, content: bytes) -> int:
        await self._run(self._client.put_object, Bucket=self.bucket, Key=key, Body=content)
        return len(content)

    async def read(self, key: str) -> bytes:
        response = await self._run(self._client.get_object, Bucket=self.bucket, Key=key)
        return response["Body"].read()

    async def delete(self, key: str) -> bool:
        if not await self.exists(key):
            return False
        await self._run(self._client.delete_object, Bucket=self.bucket, Key=key)
        return True

    async def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            await self._run(self._client.head_object, Bucket=self.bucket, Key=key)
            return True
        except ClientError:
            return False


_storage: Optional[FileStorage] = None


def get_storage() -> FileStorage:
    """Return the configured storage backend."""
    global _storage
    if _storage is None:
        if settings.STORAGE_TYPE.lower() == "s3":
            _storage = S3FileStorage()
        else:
            _storage = LocalFileStorage()
        logger.info(f"Report storage initialized: {settings.STORAGE_TYPE}")
    return _storage

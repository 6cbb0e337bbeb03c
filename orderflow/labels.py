"""
Label store: shipment labels keyed by shipment id. Local filesystem or S3 (boto3).
boto3 is synchronous, so calls run in a worker thread.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import boto3

from orderflow.errors import NotFound

logger = logging.getLogger(__name__)

_EXTENSIONS = {"application/pdf": "pdf", "image/png": "png", "application/zpl": "zpl"}


def label_key(shipment_id: str, content_type: str) -> str:
    return f"labels/{shipment_id}.{_EXTENSIONS.get(content_type, 'bin')}"


class LabelStore(ABC):
    @abstractmethod
    async def store(self, shipment_id: str, content: bytes, content_type: str) -> str:
        """Persist the label; returns its storage key. Storing again overwrites."""

    @abstractmethod
    async def retrieve(self, key: str) -> bytes: ...


class LocalLabelStore(LabelStore):
    def __init__(self, root: str):
        self.root = Path(root)

    def _write(self, path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(content)
        tmp.replace(path)

    async def store(self, shipment_id, content, content_type):
        key = label_key(shipment_id, content_type)
        await asyncio.to_thread(self._write, self.root / key, content)
        logger.info("Stored label for shipment %s at %s (%d bytes)", shipment_id, key, len(content))
        return key

    async def retrieve(self, key):
        path = self.root / key
        if not path.is_file():
            raise NotFound(f"Label {key} not found")
        return await asyncio.to_thread(path.read_bytes)


class S3LabelStore(LabelStore):
    def __init__(self, bucket: str, region: str, client: Any = None):
        self.bucket = bucket
        self._client = client or boto3.client("s3", region_name=region)

    async def store(self, shipment_id, content, content_type):
        key = label_key(shipment_id, content_type)
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=content,
            ContentType=content_type,
        )
        logger.info("Stored label for shipment %s in s3://%s/%s", shipment_id, self.bucket, key)
        return key

    async def retrieve(self, key):
        def _get() -> bytes:
            try:
                response = self._client.get_object(Bucket=self.bucket, Key=key)
            except self._client.exceptions.NoSuchKey:
                raise NotFound(f"Label {key} not found")
            return response["Body"].read()

        return await asyncio.to_thread(_get)


def build_label_store(settings) -> LabelStore:
    if settings.label_store == "s3":
        if not settings.label_bucket:
            raise ValueError("label_bucket must be set when label_store=s3")
        return S3LabelStore(settings.label_bucket, settings.aws_region)
    return LocalLabelStore(settings.label_dir)

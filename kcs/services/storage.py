"""
Storage service supporting both local file storage and S3.

Generated images, CMYK variants and PDFs are written under deterministic keys
(`print/{order_id}/...`, `story/{order_id}/...`) so a redelivered stage
overwrites its earlier output instead of adding another copy.
"""

import logging
from pathlib import Path

import boto3
import requests
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from kcs.core.config import Settings

logger = logging.getLogger(__name__)


def build_s3_client(settings: Settings):
    s3_config = BotoConfig(signature_version="s3v4", region_name=settings.AWS_REGION)
    if settings.AWS_ACCESS_KEY_ID and settings.AWS_SECRET_ACCESS_KEY:
        return boto3.client(
            "s3",
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            config=s3_config,
        )
    return boto3.client("s3", config=s3_config)


class StorageService:
    """Storage service that supports local files or S3."""

    def __init__(self, settings: Settings, s3_client=None):
        self.settings = settings
        self.use_local = settings.USE_LOCAL_STORAGE
        self.local_path = Path(settings.LOCAL_STORAGE_PATH)
        self.bucket_name = settings.S3_ASSETS_BUCKET
        self.public_base = settings.PUBLIC_FILES_BASE_URL.rstrip("/")
        self.s3_client = s3_client

        if self.use_local:
            self.local_path.mkdir(parents=True, exist_ok=True)
            logger.info(f"Using local storage at {self.local_path.absolute()}")
        elif self.s3_client is None:
            self.s3_client = build_s3_client(settings)

    @property
    def s3_base(self) -> str:
        return f"https://{self.bucket_name}.s3.{self.settings.AWS_REGION}.amazonaws.com"

    def upload_bytes(self, content: bytes, key: str, content_type: str | None = None) -> str:
        """Store `content` under `key` and return its URL."""
        if self.use_local:
            return self._upload_local(content, key)
        return self._upload_s3(content, key, content_type)

    def _upload_local(self, content: bytes, key: str) -> str:
        file_path = self.local_path / key
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_bytes(content)
        logger.debug(f"Saved {len(content)} bytes to {file_path}")
        return f"{self.public_base}/{key}"

    def _upload_s3(self, content: bytes, key: str, content_type: str | None) -> str:
        self.s3_client.put_object(
            Bucket=self.bucket_name,
            Key=key,
            Body=content,
            ContentType=content_type or "application/octet-stream",
        )
        url = f"{self.s3_base}/{key}"
        logger.debug(f"Uploaded {len(content)} bytes to {url}")
        return url

    def key_for_url(self, url: str) -> str | None:
        """Storage key for one of our own URLs, or None for a foreign URL."""
        for base in (self.public_base, self.s3_base):
            if url.startswith(base + "/"):
                return url[len(base) + 1:]
        return None

    def get_file_content(self, key: str) -> bytes:
        """Get file content by key."""
        if self.use_local:
            file_path = self.resolve_local(key)
            if file_path is None or not file_path.is_file():
                raise FileNotFoundError(f"File not found: {key}")
            return file_path.read_bytes()
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            return response["Body"].read()
        except ClientError as e:
            raise FileNotFoundError(f"S3 file not found: {key}") from e
        except BotoCoreError as e:
            raise IOError(f"S3 download failed for {key}: {e}") from e

    def resolve_local(self, key: str) -> Path | None:
        """Absolute path for `key`, or None when it points outside the storage root."""
        root = self.local_path.resolve()
        file_path = (root / key).resolve()
        if not file_path.is_relative_to(root):
            return None
        return file_path

    def download(self, url: str) -> bytes:
        """Fetch a file by URL, reading our own files straight from storage."""
        key = self.key_for_url(url)
        if key is not None:
            return self.get_file_content(key)
        response = requests.get(url, timeout=60)
        response.raise_for_status()
        return response.content

    def file_exists(self, key: str) -> bool:
        if self.use_local:
            file_path = self.resolve_local(key)
            return file_path is not None and file_path.exists()
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError:
            return False


class DeliveryService:
    """
    Uploads finished files into a partner's delivery folder.

    The folder is a prefix inside DELIVERY_BUCKET (or LOCAL_DELIVERY_PATH in
    local mode). Returns the object key, which partners receive as the file id.
    """

    def __init__(self, settings: Settings, s3_client=None):
        self.use_local = settings.USE_LOCAL_STORAGE
        self.local_path = Path(settings.LOCAL_DELIVERY_PATH)
        self.bucket_name = settings.DELIVERY_BUCKET
        self.s3_client = s3_client
        if not self.use_local and self.s3_client is None:
            self.s3_client = build_s3_client(settings)

    def upload(self, folder: str, name: str, content: bytes, content_type: str) -> str:
        key = f"{folder.strip('/')}/{name}"
        if self.use_local:
            file_path = self.local_path / key
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_bytes(content)
            return key
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name, Key=key, Body=content, ContentType=content_type
            )
        except (ClientError, BotoCoreError) as e:
            raise IOError(f"Delivery upload failed for {key}: {e}") from e
        return key

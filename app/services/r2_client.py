import logging
from io import BytesIO
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


class ObjectStorage:
    """Cloudflare R2 (S3 compatible) bucket used for invoice artifacts."""

    def __init__(self, client, bucket: str, public_base: Optional[str] = None):
        self.client = client
        self.bucket = bucket
        self.public_base = public_base.rstrip("/") + "/" if public_base else None

    @classmethod
    def from_settings(cls, settings) -> "ObjectStorage":
        client = boto3.client(
            "s3",
            endpoint_url=f"https://{settings.R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
            aws_access_key_id=settings.R2_ACCESS_KEY_ID,
            aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY,
            region_name="auto",
        )
        return cls(client, settings.R2_BUCKET_NAME, settings.R2_PUBLIC_BASE)

    def put(self, key: str, data: bytes, content_type: str) -> str:
        """
        Upload bytes under key and return the location to persist: the
        public URL when the bucket has a public base, otherwise the key.
        Presigned links expire, so they are only built on read.
        """
        try:
            self.client.upload_fileobj(
                BytesIO(data),
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"R2 upload failed for {key}: {e}")
            raise StorageError(str(e)) from e

        logger.info(f"Uploaded {key} ({len(data)} bytes)")
        if self.public_base:
            return f"{self.public_base}{key}"
        return key

    def to_presigned_url(self, key: str, expires: int = 3600) -> str:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires,
        )

    def resolve_url(self, location: Optional[str]) -> Optional[str]:
        """Turn a stored location into a URL the customer can open right now."""
        if not location or location.startswith(("http://", "https://")):
            return location
        return self.to_presigned_url(location)

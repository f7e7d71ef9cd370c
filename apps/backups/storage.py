"""
Offsite copy of backup artifacts to S3 compatible object storage.

Remote storage is optional. A failed upload never fails the backup run; it
downgrades the run outcome to a warning and the local copy stays
authoritative.
"""

import logging
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .artifacts import BackupArtifact
from .exceptions import StorageError

logger = logging.getLogger(__name__)


class S3Storage:
    """
    S3 storage backend.

    Objects are stored as ``<prefix><tier>/<timestamp>/<filename>`` with the
    STANDARD_IA storage class and AES256 server-side encryption.
    """

    storage_class = "STANDARD_IA"
    server_side_encryption = "AES256"

    def __init__(
        self,
        bucket_name: str,
        prefix: str = "",
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        client=None,
    ):
        self.bucket_name = bucket_name
        self.prefix = prefix
        self.region = region
        self.endpoint_url = endpoint_url

        # Credentials come from the standard AWS chain (env, profile, instance role)
        if client is None:
            try:
                client = boto3.client("s3", region_name=region, endpoint_url=endpoint_url)
            except (BotoCoreError, ValueError) as e:
                raise StorageError(f"Cannot create S3 client for bucket {bucket_name}: {e}") from e
        self.client = client

        logger.info(f"S3Storage initialized with bucket: {self.bucket_name}")

    @classmethod
    def from_config(cls, config) -> "S3Storage":
        return cls(
            bucket_name=config.s3_bucket,
            prefix=config.s3_prefix,
            region=config.s3_region,
            endpoint_url=config.s3_endpoint_url,
        )

    def key_for(self, artifact: BackupArtifact, filename: Optional[str] = None) -> str:
        if artifact.is_pre_restore or artifact.tier is None:
            folder = "pre_restore"
        else:
            folder = artifact.tier.value
        return f"{self.prefix}{folder}/{artifact.id}/{filename or artifact.filename}"

    def upload(self, local_path: Path, remote_path: str) -> bool:
        """
        Upload one file.

        Returns:
            True if upload succeeded, False otherwise
        """
        try:
            with open(local_path, "rb") as file:
                self.client.upload_fileobj(
                    file,
                    self.bucket_name,
                    remote_path,
                    ExtraArgs={
                        "StorageClass": self.storage_class,
                        "ServerSideEncryption": self.server_side_encryption,
                        "Metadata": {"uploaded-from": "dbvault"},
                    },
                )

            logger.info(f"S3Storage: Uploaded {local_path} to s3://{self.bucket_name}/{remote_path}")
            return True

        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3Storage: Failed to upload {local_path} to {remote_path}: {e}")
            return False
        except OSError as e:
            logger.error(f"S3Storage: Cannot read {local_path}: {e}")
            return False

    def upload_artifact(self, artifact: BackupArtifact) -> bool:
        """
        Upload an artifact and, when present, its checksum sidecar.

        The remote copy only counts once the object can be found in the
        bucket. An artifact whose sidecar did not make it is deleted again,
        so the bucket never holds a copy that cannot be checked.
        """
        key = self.key_for(artifact)
        if not self.upload(artifact.path, key):
            return False
        if not self.exists(key):
            logger.error(f"S3Storage: {key} not found in {self.bucket_name} after upload")
            return False

        sidecar = artifact.checksum_path
        if sidecar.is_file() and not self.upload(sidecar, self.key_for(artifact, sidecar.name)):
            self.delete(key)
            return False
        return True

    def exists(self, remote_path: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket_name, Key=remote_path)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            logger.error(f"S3Storage: Error checking existence of {remote_path}: {e}")
            return False

    def delete(self, remote_path: str) -> bool:
        try:
            self.client.delete_object(Bucket=self.bucket_name, Key=remote_path)
            logger.info(f"S3Storage: Deleted {remote_path}")
            return True
        except ClientError as e:
            logger.error(f"S3Storage: Failed to delete {remote_path}: {e}")
            return False


def get_remote_storage(config) -> Optional[S3Storage]:
    """The configured remote backend, or None when remote storage is disabled."""
    if not config.remote_enabled:
        return None
    return S3Storage.from_config(config)

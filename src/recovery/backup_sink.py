"""Destinations for exported copies of backups."""

import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from migrator.config import S3BackupConfig
from migrator.exceptions import BackupError
from utils.logging import get_logger
from utils.retry import RetryConfig, retry_sync


class BackupSink(ABC):
    """Persists retrievable copies of backups."""

    @abstractmethod
    def write(self, blob: bytes, filename: str, metadata: Optional[dict[str, Any]] = None) -> str:
        """Store a blob under a filename.

        Returns:
            Location of the stored copy

        Raises:
            BackupError: If the copy cannot be stored
        """

    @abstractmethod
    def read(self, filename: str) -> Optional[bytes]:
        """Return a previously stored blob, or None if it does not exist."""


class LocalFileSink(BackupSink):
    """Writes backup files into a local directory with a ``.meta.json`` side-car."""

    def __init__(
        self,
        directory: Path,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize local sink.

        Args:
            directory: Directory receiving backup files (created if missing)
            logger: Optional logger instance
        """
        self.directory = Path(directory)
        self.logger = logger or get_logger("backup_sink")
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, filename: str) -> Path:
        safe_name = filename.replace("/", "_").replace("\\", "_")
        return self.directory / safe_name

    def write(self, blob: bytes, filename: str, metadata: Optional[dict[str, Any]] = None) -> str:
        path = self._path(filename)
        try:
            path.write_bytes(blob)
            meta_path = path.with_suffix(path.suffix + ".meta.json")
            with open(meta_path, "w", encoding="utf-8") as f:
                json.dump(
                    {
                        "filename": filename,
                        "saved_at": datetime.now(timezone.utc).isoformat(),
                        "file_size": len(blob),
                        "metadata": metadata or {},
                    },
                    f,
                    indent=2,
                )
        except OSError as e:
            raise BackupError(
                f"Failed to write backup file: {e}",
                context={"path": str(path)},
            ) from e

        self.logger.info("Backup file written", path=str(path), file_size=len(blob))
        return str(path)

    def read(self, filename: str) -> Optional[bytes]:
        path = self._path(filename)
        if not path.exists():
            return None
        try:
            return path.read_bytes()
        except OSError as e:
            raise BackupError(
                f"Failed to read backup file: {e}",
                context={"path": str(path)},
            ) from e

    def list_files(self) -> list[dict[str, Any]]:
        """List stored backup files with their side-car metadata."""
        files: list[dict[str, Any]] = []
        for path in sorted(self.directory.glob("*")):
            if path.is_dir() or path.name.endswith(".meta.json"):
                continue
            meta_path = path.with_suffix(path.suffix + ".meta.json")
            meta: dict[str, Any] = {}
            if meta_path.exists():
                try:
                    meta = json.loads(meta_path.read_text(encoding="utf-8"))
                except (OSError, json.JSONDecodeError) as e:
                    self.logger.warning(
                        "Unreadable backup metadata", path=str(meta_path), error=str(e)
                    )
            files.append({"path": str(path), "file_size": path.stat().st_size, **meta})
        return files


class S3BackupSink(BackupSink):
    """Uploads backup files to S3 or an S3-compatible store."""

    def __init__(
        self,
        config: S3BackupConfig,
        client: Optional[Any] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize S3 sink.

        Args:
            config: Bucket, prefix, region and optional endpoint
            client: Optional pre-built boto3 S3 client
            logger: Optional logger instance
        """
        self.config = config
        self.logger = logger or get_logger("backup_sink")
        self._client = client
        self.retry_config = RetryConfig(
            max_attempts=3,
            initial_delay=1.0,
            max_delay=10.0,
            retryable_exceptions=(ClientError, BotoCoreError),
        )

    @property
    def client(self) -> Any:
        """Get or create the boto3 client (default credential chain)."""
        if self._client is None:
            kwargs: dict[str, Any] = {"region_name": self.config.region}
            if self.config.endpoint:
                kwargs["endpoint_url"] = self.config.endpoint
            self._client = boto3.session.Session().client("s3", **kwargs)
        return self._client

    def _key(self, filename: str) -> str:
        return f"{self.config.prefix}{filename}"

    def write(self, blob: bytes, filename: str, metadata: Optional[dict[str, Any]] = None) -> str:
        key = self._key(filename)
        s3_metadata = {str(k): str(v) for k, v in (metadata or {}).items() if v is not None}
        try:
            retry_sync(
                self.client.put_object,
                Bucket=self.config.bucket,
                Key=key,
                Body=blob,
                ContentType="application/json",
                Metadata=s3_metadata,
                config=self.retry_config,
                logger=self.logger,
            )
        except (ClientError, BotoCoreError) as e:
            raise BackupError(
                f"Failed to upload backup: {e}",
                context={"bucket": self.config.bucket, "key": key},
            ) from e

        location = f"s3://{self.config.bucket}/{key}"
        self.logger.info("Backup uploaded", location=location, file_size=len(blob))
        return location

    def read(self, filename: str) -> Optional[bytes]:
        key = self._key(filename)
        try:
            response = self.client.get_object(Bucket=self.config.bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise BackupError(
                f"Failed to download backup: {e}",
                context={"bucket": self.config.bucket, "key": key},
            ) from e
        except BotoCoreError as e:
            raise BackupError(
                f"Failed to download backup: {e}",
                context={"bucket": self.config.bucket, "key": key},
            ) from e

"""Compression of backup payloads."""

import base64
import binascii
import gzip
import json
from typing import Any, Optional

import structlog

from migrator.exceptions import BackupError
from utils.checksum import canonical_json
from utils.logging import get_logger


class PayloadCompressor:
    """Gzips JSON documents into base64 text that fits a string key-value store."""

    def __init__(
        self,
        compression_level: int = 6,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize compressor.

        Args:
            compression_level: Gzip compression level (1-9, default: 6)
            logger: Optional logger instance
        """
        if not 1 <= compression_level <= 9:
            raise ValueError(f"Compression level must be between 1 and 9, got {compression_level}")

        self.compression_level = compression_level
        self.logger = logger or get_logger("compressor")

    def compress_document(self, document: Any) -> str:
        """Compress a document.

        Args:
            document: JSON-serializable structure

        Returns:
            Base64 text of the gzipped canonical JSON

        Raises:
            BackupError: If the document cannot be serialized or compressed
        """
        try:
            raw = canonical_json(document).encode("utf-8")
            compressed = gzip.compress(raw, compresslevel=self.compression_level)
        except (TypeError, ValueError, OSError) as e:
            raise BackupError(f"Compression failed: {e}") from e

        self.logger.debug(
            "Payload compressed",
            uncompressed_size=len(raw),
            compressed_size=len(compressed),
            level=self.compression_level,
        )
        return base64.b64encode(compressed).decode("ascii")

    def decompress_document(self, payload: str) -> Any:
        """Reverse :meth:`compress_document`.

        Raises:
            BackupError: If the payload is not valid compressed JSON
        """
        try:
            raw = gzip.decompress(base64.b64decode(payload, validate=True))
            return json.loads(raw.decode("utf-8"))
        except (binascii.Error, OSError, EOFError, ValueError, TypeError) as e:
            raise BackupError(f"Decompression failed: {e}") from e

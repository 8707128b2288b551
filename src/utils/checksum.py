"""Checksum utilities for backup integrity verification."""

import hashlib
import json
from typing import Any, Optional

import structlog

from utils.logging import get_logger


def canonical_json(data: Any) -> str:
    """Serialize data deterministically (sorted keys, compact separators).

    Args:
        data: JSON-serializable structure

    Returns:
        Canonical JSON string
    """
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


class ChecksumCalculator:
    """Calculates and verifies SHA-256 checksums of structured documents."""

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        """Initialize checksum calculator.

        Args:
            logger: Optional logger instance
        """
        self.logger = logger or get_logger("checksum")

    def calculate_sha256(self, data: bytes) -> str:
        """Calculate SHA-256 checksum of raw bytes.

        Args:
            data: Data to checksum

        Returns:
            Hexadecimal SHA-256 checksum (64 characters)
        """
        return hashlib.sha256(data).hexdigest()

    def calculate_document(self, document: Any) -> str:
        """Calculate the checksum of a document in its canonical JSON form.

        Two documents with the same content produce the same checksum regardless
        of key order.

        Args:
            document: JSON-serializable structure

        Returns:
            Hexadecimal SHA-256 checksum
        """
        payload = canonical_json(document).encode("utf-8")
        checksum = self.calculate_sha256(payload)

        self.logger.debug(
            "Document checksum calculated",
            checksum=checksum,
            data_size=len(payload),
        )
        return checksum

    def verify_document(self, document: Any, expected_checksum: str) -> bool:
        """Verify a document matches an expected checksum.

        Args:
            document: Document to verify
            expected_checksum: Expected SHA-256 checksum (hexadecimal)

        Returns:
            True if checksum matches, False otherwise
        """
        actual_checksum = self.calculate_document(document)

        if actual_checksum != expected_checksum.lower():
            self.logger.error(
                "Checksum verification failed",
                expected=expected_checksum,
                actual=actual_checksum,
            )
            return False

        return True

"""
Event processor for fastchain notifications.

This module turns raw subscription notifications into the canonical model
types, keeping shape handling out of the forwarding and tracking logic.
Malformed notifications are logged and skipped, never raised.
"""

import logging
from typing import Any

from .errors import ProofDecodeError
from .models import BlockHeader, FinalityProof
from .utils.scale_decoder import ScaleDecoder

logger = logging.getLogger(__name__)


class EventProcessor:
    """Decodes fastchain notifications for the relay session."""

    def __init__(self, block_number_bytes: int = 8) -> None:
        """Initialize the event processor.

        Args:
            block_number_bytes: Width of the fastchain block number in
                justification commits (the fastchain uses u64)
        """
        self.block_number_bytes = block_number_bytes
        self.justifications_seen = 0
        self.headers_seen = 0
        self.set_id_changes_seen = 0
        self.invalid = 0

    def process_justification(self, notification: Any) -> FinalityProof | None:
        """
        Decode a justification stream notification.

        Args:
            notification: Notification as delivered by the subscription

        Returns:
            FinalityProof if decodable, None if skipped
        """
        self.justifications_seen += 1
        raw = ScaleDecoder.extract_payload(notification)
        if raw is None:
            self.invalid += 1
            logger.warning(
                f"Could not extract justification bytes: "
                f"{ScaleDecoder.describe_notification(notification)}"
            )
            return None
        return self._decode(raw, notification)

    def process_finality_proof(self, encoded: Any) -> FinalityProof | None:
        """
        Decode a ``grandpa_proveFinality`` result.

        Args:
            encoded: Encoded finality proof, None when the node has no proof

        Returns:
            FinalityProof if the node returned a decodable proof, None otherwise
        """
        raw = ScaleDecoder.extract_payload(encoded)
        if raw is None:
            return None
        try:
            justification = ScaleDecoder.decode_finality_proof(raw)
        except ProofDecodeError as e:
            self.invalid += 1
            logger.warning(f"Failed to decode finality proof: {e}")
            return None
        return self._decode(justification, encoded)

    def process_header(self, notification: Any) -> BlockHeader | None:
        """Decode a finalized head notification."""
        self.headers_seen += 1
        try:
            return ScaleDecoder.decode_header(notification)
        except (ProofDecodeError, ValueError) as e:
            self.invalid += 1
            logger.warning(f"Skipping malformed header notification: {e}")
            return None

    def process_set_id(self, notification: Any) -> int | None:
        """
        Decode a ``Grandpa.CurrentSetId`` change notification.

        Returns:
            The new set id, or None if the notification carried no integer
        """
        self.set_id_changes_seen += 1
        match notification:
            case bool():
                pass
            case int() as set_id:
                return set_id
            case str() as text if text.isdigit():
                return int(text)
            case {"set_id": int() as set_id}:
                return set_id
        self.invalid += 1
        logger.warning(
            f"Skipping malformed set id notification: "
            f"{ScaleDecoder.describe_notification(notification)}"
        )
        return None

    def _decode(self, raw: bytes, notification: Any) -> FinalityProof | None:
        try:
            return ScaleDecoder.decode_justification(raw, self.block_number_bytes)
        except ProofDecodeError as e:
            self.invalid += 1
            logger.warning(
                f"Failed to decode justification: {e} "
                f"(notification: {ScaleDecoder.describe_notification(notification)})"
            )
            return None

    def get_stats(self) -> dict[str, int]:
        """Get decoding counters for the status log."""
        return {
            'justifications': self.justifications_seen,
            'headers': self.headers_seen,
            'set_id_changes': self.set_id_changes_seen,
            'invalid': self.invalid,
        }

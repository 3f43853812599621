"""
SCALE decoding utilities for the spin relayer.

This is the single place that knows which shapes a node may send for a
notification or query result. Everything past this module works with the
canonical types from ``spin_relayer.models``.
"""

import logging
from typing import Any

from hexbytes import HexBytes
from scalecodec.base import RuntimeConfigurationObject, ScaleBytes
from scalecodec.exceptions import RemainingScaleBytesNotEmptyException
from scalecodec.type_registry import load_type_registry_preset

from ..errors import ProofDecodeError
from ..models import (
    AuthorityEntry,
    AuthoritySetSnapshot,
    BlockHeader,
    FinalityProof,
    SubmissionStatus,
    SubmissionStatusKind,
    normalize_hex,
)

logger = logging.getLogger(__name__)

BLOCK_NUMBER_TYPES = {4: "u32", 8: "u64"}

AUTHORITY_ID_BYTES = 32


class ScaleDecoder:
    """Decoders for the SCALE payloads and JSON shapes the relayer consumes."""

    _runtime_config: RuntimeConfigurationObject | None = None

    @classmethod
    def runtime_config(cls) -> RuntimeConfigurationObject:
        """Shared scalecodec runtime configuration with the core type registry."""
        if cls._runtime_config is None:
            config = RuntimeConfigurationObject()
            config.update_type_registry(load_type_registry_preset("core"))
            cls._runtime_config = config
        return cls._runtime_config

    @staticmethod
    def to_bytes_safe(value: HexBytes | bytes | bytearray | str) -> bytes:
        """
        Convert HexBytes, bytes or a hex string to bytes.

        Args:
            value: Value to convert

        Returns:
            Bytes representation
        """
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        return bytes(HexBytes(value))

    @classmethod
    def _read(cls, type_string: str, data: ScaleBytes) -> Any:
        """Decode one value from ``data``, advancing its offset."""
        obj = cls.runtime_config().create_scale_object(type_string, data=data)
        return obj.decode(check_remaining=False)

    @staticmethod
    def extract_payload(notification: Any) -> bytes | None:
        """
        Pull the encoded justification out of a notification.

        Nodes deliver either the bare hex string, raw bytes, a
        ``(something, payload)`` pair or a mapping with a
        ``justification`` field.

        Args:
            notification: Subscription notification as delivered

        Returns:
            Justification bytes, or None if the shape is not recognized
        """
        match notification:
            case None:
                return None
            case bytes() | bytearray() | HexBytes():
                return bytes(notification) or None
            case str() as text:
                try:
                    return bytes(HexBytes(text)) or None
                except ValueError:
                    return None
            case {"justification": nested}:
                return ScaleDecoder.extract_payload(nested)
            case [_, payload] if payload is not None:
                return ScaleDecoder.extract_payload(payload)
            case [payload]:
                return ScaleDecoder.extract_payload(payload)
            case _:
                return None

    @classmethod
    def decode_justification(cls, raw: bytes, block_number_bytes: int = 8) -> FinalityProof:
        """
        Decode the commit target of a GRANDPA justification.

        Layout: ``round: u64``, then the commit's ``target_hash: H256`` and
        ``target_number``, whose width depends on the chain's block number type.

        Args:
            raw: SCALE-encoded justification
            block_number_bytes: Width of the chain's block number (4 or 8)

        Returns:
            FinalityProof carrying the untouched justification bytes

        Raises:
            ProofDecodeError: If the bytes are too short or malformed
        """
        number_type = BLOCK_NUMBER_TYPES.get(block_number_bytes)
        if number_type is None:
            raise ValueError(f"Unsupported block number width: {block_number_bytes}")

        header_len = 8 + 32 + block_number_bytes
        if len(raw) < header_len:
            raise ProofDecodeError(
                f"Justification too short: {len(raw)} bytes, need at least {header_len}"
            )

        data = ScaleBytes(bytearray(raw))
        try:
            cls._read("u64", data)  # round
            target_hash = cls._read("H256", data)
            target_number = cls._read(number_type, data)
        except (ValueError, RemainingScaleBytesNotEmptyException) as e:
            raise ProofDecodeError(f"Malformed justification: {e}") from e

        return FinalityProof(
            target_number=int(target_number),
            target_hash=normalize_hex(target_hash),
            raw=bytes(raw),
        )

    @classmethod
    def decode_finality_proof(cls, raw: bytes) -> bytes:
        """
        Extract the justification from an encoded ``grandpa_proveFinality`` result.

        Layout: ``block: H256``, ``justification: Vec<u8>``, then the unknown
        headers, which the relayer does not need.

        Args:
            raw: SCALE-encoded finality proof

        Returns:
            The embedded justification bytes

        Raises:
            ProofDecodeError: If the bytes are malformed
        """
        data = ScaleBytes(bytearray(raw))
        try:
            cls._read("H256", data)
            length = cls._read("Compact<u32>", data)
        except (ValueError, RemainingScaleBytesNotEmptyException) as e:
            raise ProofDecodeError(f"Malformed finality proof: {e}") from e

        start = data.offset
        justification = bytes(raw[start:start + length])
        if len(justification) != length:
            raise ProofDecodeError(
                f"Finality proof truncated: expected {length} justification bytes, "
                f"got {len(justification)}"
            )
        return justification

    @classmethod
    def decode_authority_list(cls, value: Any) -> list[AuthorityEntry]:
        """
        Decode a GRANDPA authority list.

        Accepts either the SCALE encoding of ``Vec<(AuthorityId, u64)>`` or an
        already decoded list whose items are ``(id, weight)`` pairs or
        mappings with id and weight fields.

        Raises:
            ProofDecodeError: If an entry has an unrecognized shape
        """
        if isinstance(value, (bytes, bytearray)):
            return cls._decode_authority_list_bytes(bytes(value))

        entries = []
        for item in value or []:
            match item:
                case [authority_id, weight]:
                    entries.append(AuthorityEntry(authority_id, weight))
                case {"id": authority_id, "weight": weight}:
                    entries.append(AuthorityEntry(authority_id, weight))
                case {"authority_id": authority_id, "weight": weight}:
                    entries.append(AuthorityEntry(authority_id, weight))
                case _:
                    raise ProofDecodeError(f"Unrecognized authority entry: {item!r}")
        return entries

    @classmethod
    def _decode_authority_list_bytes(cls, raw: bytes) -> list[AuthorityEntry]:
        data = ScaleBytes(bytearray(raw))
        try:
            count = cls._read("Compact<u32>", data)
            entries = []
            for _ in range(count):
                authority_id = cls._read("H256", data)
                weight = cls._read("u64", data)
                entries.append(AuthorityEntry(authority_id, weight))
        except (ValueError, RemainingScaleBytesNotEmptyException) as e:
            raise ProofDecodeError(f"Malformed authority list: {e}") from e
        return entries

    @classmethod
    def decode_authority_set_record(cls, value: Any) -> AuthoritySetSnapshot | None:
        """
        Decode the parachain's stored copy of the fastchain authority set.

        Args:
            value: Storage value, None when nothing was stored yet

        Returns:
            AuthoritySetSnapshot, or None if the record is empty
        """
        match value:
            case None:
                return None
            case {"set_id": set_id, "authorities": authorities}:
                pass
            case {"setId": set_id, "authorities": authorities}:
                pass
            case [set_id, authorities]:
                pass
            case _:
                raise ProofDecodeError(f"Unrecognized authority set record: {value!r}")
        return AuthoritySetSnapshot(int(set_id), tuple(cls.decode_authority_list(authorities)))

    @staticmethod
    def decode_header(value: Any, block_hash: str | None = None) -> BlockHeader:
        """
        Decode a block header from an RPC result or head notification.

        Block numbers arrive as hex strings from raw RPC and as ints from
        decoded objects; both are accepted.

        Args:
            value: Header mapping
            block_hash: Hash of the block, when known to the caller

        Returns:
            BlockHeader with number, parent hash and optional hash

        Raises:
            ProofDecodeError: If the header lacks a number or parent hash
        """
        match value:
            case {"number": number, "parentHash": parent_hash}:
                pass
            case {"number": number, "parent_hash": parent_hash}:
                pass
            case {"header": header}:
                return ScaleDecoder.decode_header(header, block_hash)
            case _:
                raise ProofDecodeError(f"Unrecognized header: {value!r}")

        if isinstance(number, str):
            number = int(number, 16) if number.startswith("0x") else int(number)
        header_hash = block_hash or value.get("hash")
        return BlockHeader(
            number=int(number),
            parent_hash=normalize_hex(parent_hash),
            hash=normalize_hex(header_hash) if header_hash else None,
        )

    @staticmethod
    def decode_extrinsic_status(value: Any) -> SubmissionStatus | None:
        """
        Map an ``author_extrinsicUpdate`` notification to a SubmissionStatus.

        Returns:
            SubmissionStatus, or None for non-terminal states the relayer
            ignores (ready, future, broadcast, retracted)
        """
        match value:
            case {"inBlock": block_hash}:
                return SubmissionStatus.in_block(normalize_hex(block_hash))
            case {"finalized": block_hash}:
                return SubmissionStatus.finalized(normalize_hex(block_hash))
            case {"usurped": _}:
                return SubmissionStatus(SubmissionStatusKind.USURPED)
            case {"finalityTimeout": block_hash}:
                return SubmissionStatus(SubmissionStatusKind.DROPPED, block_hash=normalize_hex(block_hash))
            case "invalid":
                return SubmissionStatus(SubmissionStatusKind.INVALID)
            case "dropped":
                return SubmissionStatus(SubmissionStatusKind.DROPPED)
            case _:
                return None

    @staticmethod
    def describe_notification(notification: Any, limit: int = 120) -> str:
        """Short printable summary of a notification for log messages."""
        match notification:
            case bytes() | bytearray():
                text = normalize_hex(notification)
            case _:
                text = repr(notification)
        if len(text) > limit:
            return f"{text[:limit]}... ({len(text)} chars)"
        return text

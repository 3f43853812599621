"""Unit tests for EventProcessor and the SCALE decoding helpers."""

import pytest

from spin_relayer.errors import ProofDecodeError
from spin_relayer.event_processor import EventProcessor
from spin_relayer.models import SubmissionStatusKind
from spin_relayer.utils.scale_decoder import ScaleDecoder

from conftest import ALICE, BOB, block_hash, encode_justification


def encode_finality_proof(justification: bytes, block: str | None = None) -> bytes:
    """Encode a grandpa_proveFinality result with no unknown headers."""
    assert len(justification) < 64
    block = block or block_hash(1)
    return (
        bytes.fromhex(block[2:])
        + bytes([len(justification) << 2])
        + justification
        + b"\x00"
    )


class TestJustificationDecoding:
    """Test suite for justification decoding."""

    @pytest.mark.parametrize("notification", [
        encode_justification(12),
        "0x" + encode_justification(12).hex(),
        {"justification": "0x" + encode_justification(12).hex()},
        ["grandpa", encode_justification(12)],
        [encode_justification(12)],
    ])
    def test_accepted_notification_shapes(self, notification):
        """Bare bytes, hex strings, mappings and pairs all yield the same proof."""
        proof = EventProcessor().process_justification(notification)

        assert proof.target_number == 12
        assert proof.target_hash == block_hash(12)
        assert proof.raw == encode_justification(12)

    def test_u32_block_numbers(self):
        raw = encode_justification(70_000, block_number_bytes=4)
        proof = EventProcessor(block_number_bytes=4).process_justification(raw)

        assert proof.target_number == 70_000

    def test_u64_block_numbers_beyond_u32(self):
        proof = EventProcessor().process_justification(encode_justification(2**40))
        assert proof.target_number == 2**40

    @pytest.mark.parametrize("notification", [None, 42, {"other": 1}, "not hex", b""])
    def test_unrecognized_shapes_are_skipped(self, notification):
        processor = EventProcessor()

        assert processor.process_justification(notification) is None
        assert processor.get_stats()['invalid'] == 1

    def test_short_payload_is_skipped_and_logged(self, caplog):
        processor = EventProcessor()

        with caplog.at_level("WARNING"):
            assert processor.process_justification(b"\x00" * 20) is None

        assert "Justification too short" in caplog.text
        assert processor.invalid == 1

    def test_decoder_rejects_unsupported_width(self):
        with pytest.raises(ValueError, match="Unsupported block number width"):
            ScaleDecoder.decode_justification(encode_justification(1), block_number_bytes=2)


class TestFinalityProofDecoding:
    """Test suite for grandpa_proveFinality results."""

    def test_extracts_embedded_justification(self):
        justification = encode_justification(12)
        encoded = "0x" + encode_finality_proof(justification).hex()

        proof = EventProcessor().process_finality_proof(encoded)

        assert proof.target_number == 12
        assert proof.raw == justification

    def test_no_proof_available(self):
        processor = EventProcessor()

        assert processor.process_finality_proof(None) is None
        assert processor.invalid == 0

    def test_truncated_proof_is_invalid(self):
        encoded = encode_finality_proof(encode_justification(12))[:-20]
        processor = EventProcessor()

        assert processor.process_finality_proof(encoded) is None
        assert processor.invalid == 1

        with pytest.raises(ProofDecodeError, match="truncated"):
            ScaleDecoder.decode_finality_proof(encoded)


class TestNotificationDecoding:
    """Test suite for headers, set ids and extrinsic statuses."""

    @pytest.mark.parametrize("notification,expected", [
        ({"number": "0x1f", "parentHash": block_hash(30)}, 31),
        ({"number": 31, "parent_hash": block_hash(30)}, 31),
        ({"header": {"number": "31", "parentHash": block_hash(30)}}, 31),
    ])
    def test_header_shapes(self, notification, expected):
        header = EventProcessor().process_header(notification)

        assert header.number == expected
        assert header.parent_hash == block_hash(30)

    def test_malformed_header_is_skipped(self):
        processor = EventProcessor()

        assert processor.process_header({"parentHash": block_hash(1)}) is None
        assert processor.get_stats() == {
            'justifications': 0,
            'headers': 1,
            'set_id_changes': 0,
            'invalid': 1,
        }

    @pytest.mark.parametrize("notification,expected", [
        (7, 7),
        ("7", 7),
        ({"set_id": 7}, 7),
        (True, None),
        ("0x07", None),
        (None, None),
    ])
    def test_set_id_shapes(self, notification, expected):
        assert EventProcessor().process_set_id(notification) == expected

    def test_authority_list_from_scale_bytes(self):
        raw = (
            bytes([2 << 2])
            + bytes.fromhex(BOB[2:]) + (1).to_bytes(8, "little")
            + bytes.fromhex(ALICE[2:]) + (3).to_bytes(8, "little")
        )

        entries = ScaleDecoder.decode_authority_list(raw)

        assert [(e.authority_id, e.weight) for e in entries] == [(BOB, 1), (ALICE, 3)]

    def test_authority_record_shapes(self):
        from_dict = ScaleDecoder.decode_authority_set_record(
            {"set_id": 5, "authorities": [{"id": ALICE, "weight": 1}, (BOB, "2")]}
        )
        from_pair = ScaleDecoder.decode_authority_set_record([5, [[BOB, 2], [ALICE, 1]]])

        assert from_dict == from_pair
        assert ScaleDecoder.decode_authority_set_record(None) is None
        with pytest.raises(ProofDecodeError):
            ScaleDecoder.decode_authority_set_record({"authorities": []})

    @pytest.mark.parametrize("update,kind", [
        ({"inBlock": block_hash(3)}, SubmissionStatusKind.IN_BLOCK),
        ({"finalized": block_hash(3)}, SubmissionStatusKind.FINALIZED),
        ({"usurped": block_hash(9)}, SubmissionStatusKind.USURPED),
        ({"finalityTimeout": block_hash(3)}, SubmissionStatusKind.DROPPED),
        ("invalid", SubmissionStatusKind.INVALID),
        ("dropped", SubmissionStatusKind.DROPPED),
    ])
    def test_extrinsic_status_mapping(self, update, kind):
        assert ScaleDecoder.decode_extrinsic_status(update).kind == kind

    @pytest.mark.parametrize("update", ["ready", "future", {"broadcast": ["peer"]}, {"retracted": "0x01"}])
    def test_non_terminal_statuses_are_ignored(self, update):
        assert ScaleDecoder.decode_extrinsic_status(update) is None

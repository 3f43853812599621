"""
Shared data models for the spin finality relayer.

This module contains the immutable value types passed between the relayer
components: authority entries and snapshots, finality proofs, block headers
and transaction submission statuses.
"""

from dataclasses import dataclass
from enum import Enum

from hexbytes import HexBytes

U64_MAX = 2**64 - 1


def normalize_hex(value: HexBytes | bytes | bytearray | str) -> str:
    """
    Render bytes or a hex string as lowercase ``0x``-prefixed hex.

    Args:
        value: Raw bytes, HexBytes or a hex string (with or without prefix)

    Returns:
        Lowercase hex string with ``0x`` prefix
    """
    text = HexBytes(value).hex()
    return text if text.startswith("0x") else f"0x{text}"


class EventKind(Enum):
    """Subscription streams a chain client can open."""
    NEW_HEADS = "newHeads"
    FINALIZED_HEADS = "finalizedHeads"
    AUTHORITY_SET_ID_CHANGES = "authoritySetIdChanges"
    FINALITY_JUSTIFICATIONS = "finalityJustifications"


@dataclass(frozen=True, slots=True)
class AuthorityEntry:
    """A single GRANDPA voter and its voting weight.

    Attributes:
        authority_id: Lowercase 0x-prefixed hex of the authority public key
        weight: Voting weight (u64)
    """
    authority_id: str
    weight: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "authority_id", normalize_hex(self.authority_id))
        weight = int(self.weight)
        if not 0 <= weight <= U64_MAX:
            raise ValueError(f"Authority weight out of u64 range: {self.weight}")
        object.__setattr__(self, "weight", weight)

    def __str__(self) -> str:
        return f"{self.authority_id[:10]}...:{self.weight}"


@dataclass(frozen=True, slots=True)
class AuthoritySetSnapshot:
    """An authority set as observed on the fastchain at some block.

    Entries are kept in canonical order (authority id ascending), so two
    snapshots compare equal iff their set ids and entries match regardless
    of the order the node returned them in.

    Attributes:
        set_id: GRANDPA set id the entries belong to
        entries: Canonically ordered authority entries
    """
    set_id: int
    entries: tuple[AuthorityEntry, ...]

    def __post_init__(self) -> None:
        set_id = int(self.set_id)
        if not 0 <= set_id <= U64_MAX:
            raise ValueError(f"Set id out of u64 range: {self.set_id}")
        object.__setattr__(self, "set_id", set_id)

        entries = tuple(sorted(self.entries, key=lambda entry: entry.authority_id))
        ids = [entry.authority_id for entry in entries]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate authority ids in set {set_id}")
        object.__setattr__(self, "entries", entries)

    def __str__(self) -> str:
        return f"AuthoritySet(set_id={self.set_id}, size={len(self.entries)})"


@dataclass(frozen=True, slots=True)
class FinalityProof:
    """A GRANDPA justification proving finality of a fastchain block.

    Attributes:
        target_number: Number of the block finalized by the proof ("upTo")
        target_hash: Hash of that block
        raw: SCALE-encoded justification, forwarded untouched
    """
    target_number: int
    target_hash: str
    raw: bytes

    def __str__(self) -> str:
        return (
            f"FinalityProof(upTo={self.target_number}, "
            f"hash={self.target_hash[:10]}..., len={len(self.raw)})"
        )


@dataclass(frozen=True, slots=True)
class BlockHeader:
    """The parts of a block header the relayer needs.

    Attributes:
        number: Block number
        parent_hash: Hash of the parent block
        hash: Block hash, when the source of the header provided it
    """
    number: int
    parent_hash: str
    hash: str | None = None


class SubmissionStatusKind(Enum):
    """Transaction lifecycle states reported by a chain node."""
    IN_BLOCK = "inBlock"
    FINALIZED = "finalized"
    INVALID = "invalid"
    DROPPED = "dropped"
    USURPED = "usurped"
    DISPATCH_FAILURE = "dispatchFailure"


TERMINAL_STATUSES = frozenset({
    SubmissionStatusKind.FINALIZED,
    SubmissionStatusKind.INVALID,
    SubmissionStatusKind.DROPPED,
    SubmissionStatusKind.USURPED,
    SubmissionStatusKind.DISPATCH_FAILURE,
})


@dataclass(frozen=True, slots=True)
class SubmissionStatus:
    """One status update for a watched transaction.

    Attributes:
        kind: Which lifecycle state this update reports
        block_hash: Block the transaction was included in or finalized in
        section: Pallet name of a dispatch error
        name: Error variant name of a dispatch error
    """
    kind: SubmissionStatusKind
    block_hash: str | None = None
    section: str | None = None
    name: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_STATUSES

    @classmethod
    def in_block(cls, block_hash: str) -> "SubmissionStatus":
        return cls(SubmissionStatusKind.IN_BLOCK, block_hash=block_hash)

    @classmethod
    def finalized(cls, block_hash: str) -> "SubmissionStatus":
        return cls(SubmissionStatusKind.FINALIZED, block_hash=block_hash)

    @classmethod
    def dispatch_failure(cls, section: str, name: str, block_hash: str | None = None) -> "SubmissionStatus":
        return cls(
            SubmissionStatusKind.DISPATCH_FAILURE,
            block_hash=block_hash,
            section=section,
            name=name,
        )

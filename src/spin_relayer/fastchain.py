"""
Fastchain view: GRANDPA state, finality streams and anchoring acknowledgments.
"""

import logging

from substrateinterface import Keypair

from .errors import RelayerError
from .event_processor import EventProcessor
from .models import AuthorityEntry, AuthoritySetSnapshot, EventKind, FinalityProof
from .submitter import TransactionSubmitter
from .utils.chain_client import ChainClient, Subscription
from .utils.scale_decoder import ScaleDecoder

logger = logging.getLogger(__name__)

JUSTIFICATIONS_RPC = "grandpa_subscribeJustifications"


class FastchainClient:
    """Fastchain operations used by the relay session."""

    def __init__(
        self,
        client: ChainClient,
        signer: Keypair,
        tx_timeout: float,
        processor: EventProcessor | None = None,
    ):
        """
        Initialize the fastchain view.

        Args:
            client: Connected (or connectable) chain client
            signer: Keypair for anchoring acknowledgments
            tx_timeout: Seconds to wait for an acknowledgment to finalize
            processor: Decoder for finality proofs
        """
        self.client = client
        self.signer = signer
        self.processor = processor or EventProcessor()
        self.submitter = TransactionSubmitter(client, signer, tx_timeout)

    @property
    def name(self) -> str:
        return self.client.name

    @property
    def disconnected(self):
        return self.client.disconnected

    async def connect(self) -> None:
        await self.client.connect()

    async def close(self) -> None:
        await self.client.close()

    async def set_id_at(self, block_hash: str | None = None) -> int:
        """GRANDPA set id at ``block_hash``, or at the tip."""
        value = await self.client.query("Grandpa", "CurrentSetId", block_hash=block_hash)
        return int(value)

    async def authorities_at(self, block_hash: str | None = None) -> list[AuthorityEntry]:
        """GRANDPA authority list at ``block_hash``, or at the tip."""
        value = await self.client.runtime_call(
            "GrandpaApi", "grandpa_authorities", block_hash=block_hash
        )
        return ScaleDecoder.decode_authority_list(value)

    async def authority_set_at(self, block_hash: str | None = None) -> AuthoritySetSnapshot:
        """
        Fetch the set id and authorities valid at one block.

        Both reads are pinned to the same block; without ``block_hash`` the
        current best block is used.

        Args:
            block_hash: Block to read at

        Returns:
            AuthoritySetSnapshot for that block
        """
        if block_hash is None:
            block_hash = await self.client.rpc("chain_getBlockHash", [])
        set_id = await self.set_id_at(block_hash)
        authorities = await self.authorities_at(block_hash)
        return AuthoritySetSnapshot(set_id, tuple(authorities))

    async def parent_hash(self, block_hash: str) -> str:
        header = await self.client.get_header(block_hash)
        return header.parent_hash

    async def supports_justification_stream(self) -> bool:
        """Check whether the node exposes the GRANDPA justification subscription."""
        try:
            methods = await self.client.rpc_methods()
        except RelayerError as e:
            logger.warning(f"Could not list fastchain RPC methods: {e}")
            return False
        return JUSTIFICATIONS_RPC in methods

    async def subscribe_justifications(self) -> Subscription:
        return await self.client.subscribe(EventKind.FINALITY_JUSTIFICATIONS)

    async def subscribe_finalized_heads(self) -> Subscription:
        return await self.client.subscribe(EventKind.FINALIZED_HEADS)

    async def subscribe_set_id_changes(self) -> Subscription:
        return await self.client.subscribe(EventKind.AUTHORITY_SET_ID_CHANGES)

    async def prove_finality(self, block_number: int) -> FinalityProof | None:
        """
        Pull a finality proof for a finalized block.

        Args:
            block_number: Block to prove

        Returns:
            FinalityProof, or None when the node has no proof for the block
        """
        encoded = await self.client.rpc("grandpa_proveFinality", [block_number])
        return self.processor.process_finality_proof(encoded)

    async def note_anchor_verified(self, up_to: int) -> str:
        """
        Acknowledge on the fastchain that the parachain anchored up to a block.

        Returns:
            Hash of the fastchain block the acknowledgment finalized in
        """
        return await self.submitter.submit_and_wait(
            "SpinAnchoring",
            "note_anchor_verified",
            {"up_to": up_to},
            label=f"note_anchor_verified({up_to})",
        )

"""
Parachain view: the mirrored fastchain authority set and proof submission.
"""

import logging

from substrateinterface import Keypair

from .authority_set import format_for_parachain
from .models import AuthoritySetSnapshot, FinalityProof
from .submitter import TransactionSubmitter
from .utils.chain_client import ChainClient
from .utils.scale_decoder import ScaleDecoder

logger = logging.getLogger(__name__)

PALLET = "SpinPolkadot"


class ParachainClient:
    """Parachain operations used by the relay session."""

    def __init__(self, client: ChainClient, signer: Keypair, tx_timeout: float):
        self.client = client
        self.signer = signer
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

    async def current_authority_set(self) -> AuthoritySetSnapshot | None:
        """
        Read the parachain's stored copy of the fastchain authority set.

        Returns:
            AuthoritySetSnapshot, or None if no set was ever stored
        """
        value = await self.client.query(PALLET, "FastchainAuthoritySet")
        return ScaleDecoder.decode_authority_set_record(value)

    async def set_authority_set(self, snapshot: AuthoritySetSnapshot) -> str:
        """
        Overwrite the stored authority set through a sudo call.

        Returns:
            Hash of the parachain block the update finalized in
        """
        return await self.submitter.submit_and_wait(
            PALLET,
            "set_authority_set",
            {
                "set_id": snapshot.set_id,
                "authorities": format_for_parachain(snapshot.entries),
            },
            label=f"set_authority_set({snapshot.set_id})",
            sudo=True,
        )

    async def submit_finality_proof(self, set_id: int, proof: FinalityProof) -> str:
        """
        Submit a justification for verification against ``set_id``.

        Returns:
            Hash of the parachain block the proof finalized in
        """
        return await self.submitter.submit_and_wait(
            PALLET,
            "submit_finality_proof",
            {"expected_set_id": set_id, "justification": proof.raw},
            label=f"submit_finality_proof(upTo={proof.target_number}, setId={set_id})",
        )

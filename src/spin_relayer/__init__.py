"""
Spin finality relayer package.

Forwards GRANDPA finality proofs from the fastchain to the parachain and
keeps the parachain's copy of the fastchain authority set current.
"""

from .config import RelayerConfig
from .models import AuthorityEntry, AuthoritySetSnapshot, FinalityProof
from .session import RelaySession
from .supervisor import SessionSupervisor

__all__ = [
    "RelayerConfig",
    "RelaySession",
    "SessionSupervisor",
    "AuthorityEntry",
    "AuthoritySetSnapshot",
    "FinalityProof",
]
__version__ = "0.1.0"

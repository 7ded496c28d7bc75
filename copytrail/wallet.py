"""
Signer for live execution. Transactions arrive unsigned from PumpPortal or
Jupiter and are signed locally; the key never leaves the process.
"""

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction
import structlog

logger = structlog.get_logger(__name__)

# Phantom-style export (secret + public) or a bare seed
KEYPAIR_LENGTH = 64
SEED_LENGTH = 32


class Wallet:
    """Holds the trading keypair."""

    def __init__(self, keypair: Keypair):
        self.keypair = keypair

    @classmethod
    def from_base58(cls, secret: str) -> 'Wallet':
        """
        Load a keypair from its base58 export.

        Raises:
            ValueError: If the key does not decode to a 32 or 64 byte secret
        """
        try:
            raw = base58.b58decode(secret.strip())
        except ValueError as e:
            raise ValueError(f"Private key is not valid base58: {e}")

        if len(raw) == KEYPAIR_LENGTH:
            keypair = Keypair.from_bytes(raw)
        elif len(raw) == SEED_LENGTH:
            keypair = Keypair.from_seed(raw)
        else:
            raise ValueError(f"Invalid private key length: {len(raw)}")

        wallet = cls(keypair)
        logger.info("wallet_loaded", address=wallet.address)
        return wallet

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    @property
    def address(self) -> str:
        return str(self.pubkey)

    def sign_versioned_transaction(self, transaction: VersionedTransaction) -> VersionedTransaction:
        # Versioned transactions are immutable; rebuild around the same message
        return VersionedTransaction(transaction.message, [self.keypair])

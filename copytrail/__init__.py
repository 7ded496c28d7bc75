"""copytrail - Solana copy-trading bot with on-chain verified execution."""

__version__ = "0.1.0"

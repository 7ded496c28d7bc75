"""
RPC client wrapper for Solana.
Supports Helius/QuickNode with rate limiting and backoff.
"""

import asyncio
import base64
import time
from typing import Optional, Dict, Any, List, Tuple
import aiohttp
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction
import structlog

from .config import Config, BACKOFF_BASE_SECONDS, BACKOFF_MAX_SECONDS, MAX_REQUESTS_PER_SECOND

logger = structlog.get_logger(__name__)


class RPCError(Exception):
    """JSON-RPC level failure (error payload, rate limit, unexpected result)."""


class RateLimiter:
    """Simple rate limiter using token bucket algorithm."""

    def __init__(self, max_per_second: float):
        self.max_per_second = max_per_second
        self.tokens = max_per_second
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Acquire a token, waiting if necessary."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self.last_update
            self.tokens = min(self.max_per_second, self.tokens + elapsed * self.max_per_second)
            self.last_update = now

            if self.tokens < 1:
                wait_time = (1 - self.tokens) / self.max_per_second
                await asyncio.sleep(wait_time)
                self.tokens = 0
            else:
                self.tokens -= 1


class RPCClient:
    """Async RPC client for Solana with rate limiting and backoff."""

    def __init__(self, config: Config):
        self.config = config
        self.rpc_url = config.rpc_url
        self.rate_limiter = RateLimiter(MAX_REQUESTS_PER_SECOND)
        self._session: Optional[aiohttp.ClientSession] = None
        self._backoff_until: float = 0
        self._consecutive_errors = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _wait_for_backoff(self) -> None:
        """Wait if we're in backoff period."""
        now = time.monotonic()
        if now < self._backoff_until:
            wait_time = self._backoff_until - now
            logger.warning("rpc_backoff_waiting", wait_seconds=wait_time)
            await asyncio.sleep(wait_time)

    def _apply_backoff(self) -> None:
        """Apply exponential backoff after an error."""
        self._consecutive_errors += 1
        backoff = min(
            BACKOFF_BASE_SECONDS * (2 ** self._consecutive_errors),
            BACKOFF_MAX_SECONDS
        )
        self._backoff_until = time.monotonic() + backoff
        logger.warning("rpc_backoff_applied", backoff_seconds=backoff)

    def _reset_backoff(self) -> None:
        """Reset backoff after successful request."""
        self._consecutive_errors = 0
        self._backoff_until = 0

    async def _request(self, method: str, params: List[Any]) -> Any:
        """Make a JSON-RPC request."""
        await self._wait_for_backoff()
        await self.rate_limiter.acquire()

        session = await self._get_session()
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params
        }

        try:
            async with session.post(
                self.rpc_url,
                json=payload,
                headers={"Content-Type": "application/json"}
            ) as response:
                if response.status == 429:
                    self._apply_backoff()
                    raise RPCError("Rate limited by RPC")

                response.raise_for_status()
                result = await response.json()

                if "error" in result:
                    error = result["error"]
                    raise RPCError(f"RPC error: {error.get('message', error)}")

                self._reset_backoff()
                return result.get("result")

        except aiohttp.ClientError as e:
            self._apply_backoff()
            logger.error("rpc_request_failed", method=method, error=str(e))
            raise

    async def get_balance(self, pubkey: Pubkey) -> int:
        """Get SOL balance in lamports."""
        result = await self._request("getBalance", [str(pubkey)])
        return (result or {}).get("value", 0)

    async def get_account_info(self, pubkey: Pubkey) -> Optional[bytes]:
        """
        Read raw account data.

        Returns:
            The account bytes, or None if the account does not exist
        """
        result = await self._request(
            "getAccountInfo",
            [str(pubkey), {"encoding": "base64", "commitment": "confirmed"}]
        )
        value = (result or {}).get("value")
        if not value:
            return None

        data = value.get("data")
        if isinstance(data, list) and data:
            return base64.b64decode(data[0])
        return None

    async def get_token_balance(self, owner: Pubkey, mint: str) -> Tuple[int, int]:
        """
        Get the owner's balance of a token across its token accounts.

        Returns:
            (amount in base units, decimals)
        """
        result = await self._request(
            "getTokenAccountsByOwner",
            [str(owner), {"mint": mint}, {"encoding": "jsonParsed"}]
        )

        amount = 0
        decimals = 0
        for account in (result or {}).get("value", []):
            info = account.get("account", {}).get("data", {}).get("parsed", {}).get("info", {})
            token_amount = info.get("tokenAmount", {})
            amount += int(token_amount.get("amount", 0))
            decimals = int(token_amount.get("decimals", decimals))

        return amount, decimals

    async def send_transaction(
        self,
        transaction: VersionedTransaction,
        skip_preflight: bool = False,
        max_retries: int = 3
    ) -> str:
        """Send a signed transaction and return signature."""
        tx_base64 = base64.b64encode(bytes(transaction)).decode('utf-8')

        options = {
            "skipPreflight": skip_preflight,
            "preflightCommitment": "confirmed",
            "encoding": "base64",
            "maxRetries": max_retries
        }

        result = await self._request("sendTransaction", [tx_base64, options])

        if isinstance(result, str):
            return result

        raise RPCError(f"Unexpected sendTransaction result: {result}")

    async def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        """Get the status of a single signature, or None if the cluster has not seen it."""
        result = await self._request(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}]
        )
        statuses = (result or {}).get("value", [])
        if statuses and statuses[0]:
            return statuses[0]
        return None

    async def get_transaction(self, signature: str) -> Optional[Dict]:
        """Get a transaction by signature."""
        return await self._request(
            "getTransaction",
            [signature, {
                "encoding": "jsonParsed",
                "commitment": "confirmed",
                "maxSupportedTransactionVersion": 0
            }]
        )

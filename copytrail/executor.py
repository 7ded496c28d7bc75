"""
Execution Client for copytrail.

Requests an unsigned transaction (PumpPortal on the bonding curve, Jupiter once
graduated), signs it locally, submits it, polls for confirmation and then
proves from the transaction record that tokens and SOL actually moved.
An RPC "sent" or an HTTP 200 is never reported as success on its own.
"""

import asyncio
import base64
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, Tuple, Union
import aiohttp
from solders.transaction import VersionedTransaction
import structlog

from .config import Config, NATIVE_SOL_MINT, LAMPORTS_PER_SOL
from .models import ExecutionResult, TradeAction, Venue
from .rpc import RPCClient, RPCError
from .wallet import Wallet

logger = structlog.get_logger(__name__)

SELL_ALL = "100%"

CONFIRM_POLL_INTERVAL_SECONDS = 1.0
CONFIRM_MAX_ATTEMPTS = 30
SEND_RETRIES = 3
SEND_RETRY_DELAY_SECONDS = 1.0
TX_FETCH_RETRIES = 3

# Notional price used by dry runs (SOL per token)
DRY_RUN_PRICE_SOL = 0.000001

HTTP_TIMEOUT_SECONDS = 30.0


class TransactionBuildError(Exception):
    """The construction endpoint did not return a usable transaction."""


class TransactionBuilder(ABC):
    """Obtains an unsigned, serialized transaction for one venue."""

    venue: Venue

    def __init__(self, config: Config, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT_SECONDS)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if we created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    @abstractmethod
    async def build(
        self,
        action: TradeAction,
        mint: str,
        amount: Union[int, float, str],
        slippage_bps: int,
        priority_fee_sol: float,
        signer: str,
    ) -> bytes:
        """
        Args:
            amount: SOL for buys; token amount, or SELL_ALL, for sells
        """


class PumpPortalBuilder(TransactionBuilder):
    """PumpPortal trade-local: POST the trade, receive raw transaction bytes."""

    venue = Venue.BONDING_CURVE

    async def build(self, action, mint, amount, slippage_bps, priority_fee_sol, signer) -> bytes:
        payload = {
            "publicKey": signer,
            "action": action.value,
            "mint": mint,
            "amount": amount,
            "denominatedInSol": "true" if action == TradeAction.BUY else "false",
            "slippage": slippage_bps / 100,
            "priorityFee": priority_fee_sol,
            "pool": self.venue.value,
        }

        session = await self._get_session()
        async with session.post(self.config.pumpportal_trade_api, json=payload) as resp:
            if resp.status != 200:
                error_text = await resp.text()
                raise TransactionBuildError(f"pumpportal_api_failed ({resp.status}): {error_text[:200]}")
            tx_bytes = await resp.read()

        if not tx_bytes:
            raise TransactionBuildError("pumpportal_api_empty_body")
        return tx_bytes


class JupiterBuilder(TransactionBuilder):
    """Jupiter quote + swap for graduated tokens."""

    venue = Venue.EXCHANGE

    async def build(self, action, mint, amount, slippage_bps, priority_fee_sol, signer) -> bytes:
        if action == TradeAction.BUY:
            input_mint, output_mint = NATIVE_SOL_MINT, mint
        else:
            input_mint, output_mint = mint, NATIVE_SOL_MINT

        session = await self._get_session()

        quote_params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount)),
            "slippageBps": str(slippage_bps),
        }
        async with session.get(self.config.jupiter_quote_api, params=quote_params) as resp:
            if resp.status != 200:
                error_text = await resp.text()
                raise TransactionBuildError(f"quote_failed ({resp.status}): {error_text[:200]}")
            quote = await resp.json()

        if not quote.get("outAmount"):
            raise TransactionBuildError("quote_without_out_amount")

        swap_data = {
            "quoteResponse": quote,
            "userPublicKey": signer,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": int(round(priority_fee_sol * LAMPORTS_PER_SOL)),
        }
        async with session.post(self.config.jupiter_swap_api, json=swap_data) as resp:
            if resp.status != 200:
                error_text = await resp.text()
                raise TransactionBuildError(f"swap_failed ({resp.status}): {error_text[:200]}")
            swap_response = await resp.json()

        swap_tx_b64 = swap_response.get("swapTransaction")
        if not swap_tx_b64:
            raise TransactionBuildError("no_swap_transaction")
        return base64.b64decode(swap_tx_b64)


class ExecutionClient:
    """Buys and sells tokens, reporting only independently verified fills."""

    def __init__(
        self,
        config: Config,
        rpc_client: RPCClient,
        wallet: Optional[Wallet],
        builders: Optional[Dict[Venue, TransactionBuilder]] = None,
    ):
        self.config = config
        self.rpc = rpc_client
        self.wallet = wallet
        self.dry_run = config.dry_run
        self.builders = builders if builders is not None else {
            Venue.BONDING_CURVE: PumpPortalBuilder(config),
            Venue.EXCHANGE: JupiterBuilder(config),
        }

        # Simulated holdings (mint -> tokens) for dry runs
        self.dry_run_holdings: Dict[str, float] = {}

        if not self.dry_run and wallet is None:
            raise ValueError("A wallet is required for live execution")

        logger.info(
            "execution_client_initialized",
            mode="PAPER" if self.dry_run else "LIVE",
            wallet=wallet.address if wallet else None,
            venues=[v.value for v in self.builders]
        )

    async def close(self) -> None:
        for builder in self.builders.values():
            await builder.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def buy(
        self,
        mint: str,
        sol_amount: float,
        slippage_bps: Optional[int] = None,
        priority_fee_sol: Optional[float] = None,
        venue: Venue = Venue.BONDING_CURVE,
    ) -> ExecutionResult:
        """Spend sol_amount SOL on mint."""
        slippage_bps = self.config.slippage_bps if slippage_bps is None else slippage_bps
        priority_fee_sol = self.config.priority_fee_sol if priority_fee_sol is None else priority_fee_sol

        logger.info(
            "buy_request",
            token=mint[:8],
            sol=f"{sol_amount:.4f}",
            slippage=f"{slippage_bps / 100:.2f}%",
            priority_fee=priority_fee_sol,
            venue=venue.value
        )

        if sol_amount <= 0:
            return self._failed(TradeAction.BUY, mint, venue, "invalid_sol_amount")

        if self.dry_run:
            return self._simulate_buy(mint, sol_amount, venue)

        if venue == Venue.EXCHANGE:
            amount: Union[int, float, str] = int(round(sol_amount * LAMPORTS_PER_SOL))
        else:
            amount = sol_amount

        return await self._execute(TradeAction.BUY, mint, amount, slippage_bps, priority_fee_sol, venue)

    async def sell(
        self,
        mint: str,
        amount: Union[float, str] = SELL_ALL,
        slippage_bps: Optional[int] = None,
        priority_fee_sol: Optional[float] = None,
        venue: Venue = Venue.BONDING_CURVE,
        tracked_quantity: Optional[float] = None,
    ) -> ExecutionResult:
        """
        Sell tokens for SOL.

        Args:
            amount: SELL_ALL (default) or an explicit token amount
            tracked_quantity: The position's recorded balance; drives dry-run
                fills and is compared with the verified amount sold
        """
        slippage_bps = self.config.slippage_bps if slippage_bps is None else slippage_bps
        priority_fee_sol = self.config.priority_fee_sol if priority_fee_sol is None else priority_fee_sol

        logger.info(
            "sell_request",
            token=mint[:8],
            amount=amount,
            slippage=f"{slippage_bps / 100:.2f}%",
            venue=venue.value
        )

        if self.dry_run:
            return self._simulate_sell(mint, amount, tracked_quantity, venue)

        if venue == Venue.EXCHANGE:
            try:
                base_units = await self._sell_base_units(mint, amount)
            except (RPCError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                return self._failed(TradeAction.SELL, mint, venue, f"token_balance_unavailable: {e}")
            if base_units <= 0:
                return self._failed(TradeAction.SELL, mint, venue, "no_tokens_to_sell")
            request_amount: Union[int, float, str] = base_units
        else:
            request_amount = amount

        result = await self._execute(
            TradeAction.SELL, mint, request_amount, slippage_bps, priority_fee_sol, venue
        )

        if result.success and tracked_quantity and amount == SELL_ALL:
            drift = result.tokens_sold - tracked_quantity
            if abs(drift) > tracked_quantity * 0.01:
                logger.warning(
                    "sell_quantity_drift",
                    token=mint[:8],
                    tracked=tracked_quantity,
                    sold=result.tokens_sold
                )

        return result

    # ------------------------------------------------------------------
    # Live path
    # ------------------------------------------------------------------

    async def _execute(
        self,
        action: TradeAction,
        mint: str,
        amount: Union[int, float, str],
        slippage_bps: int,
        priority_fee_sol: float,
        venue: Venue,
    ) -> ExecutionResult:
        builder = self.builders.get(venue)
        if builder is None:
            return self._failed(action, mint, venue, f"no_builder_for_venue ({venue.value})")

        # 1) Unsigned transaction
        try:
            tx_bytes = await builder.build(
                action, mint, amount, slippage_bps, priority_fee_sol, self.wallet.address
            )
        except (TransactionBuildError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("transaction_build_failed", action=action.value, token=mint[:8], error=str(e))
            return self._failed(action, mint, venue, str(e))

        # 2) Sign and submit
        try:
            transaction = VersionedTransaction.from_bytes(tx_bytes)
            signed_tx = self.wallet.sign_versioned_transaction(transaction)
        except ValueError as e:
            return self._failed(action, mint, venue, f"invalid_transaction: {e}")

        signature = await self._submit(signed_tx, action, mint)
        if signature is None:
            return self._failed(action, mint, venue, "send_failed")

        logger.info("transaction_sent", action=action.value, token=mint[:8], signature=signature[:16])

        # 3) Confirmation
        status, chain_error = await self._wait_for_confirmation(signature)
        if status == "failed":
            return self._failed(action, mint, venue, f"transaction_failed_on_chain: {chain_error}", signature)

        # 4) Independent verification from the transaction record
        tx_record = await self._fetch_transaction(signature)
        if tx_record is None:
            error = "unconfirmed" if status == "timeout" else "transaction_record_not_found"
            return self._failed(action, mint, venue, error, signature)

        return self._verify(action, mint, venue, signature, tx_record)

    async def _submit(self, signed_tx: VersionedTransaction, action: TradeAction, mint: str) -> Optional[str]:
        """Send with preflight; transient failures are retried a fixed number of times."""
        for attempt in range(SEND_RETRIES):
            try:
                return await self.rpc.send_transaction(signed_tx, skip_preflight=False)
            except (RPCError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(
                    "send_retry",
                    action=action.value,
                    token=mint[:8],
                    attempt=attempt + 1,
                    max_retries=SEND_RETRIES,
                    error=str(e)
                )
                if attempt < SEND_RETRIES - 1:
                    await asyncio.sleep(SEND_RETRY_DELAY_SECONDS)
        return None

    async def _wait_for_confirmation(self, signature: str) -> Tuple[str, Optional[Any]]:
        """
        Poll the signature status.

        Returns:
            ("confirmed", None), ("failed", err) or ("timeout", None)
        """
        for attempt in range(CONFIRM_MAX_ATTEMPTS):
            try:
                status = await self.rpc.get_signature_status(signature)
                if status:
                    if status.get("err"):
                        logger.warning("transaction_failed", signature=signature[:16], error=status["err"])
                        return "failed", status["err"]
                    if status.get("confirmationStatus") in ("confirmed", "finalized"):
                        logger.info("transaction_confirmed", signature=signature[:16], attempts=attempt + 1)
                        return "confirmed", None
            except (RPCError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.debug("confirm_poll_error", signature=signature[:16], error=str(e))

            await asyncio.sleep(CONFIRM_POLL_INTERVAL_SECONDS)

        logger.warning("transaction_timeout", signature=signature[:16])
        return "timeout", None

    async def _fetch_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        for attempt in range(TX_FETCH_RETRIES):
            try:
                tx = await self.rpc.get_transaction(signature)
                if tx:
                    return tx
            except (RPCError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.debug("get_transaction_error", signature=signature[:16], error=str(e))
            if attempt < TX_FETCH_RETRIES - 1:
                await asyncio.sleep(CONFIRM_POLL_INTERVAL_SECONDS)
        return None

    def _verify(
        self,
        action: TradeAction,
        mint: str,
        venue: Venue,
        signature: str,
        tx_record: Dict[str, Any],
    ) -> ExecutionResult:
        """Turn a transaction record into a result; zero movement is a failure."""
        meta = tx_record.get("meta") or {}
        if meta.get("err") is not None:
            return self._failed(action, mint, venue, f"transaction_error: {meta['err']}", signature)

        token_delta, sol_delta = self.balance_deltas(tx_record, mint, self.wallet.address)

        if action == TradeAction.BUY:
            if token_delta <= 0:
                logger.warning("buy_not_verified", token=mint[:8], signature=signature[:16], token_delta=token_delta)
                return self._failed(action, mint, venue, "verification_failed: zero tokens received", signature)
            result = ExecutionResult(
                success=True,
                action=action,
                mint=mint,
                signature=signature,
                venue=venue,
                sol_spent=max(0.0, -sol_delta),
                tokens_received=token_delta,
            )
        else:
            if token_delta >= 0:
                logger.warning("sell_not_verified", token=mint[:8], signature=signature[:16], token_delta=token_delta)
                return self._failed(action, mint, venue, "verification_failed: zero tokens sold", signature)
            if sol_delta <= 0:
                logger.warning("sell_not_verified", token=mint[:8], signature=signature[:16], sol_delta=sol_delta)
                return self._failed(action, mint, venue, "verification_failed: zero SOL received", signature)
            result = ExecutionResult(
                success=True,
                action=action,
                mint=mint,
                signature=signature,
                venue=venue,
                sol_received=sol_delta,
                tokens_sold=-token_delta,
            )

        logger.info(
            "trade_verified",
            action=action.value,
            token=mint[:8],
            signature=signature[:16],
            sol_spent=f"{result.sol_spent:.6f}",
            sol_received=f"{result.sol_received:.6f}",
            tokens_received=result.tokens_received,
            tokens_sold=result.tokens_sold
        )
        return result

    @staticmethod
    def balance_deltas(tx_record: Dict[str, Any], mint: str, owner: str) -> Tuple[float, float]:
        """
        Signer's token and SOL deltas from pre/post balance snapshots.

        Returns:
            (token delta in whole tokens, SOL delta)
        """
        meta = tx_record.get("meta") or {}
        message = (tx_record.get("transaction") or {}).get("message") or {}

        def token_total(balances) -> Tuple[int, int]:
            total = 0
            decimals = 0
            for entry in balances or []:
                if entry.get("mint") != mint or entry.get("owner") != owner:
                    continue
                ui_amount = entry.get("uiTokenAmount") or {}
                total += int(ui_amount.get("amount", 0))
                decimals = int(ui_amount.get("decimals", decimals))
            return total, decimals

        pre_tokens, pre_decimals = token_total(meta.get("preTokenBalances"))
        post_tokens, post_decimals = token_total(meta.get("postTokenBalances"))
        decimals = post_decimals or pre_decimals
        token_delta = (post_tokens - pre_tokens) / 10 ** decimals

        sol_delta = 0.0
        index = _account_index(message, owner)
        pre_balances = meta.get("preBalances") or []
        post_balances = meta.get("postBalances") or []
        if 0 <= index < len(pre_balances) and index < len(post_balances):
            sol_delta = (post_balances[index] - pre_balances[index]) / LAMPORTS_PER_SOL

        return token_delta, sol_delta

    async def _sell_base_units(self, mint: str, amount: Union[float, str]) -> int:
        """Aggregator sells need base units; read the balance we actually hold."""
        balance, decimals = await self.rpc.get_token_balance(self.wallet.pubkey, mint)
        if amount == SELL_ALL:
            return balance
        return min(balance, int(float(amount) * 10 ** decimals))

    # ------------------------------------------------------------------
    # Dry run
    # ------------------------------------------------------------------

    def _simulate_buy(self, mint: str, sol_amount: float, venue: Venue) -> ExecutionResult:
        tokens = sol_amount / DRY_RUN_PRICE_SOL
        self.dry_run_holdings[mint] = self.dry_run_holdings.get(mint, 0.0) + tokens

        logger.info("dry_run_buy", token=mint[:8], sol_spent=f"{sol_amount:.4f}", tokens_received=tokens)

        return ExecutionResult(
            success=True,
            action=TradeAction.BUY,
            mint=mint,
            signature=f"DRY_RUN_BUY_{mint[:8]}",
            venue=venue,
            sol_spent=sol_amount,
            tokens_received=tokens,
            simulated=True,
        )

    def _simulate_sell(
        self,
        mint: str,
        amount: Union[float, str],
        tracked_quantity: Optional[float],
        venue: Venue,
    ) -> ExecutionResult:
        held = self.dry_run_holdings.get(mint, 0.0) or (tracked_quantity or 0.0)
        quantity = held if amount == SELL_ALL else min(float(amount), held or float(amount))
        if quantity <= 0:
            return self._failed(TradeAction.SELL, mint, venue, "no_tokens_to_sell")

        remaining = held - quantity
        if remaining > 0:
            self.dry_run_holdings[mint] = remaining
        else:
            self.dry_run_holdings.pop(mint, None)

        sol_received = quantity * DRY_RUN_PRICE_SOL
        logger.info("dry_run_sell", token=mint[:8], tokens_sold=quantity, sol_received=f"{sol_received:.6f}")

        return ExecutionResult(
            success=True,
            action=TradeAction.SELL,
            mint=mint,
            signature=f"DRY_RUN_SELL_{mint[:8]}",
            venue=venue,
            sol_received=sol_received,
            tokens_sold=quantity,
            simulated=True,
        )

    @staticmethod
    def _failed(
        action: TradeAction,
        mint: str,
        venue: Venue,
        error: str,
        signature: Optional[str] = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            action=action,
            mint=mint,
            signature=signature,
            venue=venue,
            error=error,
        )


def _account_index(message: Dict[str, Any], address: str) -> int:
    """Index of an address in the static (v0) or legacy account key list."""
    for key_list in (message.get("staticAccountKeys"), message.get("accountKeys")):
        if not key_list:
            continue
        for index, key in enumerate(key_list):
            pubkey = key.get("pubkey") if isinstance(key, dict) else str(key)
            if pubkey == address:
                return index
    return -1

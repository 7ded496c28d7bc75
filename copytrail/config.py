"""
Configuration loader for copytrail.
Loads settings from environment variables with sensible defaults.
"""

import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv


@dataclass
class Config:
    """Bot configuration loaded from environment variables."""
    
    # Network
    rpc_url: str
    
    # Wallet
    wallet_private_key: str = ''
    
    # Execution
    dry_run: bool = True
    slippage_bps: int = 1000
    priority_fee_sol: float = 0.0005
    pumpportal_trade_api: str = 'https://pumpportal.fun/api/trade-local'
    jupiter_quote_api: str = 'https://lite-api.jup.ag/swap/v1/quote'
    jupiter_swap_api: str = 'https://lite-api.jup.ag/swap/v1/swap'
    dexscreener_api: str = 'https://api.dexscreener.com/latest/dex/tokens'
    
    # Entry rules
    min_wallets_to_buy: int = 1
    max_positions: int = 2
    cooldown_seconds: int = 60
    block_rebuys: bool = True
    rebuy_window_seconds: int = 300
    rebuy_history_days: int = 7
    
    # Exit rules
    min_wallets_to_sell: int = 1
    take_profit_enabled: bool = True
    take_profit_pct: float = 25.0
    trailing_stop_enabled: bool = True
    trailing_stop_pct: float = 12.0
    stop_loss_enabled: bool = True
    stop_loss_pct: float = 15.0
    max_hold_enabled: bool = False  # disabled unless explicitly turned on
    max_hold_seconds: int = 240
    
    # Ops
    redis_url: Optional[str] = None
    monitor_interval_ms: int = 5000
    trade_history_file: str = 'trade_history.json'
    log_level: str = 'INFO'
    
    @property
    def is_live(self) -> bool:
        return not self.dry_run
    
    @property
    def slippage_percent(self) -> float:
        return self.slippage_bps / 100.0
    
    @property
    def monitor_interval_seconds(self) -> float:
        return self.monitor_interval_ms / 1000.0


def load_config() -> Config:
    """Load configuration from environment variables."""
    load_dotenv()
    
    # Validate required fields
    rpc_url = os.getenv('RPC_URL')
    if not rpc_url:
        raise ValueError("RPC_URL environment variable is required")
    
    dry_run = os.getenv('DRY_RUN', 'true').lower() != 'false'
    
    wallet_private_key = os.getenv('WALLET_PRIVATE_KEY_BASE58', '')
    if not wallet_private_key and not dry_run:
        raise ValueError("WALLET_PRIVATE_KEY_BASE58 environment variable is required when DRY_RUN=false")
    
    return Config(
        # Network
        rpc_url=rpc_url,
        
        # Wallet
        wallet_private_key=wallet_private_key,
        
        # Execution
        dry_run=dry_run,
        slippage_bps=int(os.getenv('SLIPPAGE_BPS', '1000')),  # 10%, pump.fun tokens move fast
        priority_fee_sol=float(os.getenv('PRIORITY_FEE_SOL', '0.0005')),
        pumpportal_trade_api=os.getenv('PUMPPORTAL_TRADE_API', 'https://pumpportal.fun/api/trade-local'),
        jupiter_quote_api=os.getenv('JUPITER_QUOTE_API', 'https://lite-api.jup.ag/swap/v1/quote'),
        jupiter_swap_api=os.getenv('JUPITER_SWAP_API', 'https://lite-api.jup.ag/swap/v1/swap'),
        dexscreener_api=os.getenv('DEXSCREENER_API', 'https://api.dexscreener.com/latest/dex/tokens'),
        
        # Entry rules
        min_wallets_to_buy=int(os.getenv('MIN_WALLETS_TO_BUY', '1')),
        max_positions=int(os.getenv('MAX_POSITIONS', '2')),
        cooldown_seconds=int(os.getenv('COPY_COOLDOWN', '60')),
        block_rebuys=os.getenv('BLOCK_REBUYS', 'true').lower() != 'false',
        rebuy_window_seconds=int(os.getenv('REBUY_WINDOW', '300')),  # 5 min
        rebuy_history_days=int(os.getenv('REBUY_HISTORY_DAYS', '7')),
        
        # Exit rules
        min_wallets_to_sell=int(os.getenv('MIN_WALLETS_TO_SELL', '1')),
        take_profit_enabled=os.getenv('COPY_PROFIT_TARGET_ENABLED', 'true').lower() != 'false',
        take_profit_pct=float(os.getenv('COPY_PROFIT_TARGET', '25')),
        trailing_stop_enabled=os.getenv('TRAILING_STOP_ENABLED', 'true').lower() != 'false',
        trailing_stop_pct=float(os.getenv('TRAILING_STOP', '12')),
        stop_loss_enabled=os.getenv('COPY_STOP_LOSS_ENABLED', 'true').lower() != 'false',
        stop_loss_pct=float(os.getenv('COPY_STOP_LOSS', '15')),
        max_hold_enabled=os.getenv('COPY_MAX_HOLD_ENABLED', 'false').lower() == 'true',
        max_hold_seconds=int(os.getenv('COPY_MAX_HOLD', '240')),
        
        # Ops
        redis_url=os.getenv('REDIS_URL'),
        monitor_interval_ms=int(os.getenv('MONITOR_INTERVAL_MS', '5000')),
        trade_history_file=os.getenv('TRADE_HISTORY_FILE', 'trade_history.json'),
        log_level=os.getenv('LOG_LEVEL', 'INFO'),
    )


# Native SOL (wrapped mint, as used by the aggregator)
NATIVE_SOL_MINT = "So11111111111111111111111111111111111111112"
SOL_DECIMALS = 9
LAMPORTS_PER_SOL = 10 ** SOL_DECIMALS

# Pump.fun bonding curve program
PUMP_PROGRAM_ID = "6EF8rrecthR5Dkp1KPcLW7jkZo4U9AWhjbnESmtDDMTP"
PUMP_CURVE_SEED = b"bonding-curve"
PUMP_TOKEN_DECIMALS = 6
INITIAL_REAL_TOKEN_RESERVES = 793_100_000_000_000

# Round-trip fee per side, by venue
VENUE_FEE_PCT = {
    'pump': 0.0175,     # PumpPortal on the bonding curve (pump.fun 1% + portal 0.5% + margin)
    'jupiter': 0.003,   # aggregator routes
}
DEFAULT_VENUE_FEE_PCT = 0.01
NETWORK_BASE_FEE_SOL = 0.000005

# Rate limiting for the JSON-RPC endpoint
MAX_REQUESTS_PER_SECOND = 10.0
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 60.0

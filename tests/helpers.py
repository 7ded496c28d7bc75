"""
Shared test doubles: fake clock, bonding curve bytes, aiohttp fakes and
transaction records.
"""

from copytrail.price_sources import BONDING_CURVE_DISCRIMINATOR, BONDING_CURVE_LAYOUT

MINT = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"
OTHER_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
SIGNER = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
TRACKED_WALLET = "5Q544fKrFoe6tsEbD7S8EmxGTJYAKtTVhAW5Q5pge4j1"
OTHER_WALLET = "GThUX1Atko4tqhN2NaiTazWSeFWMuiUvfFnyJyUghFMJ"

# 2023-11-14T22:13:20Z
NOW = 1_700_000_000.0


class FakeClock:
    """Injectable clock (seconds since epoch)."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def curve_bytes(
    virtual_token: int = 1_000_000_000000,
    virtual_sol: int = 30_000_000_000,
    real_token: int = 793_100_000_000_000,
    real_sol: int = 0,
    total_supply: int = 1_000_000_000_000000,
    complete: bool = False,
    discriminator: bytes = BONDING_CURVE_DISCRIMINATOR,
) -> bytes:
    """Serialized BondingCurve account (with trailing padding like the real account)."""
    return BONDING_CURVE_LAYOUT.pack(
        discriminator, virtual_token, virtual_sol, real_token, real_sol, total_supply, complete
    ) + bytes(32)


class FakeResponse:
    def __init__(self, status: int = 200, json_data=None, body: bytes = b"", text: str = ""):
        self.status = status
        self._json = json_data
        self._body = body
        self._text = text

    async def json(self):
        return self._json

    async def read(self) -> bytes:
        return self._body

    async def text(self) -> str:
        return self._text


class FakeRequest:
    def __init__(self, response: FakeResponse):
        self.response = response

    async def __aenter__(self) -> FakeResponse:
        return self.response

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class FakeSession:
    """Replays queued responses; records every request."""

    def __init__(self, *responses: FakeResponse):
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    def _next(self, method: str, url: str, **kwargs) -> FakeRequest:
        self.requests.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return FakeRequest(response)

    def get(self, url, params=None):
        return self._next("GET", url, params=params)

    def post(self, url, json=None):
        return self._next("POST", url, json=json)

    async def close(self) -> None:
        self.closed = True


def token_balance(owner: str, mint: str, amount: int, decimals: int = 6, index: int = 2) -> dict:
    return {
        "accountIndex": index,
        "mint": mint,
        "owner": owner,
        "uiTokenAmount": {"amount": str(amount), "decimals": decimals},
    }


def tx_record(
    mint: str,
    pre_tokens: int,
    post_tokens: int,
    pre_lamports: int,
    post_lamports: int,
    owner: str = SIGNER,
    err=None,
    keys_field: str = "accountKeys",
    parsed_keys: bool = True,
) -> dict:
    """getTransaction (jsonParsed) record with the signer at index 1."""
    keys = ["ComputeBudget111111111111111111111111111111", owner, "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"]
    if parsed_keys:
        keys = [{"pubkey": k, "signer": k == owner} for k in keys]

    # Another holder's balance of the same mint must not count
    bystander = [token_balance(TRACKED_WALLET, mint, 10 ** 12, index=3)]

    pre_token_balances = bystander + ([token_balance(owner, mint, pre_tokens)] if pre_tokens else [])
    post_token_balances = bystander + ([token_balance(owner, mint, post_tokens)] if post_tokens else [])

    return {
        "slot": 1,
        "transaction": {"message": {keys_field: keys}},
        "meta": {
            "err": err,
            "preBalances": [1, pre_lamports, 1],
            "postBalances": [1, post_lamports, 1],
            "preTokenBalances": pre_token_balances,
            "postTokenBalances": post_token_balances,
        },
    }

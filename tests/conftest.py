import pytest

from copytrail.config import Config

from helpers import FakeClock


@pytest.fixture
def config():
    return Config(
        rpc_url="http://localhost:8899",
        dry_run=True,
        cooldown_seconds=60,
        rebuy_window_seconds=300,
        max_positions=2,
    )


@pytest.fixture
def live_config():
    return Config(
        rpc_url="http://localhost:8899",
        wallet_private_key="unused",
        dry_run=False,
    )


@pytest.fixture
def clock():
    return FakeClock()

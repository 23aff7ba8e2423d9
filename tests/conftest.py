"""
Pytest fixtures for cl-autoloop tests.

Provides mock plugin, clock and collaborator fixtures plus builders for
channels and swap records.
"""

import os
import tempfile
import threading
from unittest.mock import MagicMock

import pytest

from modules.autoloop import AutoloopManager
from modules.balances import ChannelInfo
from modules.restrictions import Restrictions
from modules.rules import ThresholdRule
from modules.swaps import (
    ExistingSwap, Quote, SwapCost, SwapEvent, SwapState, SwapType,
    autoloop_label, ppm_to_sat
)


# Wall clock used by the fake clock (2023-11-14)
TEST_NOW = 1_700_000_000

# Fee settings shared by the manager scenarios
TEST_FEE_PPM = 1000
TEST_PREPAY = 20000
TEST_MINER_FEE = 20000


class FakeClock:
    """Settable clock."""

    def __init__(self, now: int = TEST_NOW):
        self._now = now

    def now(self) -> int:
        return self._now

    def set(self, now: int) -> None:
        self._now = now


def quote_for(request) -> Quote:
    """Server quote that sits exactly at the test fee limits."""
    return Quote(
        swap_fee=ppm_to_sat(request.amount, TEST_FEE_PPM),
        prepay_amount=TEST_PREPAY,
        miner_fee=TEST_MINER_FEE,
    )


def make_channel(channel_id, peer_id, capacity=10000, local=None):
    """Open channel; all liquidity on our side unless local is given."""
    local = capacity if local is None else local
    return ChannelInfo(
        channel_id=channel_id,
        peer_id=peer_id,
        capacity=capacity,
        local_balance=local,
        remote_balance=capacity - local,
    )


def make_loop_out(channels, state=SwapState.INITIATED, updated_at=TEST_NOW - 60,
                  cost=None, request=None, initiated_at=TEST_NOW - 120,
                  autoloop=True, amount=7500):
    """Loop out record as the swap service would report it."""
    events = []
    if state != SwapState.INITIATED:
        events.append(SwapEvent(state=state, time=updated_at, cost=cost or SwapCost()))
    swap = ExistingSwap(
        swap_type=SwapType.LOOP_OUT,
        amount_requested=amount,
        initiation_time=initiated_at,
        label=autoloop_label(SwapType.LOOP_OUT) if autoloop else "",
        outgoing_chan_set=list(channels),
        events=events,
    )
    if request is not None:
        swap.max_swap_fee = request.max_swap_fee
        swap.max_miner_fee = request.max_miner_fee
        swap.max_swap_routing_fee = request.max_swap_routing_fee
        swap.max_prepay_routing_fee = request.max_prepay_routing_fee
        swap.max_prepay_amount = request.max_prepay_amount
    return swap


def make_loop_in(last_hop, state=SwapState.INITIATED, updated_at=TEST_NOW - 60):
    events = []
    if state != SwapState.INITIATED:
        events.append(SwapEvent(state=state, time=updated_at))
    return ExistingSwap(
        swap_type=SwapType.LOOP_IN,
        amount_requested=50000,
        initiation_time=updated_at - 60,
        last_hop=last_hop,
        events=events,
    )


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = MagicMock()
    return plugin


@pytest.fixture
def sample_peer_ids():
    """Sample peer IDs for testing."""
    return [
        "02" + "a" * 64,
        "02" + "b" * 64,
        "03" + "c" * 64,
    ]


@pytest.fixture
def sample_channel_ids():
    """Sample short channel IDs for testing."""
    return ["100x1x0", "200x1x0", "300x1x0"]


@pytest.fixture
def sample_channel_id():
    """Sample channel ID for testing."""
    return "123x456x0"


@pytest.fixture
def rule():
    """Keep at least half of each channel as inbound liquidity."""
    return ThresholdRule(minimum_incoming=50, minimum_outgoing=0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def swap_client():
    """Swap service fake: wide restrictions, empty history, at-limit quotes."""
    client = MagicMock()
    client.restrictions.return_value = Restrictions(minimum=1, maximum=100000)
    client.list_swaps.return_value = []
    client.quote.side_effect = quote_for
    return client


@pytest.fixture
def node_client():
    client = MagicMock()
    client.channel_balances.return_value = []
    client.estimate_fee.return_value = 2530
    return client


@pytest.fixture
def ticker():
    return MagicMock()


@pytest.fixture
def manager(mock_plugin, swap_client, node_client, clock, ticker):
    return AutoloopManager(
        mock_plugin, swap_client, node_client, clock, ticker,
        database=MagicMock(), metrics=None, min_confirmations=9,
    )


@pytest.fixture
def shutdown_event():
    return threading.Event()

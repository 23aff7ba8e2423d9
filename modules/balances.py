"""
Balance snapshot builder for cl-autoloop

Turns the node's channel list into per-channel and per-peer balance views.
A snapshot is rebuilt every cycle and never persisted.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Any

from .swaps import normalize_scid


@dataclass(frozen=True)
class ChannelInfo:
    """One open channel as reported by the payment-channel client."""
    channel_id: str
    peer_id: str
    capacity: int
    local_balance: int
    remote_balance: int

    @classmethod
    def from_rpc(cls, channel: Dict[str, Any]) -> 'ChannelInfo':
        """Build from a listpeerchannels entry (msat values, int or 'Nmsat')."""
        total_msat = parse_msat(channel.get("total_msat", 0))
        to_us_msat = parse_msat(channel.get("to_us_msat", 0))
        return cls(
            channel_id=normalize_scid(channel["short_channel_id"]),
            peer_id=channel.get("peer_id", ""),
            capacity=total_msat // 1000,
            local_balance=to_us_msat // 1000,
            remote_balance=(total_msat - to_us_msat) // 1000,
        )


@dataclass
class Balances:
    """Aggregated liquidity of a channel or of all channels with one peer."""
    peer_id: str
    capacity: int = 0
    incoming: int = 0   # Remote balance (what we can receive)
    outgoing: int = 0   # Local balance (what we can send)
    channels: List[str] = field(default_factory=list)

    def add(self, channel: ChannelInfo) -> None:
        self.capacity += channel.capacity
        self.incoming += channel.remote_balance
        self.outgoing += channel.local_balance
        self.channels.append(channel.channel_id)

    @property
    def outbound_ratio(self) -> float:
        if self.capacity <= 0:
            return 0.0
        return self.outgoing / self.capacity


@dataclass
class BalanceSnapshot:
    """Per-channel and per-peer balances, both in channel listing order."""
    channels: Dict[str, Balances] = field(default_factory=dict)
    peers: Dict[str, Balances] = field(default_factory=dict)

    def peer_of(self, channel_id: str) -> str:
        bal = self.channels.get(channel_id)
        return bal.peer_id if bal else ""


def build_snapshot(channels: List[ChannelInfo]) -> BalanceSnapshot:
    """Aggregate a channel list into a BalanceSnapshot."""
    snapshot = BalanceSnapshot()
    for channel in channels:
        chan_bal = Balances(peer_id=channel.peer_id)
        chan_bal.add(channel)
        snapshot.channels[channel.channel_id] = chan_bal

        peer_bal = snapshot.peers.get(channel.peer_id)
        if peer_bal is None:
            peer_bal = Balances(peer_id=channel.peer_id)
            snapshot.peers[channel.peer_id] = peer_bal
        peer_bal.add(channel)
    return snapshot


def parse_msat(msat_val: Any) -> int:
    """
    Safely convert msat values to integers.
    Handles '1000msat' strings, raw integers and Millisatoshi objects.
    """
    if msat_val is None:
        return 0
    if hasattr(msat_val, 'millisatoshis'):
        return int(msat_val.millisatoshis)
    if isinstance(msat_val, int):
        return msat_val
    if isinstance(msat_val, str):
        clean_val = msat_val[:-4] if msat_val.endswith('msat') else msat_val
        try:
            return int(clean_val)
        except ValueError:
            return 0
    return 0

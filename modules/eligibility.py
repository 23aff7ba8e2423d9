"""
Swap traffic and eligibility filtering for cl-autoloop

Channels that already have a loop out in flight, peers with a loop in
routed through them, and anything that failed within the backoff window
are not offered further swaps.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Set, Tuple

from .rules import SwapSuggestion
from .swaps import ExistingSwap, SwapStateType


@dataclass
class SwapTraffic:
    """Channels and peers currently blocked by existing swaps."""
    ongoing_loop_out: Set[str] = field(default_factory=set)
    ongoing_loop_in: Set[str] = field(default_factory=set)
    failed_loop_out: Dict[str, int] = field(default_factory=dict)
    failed_loop_in: Dict[str, int] = field(default_factory=dict)

    def may_swap(self, suggestion: SwapSuggestion) -> Tuple[bool, str]:
        """
        Check whether a suggestion is clear of existing traffic.

        Returns:
            (allowed, reason) where reason is empty when allowed
        """
        for channel_id in suggestion.outgoing_chan_set:
            if channel_id in self.ongoing_loop_out:
                return False, f"channel {channel_id} has a loop out in flight"
            if channel_id in self.failed_loop_out:
                return False, (
                    f"channel {channel_id} loop out failed at "
                    f"{self.failed_loop_out[channel_id]}"
                )

        peer_id = suggestion.peer_id
        if peer_id in self.ongoing_loop_in:
            return False, f"peer {peer_id[:12]}... has a loop in in flight"
        if peer_id in self.failed_loop_in:
            return False, (
                f"peer {peer_id[:12]}... loop in failed at "
                f"{self.failed_loop_in[peer_id]}"
            )

        return True, ""


def current_swap_traffic(loop_outs: List[ExistingSwap],
                         loop_ins: List[ExistingSwap],
                         now: int, failure_backoff: int) -> SwapTraffic:
    """
    Collect blocked channels and peers from the swap history.

    Failures only count while their last update is strictly newer than
    now - failure_backoff, so a swap that failed at T is eligible again at
    exactly T + failure_backoff.
    """
    traffic = SwapTraffic()
    failure_cutoff = now - failure_backoff

    for swap in loop_outs:
        state_type = swap.state().state_type
        if state_type == SwapStateType.FAILURE:
            failed_at = swap.last_update_time()
            if failed_at > failure_cutoff:
                for channel_id in swap.outgoing_chan_set:
                    prev = traffic.failed_loop_out.get(channel_id, 0)
                    traffic.failed_loop_out[channel_id] = max(prev, failed_at)
        elif state_type == SwapStateType.PENDING:
            traffic.ongoing_loop_out.update(swap.outgoing_chan_set)

    for swap in loop_ins:
        if not swap.last_hop:
            continue
        state_type = swap.state().state_type
        if state_type == SwapStateType.FAILURE:
            failed_at = swap.last_update_time()
            if failed_at > failure_cutoff:
                prev = traffic.failed_loop_in.get(swap.last_hop, 0)
                traffic.failed_loop_in[swap.last_hop] = max(prev, failed_at)
        elif state_type == SwapStateType.PENDING:
            traffic.ongoing_loop_in.add(swap.last_hop)

    return traffic

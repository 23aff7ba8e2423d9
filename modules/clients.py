"""
Collaborator adapters for cl-autoloop

The autolooper talks to two external services through lightningd's RPC:

- SwapServiceClient: the swap service plugin (restrictions, history,
  quotes and dispatch)
- NodeClient: lightningd itself (channel balances, fee estimates)

Every RpcError and every malformed response is raised as CollaboratorError
so the run loop handles all collaborator failures the same way.
"""

from typing import Dict, List, Any

from pyln.client import Plugin, RpcError

from .balances import ChannelInfo
from .restrictions import Restrictions
from .swaps import (
    CollaboratorError, DispatchRequest, ExistingSwap, Quote, QuoteRequest,
    SwapHandle, SwapType
)


class SwapServiceClient:
    """Swap service RPC methods exposed through lightningd."""

    def __init__(self, plugin: Plugin):
        self.plugin = plugin

    def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = self.plugin.rpc.call(method, payload)
        except RpcError as e:
            raise CollaboratorError(method, str(e.error))
        if not isinstance(result, dict):
            raise CollaboratorError(method, f"unexpected response: {result!r}")
        return result

    def restrictions(self, swap_type: SwapType) -> Restrictions:
        method = "swap-restrictions"
        result = self._call(method, {"type": swap_type.value})
        try:
            return Restrictions(
                minimum=int(result["minimum_sats"]),
                maximum=int(result["maximum_sats"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CollaboratorError(method, f"malformed restrictions: {e}")

    def list_swaps(self, swap_type: SwapType) -> List[ExistingSwap]:
        method = "swap-list"
        result = self._call(method, {"type": swap_type.value})
        try:
            return [ExistingSwap.from_dict(s) for s in result.get("swaps", [])]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CollaboratorError(method, f"malformed swap record: {e}")

    def quote(self, request: QuoteRequest) -> Quote:
        method = "swap-quote-out"
        result = self._call(method, {
            "amount_sats": request.amount,
            "conf_target": request.sweep_conf_target,
            "publication_deadline": request.publication_deadline,
        })
        try:
            return Quote(
                swap_fee=int(result["swap_fee_sats"]),
                prepay_amount=int(result["prepay_amount_sats"]),
                miner_fee=int(result.get("miner_fee_sats", 0)),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CollaboratorError(method, f"malformed quote: {e}")

    def dispatch(self, request: DispatchRequest) -> SwapHandle:
        method = "swap-out"
        result = self._call(method, request.to_dict())
        try:
            return SwapHandle(
                swap_id=str(result["swap_id"]),
                htlc_address=result.get("htlc_address", ""),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise CollaboratorError(method, f"missing field in response: {e}")


class NodeClient:
    """Channel balances and fee estimates from lightningd."""

    def __init__(self, plugin: Plugin):
        self.plugin = plugin

    def channel_balances(self) -> List[ChannelInfo]:
        """Open channels (CHANNELD_NORMAL with a short channel id), in listing order."""
        try:
            result = self.plugin.rpc.listpeerchannels()
        except RpcError as e:
            raise CollaboratorError("listpeerchannels", str(e.error))

        channels = []
        try:
            for channel in result.get("channels", []):
                if channel.get("state") != "CHANNELD_NORMAL":
                    continue
                if not channel.get("short_channel_id"):
                    continue
                channels.append(ChannelInfo.from_rpc(channel))
        except (KeyError, TypeError, AttributeError) as e:
            raise CollaboratorError("listpeerchannels", f"malformed channel: {e}")
        return channels

    def estimate_fee(self, conf_target: int) -> int:
        """
        Fee rate estimate in sat/kw for confirmation within conf_target blocks.

        Uses the estimate with the largest blockcount not above the target,
        or the shortest-horizon estimate when every horizon is longer.
        """
        try:
            result = self.plugin.rpc.feerates("perkw")
        except RpcError as e:
            raise CollaboratorError("feerates", str(e.error))

        estimates = result.get("perkw", {}).get("estimates", [])
        if not estimates:
            raise CollaboratorError("feerates", "no fee estimates available")

        try:
            ordered = sorted(estimates, key=lambda e: int(e["blockcount"]))
            chosen = ordered[0]
            for estimate in ordered:
                if int(estimate["blockcount"]) <= conf_target:
                    chosen = estimate
            return int(chosen["feerate"])
        except (KeyError, TypeError, ValueError) as e:
            raise CollaboratorError("feerates", f"malformed estimate: {e}")

"""
Swap domain types for cl-autoloop

The controller never executes swaps itself. It reads swap history from the
external swap service and hands fully resolved requests back to it. This
module holds the shared vocabulary for that exchange:

- SwapType / SwapState: direction and lifecycle state of a swap
- ExistingSwap: a historical or in-flight swap as reported by the service
- QuoteRequest / Quote: one pricing round trip
- DispatchRequest / SwapHandle: a loop out we ask the service to run
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any


# Parts-per-million base used for every fee rate in the controller
FEE_BASE_PPM = 1_000_000

# Labels with this prefix are reserved for swaps created by the plugin itself
RESERVED_LABEL_PREFIX = "[reserved]: "

# Initiator tag attached to automatically dispatched swaps
AUTOLOOP_INITIATOR = "autoloop"


class CollaboratorError(Exception):
    """An external collaborator (swap service or node) failed a request."""

    def __init__(self, method: str, message: str):
        self.method = method
        super().__init__(f"{method}: {message}")


class SwapType(Enum):
    """Direction of a swap."""
    LOOP_OUT = "loop_out"   # Off-chain balance -> on-chain funds
    LOOP_IN = "loop_in"     # On-chain funds -> off-chain balance


class SwapStateType(Enum):
    """Coarse classification of a swap state."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


class SwapState(Enum):
    """Lifecycle state of a swap as recorded by the swap service."""
    INITIATED = "initiated"
    PREIMAGE_REVEALED = "preimage_revealed"
    HTLC_PUBLISHED = "htlc_published"
    INVOICE_SETTLED = "invoice_settled"
    SUCCESS = "success"
    FAIL_OFFCHAIN_PAYMENTS = "fail_offchain_payments"
    FAIL_TIMEOUT = "fail_timeout"
    FAIL_SWEEP_TIMEOUT = "fail_sweep_timeout"
    FAIL_INSUFFICIENT_VALUE = "fail_insufficient_value"
    FAIL_TEMPORARY = "fail_temporary"
    FAIL_INCORRECT_HTLC_AMT = "fail_incorrect_htlc_amt"

    @property
    def state_type(self) -> SwapStateType:
        if self == SwapState.SUCCESS:
            return SwapStateType.SUCCESS
        # Temporary failures are retried by the service, so still in flight
        if self.value.startswith("fail_") and self != SwapState.FAIL_TEMPORARY:
            return SwapStateType.FAILURE
        return SwapStateType.PENDING


def autoloop_label(swap_type: SwapType) -> str:
    """Label attached to swaps dispatched by the autolooper."""
    suffix = "out" if swap_type == SwapType.LOOP_OUT else "in"
    return f"{RESERVED_LABEL_PREFIX}autoloop-{suffix}"


def ppm_to_sat(amount: int, ppm: int) -> int:
    """Express a parts-per-million rate of an amount in whole sats (floored)."""
    return amount * ppm // FEE_BASE_PPM


def normalize_scid(scid: str) -> str:
    """Normalize SCID to consistent format (with 'x' separators)."""
    return str(scid).replace(':', 'x')


@dataclass(frozen=True)
class SwapCost:
    """Realized cost of a swap, split by who was paid."""
    server: int = 0
    onchain: int = 0
    offchain: int = 0

    def total(self) -> int:
        return self.server + self.onchain + self.offchain


@dataclass(frozen=True)
class SwapEvent:
    """A single state transition of a swap."""
    state: SwapState
    time: int
    cost: SwapCost = field(default_factory=SwapCost)


@dataclass
class ExistingSwap:
    """
    A swap record read from the swap service's history.

    The controller only reads these. State and cost are taken from the most
    recent event; a swap without events is still in its initial state.
    """
    swap_type: SwapType
    amount_requested: int
    initiation_time: int
    label: str = ""
    max_swap_fee: int = 0
    max_miner_fee: int = 0
    max_swap_routing_fee: int = 0
    max_prepay_routing_fee: int = 0
    max_prepay_amount: int = 0
    outgoing_chan_set: List[str] = field(default_factory=list)
    last_hop: Optional[str] = None
    events: List[SwapEvent] = field(default_factory=list)

    def state(self) -> SwapState:
        if not self.events:
            return SwapState.INITIATED
        return self.events[-1].state

    def cost(self) -> SwapCost:
        if not self.events:
            return SwapCost()
        return self.events[-1].cost

    def last_update_time(self) -> int:
        if not self.events:
            return self.initiation_time
        return self.events[-1].time

    def is_autoloop(self) -> bool:
        return self.label == autoloop_label(self.swap_type)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExistingSwap':
        """Parse a swap record as returned by the swap service RPC."""
        events = []
        for ev in data.get("events", []):
            cost = ev.get("cost") or {}
            events.append(SwapEvent(
                state=SwapState(ev["state"]),
                time=int(ev["time"]),
                cost=SwapCost(
                    server=int(cost.get("server_sats", 0)),
                    onchain=int(cost.get("onchain_sats", 0)),
                    offchain=int(cost.get("offchain_sats", 0)),
                ),
            ))
        return cls(
            swap_type=SwapType(data["type"]),
            amount_requested=int(data["amount_sats"]),
            initiation_time=int(data["initiation_time"]),
            label=data.get("label", ""),
            max_swap_fee=int(data.get("max_swap_fee_sats", 0)),
            max_miner_fee=int(data.get("max_miner_fee_sats", 0)),
            max_swap_routing_fee=int(data.get("max_swap_routing_fee_sats", 0)),
            max_prepay_routing_fee=int(data.get("max_prepay_routing_fee_sats", 0)),
            max_prepay_amount=int(data.get("max_prepay_amount_sats", 0)),
            outgoing_chan_set=[normalize_scid(c) for c in data.get("outgoing_chan_set", [])],
            last_hop=data.get("last_hop"),
            events=events,
        )


@dataclass(frozen=True)
class QuoteRequest:
    amount: int
    sweep_conf_target: int
    publication_deadline: int = 0


@dataclass(frozen=True)
class Quote:
    """Pricing returned by the swap server for a loop out."""
    swap_fee: int
    prepay_amount: int
    miner_fee: int = 0


@dataclass(frozen=True)
class DispatchRequest:
    """A fully resolved loop out request, ready for the swap service."""
    amount: int
    max_swap_routing_fee: int
    max_prepay_routing_fee: int
    max_swap_fee: int
    max_prepay_amount: int
    max_miner_fee: int
    sweep_conf_target: int
    outgoing_chan_set: tuple
    label: str = ""
    initiator: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount_sats": self.amount,
            "max_swap_routing_fee_sats": self.max_swap_routing_fee,
            "max_prepay_routing_fee_sats": self.max_prepay_routing_fee,
            "max_swap_fee_sats": self.max_swap_fee,
            "max_prepay_amount_sats": self.max_prepay_amount,
            "max_miner_fee_sats": self.max_miner_fee,
            "sweep_conf_target": self.sweep_conf_target,
            "outgoing_chan_set": list(self.outgoing_chan_set),
            "label": self.label,
            "initiator": self.initiator,
        }


@dataclass(frozen=True)
class SwapHandle:
    """Identifier returned by the swap service for a dispatched swap."""
    swap_id: str
    htlc_address: str = ""

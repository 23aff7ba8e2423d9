"""
Threshold rule engine for cl-autoloop

A ThresholdRule keeps a channel (or all channels with one peer) inside an
outbound liquidity band. When incoming liquidity drops below the rule's
minimum, a loop out is suggested that moves the balance back to the middle
of the band.

Peer rules are evaluated first over aggregated peer balances, then channel
rules in channel listing order.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Any

from .balances import Balances, BalanceSnapshot
from .restrictions import Restrictions


SCOPE_CHANNEL = "channel"
SCOPE_PEER = "peer"


class RuleValidationError(ValueError):
    """A threshold rule has out-of-range percentages."""


@dataclass(frozen=True)
class ThresholdRule:
    """
    Minimum incoming and outgoing liquidity as percentages of capacity.

    The outbound ratio must stay within [minimum_outgoing%, 100 - minimum_incoming%].
    """
    minimum_incoming: int
    minimum_outgoing: int

    def validate(self) -> None:
        for name, value in (("incoming", self.minimum_incoming),
                            ("outgoing", self.minimum_outgoing)):
            if value < 0 or value > 100:
                raise RuleValidationError(
                    f"minimum {name} percentage {value} not in [0, 100]"
                )
        if self.minimum_incoming + self.minimum_outgoing > 100:
            raise RuleValidationError(
                f"incoming ({self.minimum_incoming}) + outgoing "
                f"({self.minimum_outgoing}) percentages exceed 100"
            )

    def to_dict(self) -> Dict[str, int]:
        return {
            "minimum_incoming": self.minimum_incoming,
            "minimum_outgoing": self.minimum_outgoing,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ThresholdRule':
        return cls(
            minimum_incoming=int(data["minimum_incoming"]),
            minimum_outgoing=int(data["minimum_outgoing"]),
        )


@dataclass(frozen=True)
class SwapSuggestion:
    """A loop out recommended by a rule, before quoting."""
    amount: int
    sweep_conf_target: int
    outgoing_chan_set: Tuple[str, ...]
    scope: str
    target: str
    peer_id: str


def loop_out_swap_amount(rule: ThresholdRule, balances: Balances) -> int:
    """
    Amount needed to bring a balance back to the middle of the rule's band.

    Returns 0 when incoming liquidity already meets the minimum, when there
    is no outgoing liquidity above the reserve, or when the local balance
    cannot cover the amount (for example while HTLCs are pending).
    """
    if balances.capacity <= 0:
        return 0

    min_incoming = balances.capacity * rule.minimum_incoming // 100
    min_outgoing = balances.capacity * rule.minimum_outgoing // 100

    if balances.incoming >= min_incoming or balances.outgoing <= min_outgoing:
        return 0

    midpoint = (min_incoming + (balances.capacity - min_outgoing)) // 2
    required = midpoint - balances.incoming

    available = balances.outgoing - min_outgoing
    if available < required:
        return 0

    return required


def swap_amount(rule: ThresholdRule, balances: Balances,
                restrictions: Restrictions) -> int:
    """Rule amount clamped to the server's swap size limits (0 = no swap)."""
    amount = loop_out_swap_amount(rule, balances)
    if amount == 0:
        return 0
    if amount < restrictions.minimum:
        return 0
    if restrictions.maximum and amount > restrictions.maximum:
        return restrictions.maximum
    return amount


def evaluate_rules(
    snapshot: BalanceSnapshot,
    peer_rules: Dict[str, ThresholdRule],
    channel_rules: Dict[str, ThresholdRule],
    restrictions: Restrictions,
    sweep_conf_target: int,
    plugin: Optional[Any] = None,
) -> List[SwapSuggestion]:
    """
    Apply every rule to the snapshot and collect loop out suggestions.

    Args:
        snapshot: Current channel and peer balances
        peer_rules: Rules keyed by peer id
        channel_rules: Rules keyed by short channel id
        restrictions: Effective swap size limits for this cycle
        sweep_conf_target: Conf target carried onto every suggestion
        plugin: Optional plugin for debug logging

    Returns:
        Suggestions with a positive amount, peers first then channels
    """
    suggestions: List[SwapSuggestion] = []

    for peer_id, balances in snapshot.peers.items():
        rule = peer_rules.get(peer_id)
        if rule is None:
            continue
        amount = swap_amount(rule, balances, restrictions)
        if amount == 0:
            continue
        suggestions.append(SwapSuggestion(
            amount=amount,
            sweep_conf_target=sweep_conf_target,
            outgoing_chan_set=tuple(balances.channels),
            scope=SCOPE_PEER,
            target=peer_id,
            peer_id=peer_id,
        ))

    for channel_id, balances in snapshot.channels.items():
        rule = channel_rules.get(channel_id)
        if rule is None:
            continue
        if balances.peer_id in peer_rules:
            if plugin:
                plugin.log(
                    f"Skipping channel rule for {channel_id}: peer "
                    f"{balances.peer_id[:12]}... has its own rule",
                    level='debug'
                )
            continue
        amount = swap_amount(rule, balances, restrictions)
        if amount == 0:
            continue
        suggestions.append(SwapSuggestion(
            amount=amount,
            sweep_conf_target=sweep_conf_target,
            outgoing_chan_set=(channel_id,),
            scope=SCOPE_CHANNEL,
            target=channel_id,
            peer_id=balances.peer_id,
        ))

    return suggestions

"""
Autoloop parameters for cl-autoloop

Parameters is an immutable value object. Updates build a new object which is
validated against the swap server's restrictions and the node's channels
before ParameterStore swaps it in. A rejected update leaves the active
parameters untouched, and readers always see a whole object.
"""

import re
import threading
from dataclasses import dataclass, field, fields, replace
from typing import Dict, List, Any, Optional

from .balances import ChannelInfo
from .restrictions import Restrictions, RestrictionError, validate_client_restrictions
from .rules import ThresholdRule, RuleValidationError
from .swaps import FEE_BASE_PPM, normalize_scid


# Lowest fee rate a node will relay (1 sat/vbyte)
FEE_RATE_FLOOR_SAT_PER_KW = 253

DEFAULT_SWEEP_FEE_RATE_LIMIT = 100 * FEE_RATE_FLOOR_SAT_PER_KW
DEFAULT_FEE_PPM = 5000
DEFAULT_MAXIMUM_PREPAY = 30000
DEFAULT_MAXIMUM_MINER_FEE = 15000
DEFAULT_SWEEP_CONF_TARGET = 100
DEFAULT_FAILURE_BACKOFF = 24 * 3600
DEFAULT_MAX_IN_FLIGHT = 1

_SCID_RE = re.compile(r'^\d+x\d+x\d+$')
_PEER_ID_RE = re.compile(r'^[0-9a-fA-F]{66}$')

# Scalar fields that can be set from strings (RPC / persisted overrides)
PARAMETER_FIELD_TYPES: Dict[str, type] = {
    'autoloop': bool,
    'sweep_fee_rate_limit': int,
    'maximum_swap_fee_ppm': int,
    'maximum_routing_fee_ppm': int,
    'maximum_prepay_routing_fee_ppm': int,
    'maximum_prepay': int,
    'maximum_miner_fee': int,
    'sweep_conf_target': int,
    'fee_budget': int,
    'fee_budget_start': int,
    'max_autoloop_in_flight': int,
    'failure_backoff': int,
}


class ParameterValidationError(ValueError):
    """A parameter update was rejected; the active parameters are unchanged."""


@dataclass(frozen=True)
class Parameters:
    """Operator configuration for the autolooper."""
    autoloop: bool = False
    channel_rules: Dict[str, ThresholdRule] = field(default_factory=dict)
    peer_rules: Dict[str, ThresholdRule] = field(default_factory=dict)

    # Fee limits
    sweep_fee_rate_limit: int = DEFAULT_SWEEP_FEE_RATE_LIMIT  # sat/kw
    maximum_swap_fee_ppm: int = DEFAULT_FEE_PPM
    maximum_routing_fee_ppm: int = DEFAULT_FEE_PPM
    maximum_prepay_routing_fee_ppm: int = DEFAULT_FEE_PPM
    maximum_prepay: int = DEFAULT_MAXIMUM_PREPAY
    maximum_miner_fee: int = DEFAULT_MAXIMUM_MINER_FEE

    sweep_conf_target: int = DEFAULT_SWEEP_CONF_TARGET
    fee_budget: int = 0
    fee_budget_start: int = 0
    max_autoloop_in_flight: int = DEFAULT_MAX_IN_FLIGHT
    failure_backoff: int = DEFAULT_FAILURE_BACKOFF
    client_restrictions: Restrictions = field(default_factory=Restrictions)

    def with_updates(self, updates: Dict[str, Any]) -> 'Parameters':
        """
        Return a copy with the given fields replaced.

        Scalar values may be strings and are coerced the same way plugin
        options are. Rules and restrictions accept typed objects or dicts.

        Raises:
            ParameterValidationError: on unknown keys or unparseable values
        """
        known = {f.name for f in fields(self)}
        changes: Dict[str, Any] = {}
        for key, value in updates.items():
            if key not in known:
                raise ParameterValidationError(f"Unknown parameter: {key}")
            changes[key] = _coerce(key, value)
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            key: getattr(self, key) for key in PARAMETER_FIELD_TYPES
        }
        data['channel_rules'] = {
            k: r.to_dict() for k, r in self.channel_rules.items()
        }
        data['peer_rules'] = {k: r.to_dict() for k, r in self.peer_rules.items()}
        data['client_restrictions'] = self.client_restrictions.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Parameters':
        return DEFAULT_PARAMETERS.with_updates(data)


DEFAULT_PARAMETERS = Parameters()


def _coerce(key: str, value: Any) -> Any:
    try:
        if key in ('channel_rules', 'peer_rules'):
            rules = {}
            for target, rule in dict(value).items():
                if not isinstance(rule, ThresholdRule):
                    rule = ThresholdRule.from_dict(rule)
                if key == 'channel_rules':
                    target = normalize_scid(target)
                rules[target] = rule
            return rules

        if key == 'client_restrictions':
            if isinstance(value, Restrictions):
                return value
            return Restrictions(
                minimum=int(value.get('minimum_sats', 0)),
                maximum=int(value.get('maximum_sats', 0)),
            )

        field_type = PARAMETER_FIELD_TYPES[key]
        if field_type == bool:
            if isinstance(value, str):
                return value.lower() in ('true', '1', 'yes', 'on')
            return bool(value)
        return field_type(value)
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        raise ParameterValidationError(f"Invalid value for {key}: {e}")


def _check_ppm(name: str, value: int) -> None:
    if value <= 0 or value > FEE_BASE_PPM:
        raise ParameterValidationError(
            f"{name} {value} must be in (0, {FEE_BASE_PPM}]"
        )


def validate_parameters(params: Parameters, server: Restrictions,
                        channels: List[ChannelInfo],
                        min_confirmations: int) -> None:
    """
    Check a parameter set against the server and the node's channel list.

    Raises:
        ParameterValidationError: describing the first violation found
    """
    channel_peers = {c.channel_id: c.peer_id for c in channels}

    for channel_id, rule in params.channel_rules.items():
        if not _SCID_RE.match(channel_id):
            raise ParameterValidationError(f"Invalid channel id: '{channel_id}'")
        try:
            rule.validate()
        except RuleValidationError as e:
            raise ParameterValidationError(f"channel {channel_id}: {e}")

    for peer_id, rule in params.peer_rules.items():
        if not _PEER_ID_RE.match(peer_id):
            raise ParameterValidationError(f"Invalid peer id: '{peer_id}'")
        try:
            rule.validate()
        except RuleValidationError as e:
            raise ParameterValidationError(f"peer {peer_id}: {e}")

    for channel_id in params.channel_rules:
        peer_id = channel_peers.get(channel_id)
        if peer_id and peer_id in params.peer_rules:
            raise ParameterValidationError(
                f"channel {channel_id} has a rule and so does its peer {peer_id}; "
                f"rules must be exclusive"
            )

    if params.sweep_fee_rate_limit < FEE_RATE_FLOOR_SAT_PER_KW:
        raise ParameterValidationError(
            f"sweep fee rate limit {params.sweep_fee_rate_limit} sat/kw below "
            f"floor of {FEE_RATE_FLOOR_SAT_PER_KW}"
        )

    if params.sweep_conf_target < min_confirmations:
        raise ParameterValidationError(
            f"sweep conf target {params.sweep_conf_target} below minimum "
            f"{min_confirmations}"
        )

    try:
        validate_client_restrictions(server, params.client_restrictions)
    except RestrictionError as e:
        raise ParameterValidationError(str(e))

    if params.fee_budget < 0:
        raise ParameterValidationError("fee budget must be >= 0")
    if params.failure_backoff < 0:
        raise ParameterValidationError("failure backoff must be >= 0")
    if params.max_autoloop_in_flight <= 0:
        raise ParameterValidationError("max autoloop in flight must be > 0")

    _check_ppm("maximum swap fee ppm", params.maximum_swap_fee_ppm)
    _check_ppm("maximum routing fee ppm", params.maximum_routing_fee_ppm)
    _check_ppm("maximum prepay routing fee ppm",
               params.maximum_prepay_routing_fee_ppm)

    if params.maximum_prepay < 0:
        raise ParameterValidationError("maximum prepay must be >= 0")
    if params.maximum_miner_fee < 0:
        raise ParameterValidationError("maximum miner fee must be >= 0")


class ParameterStore:
    """Holds the active Parameters; get/set are atomic with respect to each other."""

    def __init__(self, initial: Optional[Parameters] = None):
        self._lock = threading.Lock()
        self._params = initial if initial is not None else DEFAULT_PARAMETERS

    def get(self) -> Parameters:
        with self._lock:
            return self._params

    def set(self, params: Parameters) -> Parameters:
        """Swap in a validated object, returning the one it replaced."""
        # Copy so that later mutation of the caller's rule dicts can't leak in
        params = replace(
            params,
            channel_rules=dict(params.channel_rules),
            peer_rules=dict(params.peer_rules),
        )
        with self._lock:
            old = self._params
            self._params = params
        return old

    def compare_and_set(self, expected: Parameters, params: Parameters) -> bool:
        """Swap in params only if the active object is still expected."""
        params = replace(
            params,
            channel_rules=dict(params.channel_rules),
            peer_rules=dict(params.peer_rules),
        )
        with self._lock:
            if self._params is not expected:
                return False
            self._params = params
        return True

"""
Swap size restrictions for cl-autoloop

The swap server publishes a minimum and maximum swap amount per direction.
Operators may narrow that range further with client restrictions (0 = unset).
Server restrictions are refetched every cycle and never cached.
"""

from dataclasses import dataclass
from typing import Dict, Any, TYPE_CHECKING

from .swaps import CollaboratorError, SwapType

if TYPE_CHECKING:
    from .clients import SwapServiceClient


class RestrictionError(ValueError):
    """Client restrictions are inconsistent with themselves or the server."""


@dataclass(frozen=True)
class Restrictions:
    """Minimum and maximum swap amount in sats."""
    minimum: int = 0
    maximum: int = 0

    def validate(self) -> None:
        if self.minimum < 0 or self.maximum < 0:
            raise RestrictionError("restrictions must be non-negative")
        if self.maximum and self.minimum > self.maximum:
            raise RestrictionError(
                f"minimum swap amount {self.minimum} exceeds maximum {self.maximum}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {"minimum_sats": self.minimum, "maximum_sats": self.maximum}


def validate_client_restrictions(server: Restrictions, client: Restrictions) -> None:
    """
    Check that client restrictions sit inside the server's range.

    Raises:
        RestrictionError: if the client range is invalid or exceeds the server's
    """
    if client.minimum < 0 or client.maximum < 0:
        raise RestrictionError("client restrictions must be non-negative")

    if client.minimum == 0 and client.maximum == 0:
        return

    if client.maximum and client.maximum > server.maximum:
        raise RestrictionError(
            f"client maximum {client.maximum} exceeds server maximum {server.maximum}"
        )
    if client.maximum and client.maximum < server.minimum:
        raise RestrictionError(
            f"client maximum {client.maximum} below server minimum {server.minimum}"
        )
    if client.minimum and client.minimum < server.minimum:
        raise RestrictionError(
            f"client minimum {client.minimum} below server minimum {server.minimum}"
        )
    if client.minimum and client.minimum > server.maximum:
        raise RestrictionError(
            f"client minimum {client.minimum} exceeds server maximum {server.maximum}"
        )
    if client.minimum and client.maximum and client.minimum > client.maximum:
        raise RestrictionError(
            f"client minimum {client.minimum} exceeds client maximum {client.maximum}"
        )


def fetch_restrictions(swap_client: 'SwapServiceClient', swap_type: SwapType,
                       client: Restrictions) -> Restrictions:
    """
    Fetch server restrictions for a direction and apply client limits.

    Args:
        swap_client: Swap service collaborator
        swap_type: Direction to fetch restrictions for
        client: Operator restrictions from the active parameters

    Returns:
        Effective restrictions for this cycle

    Raises:
        CollaboratorError: if the server call fails or the server's
            restrictions no longer accommodate the client limits
    """
    server = swap_client.restrictions(swap_type)

    minimum = client.minimum if client.minimum else server.minimum
    maximum = client.maximum if client.maximum else server.maximum
    effective = Restrictions(minimum=minimum, maximum=maximum)

    try:
        server.validate()
        validate_client_restrictions(server, client)
        effective.validate()
    except RestrictionError as e:
        raise CollaboratorError("restrictions", str(e))

    return effective

"""Automatic IP and hostname allocation from the configured address pool."""
from __future__ import annotations

import ipaddress
import logging
from typing import Iterator, Optional

from ..core.config import Settings
from ..core.errors import AddressExhaustedError, ConfigurationError
from ..core.models import NetworkAllocation
from .deployment_store import DeploymentStore

logger = logging.getLogger(__name__)

# The first nine host addresses are left to gateways and other infrastructure.
FIRST_HOST_OFFSET = 10
LAST_HOST_OFFSET = 249


def hostname_for(prefix: str, ip_address: str) -> str:
    """Derive a hostname such as ``mc-10-0-0-10`` from an address."""
    return f"{prefix}{ip_address.replace('.', '-')}"


class NetworkAllocator:
    """Hands out the lowest free address of a subnet and reserves it."""

    def __init__(
        self,
        store: DeploymentStore,
        cidr: Optional[str],
        gateway: Optional[str],
        dns: Optional[str] = None,
        hostname_prefix: str = "mc-",
    ):
        self._store = store
        self._cidr = cidr
        self._gateway = gateway
        self._dns = dns or gateway
        self._hostname_prefix = hostname_prefix

    @classmethod
    def from_settings(cls, store: DeploymentStore, config: Settings) -> "NetworkAllocator":
        return cls(
            store,
            cidr=config.net_cidr,
            gateway=config.net_gateway,
            dns=config.get_net_dns(),
            hostname_prefix=config.hostname_prefix,
        )

    def _network(self) -> ipaddress.IPv4Network:
        if not self._cidr:
            raise ConfigurationError("NET_CIDR not configured")
        if not self._gateway:
            raise ConfigurationError("NET_GATEWAY not configured")
        try:
            network = ipaddress.ip_network(self._cidr, strict=False)
        except ValueError as exc:
            raise ConfigurationError(f"invalid NET_CIDR {self._cidr!r}: {exc}") from exc
        if not isinstance(network, ipaddress.IPv4Network):
            raise ConfigurationError(f"NET_CIDR must be an IPv4 network: {self._cidr}")
        return network

    @staticmethod
    def _iter_candidates(network: ipaddress.IPv4Network) -> Iterator[str]:
        base = int(network.network_address)
        for offset in range(FIRST_HOST_OFFSET, LAST_HOST_OFFSET + 1):
            candidate = ipaddress.IPv4Address(base + offset)
            if candidate not in network or candidate == network.broadcast_address:
                break
            yield str(candidate)

    def allocate(self, deployment_id: int) -> NetworkAllocation:
        """Reserve the next free address for ``deployment_id``.

        Raises ``AddressExhaustedError`` when every candidate is already used.
        """
        network = self._network()
        address = self._store.reserve_address(deployment_id, self._iter_candidates(network))
        if address is None:
            raise AddressExhaustedError(f"no free IP addresses left in {network}")

        allocation = NetworkAllocation(
            ip_address=address,
            prefix_length=network.prefixlen,
            gateway=self._gateway,
            dns=self._dns,
            hostname=hostname_for(self._hostname_prefix, address),
        )
        logger.info(
            "Allocated %s (%s) to deployment %s",
            allocation.ip_cidr,
            allocation.hostname,
            deployment_id,
        )
        return allocation

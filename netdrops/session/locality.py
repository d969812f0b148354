"""Network-locality policy domains derived from peer addresses."""

import ipaddress

from netdrops.config import LOCALITY_PREFIX_V4, LOCALITY_PREFIX_V6


def resolve_locality(
    host: str | None,
    prefix_v4: int = LOCALITY_PREFIX_V4,
    prefix_v6: int = LOCALITY_PREFIX_V6,
) -> str:
    """
    Map a remote address to the network it belongs to.

    ``192.168.1.23`` becomes ``192.168.1.0/24`` with the default prefix.
    Hosts that are not IP literals are their own locality.
    """
    if not host:
        return "unknown"
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return host

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped
    prefix = prefix_v4 if address.version == 4 else prefix_v6
    network = ipaddress.ip_network(f"{address}/{prefix}", strict=False)
    return str(network)

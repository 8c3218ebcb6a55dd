from dataclasses import dataclass

import settings


@dataclass(frozen=True)
class InstanceAddresses:
    netns: str
    peer_host: str
    peer_port: int
    forward_host: str
    forward_port: int
    internal_port: int
    protocol: str

    @property
    def peer_laddr(self) -> str:
        return f"{self.peer_host}:{self.peer_port}"

    @property
    def forward_addr(self) -> str:
        return f"{self.forward_host}:{self.forward_port}"

    def forward_rules(self) -> list[dict[str, str]]:
        return [
            {
                "netns": self.netns,
                "internalPort": str(self.internal_port),
                "protocol": self.protocol,
                "externalAddr": self.forward_addr,
            }
        ]


def addresses_for_slot(slot: int) -> InstanceAddresses:
    """
    Every instance slot gets its own namespace and its own host ports, so two
    VMs never contend for the same peer or forwarded address.
    """
    return InstanceAddresses(
        netns=f"{settings.NAMESPACE_PREFIX}{slot}",
        # drafter-peer listens on all interfaces; readiness is probed locally
        peer_host="",
        peer_port=settings.PEER_BASE_PORT + slot,
        forward_host=settings.FORWARD_HOST,
        forward_port=settings.FORWARD_BASE_PORT + slot,
        internal_port=settings.FORWARD_INTERNAL_PORT,
        protocol=settings.FORWARD_PROTOCOL,
    )

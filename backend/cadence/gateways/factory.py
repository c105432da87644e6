"""Gateway selection."""

from cadence.core.config import settings
from cadence.gateways.base import PaymentGatewayPort
from cadence.gateways.memory import InMemoryGateway
from cadence.gateways.stripe_gateway import StripeGateway

_memory_gateway: InMemoryGateway | None = None


def get_gateway(name: str | None = None) -> PaymentGatewayPort:
    """Factory function to get the configured payment gateway.

    The in-memory gateway is process-wide so its state survives between requests.
    """
    global _memory_gateway

    name = name or settings.PAYMENT_GATEWAY
    if name == "stripe":
        return StripeGateway()
    if name == "memory":
        if _memory_gateway is None:
            _memory_gateway = InMemoryGateway()
        return _memory_gateway
    raise ValueError(f"Unsupported payment gateway: {name}")


def provide_gateway() -> PaymentGatewayPort:
    """FastAPI dependency returning the configured gateway."""
    return get_gateway()

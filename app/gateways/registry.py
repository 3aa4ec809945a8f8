"""Gateway registry: one adapter instance per provider, selected by payment method."""

from app.errors import ValidationError
from app.gateways.base import PaymentGateway
from app.models.transaction import GatewayName, PaymentMethod

_METHOD_GATEWAY = {
    PaymentMethod.CARD: GatewayName.STRIPE,
    PaymentMethod.PAYPAL: GatewayName.PAYPAL,
}

_gateways: dict[GatewayName, PaymentGateway] = {}


def gateway_for_method(method: PaymentMethod) -> GatewayName:
    return _METHOD_GATEWAY[method]


def get_gateway(name: GatewayName | str) -> PaymentGateway:
    """Return the shared adapter for a gateway, building it on first use."""
    try:
        name = GatewayName(name)
    except ValueError:
        raise ValidationError(f"Unknown payment gateway: {name}")

    if name not in _gateways:
        if name is GatewayName.STRIPE:
            from app.gateways.stripe_gateway import StripeGateway
            _gateways[name] = StripeGateway()
        else:
            from app.gateways.paypal import PayPalGateway
            _gateways[name] = PayPalGateway()
    return _gateways[name]


def get_gateway_provider():  # type: ignore[no-untyped-def]
    """FastAPI dependency returning the gateway lookup (overridden in tests)."""
    return get_gateway


async def close_gateways() -> None:
    for gateway in _gateways.values():
        aclose = getattr(gateway, "aclose", None)
        if aclose is not None:
            await aclose()
    _gateways.clear()

"""
Gateway interfaces for the external systems.

The reconciliation run talks to two outside parties:

- the exchange, which lists P2P orders
- the tax authority (AFIP WSFE), which authorizes vouchers

Real clients (SOAP/WSAA, exchange HTTP API) live outside this package
and are plugged in through ``AFIPSYNC_GATEWAY_FACTORY``, a
``"module:callable"`` path returning ``(order_source, tax_authority)``.

Contract for implementations:
- ``create_invoice`` returns ``SubmissionResult(success=False, ...)`` when
  AFIP answers with a rejection, and raises ``InfrastructureError`` when
  the call itself fails (timeout, connection, auth).
- ``get_last_invoice_number`` is the authority's FECompUltimoAutorizado.
"""

import importlib
import logging
from abc import ABC, abstractmethod
from typing import Callable

from afipsync.domain.invoice import Invoice
from afipsync.domain.models import InvoiceType, Order, SubmissionResult, TradeType
from afipsync.errors import InfrastructureError, ValidationError

logger = logging.getLogger(__name__)


class TaxAuthorityGateway(ABC):
    """Abstract interface for the electronic invoicing web service."""

    @abstractmethod
    async def create_invoice(self, invoice: Invoice, sales_point: int) -> SubmissionResult:
        """Submit one voucher; the gateway assigns the next voucher number."""
        pass

    @abstractmethod
    async def get_last_invoice_number(self, sales_point: int, invoice_type: InvoiceType) -> int:
        """Last voucher number AFIP authorized for this sales point and type."""
        pass


class OrderSourceGateway(ABC):
    """Abstract interface for the exchange's order history."""

    @abstractmethod
    async def fetch_orders(self, days: int, trade_type: TradeType = TradeType.SELL) -> list[Order]:
        """Completed orders of the last ``days`` days."""
        pass


GatewayFactory = Callable[[], tuple[OrderSourceGateway | None, TaxAuthorityGateway]]


def load_gateways(factory_path: str | None) -> tuple[OrderSourceGateway | None, TaxAuthorityGateway]:
    """
    Resolve and call a gateway factory.

    Args:
        factory_path: ``"package.module:callable"``

    Raises:
        ValidationError: path missing or malformed.
        InfrastructureError: the module or callable cannot be loaded.
    """
    if not factory_path:
        raise ValidationError.for_field(
            "gateway_factory", "no gateway factory configured (AFIPSYNC_GATEWAY_FACTORY)"
        )

    module_name, sep, attr = factory_path.partition(":")
    if not sep or not module_name or not attr:
        raise ValidationError.for_field("gateway_factory", "expected 'module:callable'")

    try:
        module = importlib.import_module(module_name)
        factory: GatewayFactory = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise InfrastructureError(
            f"Cannot load gateway factory {factory_path}: {e}",
            subsystem="gateways",
            retryable=False,
        ) from e

    order_source, tax_authority = factory()
    if not isinstance(tax_authority, TaxAuthorityGateway):
        raise ValidationError.for_field("gateway_factory", "factory must return a TaxAuthorityGateway")
    if order_source is not None and not isinstance(order_source, OrderSourceGateway):
        raise ValidationError.for_field("gateway_factory", "factory must return an OrderSourceGateway or None")

    logger.info(
        f"Gateways loaded from {factory_path}: "
        f"{type(order_source).__name__}, {type(tax_authority).__name__}"
    )
    return order_source, tax_authority

"""
Application configuration loaded from environment variables.

All configuration is validated at startup to fail fast on misconfiguration.
Services never read settings implicitly: entry points turn them into an
``InvoicingPolicy`` and pass it to constructors.
"""

import logging
from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from afipsync.domain.amounts import VatRate
from afipsync.domain.models import InvoiceConcept, InvoicingPolicy
from afipsync.errors import ValidationError

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


class Settings(BaseSettings):
    """
    Application settings with validation.

    Loaded from ``AFIPSYNC_*`` environment variables.
    Use .env file for local development.
    """

    model_config = SettingsConfigDict(
        env_prefix="AFIPSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/afip-orders.db",
        description="SQLAlchemy async URL of the order ledger",
    )

    # AFIP invoicing
    sales_point: int = Field(
        default=2,
        ge=1,
        description="AFIP punto de venta used for every voucher",
    )
    concept: int = Field(
        default=2,
        ge=1,
        le=3,
        description="AFIP concept: 1 products, 2 services, 3 both",
    )
    max_lag_days: int = Field(
        default=10,
        ge=0,
        description="Days after the trade an invoice may still be dated (services)",
    )
    products_max_lag_days: int = Field(
        default=5,
        ge=0,
        description="Invoicing window when the concept is products",
    )
    include_vat: bool = Field(
        default=False,
        description="Itemize VAT (Type B). Monotributo sellers leave this off",
    )
    vat_rate: Decimal = Field(
        default=Decimal("0.21"),
        description="VAT rate used when include_vat is on",
    )
    round_to_whole_units: bool = Field(
        default=True,
        description="Round totals to whole pesos on vouchers without VAT",
    )

    # Exchange
    fetch_days: int = Field(
        default=7,
        ge=1,
        le=30,
        description="How many days of order history to fetch per sync",
    )
    gateway_factory: str | None = Field(
        default=None,
        description="'module:callable' returning (order_source, tax_authority) gateways",
    )

    # Runtime
    log_level: str = Field(default="INFO")
    debug: bool = Field(
        default=False,
        description="Enable debug mode with detailed error messages",
    )

    @field_validator("vat_rate")
    @classmethod
    def _known_vat_rate(cls, value: Decimal) -> Decimal:
        try:
            VatRate.from_rate(value)
        except ValidationError as e:
            raise ValueError(e.message) from None
        return value

    def invoicing_policy(self) -> InvoicingPolicy:
        """Explicit policy object for the domain services."""
        return InvoicingPolicy(
            sales_point=self.sales_point,
            concept=InvoiceConcept(self.concept),
            max_lag_days=self.max_lag_days,
            products_max_lag_days=self.products_max_lag_days,
            include_vat=self.include_vat,
            vat_rate=VatRate.from_rate(self.vat_rate),
            round_to_whole_units=self.round_to_whole_units,
        )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Settings are loaded once at startup and cached for subsequent calls.
    """
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the API and CLI entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

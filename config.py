import os
import logging
from dataclasses import dataclass
from typing import Mapping, Optional, List

logger = logging.getLogger("giftcard-webhook")

# ------------------------------------------------------------------------------
# Stałe integracji
# ------------------------------------------------------------------------------

METAFIELD_NAMESPACE = "bngc"
BINANCE_PRODUCTION_URL = "https://api.binance.com"
DEFAULT_SHOPIFY_API_VERSION = "2025-01"

_TRUE_VALUES = {"1", "true", "yes", "on"}


class ConfigurationError(Exception):
    """Brak lub nieprawidłowa konfiguracja – wymaga interwencji operatora."""
    pass


def _parse_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class Settings:
    """
    Konfiguracja aplikacji – budowana raz przy starcie i przekazywana
    do konstruktorów komponentów (bez globalnych stałych z env).
    """

    shopify_webhook_secret: str
    shopify_shop: str
    shopify_access_token: str
    mailersend_api_key: str
    email_from: str
    email_from_name: str = "Gift Cards"
    shopify_api_version: str = DEFAULT_SHOPIFY_API_VERSION
    giftcard_sandbox: bool = False
    giftcard_token: str = "USDT"
    binance_api_key: Optional[str] = None
    binance_api_secret: Optional[str] = None
    binance_base_url: str = BINANCE_PRODUCTION_URL
    giftcard_proxy_url: Optional[str] = None
    giftcard_proxy_secret: Optional[str] = None
    http_timeout: float = 10.0
    database_url: Optional[str] = None
    admin_api_token: Optional[str] = None

    @property
    def uses_proxy(self) -> bool:
        return bool(self.giftcard_proxy_url)

    @property
    def has_live_binance_credentials(self) -> bool:
        return bool(
            self.binance_api_key
            and self.binance_api_secret
            and self.binance_base_url.rstrip("/") == BINANCE_PRODUCTION_URL
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Czyta i waliduje konfigurację ze zmiennych środowiskowych.

        Rzuca ConfigurationError z listą wszystkich brakujących zmiennych,
        żeby operator mógł poprawić je za jednym razem.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(name)
            if value is None:
                return None
            value = value.strip()
            return value or None

        missing: List[str] = [
            name
            for name in (
                "SHOPIFY_WEBHOOK_SECRET",
                "SHOPIFY_SHOP",
                "SHOPIFY_ACCESS_TOKEN",
                "MAILERSEND_API_KEY",
                "EMAIL_FROM",
            )
            if not get(name)
        ]

        sandbox = _parse_bool(get("GIFTCARD_SANDBOX"))
        proxy_url = get("GIFTCARD_PROXY_URL")

        if not sandbox:
            if proxy_url:
                if not get("GIFTCARD_PROXY_SECRET"):
                    missing.append("GIFTCARD_PROXY_SECRET")
            else:
                for name in ("BINANCE_API_KEY", "BINANCE_API_SECRET"):
                    if not get(name):
                        missing.append(name)

        if missing:
            raise ConfigurationError(
                "Missing required configuration: " + ", ".join(missing)
            )

        try:
            http_timeout = float(get("HTTP_TIMEOUT") or "10.0")
        except ValueError:
            raise ConfigurationError(
                f"HTTP_TIMEOUT must be a number, got {get('HTTP_TIMEOUT')!r}"
            )
        if http_timeout <= 0:
            raise ConfigurationError("HTTP_TIMEOUT must be positive")

        settings = cls(
            shopify_webhook_secret=get("SHOPIFY_WEBHOOK_SECRET") or "",
            shopify_shop=get("SHOPIFY_SHOP") or "",
            shopify_access_token=get("SHOPIFY_ACCESS_TOKEN") or "",
            mailersend_api_key=get("MAILERSEND_API_KEY") or "",
            email_from=get("EMAIL_FROM") or "",
            email_from_name=get("EMAIL_FROM_NAME") or "Gift Cards",
            shopify_api_version=get("SHOPIFY_API_VERSION") or DEFAULT_SHOPIFY_API_VERSION,
            giftcard_sandbox=sandbox,
            giftcard_token=get("GIFTCARD_TOKEN") or "USDT",
            binance_api_key=get("BINANCE_API_KEY"),
            binance_api_secret=get("BINANCE_API_SECRET"),
            binance_base_url=get("BINANCE_BASE_URL") or BINANCE_PRODUCTION_URL,
            giftcard_proxy_url=proxy_url,
            giftcard_proxy_secret=get("GIFTCARD_PROXY_SECRET"),
            http_timeout=http_timeout,
            database_url=get("DATABASE_URL"),
            admin_api_token=get("ADMIN_API_TOKEN"),
        )

        # Tryb sandbox nie może żyć w jednym procesie z produkcyjnymi kluczami.
        if settings.giftcard_sandbox and settings.has_live_binance_credentials:
            raise ConfigurationError(
                "GIFTCARD_SANDBOX is enabled while live Binance credentials "
                "point at the production API – refusing to start"
            )

        if settings.giftcard_sandbox:
            logger.warning(
                "GIFTCARD_SANDBOX włączony – karty podarunkowe będą generowane syntetycznie."
            )

        return settings

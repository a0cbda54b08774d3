import hashlib
import hmac
import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict, Any, Callable
from urllib.parse import urlencode

import httpx

from config import Settings

logger = logging.getLogger("giftcard-webhook")

BINANCE_CREATE_CODE_PATH = "/sapi/v1/giftcard/createCode"
BINANCE_SUCCESS_CODE = "000000"
BINANCE_RECV_WINDOW = 5000

SANDBOX_CODE_PREFIX = "SANDBOX-"
SANDBOX_REFERENCE_PREFIX = "SBREF"


class IssuanceError(Exception):
    """Platforma płatności odrzuciła lub nie wykonała wystawienia karty."""
    pass


@dataclass(frozen=True)
class GiftCardResult:
    # code to sekret – nie logujemy go i nie zapisujemy w Shopify
    code: str
    reference_no: str
    expired_time: Optional[int] = None

    def __repr__(self) -> str:
        return (
            f"GiftCardResult(code='***', reference_no={self.reference_no!r}, "
            f"expired_time={self.expired_time!r})"
        )


class GiftCardIssuer(ABC):
    """Wystawia jedną kartę na dokładnie podaną kwotę przy każdym wywołaniu."""

    @abstractmethod
    def issue(self, currency_token: str, amount: Decimal) -> GiftCardResult:
        ...


def format_amount(amount: Decimal) -> str:
    """Kwota jako tekst bez notacji wykładniczej i zbędnych zer (10.50 -> '10.5')."""
    return format(amount.normalize(), "f")


def _check_amount(amount: Decimal) -> None:
    if amount <= 0:
        raise IssuanceError(f"Gift card amount must be positive, got {amount}")


def _parse_result(payload: Dict[str, Any]) -> GiftCardResult:
    """
    Wyciąga code/referenceNo/expiredTime z odpowiedzi.
    Obsługuje kształt Binance ({"data": {...}}) oraz płaską odpowiedź proxy.
    """
    if not isinstance(payload, dict):
        raise IssuanceError("Gift card API returned an unexpected response shape")
    data = payload.get("data", payload)
    if not isinstance(data, dict):
        raise IssuanceError("Gift card API returned an unexpected response shape")

    code = data.get("code")
    reference_no = data.get("referenceNo")
    if not code or not reference_no:
        raise IssuanceError("Gift card response is missing code or referenceNo")

    expired_time = data.get("expiredTime")
    try:
        expired_time = int(expired_time) if expired_time is not None else None
    except (TypeError, ValueError):
        expired_time = None

    return GiftCardResult(code=str(code), reference_no=str(reference_no), expired_time=expired_time)


# ------------------------------------------------------------------------------
# Binance Gift Card API
# ------------------------------------------------------------------------------


class BinanceGiftCardClient(GiftCardIssuer):
    """
    Klient do Binance Gift Card API (createCode).

    Podpis: HMAC-SHA256 (hex) po zakodowanym query stringu, klucz w nagłówku X-MBX-APIKEY.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str = "https://api.binance.com",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not api_key or not api_secret:
            raise ValueError("Binance API key and secret are required")

        self.api_key = api_key
        self._api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._clock = clock

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "X-MBX-APIKEY": self.api_key,
                "accept": "application/json",
            },
        )

    def sign(self, query: str) -> str:
        return hmac.new(
            self._api_secret.encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def issue(self, currency_token: str, amount: Decimal) -> GiftCardResult:
        _check_amount(amount)

        params = [
            ("token", currency_token),
            ("amount", format_amount(amount)),
            ("recvWindow", BINANCE_RECV_WINDOW),
            ("timestamp", int(self._clock() * 1000)),
        ]
        query = urlencode(params)
        signed_query = f"{query}&signature={self.sign(query)}"

        try:
            with self._client() as c:
                resp = c.post(f"{BINANCE_CREATE_CODE_PATH}?{signed_query}")
        except httpx.HTTPError as e:
            raise IssuanceError(f"Binance request failed: {e}") from e

        if resp.status_code != 200:
            raise IssuanceError(f"HTTP {resp.status_code} from Binance: {resp.text}")

        try:
            payload = resp.json()
        except ValueError as e:
            raise IssuanceError("Binance returned invalid JSON") from e

        if not isinstance(payload, dict):
            raise IssuanceError("Binance returned an unexpected response shape")

        if payload.get("code") != BINANCE_SUCCESS_CODE or payload.get("success") is False:
            raise IssuanceError(
                f"Binance error {payload.get('code')}: {payload.get('message')}"
            )

        return _parse_result(payload)


# ------------------------------------------------------------------------------
# Proxy z własnym sekretem
# ------------------------------------------------------------------------------


class ProxyGiftCardClient(GiftCardIssuer):
    """
    Przekazuje żądanie do własnego proxy, które trzyma klucze Binance.
    Uwierzytelnienie: współdzielony sekret w nagłówku X-Proxy-Secret.
    """

    def __init__(
        self,
        url: str,
        shared_secret: str,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not url or not shared_secret:
            raise ValueError("Proxy URL and shared secret are required")

        self.url = url
        self._shared_secret = shared_secret
        self.timeout = timeout
        self._transport = transport

    def issue(self, currency_token: str, amount: Decimal) -> GiftCardResult:
        _check_amount(amount)

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as c:
                resp = c.post(
                    self.url,
                    json={"token": currency_token, "amount": format_amount(amount)},
                    headers={"X-Proxy-Secret": self._shared_secret},
                )
        except httpx.HTTPError as e:
            raise IssuanceError(f"Gift card proxy request failed: {e}") from e

        if resp.status_code != 200:
            raise IssuanceError(f"HTTP {resp.status_code} from gift card proxy: {resp.text}")

        try:
            payload = resp.json()
        except ValueError as e:
            raise IssuanceError("Gift card proxy returned invalid JSON") from e

        if not isinstance(payload, dict):
            raise IssuanceError("Gift card proxy returned an unexpected response shape")

        if payload.get("success") is False:
            raise IssuanceError(f"Gift card proxy error: {payload.get('message')}")

        return _parse_result(payload)


# ------------------------------------------------------------------------------
# Tryb sandbox
# ------------------------------------------------------------------------------


class SandboxGiftCardIssuer(GiftCardIssuer):
    """Generuje syntetyczne karty bez kontaktu z siecią płatności."""

    def issue(self, currency_token: str, amount: Decimal) -> GiftCardResult:
        _check_amount(amount)
        code = SANDBOX_CODE_PREFIX + secrets.token_hex(8).upper()
        reference_no = SANDBOX_REFERENCE_PREFIX + secrets.token_hex(10).upper()
        logger.info("SANDBOX: wygenerowano kartę %s %s.", format_amount(amount), currency_token)
        return GiftCardResult(code=code, reference_no=reference_no, expired_time=None)


def build_giftcard_issuer(settings: Settings) -> GiftCardIssuer:
    """Wybiera implementację na podstawie jawnej konfiguracji."""
    if settings.giftcard_sandbox:
        return SandboxGiftCardIssuer()

    if settings.uses_proxy:
        return ProxyGiftCardClient(
            url=settings.giftcard_proxy_url or "",
            shared_secret=settings.giftcard_proxy_secret or "",
            timeout=settings.http_timeout,
        )

    return BinanceGiftCardClient(
        api_key=settings.binance_api_key or "",
        api_secret=settings.binance_api_secret or "",
        base_url=settings.binance_base_url,
        timeout=settings.http_timeout,
    )

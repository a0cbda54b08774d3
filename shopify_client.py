import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Dict, Any, Callable, Sequence

import httpx

from config import METAFIELD_NAMESPACE

logger = logging.getLogger("giftcard-webhook")


class CommerceError(Exception):
    """Błąd przy komunikacji z Shopify Admin API (odczyt lub zapis metafieldów)."""

    def __init__(self, message: str, detail: Any = None) -> None:
        super().__init__(message)
        self.detail = detail


@dataclass(frozen=True)
class ProductEligibility:
    enabled: bool = False
    cost_amount: Optional[Decimal] = None


# ------------------------------------------------------------------------------
# Dostawca tokenu dostępowego
# ------------------------------------------------------------------------------


class AccessTokenProvider(ABC):
    """Źródło tokenu dostępowego do Admin API."""

    @abstractmethod
    def get_token(self) -> str:
        ...

    def invalidate(self) -> None:
        """Wywoływane po odpowiedzi 401 – domyślnie nic nie robi."""


class StaticAccessTokenProvider(AccessTokenProvider):
    """Token offline z instalacji aplikacji – nie wygasa, nie wymaga odświeżania."""

    def __init__(self, token: str) -> None:
        if not token:
            raise ValueError("Access token must not be empty")
        self._token = token

    def get_token(self) -> str:
        return self._token


# ------------------------------------------------------------------------------
# Interfejs platformy sklepowej
# ------------------------------------------------------------------------------


class CommerceClient(ABC):
    """Operacje na metadanych zamówień i produktów, których używa pipeline."""

    @abstractmethod
    def is_order_already_fulfilled(self, order_id: str) -> bool:
        ...

    @abstractmethod
    def get_product_eligibility(self, product_id: str) -> ProductEligibility:
        ...

    @abstractmethod
    def record_fulfillment(self, order_id: str, masked_references: Sequence[str]) -> None:
        ...


def to_gid(resource: str, identifier: Any) -> str:
    """
    Zamienia numeryczne ID z payloadu webhooka na globalne ID GraphQL.
    Wartości już w formacie gid:// zwraca bez zmian.
    """
    value = str(identifier).strip()
    if value.startswith("gid://"):
        return value
    return f"gid://shopify/{resource}/{value}"


def parse_cost_amount(raw: Optional[str]) -> Optional[Decimal]:
    if raw is None:
        return None
    try:
        amount = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


ORDER_SENT_QUERY = """
query ($id: ID!, $namespace: String!) {
  order(id: $id) {
    id
    sent: metafield(namespace: $namespace, key: "sent") { value }
  }
}
"""

PRODUCT_ELIGIBILITY_QUERY = """
query ($id: ID!, $namespace: String!) {
  product(id: $id) {
    id
    enabled: metafield(namespace: $namespace, key: "enabled") { value }
    costAmount: metafield(namespace: $namespace, key: "cost_amount") { value }
  }
}
"""

METAFIELDS_SET_MUTATION = """
mutation ($metafields: [MetafieldsSetInput!]!) {
  metafieldsSet(metafields: $metafields) {
    metafields { key value }
    userErrors { field message code }
  }
}
"""


class ShopifyClient(CommerceClient):
    """
    Klient do Shopify Admin GraphQL API – metafieldy w przestrzeni nazw 'bngc'.

    - order:   sent (boolean), reference_nos (multi_line_text_field), sent_at (date_time)
    - product: enabled (boolean), cost_amount (decimal jako tekst)
    """

    def __init__(
        self,
        shop: str,
        token_provider: AccessTokenProvider,
        api_version: str = "2025-01",
        timeout: float = 10.0,
        namespace: str = METAFIELD_NAMESPACE,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if not shop:
            raise ValueError("Shop domain must not be empty")

        self.endpoint = f"https://{shop}/admin/api/{api_version}/graphql.json"
        self.token_provider = token_provider
        self.timeout = timeout
        self.namespace = namespace
        self._transport = transport
        self._clock = clock

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "X-Shopify-Access-Token": self.token_provider.get_token(),
                "accept": "application/json",
                "content-type": "application/json",
            },
        )

    def _graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        try:
            with self._client() as c:
                resp = c.post(self.endpoint, json={"query": query, "variables": variables})
        except httpx.HTTPError as e:
            raise CommerceError(f"Shopify request failed: {e}", detail=str(e)) from e

        if resp.status_code == 401:
            self.token_provider.invalidate()

        if resp.status_code != 200:
            raise CommerceError(
                f"HTTP {resp.status_code} from Shopify: {resp.text}",
                detail=resp.text,
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise CommerceError("Shopify returned invalid JSON", detail=resp.text) from e

        errors = body.get("errors")
        if errors:
            raise CommerceError(f"Shopify GraphQL errors: {errors}", detail=errors)

        return body.get("data") or {}

    # -------------------------------------------------------------------
    #  ODCZYT
    # -------------------------------------------------------------------

    def is_order_already_fulfilled(self, order_id: str) -> bool:
        """
        Sprawdza flagę bngc.sent zamówienia. Brak metafielda = nie wysłano.
        """
        data = self._graphql(
            ORDER_SENT_QUERY,
            {"id": to_gid("Order", order_id), "namespace": self.namespace},
        )
        order = data.get("order")
        if order is None:
            raise CommerceError(f"Order {order_id} not found in Shopify", detail=data)

        sent = order.get("sent") or {}
        return str(sent.get("value") or "").strip().lower() == "true"

    def get_product_eligibility(self, product_id: str) -> ProductEligibility:
        """
        Pobiera bngc.enabled i bngc.cost_amount produktu.
        Brak lub nieczytelne wartości -> enabled=False, cost_amount=None.
        """
        data = self._graphql(
            PRODUCT_ELIGIBILITY_QUERY,
            {"id": to_gid("Product", product_id), "namespace": self.namespace},
        )
        product = data.get("product")
        if not product:
            logger.info("Produkt %s nie istnieje w Shopify – traktuję jako nieaktywny.", product_id)
            return ProductEligibility()

        enabled_field = product.get("enabled") or {}
        cost_field = product.get("costAmount") or {}

        return ProductEligibility(
            enabled=str(enabled_field.get("value") or "").strip().lower() == "true",
            cost_amount=parse_cost_amount(cost_field.get("value")),
        )

    # -------------------------------------------------------------------
    #  ZAPIS DOWODU WYSYŁKI → metafieldsSet
    # -------------------------------------------------------------------

    def record_fulfillment(self, order_id: str, masked_references: Sequence[str]) -> None:
        """
        Zapisuje jednym wywołaniem metafieldsSet: sent=true, reference_nos, sent_at.
        Każdy userError kończy się CommerceError – częściowy zapis nie może przejść po cichu.
        """
        owner_id = to_gid("Order", order_id)
        sent_at = self._clock().astimezone(timezone.utc).replace(microsecond=0).isoformat()

        metafields: List[Dict[str, Any]] = [
            {
                "ownerId": owner_id,
                "namespace": self.namespace,
                "key": "sent",
                "type": "boolean",
                "value": "true",
            },
            {
                "ownerId": owner_id,
                "namespace": self.namespace,
                "key": "reference_nos",
                "type": "multi_line_text_field",
                "value": "\n".join(masked_references),
            },
            {
                "ownerId": owner_id,
                "namespace": self.namespace,
                "key": "sent_at",
                "type": "date_time",
                "value": sent_at,
            },
        ]

        data = self._graphql(METAFIELDS_SET_MUTATION, {"metafields": metafields})
        result = data.get("metafieldsSet")
        if result is None:
            raise CommerceError("metafieldsSet returned no result", detail=data)

        user_errors = result.get("userErrors") or []
        if user_errors:
            raise CommerceError(
                f"metafieldsSet rejected for order {order_id}: {user_errors}",
                detail=user_errors,
            )

        logger.info(
            "Zapisano dowód wysyłki dla zamówienia %s (%s referencji).",
            order_id,
            len(masked_references),
        )

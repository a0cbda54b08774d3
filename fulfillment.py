"""
Realizacja opłaconych zamówień: webhook orders/paid -> karty podarunkowe -> e-mail -> dowód w Shopify.

Kolejność kroków jest ściśle sekwencyjna:
RECEIVED -> AUTHENTICATED -> DEDUPED -> ELIGIBLE_ITEMS_RESOLVED -> CODES_ISSUED
-> NOTIFIED -> PROOF_RECORDED -> DONE

Jedynym źródłem prawdy o "już zrealizowane" jest metafield bngc.sent zamówienia.
Pipeline nie trzyma żadnego lokalnego stanu między webhookami.
"""

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import List, Dict, Any, Optional

from email_utils import Notifier, NotificationError, build_giftcard_email
from giftcard_client import GiftCardIssuer, IssuanceError, format_amount
from security_utils import AuthenticationError, mask_reference, verify_shopify_webhook
from shopify_client import CommerceClient, CommerceError

logger = logging.getLogger("giftcard-webhook")


class FulfillmentState(str, Enum):
    RECEIVED = "received"
    AUTHENTICATED = "authenticated"
    DEDUPED = "deduped"
    ELIGIBLE_ITEMS_RESOLVED = "eligible_items_resolved"
    CODES_ISSUED = "codes_issued"
    NOTIFIED = "notified"
    PROOF_RECORDED = "proof_recorded"
    DONE = "done"

    REJECTED_AUTH = "rejected_auth"
    ALREADY_DONE = "already_done"
    NO_RECIPIENT = "no_recipient"
    NO_ELIGIBLE_ITEMS = "no_eligible_items"
    ISSUANCE_FAILED = "issuance_failed"
    NOTIFICATION_FAILED = "notification_failed"
    PROOF_FAILED = "proof_failed"


# Stany końcowe, które oznaczają poprawną obsługę webhooka (także celowe no-op)
SUCCESS_STATES = frozenset(
    {
        FulfillmentState.DONE,
        FulfillmentState.ALREADY_DONE,
        FulfillmentState.NO_RECIPIENT,
        FulfillmentState.NO_ELIGIBLE_ITEMS,
    }
)


class InvalidPayloadError(ValueError):
    """Podpisany poprawnie webhook, ale body nie jest obiektem zamówienia."""
    pass


# ------------------------------------------------------------------------------
# Model zamówienia z payloadu webhooka
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class LineItem:
    product_id: Optional[str]
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class Order:
    order_id: str
    name: str
    email: Optional[str]
    line_items: List[LineItem]


@dataclass(frozen=True)
class EligibleItem:
    item: LineItem
    quantity: int
    unit_amount: Decimal


def _to_decimal(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return Decimal("0")
    return amount if amount.is_finite() else Decimal("0")


def _to_quantity(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def extract_customer_email(order: Dict[str, Any]) -> Optional[str]:
    """
    Szuka maila klienta w kilku miejscach payloadu:
    email -> contact_email -> customer.email
    """
    for key in ("email", "contact_email"):
        value = order.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()

    customer = order.get("customer") or {}
    if isinstance(customer, dict):
        value = customer.get("email")
        if isinstance(value, str) and value.strip():
            return value.strip()

    return None


def extract_line_items(order: Dict[str, Any]) -> List[LineItem]:
    result: List[LineItem] = []

    for item in order.get("line_items") or []:
        if not isinstance(item, dict):
            continue

        product_id = item.get("product_id")
        result.append(
            LineItem(
                product_id=str(product_id) if product_id not in (None, "") else None,
                quantity=_to_quantity(item.get("quantity")),
                unit_price=_to_decimal(item.get("price")),
            )
        )

    return result


def parse_order(raw_body: bytes) -> Order:
    """Parsuje body webhooka dopiero po weryfikacji podpisu."""
    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidPayloadError(f"Webhook body is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise InvalidPayloadError("Webhook body is not a JSON object")

    order_id = payload.get("admin_graphql_api_id") or payload.get("id")
    if order_id in (None, ""):
        raise InvalidPayloadError("Webhook body has no order id")

    return Order(
        order_id=str(order_id),
        name=str(payload.get("name") or payload.get("order_number") or order_id),
        email=extract_customer_email(payload),
        line_items=extract_line_items(payload),
    )


# ------------------------------------------------------------------------------
# Wynik obsługi
# ------------------------------------------------------------------------------


@dataclass
class FulfillmentResult:
    state: FulfillmentState
    order_id: Optional[str] = None
    order_name: Optional[str] = None
    message: str = ""
    masked_references: List[str] = field(default_factory=list)
    # kody trafiają tu tylko na potrzeby ręcznego odzyskania, nigdy do logów audytu
    codes: List[str] = field(default_factory=list, repr=False)
    states: List[FulfillmentState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state in SUCCESS_STATES

    @property
    def codes_issued(self) -> int:
        return len(self.codes)


class FulfillmentPipeline:
    """
    Orkiestruje weryfikację, deduplikację, wystawienie kart, wysyłkę maila i zapis dowodu.

    Błędy odczytu z Shopify (CommerceError) przed wystawieniem kart są propagowane –
    nic się jeszcze nie wydarzyło. Błędy po wystawieniu kart są zamieniane na stany
    końcowe, żeby wystawione kody nie zniknęły.
    """

    def __init__(
        self,
        webhook_secret: str,
        commerce: CommerceClient,
        issuer: GiftCardIssuer,
        notifier: Notifier,
        currency_token: str = "USDT",
    ) -> None:
        self.webhook_secret = webhook_secret
        self.commerce = commerce
        self.issuer = issuer
        self.notifier = notifier
        self.currency_token = currency_token

    def authenticate(self, raw_body: bytes, signature_header: Optional[str]) -> None:
        if not verify_shopify_webhook(raw_body, signature_header, self.webhook_secret):
            raise AuthenticationError("Invalid webhook signature")

    def handle_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> FulfillmentResult:
        """
        Pełna obsługa webhooka orders/paid na surowym body.

        Rzuca InvalidPayloadError dla poprawnie podpisanego, ale nieczytelnego body
        oraz CommerceError przy błędach odczytu z Shopify.
        """
        states = [FulfillmentState.RECEIVED]

        try:
            self.authenticate(raw_body, signature_header)
        except AuthenticationError:
            logger.warning("Odrzucono webhook z nieprawidłowym podpisem HMAC.")
            states.append(FulfillmentState.REJECTED_AUTH)
            return FulfillmentResult(
                state=FulfillmentState.REJECTED_AUTH,
                message="Invalid webhook signature",
                states=states,
            )

        states.append(FulfillmentState.AUTHENTICATED)
        order = parse_order(raw_body)
        return self.fulfill(order, states)

    def fulfill(
        self,
        order: Order,
        states: Optional[List[FulfillmentState]] = None,
    ) -> FulfillmentResult:
        """Realizuje uwierzytelnione zamówienie."""
        if states is None:
            states = [FulfillmentState.RECEIVED, FulfillmentState.AUTHENTICATED]

        def finish(state: FulfillmentState, message: str, **kwargs: Any) -> FulfillmentResult:
            states.append(state)
            return FulfillmentResult(
                state=state,
                order_id=order.order_id,
                order_name=order.name,
                message=message,
                states=states,
                **kwargs,
            )

        logger.info(
            "Odebrano webhook orders/paid dla zamówienia %s (%s), pozycji: %s.",
            order.order_id,
            order.name,
            len(order.line_items),
        )

        # 1. Idempotencja – jedyne źródło prawdy to bngc.sent
        if self.commerce.is_order_already_fulfilled(order.order_id):
            logger.info("Zamówienie %s ma już bngc.sent=true – pomijam (retry webhooka).", order.order_id)
            return finish(FulfillmentState.ALREADY_DONE, "Already sent")
        states.append(FulfillmentState.DEDUPED)

        # 2. Odbiorca musi być znany zanim cokolwiek wystawimy
        if not order.email:
            logger.warning("Zamówienie %s nie ma adresu e-mail klienta – nic nie wystawiam.", order.order_id)
            return finish(FulfillmentState.NO_RECIPIENT, "No customer email")

        # 3. Pozycje kwalifikujące się do wystawienia kart
        eligible = self.resolve_eligible_items(order)
        if not eligible:
            logger.info("Zamówienie %s nie zawiera produktów z kartami podarunkowymi.", order.order_id)
            return finish(FulfillmentState.NO_ELIGIBLE_ITEMS, "No eligible items")
        states.append(FulfillmentState.ELIGIBLE_ITEMS_RESOLVED)

        # 4. Wystawienie kart – jedna karta na sztukę, sekwencyjnie
        codes: List[str] = []
        masked_references: List[str] = []
        # kwota ostatniej pozycji, dla której faktycznie wystawiono kod
        amount_per_code = eligible[0].unit_amount
        issuance_error: Optional[IssuanceError] = None

        try:
            for entry in eligible:
                for _ in range(entry.quantity):
                    result = self.issuer.issue(self.currency_token, entry.unit_amount)
                    codes.append(result.code)
                    masked_references.append(mask_reference(result.reference_no))
                    amount_per_code = entry.unit_amount
        except IssuanceError as e:
            issuance_error = e
        except Exception as e:
            # Wystawione już kody muszą trafić do klienta niezależnie od rodzaju błędu.
            logger.exception(
                "Nieoczekiwany błąd klienta kart dla zamówienia %s.",
                order.order_id,
            )
            issuance_error = IssuanceError(f"Unexpected issuer failure: {e!r}")

        if issuance_error is not None:
            expected = sum(entry.quantity for entry in eligible)
            logger.error(
                "Błąd wystawiania kart dla zamówienia %s: %s (wystawiono %s z %s).",
                order.order_id,
                issuance_error,
                len(codes),
                expected,
            )
            if not codes:
                return finish(
                    FulfillmentState.ISSUANCE_FAILED,
                    f"Gift card issuance failed: {issuance_error}",
                )
        else:
            states.append(FulfillmentState.CODES_ISSUED)
            logger.info(
                "Wystawiono %s kart(y) dla zamówienia %s: %s",
                len(codes),
                order.order_id,
                ", ".join(masked_references),
            )

        # 5. Jeden mail ze wszystkimi kodami (także częściowo wystawionymi)
        subject, body_text, body_html = build_giftcard_email(
            codes=codes,
            amount_per_code=amount_per_code,
            currency_token=self.currency_token,
            order_name=order.name,
        )
        try:
            self.notifier.send(order.email, subject, body_text, body_html)
        except NotificationError as e:
            # Kody są już wydane i nie trafią do Shopify – jedyny ślad do ręcznej wysyłki.
            logger.critical(
                "NIE WYSŁANO maila z kartami dla zamówienia %s (%s) na %s: %s. "
                "Kwota na kod: %s %s. Kody do ręcznej wysyłki: %s",
                order.order_id,
                order.name,
                order.email,
                e,
                format_amount(amount_per_code),
                self.currency_token,
                ", ".join(codes),
            )
            return finish(
                FulfillmentState.NOTIFICATION_FAILED,
                f"Notification failed: {e}",
                masked_references=masked_references,
                codes=codes,
            )
        if issuance_error is None:
            states.append(FulfillmentState.NOTIFIED)

        # 6. Dowód wysyłki w metafieldach zamówienia
        try:
            self.commerce.record_fulfillment(order.order_id, masked_references)
        except CommerceError as e:
            logger.error(
                "Kody dla zamówienia %s zostały wysłane, ale nie udało się zapisać bngc.sent: %s. "
                "Referencje: %s",
                order.order_id,
                e,
                ", ".join(masked_references),
            )
            if issuance_error is not None:
                return finish(
                    FulfillmentState.ISSUANCE_FAILED,
                    f"Gift card issuance failed: {issuance_error}; proof not recorded",
                    masked_references=masked_references,
                    codes=codes,
                )
            return finish(
                FulfillmentState.PROOF_FAILED,
                f"Codes sent but proof not recorded: {e}",
                masked_references=masked_references,
                codes=codes,
            )

        if issuance_error is not None:
            return finish(
                FulfillmentState.ISSUANCE_FAILED,
                f"Gift card issuance failed after {len(codes)} code(s): {issuance_error}",
                masked_references=masked_references,
                codes=codes,
            )

        states.append(FulfillmentState.PROOF_RECORDED)
        logger.info(
            "Zamówienie %s zrealizowane: wysłano %s kod(ów) na %s.",
            order.order_id,
            len(codes),
            order.email,
        )
        return finish(
            FulfillmentState.DONE,
            "OK",
            masked_references=masked_references,
            codes=codes,
        )

    def resolve_eligible_items(self, order: Order) -> List[EligibleItem]:
        """
        Zwraca pozycje do realizacji w kolejności z payloadu.

        Kwota na sztukę: cost_amount z metafielda, jeśli > 0, w przeciwnym razie cena pozycji.
        """
        result: List[EligibleItem] = []

        for item in order.line_items:
            if not item.product_id:
                continue

            if item.quantity <= 0:
                continue

            eligibility = self.commerce.get_product_eligibility(item.product_id)
            if not eligibility.enabled:
                continue

            cost_amount = eligibility.cost_amount
            if cost_amount is not None and cost_amount > 0:
                unit_amount = cost_amount
            else:
                unit_amount = item.unit_price

            if unit_amount <= 0:
                logger.info(
                    "Produkt %s w zamówieniu %s ma kwotę <= 0 – pomijam.",
                    item.product_id,
                    order.order_id,
                )
                continue

            result.append(EligibleItem(item=item, quantity=item.quantity, unit_amount=unit_amount))

        return result

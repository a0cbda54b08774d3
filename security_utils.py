import base64
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger("giftcard-webhook")

REFERENCE_MASK = "****"


class AuthenticationError(Exception):
    """Nieprawidłowy lub brakujący podpis webhooka."""
    pass


def verify_shopify_webhook(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
) -> bool:
    """
    Weryfikuje nagłówek X-Shopify-Hmac-Sha256.

    HMAC-SHA256 liczony jest po surowym body (bytes, przed parsowaniem JSON),
    wynik kodowany base64 i porównywany w czasie stałym.
    Nigdy nie rzuca wyjątku – każda niezgodność to False.
    """
    if not secret or not signature_header:
        return False

    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    expected = base64.b64encode(digest)

    try:
        received = signature_header.encode("ascii")
    except UnicodeEncodeError:
        return False

    # compare_digest zwraca False także przy różnej długości
    return hmac.compare_digest(expected, received)


def mask_reference(reference_no: Optional[str]) -> str:
    """
    Maskuje numer referencyjny karty: zostawia 4 pierwsze i 4 ostatnie znaki.
    Ciągi o długości <= 8 są zastępowane w całości maską.
    """
    value = str(reference_no or "")
    if len(value) <= 8:
        return REFERENCE_MASK
    return f"{value[:4]}{REFERENCE_MASK}{value[-4:]}"

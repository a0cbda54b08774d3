import html
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Tuple, Dict, Any, Optional, Sequence

import requests

from giftcard_client import format_amount

logger = logging.getLogger("giftcard-webhook")

MAILERSEND_API_URL = "https://api.mailersend.com/v1/email"


class NotificationError(Exception):
    """Nie udało się dostarczyć maila z kodami."""
    pass


class Notifier(ABC):
    """Dostarcza jedną wiadomość z kompletną listą kodów."""

    @abstractmethod
    def send(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        body_html: Optional[str] = None,
    ) -> None:
        ...


# ------------------------------------------------------------------------------
# Wysyłka przez MailerSend Web API
# ------------------------------------------------------------------------------


class MailerSendNotifier(Notifier):
    """
    Wysyła maile przy użyciu MailerSend Web API (token Bearer).
    """

    def __init__(
        self,
        api_key: str,
        from_email: str,
        from_name: str = "Gift Cards",
        timeout: float = 15.0,
        api_url: str = MAILERSEND_API_URL,
    ) -> None:
        if not api_key:
            raise ValueError("MailerSend API key is required")
        if not from_email:
            raise ValueError("Sender address is required")

        self._api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout
        self.api_url = api_url

    def send(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        body_html: Optional[str] = None,
    ) -> None:
        """
        :param recipient: adres odbiorcy
        :param subject: temat wiadomości
        :param body_text: treść w formacie text/plain
        :param body_html: treść w formacie text/html (opcjonalnie)
        """
        if body_html is None:
            body_html = f"<pre>{html.escape(body_text)}</pre>"

        data: Dict[str, Any] = {
            "from": {
                "email": self.from_email,
                "name": self.from_name,
            },
            "to": [
                {
                    "email": recipient,
                }
            ],
            "subject": subject,
            "text": body_text,
            "html": body_html,
        }

        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        logger.info("Wysyłanie e-maila do %s przez MailerSend...", recipient)

        try:
            resp = requests.post(self.api_url, json=data, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise NotificationError(f"MailerSend request failed: {e}") from e

        if resp.status_code >= 400:
            logger.error(
                "Błąd MailerSend: %s – %s",
                resp.status_code,
                resp.text,
            )
            raise NotificationError(f"MailerSend returned HTTP {resp.status_code}: {resp.text}")

        logger.info("E-mail do %s został pomyślnie wysłany.", recipient)


# ------------------------------------------------------------------------------
# Treść maila z kartami podarunkowymi
# ------------------------------------------------------------------------------


def _build_giftcard_html(
    codes: Sequence[str],
    amount_text: str,
    order_name: str,
) -> str:
    """
    Buduje HTML dla maila z kodami:
    - lista kodów w kolejności wystawienia
    - kwota na kod
    - numer zamówienia
    """
    rows = "\n".join(
        f"""
            <tr>
              <td style="padding:6px 0; font-family:ui-monospace, SFMono-Regular, Menlo, monospace; font-size:15px; font-weight:600; color:#111827;">
                {index}. {html.escape(code)}
              </td>
            </tr>"""
        for index, code in enumerate(codes, start=1)
    )

    return f"""
<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <title>Your gift card codes – order {html.escape(order_name)}</title>
  </head>
  <body style="margin:0; padding:0; background:#f3f4f6; font-family:system-ui, -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;">
    <table width="100%" cellpadding="0" cellspacing="0" style="background:#f3f4f6; padding:24px 0;">
      <tr>
        <td align="center">
          <table width="100%" cellpadding="0" cellspacing="0" style="max-width:640px; background:#ffffff; border-radius:12px; overflow:hidden;">
            <tr>
              <td style="padding:24px 24px 4px 24px; font-size:16px; font-weight:600; color:#111827;">
                Thank you for your purchase
              </td>
            </tr>
            <tr>
              <td style="padding:0 24px 12px 24px; font-size:14px; line-height:1.6; color:#4b5563;">
                Below you will find your gift card code(s). Each code is worth <strong>{html.escape(amount_text)}</strong>.
              </td>
            </tr>
            <tr>
              <td style="padding:0 24px 16px 24px;">
                <table width="100%" cellpadding="0" cellspacing="0" style="background:#f9fafb; border-radius:10px; padding:12px 14px; border:1px solid #e5e7eb;">
{rows}
                </table>
              </td>
            </tr>
            <tr>
              <td style="padding:0 24px 16px 24px; font-size:13px; color:#374151;">
                Order number: <strong>{html.escape(order_name)}</strong>
              </td>
            </tr>
            <tr>
              <td style="padding:0 24px 24px 24px; font-size:13px; line-height:1.6; color:#6b7280;">
                Keep these codes private – anyone who has a code can redeem it.
              </td>
            </tr>
          </table>
        </td>
      </tr>
    </table>
  </body>
</html>
    """.strip()


def build_giftcard_email(
    codes: Sequence[str],
    amount_per_code: Decimal,
    currency_token: str,
    order_name: str,
) -> Tuple[str, str, str]:
    """
    Zwraca (temat, treść text/plain, treść text/html) maila z kodami.

    Kwota na kod to kwota ostatniej pozycji, dla której wystawiono kod – przy zamówieniach
    z różnymi kwotami mail pokazuje tylko jedną wartość.
    """
    amount_text = f"{format_amount(amount_per_code)} {currency_token}"
    subject = f"Your gift card codes – order {order_name}"

    lines: List[str] = [
        "Hello!",
        "",
        "Thank you for your purchase. Here are your gift card codes:",
        "",
    ]
    for index, code in enumerate(codes, start=1):
        lines.append(f"{index}. {code}")

    lines.extend(
        [
            "",
            f"Amount per code: {amount_text}",
            f"Order number: {order_name}",
            "",
            "Keep these codes private – anyone who has a code can redeem it.",
        ]
    )

    body_text = "\n".join(lines)
    body_html = _build_giftcard_html(codes, amount_text, order_name)

    return subject, body_text, body_html

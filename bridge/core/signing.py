"""HMAC-подпись webhook запросов.

Формат
------
Подписывается строка `"{timestamp}.{body}"` (HMAC-SHA256, hex).
`timestamp`: unix-время в секундах (строкой). Получатель проверяет подпись
и отбрасывает запросы со старым timestamp (защита от replay).
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

from bridge.core.clock import Clock

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"
DEFAULT_TOLERANCE_SECONDS = 300


@dataclass(frozen=True, slots=True)
class SignedPayload:
    body: str
    signature: str
    timestamp: str


class Signer:
    """Подпись и проверка тел webhook запросов.

    Parameters
    ----------
    secret : str
        Общий секрет с получателем.
    clock : Clock
        Источник времени для timestamp.
    product_name : str, default="Hikari"
        Имя продукта для заголовка `User-Agent`.
    """

    def __init__(self, secret: str, clock: Clock, product_name: str = "Hikari") -> None:
        self._secret = secret.encode("utf-8")
        self.clock = clock
        self.user_agent = f"{product_name}-Automation-Bridge/1.0"

    def _digest(self, body: str, timestamp: str) -> str:
        message = f"{timestamp}.{body}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def sign(self, body: str, timestamp: str | None = None) -> SignedPayload:
        """Подписать тело запроса.

        Parameters
        ----------
        body : str
            Сериализованное тело (каноничный JSON).
        timestamp : str | None
            Unix-время в секундах; по умолчанию текущее.

        Returns
        -------
        SignedPayload
            Тело, подпись и timestamp.
        """

        if timestamp is None:
            timestamp = str(int(self.clock.now().timestamp()))
        return SignedPayload(
            body=body,
            signature=self._digest(body, timestamp),
            timestamp=timestamp,
        )

    def verify(
        self,
        body: str,
        signature: str,
        timestamp: str,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    ) -> bool:
        """Проверить подпись и свежесть timestamp.

        Returns
        -------
        bool
            True, если подпись совпала и timestamp в пределах окна.
        """

        try:
            ts = int(timestamp)
        except (TypeError, ValueError):
            return False

        now = int(self.clock.now().timestamp())
        if abs(now - ts) > tolerance_seconds:
            return False

        expected = self._digest(body, timestamp)
        return hmac.compare_digest(expected, signature)

    def webhook_headers(self, signed: SignedPayload) -> dict[str, str]:
        """Заголовки исходящего webhook запроса."""

        return {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: signed.signature,
            TIMESTAMP_HEADER: signed.timestamp,
            "User-Agent": self.user_agent,
        }

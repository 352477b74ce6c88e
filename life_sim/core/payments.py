"""外部支付回调的校验与幂等入账。

支付流程：客户端先创建支付意向拿到 ``ref``，支付方完成付款后回调 webhook，
携带 ``txId`` 与 ``ref``。入账通过 ``credit_once("payment:<txId>")`` 完成，
同一笔交易重复回调只会入账一次。
"""

from __future__ import annotations

import hashlib
import hmac
import math
import secrets
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urlencode

from ..data_access.models import CreditResult, now_ms
from ..data_access.profile_store import ProfileStore
from ..utils.settings import PaymentConfig


class PaymentRejected(RuntimeError):
    """回调内容不合法（缺字段、币种或金额不符）。"""


@dataclass
class PaymentIntent:
    ref: str
    user_id: str
    created_at: int
    credited_at: Optional[int] = None
    tx_id: Optional[str] = None


class PaymentService:
    def __init__(self, profiles: ProfileStore, config: PaymentConfig) -> None:
        self._profiles = profiles
        self._config = config
        self._intents: Dict[str, PaymentIntent] = {}

    def create_intent(self, user_id: str) -> PaymentIntent:
        ref = secrets.token_hex(16)
        intent = PaymentIntent(ref=ref, user_id=user_id, created_at=now_ms())
        self._intents[ref] = intent
        return intent

    def checkout_url(self, intent: PaymentIntent) -> str:
        base = self._config.base_link
        separator = "&" if "?" in base else "?"
        return f"{base}{separator}{urlencode({'ref': intent.ref})}"

    def get_intent(self, ref: Optional[str]) -> Optional[PaymentIntent]:
        if not ref:
            return None
        return self._intents.get(ref)

    def verify(self, provided: Optional[str], raw_body: bytes) -> bool:
        """接受与共享密钥完全一致的值，或请求体的 HMAC-SHA256 十六进制摘要。"""

        if not provided:
            return False
        secret = self._config.secret.encode("utf-8")
        candidate = provided.encode("utf-8")
        if hmac.compare_digest(candidate, secret):
            return True
        digest = hmac.new(secret, raw_body, hashlib.sha256).hexdigest().encode("utf-8")
        return hmac.compare_digest(candidate, digest)

    def credit(
        self,
        intent: PaymentIntent,
        tx_id: Optional[str],
        amount_usd: Optional[float],
        currency: Optional[str] = "USD",
    ) -> CreditResult:
        if not tx_id:
            raise PaymentRejected("missing txId")
        if str(currency or "USD").upper() != "USD":
            raise PaymentRejected("invalid currency")
        if (
            amount_usd is None
            or not math.isfinite(amount_usd)
            or amount_usd < self._config.min_amount_usd
        ):
            raise PaymentRejected("invalid amount")
        result = self._profiles.credit_once(
            intent.user_id, self._config.credit_amount, f"payment:{tx_id}"
        )
        if result.applied:
            intent.credited_at = now_ms()
            intent.tx_id = str(tx_id)
        return result


__all__ = ["PaymentIntent", "PaymentRejected", "PaymentService"]

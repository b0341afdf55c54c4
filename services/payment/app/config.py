"""
Payment Service — 設定

環境変数から読み込む。PayPal の資格情報がない環境 (開発・デモ) では
PAYMENT_SUCCEEDED フラグで決済の成功/失敗をシミュレートする。
"""

import os
from collections.abc import Mapping

from pydantic import BaseModel

SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"
LIVE_BASE_URL = "https://api-m.paypal.com"

_ENV_KEYS = {
    "payment_succeeded": "PAYMENT_SUCCEEDED",
    "use_paypal": "USE_PAYPAL",
    "paypal_client_id": "PAYPAL_CLIENT_ID",
    "paypal_client_secret": "PAYPAL_CLIENT_SECRET",
    "paypal_environment": "PAYPAL_ENVIRONMENT",
    "currency_code": "PAYMENT_CURRENCY_CODE",
    "capture_timeout_seconds": "CAPTURE_TIMEOUT_SECONDS",
}


class PaymentOptions(BaseModel):
    # PayPal を使わないときの決済結果
    payment_succeeded: bool = True
    use_paypal: bool = False
    paypal_client_id: str | None = None
    paypal_client_secret: str | None = None
    # "Sandbox" または "Live"
    paypal_environment: str = "Sandbox"
    currency_code: str = "USD"
    capture_timeout_seconds: float = 15.0

    @property
    def paypal_configured(self) -> bool:
        return (
            self.use_paypal
            and bool(self.paypal_client_id and self.paypal_client_id.strip())
            and bool(self.paypal_client_secret and self.paypal_client_secret.strip())
        )

    @property
    def paypal_base_url(self) -> str:
        if self.paypal_environment.strip().lower() == "live":
            return LIVE_BASE_URL
        return SANDBOX_BASE_URL

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PaymentOptions":
        env = os.environ if environ is None else environ
        return cls(**{
            field: env[key]
            for field, key in _ENV_KEYS.items()
            if env.get(key, "") != ""
        })

"""
Payment Service — 決済ゲートウェイ

決済プロバイダとの境界は capture(provider_order_id) だけの狭いインターフェース。
実装は設定で選ぶ:

  PayPalHttpGateway: PayPal REST API を httpx で直接呼ぶ
  SimulatedGateway:  ネットワークに出ず、設定されたフラグで成功/失敗を返す

ゲートウェイは失敗を例外 (GatewayFailure) で知らせる。
成功/失敗への畳み込みは reconciler.py が行う。
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

import httpx

from .config import PaymentOptions

logger = logging.getLogger(__name__)

COMPLETED = "COMPLETED"


@dataclass(frozen=True)
class CaptureResult:
    """1回の capture の結果。永続化しない。"""
    succeeded: bool
    status: str | None = None


class GatewayFailure(Exception):
    """通信エラー・タイムアウト・2xx 以外の応答"""

    def __init__(self, message: str, status_code: int | None = None, debug_id: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.debug_id = debug_id


class PaymentGateway(Protocol):
    # False のゲートウェイは決済プロバイダの注文 ID がなくても capture できる
    requires_reference: bool

    async def capture(self, provider_order_id: str) -> CaptureResult: ...


class SimulatedGateway:
    """PayPal が無効な環境用。実際の決済の代わりにフラグを返す。"""

    requires_reference = False

    def __init__(self, succeeded: bool):
        self.succeeded = succeeded

    async def capture(self, provider_order_id: str) -> CaptureResult:
        status = COMPLETED if self.succeeded else "DECLINED"
        logger.info("Simulated capture for %r returned %s", provider_order_id, status)
        return CaptureResult(self.succeeded, status)


class PayPalHttpGateway:
    """
    PayPal Orders v2 API クライアント

    認証は OAuth2 client credentials。アクセストークンは期限までキャッシュする。
    capture には PayPal-Request-Id を付けるので、同じ注文を2回 capture しても
    PayPal 側で1回分として扱われる。
    """

    requires_reference = True

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str,
        http_client: httpx.AsyncClient,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        # 呼び出し側 (lifespan) が所有し、閉じる
        self.http_client = http_client
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        try:
            resp = await self.http_client.post(
                f"{self.base_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
        except httpx.HTTPError as e:
            raise GatewayFailure(f"PayPal token request failed: {e}") from e
        if not resp.is_success:
            raise GatewayFailure(
                f"PayPal token request returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                debug_id=resp.headers.get("PayPal-Debug-Id"),
            )
        body = resp.json()
        self._token = body["access_token"]
        # 期限の少し前に取り直す
        self._token_expires_at = time.monotonic() + max(int(body.get("expires_in", 0)) - 60, 0)
        return self._token

    async def _post(self, path: str, payload: dict, headers: dict[str, str]) -> dict:
        token = await self._access_token()
        try:
            resp = await self.http_client.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Prefer": "return=minimal",
                    **headers,
                },
            )
        except httpx.HTTPError as e:
            raise GatewayFailure(f"PayPal request {path} failed: {e}") from e
        if not resp.is_success:
            debug_id = resp.headers.get("PayPal-Debug-Id")
            logger.error(
                "PayPal error for %s: HTTP %d, DebugId=%s, body=%s",
                path, resp.status_code, debug_id, resp.text[:500],
            )
            raise GatewayFailure(
                f"PayPal request {path} returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                debug_id=debug_id,
            )
        return resp.json()

    async def capture(self, provider_order_id: str) -> CaptureResult:
        body = await self._post(
            f"/v2/checkout/orders/{provider_order_id}/capture",
            {},
            {"PayPal-Request-Id": f"capture-{provider_order_id}"},
        )
        status = body.get("status")
        logger.info("Captured PayPal order %s with status %s", provider_order_id, status)
        return CaptureResult(str(status).upper() == COMPLETED, status)

    async def create_order(
        self,
        total: Decimal,
        currency_code: str,
        return_url: str | None = None,
        cancel_url: str | None = None,
    ) -> tuple[str, str | None]:
        """チェックアウト用に PayPal 注文を作る。(PayPal 注文 ID, 承認 URL) を返す。"""
        payload: dict = {
            "intent": "CAPTURE",
            "purchase_units": [
                {"amount": {"currency_code": currency_code, "value": f"{Decimal(total):.2f}"}},
            ],
        }
        if return_url or cancel_url:
            payload["application_context"] = {"return_url": return_url, "cancel_url": cancel_url}

        body = await self._post("/v2/checkout/orders", payload, {})
        approval_link = next(
            (link["href"] for link in body.get("links", []) if link.get("rel", "").lower() == "approve"),
            None,
        )
        logger.info("Created PayPal order %s with status %s", body.get("id"), body.get("status"))
        return body["id"], approval_link


def build_gateway(
    options: PaymentOptions,
    http_client: httpx.AsyncClient | None = None,
) -> PaymentGateway:
    """設定に従ってゲートウェイを選ぶ。PayPal を使うなら http_client が必要。"""
    if options.paypal_configured:
        if http_client is None:
            raise ValueError("PayPal gateway needs an http_client")
        logger.info("Using PayPal gateway (%s)", options.paypal_environment)
        return PayPalHttpGateway(
            options.paypal_client_id,
            options.paypal_client_secret,
            options.paypal_base_url,
            http_client,
        )
    logger.info(
        "PayPal not configured or disabled; simulating payments (succeeded=%s)",
        options.payment_succeeded,
    )
    return SimulatedGateway(options.payment_succeeded)

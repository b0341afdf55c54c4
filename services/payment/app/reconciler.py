"""
Payment Service — 決済確定の突き合わせ (Payment Capture Reconciler)

ゲートウェイの結果を「成功 / 失敗」の2値に畳み込む。優先順位:

  1. 決済プロバイダの注文 ID がない → ゲートウェイを呼ばずに失敗
  2. ゲートウェイの capture を呼ぶ（タイムアウト付き）
  3. status が COMPLETED なら成功。それ以外の status・2xx 以外・例外・タイムアウトはすべて失敗
  4. ゲートウェイが無効なら SimulatedGateway が設定済みのフラグを返す

呼び出し側に例外は投げない（タスクのキャンセルだけは伝播する）。
"""

import asyncio
import logging

from .gateway import COMPLETED, CaptureResult, GatewayFailure, PaymentGateway

logger = logging.getLogger(__name__)


class PaymentCaptureReconciler:
    def __init__(self, gateway: PaymentGateway, timeout: float = 15.0):
        self.gateway = gateway
        self.timeout = timeout

    async def capture(self, provider_order_id: str | None) -> CaptureResult:
        reference = (provider_order_id or "").strip()
        if not reference and self.gateway.requires_reference:
            logger.warning("No payment provider order id; cannot capture payment")
            return CaptureResult(False, None)

        try:
            result = await asyncio.wait_for(self.gateway.capture(reference), self.timeout)
        except asyncio.TimeoutError:
            logger.error("Capture of %s timed out after %.1fs", reference, self.timeout)
            return CaptureResult(False, None)
        except GatewayFailure as e:
            logger.error(
                "Gateway failure capturing %s: %s (HTTP %s, DebugId=%s)",
                reference, e, e.status_code, e.debug_id,
            )
            return CaptureResult(False, None)
        except Exception:
            logger.exception("Unexpected error capturing %s", reference)
            return CaptureResult(False, None)

        succeeded = (result.status or "").upper() == COMPLETED
        logger.info(
            "Capture of %s completed with status %s (success: %s)",
            reference, result.status, succeeded,
        )
        return CaptureResult(succeeded, result.status)

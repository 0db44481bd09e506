"""
Order Service — 再試行とサーキットブレーカー

外部呼び出し (在庫サービス・決済ゲートウェイ・請求書・通知) は
ブロッキング RPC として扱う:

  - タイムアウトは httpx クライアント側で上限を設ける
  - 一時的な ExternalServiceError は指数バックオフ + ジッターで再試行
  - 再試行でも同じ冪等キーを使うので二重予約・二重課金にならない
  - 連続失敗でブレーカーが開き、以後 reset_timeout 秒は即座に失敗
    (チェックアウトを無期限にブロックしない)
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from .errors import CircuitOpenError, ExternalServiceError, OrderServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Retry:
    times: int = 3
    backoff_initial: float = 0.1
    backoff_factor: float = 2.0
    backoff_max: float = 2.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        delay = min(self.backoff_initial * self.backoff_factor ** (attempt - 1), self.backoff_max)
        if self.jitter:
            delay = random.uniform(delay / 2, delay)
        return delay


class CircuitBreaker:
    """
    CLOSED → (failure_threshold 回連続失敗) → OPEN
    OPEN   → (reset_timeout 経過) → HALF_OPEN: 1 回だけ試行を許可
    HALF_OPEN で成功すれば CLOSED、失敗すれば再び OPEN。

    試行中の呼び出しがある間、他の呼び出しは OPEN と同様に即座に失敗する。
    試行が reset_timeout 以上結果を返さなければ放棄されたとみなす。
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_started_at: float | None = None

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return self.CLOSED
        if self._clock() - self._opened_at >= self.reset_timeout:
            return self.HALF_OPEN
        return self.OPEN

    def before_call(self) -> None:
        state = self.state
        now = self._clock()
        if state == self.OPEN:
            raise CircuitOpenError(self.name, self.reset_timeout - (now - self._opened_at))
        if state == self.HALF_OPEN:
            started = self._trial_started_at
            if started is not None and now - started < self.reset_timeout:
                raise CircuitOpenError(self.name, self.reset_timeout - (now - started))
            self._trial_started_at = now

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("Circuit %s closed", self.name)
        self._failures = 0
        self._opened_at = None
        self._trial_started_at = None

    def record_failure(self) -> None:
        self._failures += 1
        self._trial_started_at = None
        if self.state == self.HALF_OPEN or self._failures >= self.failure_threshold:
            if self.state != self.OPEN:
                logger.warning(
                    "Circuit %s opened after %d consecutive failures", self.name, self._failures
                )
            self._opened_at = self._clock()


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    retry: Retry,
    breaker: CircuitBreaker | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    operation を最大 retry.times 回試行する。

    再試行するのは transient な ExternalServiceError だけ。
    業務エラー (在庫不足など) はそのまま呼び出し元に伝える。
    """
    attempt = 0
    while True:
        attempt += 1
        if breaker is not None:
            breaker.before_call()
        try:
            result = await operation()
        except ExternalServiceError as e:
            if breaker is not None:
                # 4xx などの恒久的なエラーは相手が応答している
                if e.transient:
                    breaker.record_failure()
                else:
                    breaker.record_success()
            if not e.transient or attempt >= retry.times:
                raise
            delay = retry.delay(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                e.service, attempt, retry.times, delay, e.message,
            )
            await sleep(delay)
            continue
        except OrderServiceError:
            # 業務エラーはサービスが応答している証拠
            if breaker is not None:
                breaker.record_success()
            raise
        if breaker is not None:
            breaker.record_success()
        return result

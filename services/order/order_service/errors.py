"""
Order Service — エラー分類 (Error Taxonomy)

呼び出し元が「何をすべきか」で例外を分類する。

  ValidationError        入力不正。副作用の前に拒否する
  StateConflict          不正な状態遷移 / 楽観的ロック競合。再取得して判断する
  ExternalServiceError   在庫サービス・決済ゲートウェイの障害。バックオフ付きで再試行
  SecurityError          Webhook 署名不正。再試行しない、状態を一切変更しない
  BusinessRuleViolation  在庫不足、返金額超過などの業務ルール違反

main.py の例外ハンドラが kind と status_code から HTTP レスポンスに変換する。
"""


class OrderServiceError(Exception):
    kind = "order_service_error"
    status_code = 500

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message, **self.details}


class ValidationError(OrderServiceError):
    kind = "validation_error"
    status_code = 422


class OrderNotFound(OrderServiceError):
    kind = "not_found"
    status_code = 404

    def __init__(self, order_id) -> None:
        super().__init__(f"Order {order_id} not found", order_id=str(order_id))


class StateConflict(OrderServiceError):
    kind = "state_conflict"
    status_code = 409


class InvalidTransition(StateConflict):
    """状態機械が許可しない遷移。"""

    kind = "invalid_transition"

    def __init__(self, current, target) -> None:
        super().__init__(
            f"Cannot transition order from {current} to {target}",
            current=str(current),
            target=str(target),
        )
        self.current = current
        self.target = target


class ExternalServiceError(OrderServiceError):
    kind = "external_service_error"
    status_code = 503

    def __init__(self, service: str, message: str, *, transient: bool = True, **details) -> None:
        super().__init__(f"{service}: {message}", service=service, **details)
        self.service = service
        self.transient = transient


class CircuitOpenError(ExternalServiceError):
    """サーキットブレーカーが開いている間は呼び出さずに即座に失敗する。"""

    kind = "circuit_open"

    def __init__(self, service: str, retry_after: float) -> None:
        super().__init__(
            service,
            "circuit open, call not attempted",
            transient=False,
            retry_after=round(retry_after, 1),
        )
        self.retry_after = retry_after


class SecurityError(OrderServiceError):
    kind = "security_error"
    status_code = 401


class BusinessRuleViolation(OrderServiceError):
    kind = "business_rule_violation"
    status_code = 409


class InsufficientStock(BusinessRuleViolation):
    kind = "insufficient_stock"

    def __init__(self, skus: list[str]) -> None:
        super().__init__(
            f"Insufficient stock for: {', '.join(skus)}",
            skus=list(skus),
        )
        self.skus = list(skus)


class PaymentFailed(BusinessRuleViolation):
    kind = "payment_failed"

    def __init__(self, reason: str, *, retryable: bool) -> None:
        super().__init__(f"Payment failed: {reason}", retryable=retryable)
        self.reason = reason
        self.retryable = retryable

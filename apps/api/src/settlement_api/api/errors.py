"""Translate settlement errors into HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException, status

from settlement_api.services.exceptions import (
    ConflictingStateError,
    InsufficientPointsError,
    LimitExceededError,
    PaymentNotFoundError,
    PaymentValidationError,
    PurchasableNotFoundError,
    SettlementError,
    TransientGatewayError,
    WebhookSignatureError,
)

_STATUS_BY_ERROR: tuple[tuple[type[SettlementError], int], ...] = (
    (PaymentNotFoundError, status.HTTP_404_NOT_FOUND),
    (PurchasableNotFoundError, status.HTTP_404_NOT_FOUND),
    (PaymentValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConflictingStateError, status.HTTP_409_CONFLICT),
    (LimitExceededError, status.HTTP_409_CONFLICT),
    (InsufficientPointsError, status.HTTP_409_CONFLICT),
    (TransientGatewayError, status.HTTP_502_BAD_GATEWAY),
    (WebhookSignatureError, status.HTTP_400_BAD_REQUEST),
)


def to_http_exception(error: SettlementError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


__all__ = ["to_http_exception"]

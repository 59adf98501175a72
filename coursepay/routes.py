from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request

from coursepay.auth import verify_token
from coursepay.errors import (
    AmountMismatch,
    GatewayUnauthorized,
    GatewayUnavailable,
    GatewayValidationError,
    InvalidSignature,
    OrderNotFound,
    OrderValidationError,
    PaymentError,
    PaymentNotCompleted,
    RetryableVerificationError,
    VerificationFailed,
)
from coursepay.schemas import (
    ConfirmationClaim,
    CreatedOrder,
    CreateOrderRequest,
    EntitlementOut,
    OrderStatus,
    ReconcileResponse,
)

router = APIRouter()

RETRY_AFTER_SECONDS = "5"

_STATUS_CODES = (
    (OrderNotFound, 404),
    (InvalidSignature, 400),
    (OrderValidationError, 400),
    (RetryableVerificationError, 503),
    (GatewayUnavailable, 503),
    (AmountMismatch, 409),
    (PaymentNotCompleted, 402),
    (GatewayUnauthorized, 500),
    (VerificationFailed, 502),
    (GatewayValidationError, 502),
)


def http_error(error: PaymentError) -> HTTPException:
    status_code = next((code for cls, code in _STATUS_CODES if isinstance(error, cls)), 500)
    headers = {"Retry-After": RETRY_AFTER_SECONDS} if error.retryable else None
    return HTTPException(status_code=status_code, detail=error.public_message, headers=headers)


def get_service(request: Request):
    return request.app.state.service


def _owned_order(service, order_id: str, subject_id: str):
    try:
        order = service.get_order(order_id)
    except OrderNotFound as e:
        raise http_error(e)
    if order.subject_id != subject_id:
        # don't reveal other subjects' orders
        raise http_error(OrderNotFound())
    return order


@router.post("/orders", response_model=CreatedOrder)
def create_order_api(
    request: CreateOrderRequest,
    subject_id: str = Depends(verify_token),
    service=Depends(get_service),
):
    try:
        return service.create_order(
            subject_id=subject_id,
            resource_id=request.resource_id,
            amount_minor_units=request.amount_minor_units,
            currency=request.currency,
            notes=request.notes,
            order_id=request.order_id,
        )
    except PaymentError as e:
        raise http_error(e)


@router.get("/orders/{order_id}", response_model=OrderStatus)
def order_status(order_id: str, subject_id: str = Depends(verify_token), service=Depends(get_service)):
    _owned_order(service, order_id, subject_id)
    return service.get_order_status(order_id)


@router.post("/payments/verify", response_model=ReconcileResponse)
def verify_payment(
    claim: ConfirmationClaim,
    subject_id: str = Depends(verify_token),
    service=Depends(get_service),
):
    _owned_order(service, claim.order_id, subject_id)
    try:
        result = service.reconcile(claim)
    except PaymentError as e:
        raise http_error(e)
    return ReconcileResponse(
        entitlement=EntitlementOut.model_validate(result.entitlement),
        already_existed=result.already_existed,
    )


@router.get("/entitlements", response_model=List[EntitlementOut])
def my_entitlements(subject_id: str = Depends(verify_token), service=Depends(get_service)):
    return [EntitlementOut.model_validate(e) for e in service.list_entitlements(subject_id)]


@router.get("/entitlements/{resource_id}", response_model=EntitlementOut)
def entitlement(resource_id: str, subject_id: str = Depends(verify_token), service=Depends(get_service)):
    found = service.get_entitlement(subject_id, resource_id)
    if found is None:
        raise HTTPException(status_code=404, detail="Not entitled")
    return EntitlementOut.model_validate(found)

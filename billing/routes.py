from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, ConfigDict, Field

from billing.auth import get_call_context
from billing.dependencies import get_payment_api
from billing.domain import Account, CallContext, PaymentStatus, RefundStatus
from billing.internal_api import PaymentInternalApi

router = APIRouter()


class PaymentRequest(BaseModel):
    account_id: str
    currency: str = Field("USD", min_length=3, max_length=3)
    payment_method_id: str
    invoice_id: str
    amount: Decimal = Field(..., gt=0)
    properties: dict = Field(default_factory=dict)


class RefundRequest(BaseModel):
    account_id: str
    amount: Decimal = Field(..., gt=0)
    properties: dict = Field(default_factory=dict)


class PaymentMethodRequest(BaseModel):
    plugin_name: str
    external_key: Optional[str] = None


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: str
    invoice_id: Optional[str]
    payment_method_id: str
    amount: Decimal
    currency: str
    effective_date: datetime
    status: PaymentStatus
    processed_amount: Optional[Decimal] = None
    processed_currency: Optional[str] = None
    gateway_reference_id: Optional[str] = None


class RefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: str
    payment_id: str
    amount: Decimal
    currency: str
    processed_amount: Decimal
    processed_currency: str
    is_adjusted: bool
    status: RefundStatus


class PaymentMethodResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: str
    plugin_name: str
    is_active: bool
    external_key: Optional[str] = None


@router.post("/payments", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
def create_payment_api(
    request: PaymentRequest,
    context: CallContext = Depends(get_call_context),
    api: PaymentInternalApi = Depends(get_payment_api),
):
    account = Account(id=request.account_id, currency=request.currency.upper(),
                      payment_method_id=request.payment_method_id)
    return api.create_payment(account, request.invoice_id, request.amount, request.properties, context)


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_payment(
    payment_id: str,
    context: CallContext = Depends(get_call_context),
    api: PaymentInternalApi = Depends(get_payment_api),
):
    return api.get_payment(payment_id, context)


@router.get("/accounts/{account_id}/payments", response_model=List[PaymentResponse])
def get_account_payments(
    account_id: str,
    context: CallContext = Depends(get_call_context),
    api: PaymentInternalApi = Depends(get_payment_api),
):
    return api.get_account_payments(account_id, context)


@router.post("/payments/{payment_id}/refunds", response_model=RefundResponse, status_code=status.HTTP_201_CREATED)
def refund(
    payment_id: str,
    request: RefundRequest,
    context: CallContext = Depends(get_call_context),
    api: PaymentInternalApi = Depends(get_payment_api),
):
    payment = api.get_payment(payment_id, context)
    account = Account(id=request.account_id, currency=payment.currency)
    return api.refund_payment(account, payment_id, request.amount, request.properties, context)


@router.get("/payments/{payment_id}/refunds", response_model=List[RefundResponse])
def get_refunds(
    payment_id: str,
    context: CallContext = Depends(get_call_context),
    api: PaymentInternalApi = Depends(get_payment_api),
):
    return api.get_refunds(payment_id, context)


@router.post("/accounts/{account_id}/payment-methods", response_model=PaymentMethodResponse,
             status_code=status.HTTP_201_CREATED)
def add_payment_method(
    account_id: str,
    request: PaymentMethodRequest,
    context: CallContext = Depends(get_call_context),
    api: PaymentInternalApi = Depends(get_payment_api),
):
    account = Account(id=account_id, currency="USD")
    return api.add_payment_method(account, request.plugin_name, request.external_key, context)


@router.get("/accounts/{account_id}/payment-methods", response_model=List[PaymentMethodResponse])
def get_payment_methods(
    account_id: str,
    context: CallContext = Depends(get_call_context),
    api: PaymentInternalApi = Depends(get_payment_api),
):
    return api.get_payment_methods(Account(id=account_id, currency="USD"), context)


@router.get("/payment-methods/{payment_method_id}", response_model=PaymentMethodResponse)
def get_payment_method(
    payment_method_id: str,
    include_inactive: bool = False,
    context: CallContext = Depends(get_call_context),
    api: PaymentInternalApi = Depends(get_payment_api),
):
    return api.get_payment_method_by_id(payment_method_id, include_inactive, context)


@router.delete("/payment-methods/{payment_method_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_payment_method(
    payment_method_id: str,
    context: CallContext = Depends(get_call_context),
    api: PaymentInternalApi = Depends(get_payment_api),
):
    api.delete_payment_method(payment_method_id, context)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

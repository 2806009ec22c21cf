import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict

from rentpay import config
from rentpay.auth import verify_token
from rentpay.bold_client import create_payment_link
from rentpay.exceptions import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter()


class PaymentLinkRequest(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    totalAmount: float
    description: str
    expirationSeconds: Optional[int] = None


def normalize_link_request(total_amount, description, expiration_seconds=None):
    """Validate link parameters; returns ``(amount, description, seconds)``.

    COP has no minor unit, so the amount is rounded to a whole number.
    A missing or non-positive expiration falls back to the default window.
    """
    amount = round(total_amount) if total_amount is not None else 0
    if amount <= 0:
        raise ValidationError(
            "Solicitud inválida: totalAmount debe ser un número positivo.",
            details={"totalAmount": total_amount},
        )
    description = (description or "").strip()
    if not description:
        raise ValidationError(
            "Solicitud inválida: description no puede estar vacío."
        )
    if not expiration_seconds or expiration_seconds <= 0:
        expiration_seconds = config.DEFAULT_LINK_EXPIRATION_SECONDS
    return amount, description, expiration_seconds


def issue_payment_link(total_amount, description, expiration_seconds=None):
    amount, description, seconds = normalize_link_request(
        total_amount, description, expiration_seconds
    )
    url, reference = create_payment_link(amount, description, seconds)
    logger.info(
        "Payment link issued",
        extra={"reference": reference, "amount": amount, "expiration_seconds": seconds},
    )
    return url, reference, seconds


@router.post("/payment-links")
def create_payment_link_api(
    request: PaymentLinkRequest,
    customer_id=Depends(verify_token)
):
    url, reference, _ = issue_payment_link(
        request.totalAmount, request.description, request.expirationSeconds
    )
    return {"paymentLinkUrl": url, "orderReference": reference}

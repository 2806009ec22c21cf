import logging
from datetime import date, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict

from rentpay.auth import verify_token
from rentpay.database import get_db
from rentpay.exceptions import ConflictError, ValidationError
from rentpay.helpers import now_utc
from rentpay.models import (
    Account, AccountState, AttemptStatus, PaymentAttempt,
    PendingRenewal, PendingRenewalItem,
)
from rentpay.reconciler import release_account
from rentpay.routes import issue_payment_link, normalize_link_request

logger = logging.getLogger(__name__)

router = APIRouter()


class CheckoutItem(BaseModel):
    account_id: int
    starts_on: date
    ends_on: date
    coupon_id: Optional[int] = None


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    items: List[CheckoutItem]
    totalAmount: float
    description: Optional[str] = None
    expirationSeconds: Optional[int] = None


def reserve_accounts(db, account_ids):
    """Reserve every account or none; returns the ids that could not be reserved."""
    now = now_utc()
    unavailable = []
    for account_id in account_ids:
        moved = (
            db.query(Account)
            .filter(Account.id == account_id, Account.state == AccountState.AVAILABLE)
            .update(
                {Account.state: AccountState.RESERVED, Account.last_updated: now},
                synchronize_session=False,
            )
        )
        if not moved:
            unavailable.append(account_id)

    if unavailable:
        db.rollback()
    else:
        db.commit()
    return unavailable


def release_accounts(db, account_ids):
    for account_id in account_ids:
        release_account(db, account_id)
    db.commit()


def start_checkout(db, customer_id, request):
    if not request.items:
        raise ValidationError("El carrito está vacío.")
    account_ids = [item.account_id for item in request.items]
    if len(set(account_ids)) != len(account_ids):
        raise ValidationError("Una cuenta aparece más de una vez en el carrito.")
    for item in request.items:
        if item.ends_on < item.starts_on:
            raise ValidationError(
                "La fecha de fin es anterior a la de inicio.",
                details={"account_id": item.account_id},
            )

    description = request.description or (
        f"Pedido Nytrix Stream Hub - {len(request.items)} ítem(s)"
    )
    amount, description, seconds = normalize_link_request(
        request.totalAmount, description, request.expirationSeconds
    )

    unavailable = reserve_accounts(db, account_ids)
    if unavailable:
        raise ConflictError(
            "Algunas cuentas ya no están disponibles.",
            details={"cuentas_no_disponibles": unavailable},
        )

    try:
        url, reference, seconds = issue_payment_link(amount, description, seconds)
    except Exception:
        logger.warning("Link issuance failed; releasing %s", account_ids)
        release_accounts(db, account_ids)
        raise

    created_at = now_utc()
    expires_at = created_at + timedelta(seconds=seconds)
    attempts = [
        PaymentAttempt(
            external_link_id=reference,
            account_id=account_id,
            status=AttemptStatus.PENDING,
            created_at=created_at,
            configured_expires_at=expires_at,
        )
        for account_id in account_ids
    ]
    renewal = PendingRenewal(
        reference=reference,
        customer_id=customer_id,
        total_amount=amount,
        created_at=created_at,
        items=[
            PendingRenewalItem(
                account_id=item.account_id,
                starts_on=item.starts_on,
                ends_on=item.ends_on,
                coupon_id=item.coupon_id,
            )
            for item in request.items
        ],
    )
    db.add_all(attempts)
    db.add(renewal)
    db.commit()

    logger.info(
        "Checkout staged",
        extra={"reference": reference, "customer_id": customer_id, "accounts": account_ids},
    )
    return url, reference, [a.id for a in attempts]


@router.post("/checkout")
def checkout(
    request: CheckoutRequest,
    customer_id=Depends(verify_token),
    db=Depends(get_db)
):
    url, reference, attempt_ids = start_checkout(db, customer_id, request)

    return {
        "paymentLinkUrl": url,
        "orderReference": reference,
        "intentos": attempt_ids,
    }

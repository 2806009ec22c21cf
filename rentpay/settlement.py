"""
Settlement of a paid checkout when the customer is redirected back from Bold.

The redirect carries Bold's ``payment_link`` reference. It is matched against
the renewal staged at checkout for the same customer; without a match nothing
is written. The Payment is claimed once per renewal, so a retried redirect
reuses it. Each staged account is committed on its own, so one failing
account does not undo the ones already rented. A reserved account is rented
only while this reference still holds it.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import and_
from sqlalchemy.exc import SQLAlchemyError

from rentpay.auth import verify_token
from rentpay.database import get_db
from rentpay.exceptions import ConflictError, NotFoundError
from rentpay.helpers import now_utc
from rentpay.models import (
    Account, AccountState, AttemptStatus, Payment, PaymentAttempt,
    PaymentRental, PendingRenewal, Rental,
)

logger = logging.getLogger(__name__)

router = APIRouter()

PAYMENT_METHOD = "Bold"


def find_staged_renewal(db, reference, customer_id):
    if not reference:
        return None
    return (
        db.query(PendingRenewal)
        .filter(
            PendingRenewal.reference == reference,
            PendingRenewal.customer_id == customer_id,
        )
        .first()
    )


def mark_attempts_paid(db, reference, now):
    (
        db.query(PaymentAttempt)
        .filter(
            PaymentAttempt.external_link_id == reference,
            PaymentAttempt.status.in_(AttemptStatus.OUTSTANDING),
        )
        .update(
            {PaymentAttempt.status: AttemptStatus.PAID, PaymentAttempt.last_updated: now},
            synchronize_session=False,
        )
    )


def claim_payment(db, renewal, now):
    """Record the renewal's Payment once; returns its id.

    A retried or concurrent redirect reuses the Payment of whichever request
    claimed the renewal first.
    """
    if renewal.payment_id is not None:
        return renewal.payment_id

    reference = renewal.reference
    payment = Payment(
        state="paid",
        invoice_reference=reference,
        method=PAYMENT_METHOD,
        amount=renewal.total_amount,
        created_at=now,
        last_updated=now,
    )
    db.add(payment)
    db.flush()
    payment_id = payment.id

    claimed = (
        db.query(PendingRenewal)
        .filter(PendingRenewal.id == renewal.id, PendingRenewal.payment_id.is_(None))
        .update({PendingRenewal.payment_id: payment_id}, synchronize_session=False)
    )
    if not claimed:
        db.rollback()
        db.refresh(renewal)
        logger.info("Reference %s was claimed by another request", reference)
        return renewal.payment_id

    mark_attempts_paid(db, reference, now)
    db.commit()
    return payment_id


def held_by_reference(db, reference, account_id):
    """True while this reference's attempt on the account has not lapsed."""
    return (
        db.query(PaymentAttempt.id)
        .filter(
            PaymentAttempt.external_link_id == reference,
            PaymentAttempt.account_id == account_id,
            ~PaymentAttempt.status.in_(AttemptStatus.NON_PAYABLE),
        )
        .first()
        is not None
    )


def already_rented(db, payment_id, account_id):
    return (
        db.query(PaymentRental.id)
        .join(Rental, Rental.id == PaymentRental.rental_id)
        .filter(PaymentRental.payment_id == payment_id, Rental.account_id == account_id)
        .first()
        is not None
    )


def rent_account(db, payment_id, customer_id, reference, item, now):
    # The reservation is ours only while our attempt stands; once it lapsed,
    # the account may be taken only if it is free and nobody else holds it.
    if held_by_reference(db, reference, item.account_id):
        rentable = Account.state == AccountState.RESERVED
    else:
        held_elsewhere = (
            db.query(PaymentAttempt.id)
            .filter(
                PaymentAttempt.account_id == item.account_id,
                PaymentAttempt.external_link_id != reference,
                PaymentAttempt.status.in_(AttemptStatus.OUTSTANDING),
            )
            .exists()
        )
        rentable = and_(Account.state == AccountState.AVAILABLE, ~held_elsewhere)

    rented = (
        db.query(Account)
        .filter(Account.id == item.account_id, rentable)
        .update(
            {Account.state: AccountState.RENTED, Account.last_updated: now},
            synchronize_session=False,
        )
    )
    if not rented:
        raise ConflictError(
            f"La cuenta {item.account_id} no se puede alquilar en su estado actual."
        )

    rental = Rental(
        account_id=item.account_id,
        customer_id=customer_id,
        state=AccountState.RENTED,
        starts_on=item.starts_on,
        ends_on=item.ends_on,
        coupon_id=item.coupon_id,
        created_at=now,
    )
    db.add(rental)
    db.flush()
    db.add(PaymentRental(payment_id=payment_id, rental_id=rental.id))


def count_settled(db, payment_id):
    return db.query(PaymentRental).filter(PaymentRental.payment_id == payment_id).count()


def settle(db, reference, customer_id, now=None):
    """Commit the staged renewal for ``reference``.

    Returns ``(rented, staged)``: accounts rented and accounts in the renewal.
    """
    now = now or now_utc()
    renewal = find_staged_renewal(db, reference, customer_id)
    if renewal is None:
        logger.warning(
            "No staged renewal for reference %s", reference,
            extra={"customer_id": customer_id},
        )
        raise NotFoundError(
            "La referencia de pago no coincide con ninguna transacción pendiente."
        )

    if renewal.settled_at is not None:
        logger.info("Reference %s already settled", reference)
        return count_settled(db, renewal.payment_id), len(renewal.items)

    payment_id = claim_payment(db, renewal, now)

    items = list(renewal.items)
    rented = 0
    for item in items:
        account_id = item.account_id
        if already_rented(db, payment_id, account_id):
            rented += 1
            continue
        try:
            rent_account(db, payment_id, customer_id, reference, item, now)
            db.commit()
            rented += 1
        except (ConflictError, SQLAlchemyError) as e:
            db.rollback()
            logger.error(
                "Could not rent account %s for reference %s: %s",
                account_id, reference, e,
            )

    renewal.settled_at = now
    db.commit()

    logger.info(
        "Settlement completed",
        extra={"reference": reference, "rented": rented, "staged": len(items)},
    )
    return rented, len(items)


@router.get("/payment/success")
def payment_success(
    payment_link: Optional[str] = None,
    customer_id=Depends(verify_token),
    db=Depends(get_db)
):
    try:
        rented, staged = settle(db, payment_link, customer_id)
    except NotFoundError as e:
        return JSONResponse(
            status_code=e.status_code,
            content={"success": False, "message": e.message, "cuentas_renovadas": 0},
        )

    if rented == staged:
        message = "Renovación completada con éxito"
    else:
        message = f"Renovación completada parcialmente: {rented} de {staged} cuentas."
    return {
        "success": rented > 0,
        "message": message,
        "cuentas_renovadas": rented,
    }

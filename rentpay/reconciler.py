"""
Reconciles one payment attempt against Bold.

``evaluate`` decides, without side effects, whether an outstanding attempt
must be presumptively expired, checked live, or left alone this cycle.
``sync_attempt`` resolves the final status (forced or queried from Bold) and
applies it: the attempt row and the account release are written in the same
commit. Applying a status twice is harmless; the release only moves an
account that is still reserved.
"""
import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from rentpay import config
from rentpay.auth import verify_cron_secret
from rentpay.bold_client import get_payment_link_status
from rentpay.database import get_db
from rentpay.exceptions import NotFoundError, ValidationError
from rentpay.helpers import as_utc, now_utc
from rentpay.models import Account, AccountState, AttemptStatus, PaymentAttempt

logger = logging.getLogger(__name__)

router = APIRouter()

SKIP = "skip"
FORCE_EXPIRE = "force_expire"
CHECK = "check"


def evaluate(attempt, now=None):
    now = now or now_utc()

    expires_at = as_utc(attempt.configured_expires_at)
    if expires_at is None:
        logger.warning(
            "Attempt %s has no configured expiration; presumptive expiration not applicable",
            attempt.id,
        )
    elif now > expires_at + timedelta(seconds=config.GRACE_SECONDS):
        return FORCE_EXPIRE

    if now - as_utc(attempt.created_at) > timedelta(seconds=config.PENDING_THRESHOLD_SECONDS):
        return CHECK
    return SKIP


def release_account(db, account_id, now=None):
    """Move a reserved account back to available; returns True if it moved."""
    moved = (
        db.query(Account)
        .filter(Account.id == account_id, Account.state == AccountState.RESERVED)
        .update(
            {Account.state: AccountState.AVAILABLE, Account.last_updated: now or now_utc()},
            synchronize_session=False,
        )
    )
    return moved > 0


def apply_status(db, attempt, status, now=None):
    """Persist ``status`` for ``attempt`` and release its account if needed.

    Returns the status the attempt ends up with. A terminal attempt keeps
    the status it already has.
    """
    now = now or now_utc()
    status = status.upper()

    # Only an outstanding row may change; the stored status wins otherwise,
    # even if this session loaded the attempt before another writer committed.
    written = (
        db.query(PaymentAttempt)
        .filter(
            PaymentAttempt.id == attempt.id,
            PaymentAttempt.status.in_(AttemptStatus.OUTSTANDING),
        )
        .update(
            {PaymentAttempt.status: status, PaymentAttempt.last_updated: now},
            synchronize_session=False,
        )
    )
    if not written:
        db.refresh(attempt)
        if attempt.status != status:
            logger.warning(
                "Attempt %s already %s; ignoring %s",
                attempt.id, attempt.status, status,
            )
        status = attempt.status

    if status in AttemptStatus.NON_PAYABLE and attempt.account_id is not None:
        if release_account(db, attempt.account_id, now):
            logger.info(
                "Account released",
                extra={"attempt_id": attempt.id, "account_id": attempt.account_id, "status": status},
            )

    db.commit()
    return status


def sync_attempt(db, attempt, force_status=None, now=None):
    if force_status and force_status.upper() == AttemptStatus.EXPIRED:
        logger.info(
            "Forcing EXPIRED for attempt %s (link %s) without querying Bold",
            attempt.id, attempt.external_link_id,
        )
        status = AttemptStatus.EXPIRED
    else:
        status = get_payment_link_status(attempt.external_link_id)
        logger.info(
            "Bold reports %s for link %s (attempt %s)",
            status, attempt.external_link_id, attempt.id,
        )
    return apply_status(db, attempt, status, now)


class SyncRequest(BaseModel):
    id_intento_pago: int
    id_link_pago_bold: str
    id_cuenta: int
    force_status: Optional[str] = None


@router.post("/sync-payment-status")
def sync_payment_status(
    request: SyncRequest,
    auth=Depends(verify_cron_secret),
    db=Depends(get_db)
):
    attempt = db.get(PaymentAttempt, request.id_intento_pago)
    if attempt is None:
        raise NotFoundError(
            f"Intento de pago {request.id_intento_pago} no encontrado."
        )
    if (attempt.external_link_id != request.id_link_pago_bold
            or attempt.account_id != request.id_cuenta):
        raise ValidationError(
            "El link o la cuenta no corresponden al intento de pago.",
            details={
                "id_link_pago_bold": attempt.external_link_id,
                "id_cuenta": attempt.account_id,
            },
        )

    final = sync_attempt(db, attempt, request.force_status)

    return {
        "message": f"Intento {request.id_intento_pago} procesado. Estado final: {final}.",
        "id_intento_pago": request.id_intento_pago,
        "id_link_pago_bold": request.id_link_pago_bold,
        "estado_final": final,
        "id_cuenta": request.id_cuenta,
        "cuenta_actualizada": final in AttemptStatus.NON_PAYABLE,
    }

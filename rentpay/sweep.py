"""
Scheduled sweep over outstanding payment attempts.

Triggered by an external cron with the shared secret. Each run takes the
oldest ``PROCESSING_LIMIT`` attempts still PENDING/ACTIVE and reconciles
them one after the other; a failure on one attempt is counted and the run
moves on to the next.
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError

from rentpay import config
from rentpay.auth import verify_cron_secret
from rentpay.database import get_db
from rentpay.exceptions import RentpayError
from rentpay.helpers import now_utc
from rentpay.models import AttemptStatus, PaymentAttempt
from rentpay.reconciler import CHECK, FORCE_EXPIRE, evaluate, sync_attempt

logger = logging.getLogger(__name__)

router = APIRouter()


def fetch_outstanding(db, limit=None):
    return (
        db.query(PaymentAttempt)
        .filter(PaymentAttempt.status.in_(AttemptStatus.OUTSTANDING))
        .order_by(PaymentAttempt.created_at.asc(), PaymentAttempt.id.asc())
        .limit(limit or config.PROCESSING_LIMIT)
        .all()
    )


def run_sweep(db, now=None, limit=None):
    """Reconcile one batch; returns the counters reported by the endpoint."""
    attempts = fetch_outstanding(db, limit)
    logger.info("Sweep found %d outstanding attempts", len(attempts))

    succeeded = 0
    failed = 0
    forced = 0

    for attempt in attempts:
        attempt_id = attempt.id
        if attempt.account_id is None:
            logger.error("Attempt %s has no account; skipping", attempt_id)
            failed += 1
            continue

        decision = evaluate(attempt, now or now_utc())
        if decision == FORCE_EXPIRE:
            forced += 1
            force_status = AttemptStatus.EXPIRED
        elif decision == CHECK:
            force_status = None
        else:
            logger.debug("Attempt %s not due this cycle", attempt_id)
            continue

        try:
            final = sync_attempt(db, attempt, force_status, now)
            succeeded += 1
            logger.info(
                "Attempt reconciled",
                extra={"attempt_id": attempt_id, "final_status": final, "forced": bool(force_status)},
            )
        except (RentpayError, SQLAlchemyError) as e:
            db.rollback()
            failed += 1
            logger.error(
                "Failed to reconcile attempt %s: %s", attempt_id, e,
                extra={"attempt_id": attempt_id},
            )
        except Exception as e:
            db.rollback()
            failed += 1
            logger.exception(
                "Unexpected error reconciling attempt %s: %s", attempt_id, e,
                extra={"attempt_id": attempt_id},
            )

    return {
        "total_intentos_revisados": len(attempts),
        "invocaciones_sync_exitosas": succeeded,
        "invocaciones_sync_errores": failed,
        "forzados_a_expirar_via_sync": forced,
    }


@router.post("/cron/process-pending-links")
def process_pending_links(auth=Depends(verify_cron_secret), db=Depends(get_db)):
    counts = run_sweep(db)

    if counts["total_intentos_revisados"] == 0:
        message = "No hay intentos pendientes o activos."
    else:
        message = (
            "Procesamiento completado. "
            f"Total Intentos Revisados: {counts['total_intentos_revisados']}, "
            f"Invocaciones a Sync (Éxitos): {counts['invocaciones_sync_exitosas']}, "
            f"Invocaciones a Sync (Errores): {counts['invocaciones_sync_errores']}, "
            f"Forzados a Expirar (vía Sync): {counts['forzados_a_expirar_via_sync']}."
        )
    logger.info(message)
    return {"message": message, **counts}

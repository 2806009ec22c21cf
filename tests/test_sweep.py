from datetime import timedelta

import httpx

from rentpay import config
from rentpay.database import get_db
from rentpay.exceptions import UpstreamError
from rentpay.helpers import now_utc
from rentpay.main import app as fastapi_app
from rentpay.models import Account, AccountState, AttemptStatus, PaymentAttempt
from rentpay.sweep import fetch_outstanding, run_sweep

from conftest import CRON_HEADERS, add_account, add_attempt


def track_sessions():
    opened = []

    def tracking_get_db():
        opened.append(True)
        yield None

    fastapi_app.dependency_overrides[get_db] = tracking_get_db
    return opened


def test_sweep_requires_authorization(client, mocker):
    fetch = mocker.patch("rentpay.sweep.fetch_outstanding")
    opened = track_sessions()

    response = client.post("/cron/process-pending-links")
    assert response.status_code == 401
    assert response.json() == {"error": "No autorizado."}

    response = client.post(
        "/cron/process-pending-links",
        headers={"Authorization": "Bearer not-the-secret"},
    )
    assert response.status_code == 401

    fetch.assert_not_called()
    assert opened == []


def test_sweep_without_configured_secret(client, monkeypatch, mocker):
    monkeypatch.delenv("CRON_JOB_SECRET")
    opened = track_sessions()

    response = client.post("/cron/process-pending-links", headers=CRON_HEADERS)

    assert response.status_code == 500
    assert "error" in response.json()
    assert opened == []


def test_sweep_with_nothing_outstanding(client):
    response = client.post("/cron/process-pending-links", headers=CRON_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["total_intentos_revisados"] == 0
    assert body["invocaciones_sync_exitosas"] == 0
    assert body["invocaciones_sync_errores"] == 0
    assert body["forzados_a_expirar_via_sync"] == 0


def test_sweep_presumptively_expires_without_provider_call(client, db, mocker):
    account = add_account(db)
    attempt = add_attempt(db, account, age_seconds=325, expires_in_seconds=300)
    query = mocker.patch("rentpay.reconciler.get_payment_link_status")

    response = client.post("/cron/process-pending-links", headers=CRON_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["total_intentos_revisados"] == 1
    assert body["forzados_a_expirar_via_sync"] == 1
    assert body["invocaciones_sync_exitosas"] == 1
    query.assert_not_called()

    db.expire_all()
    assert db.get(PaymentAttempt, attempt.id).status == AttemptStatus.EXPIRED
    assert db.get(Account, account.id).state == AccountState.AVAILABLE


def test_sweep_checks_stale_attempt_once(client, db, mocker):
    account = add_account(db)
    attempt = add_attempt(db, account, age_seconds=120, expires_in_seconds=300,
                          link_id="L1")
    query = mocker.patch(
        "rentpay.reconciler.get_payment_link_status", return_value="approved"
    )

    response = client.post("/cron/process-pending-links", headers=CRON_HEADERS)

    assert response.status_code == 200
    query.assert_called_once_with("L1")
    db.expire_all()
    assert db.get(PaymentAttempt, attempt.id).status == "APPROVED"
    assert db.get(Account, account.id).state == AccountState.RESERVED


def test_sweep_skips_young_attempt(client, db, mocker):
    account = add_account(db)
    attempt = add_attempt(db, account, age_seconds=10, expires_in_seconds=300)
    query = mocker.patch("rentpay.reconciler.get_payment_link_status")

    response = client.post("/cron/process-pending-links", headers=CRON_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["total_intentos_revisados"] == 1
    assert body["invocaciones_sync_exitosas"] == 0
    query.assert_not_called()

    db.expire_all()
    stored = db.get(PaymentAttempt, attempt.id)
    assert stored.status == AttemptStatus.PENDING
    assert stored.last_updated is None


def test_sweep_continues_past_failing_attempt(client, db, mocker):
    first = add_account(db)
    second = add_account(db)
    failing = add_attempt(db, first, age_seconds=200, link_id="BROKEN")
    healthy = add_attempt(db, second, age_seconds=100, link_id="OK")

    def provider(link_id):
        if link_id == "BROKEN":
            raise UpstreamError("Bold is down", status_code=503)
        return "rejected"

    mocker.patch("rentpay.reconciler.get_payment_link_status", side_effect=provider)

    response = client.post("/cron/process-pending-links", headers=CRON_HEADERS)

    body = response.json()
    assert response.status_code == 200
    assert body["invocaciones_sync_errores"] == 1
    assert body["invocaciones_sync_exitosas"] == 1

    db.expire_all()
    assert db.get(PaymentAttempt, failing.id).status == AttemptStatus.PENDING
    assert db.get(PaymentAttempt, healthy.id).status == AttemptStatus.REJECTED
    assert db.get(Account, second.id).state == AccountState.AVAILABLE


def test_sweep_counts_attempt_without_account_as_error(db, mocker):
    add_attempt(db, None, age_seconds=500, link_id="ORPHAN")
    query = mocker.patch("rentpay.reconciler.get_payment_link_status")

    counts = run_sweep(db)

    assert counts["invocaciones_sync_errores"] == 1
    query.assert_not_called()


def test_batch_is_bounded_and_oldest_first(db, mocker, monkeypatch):
    monkeypatch.setattr(config, "PROCESSING_LIMIT", 3)
    for age in (100, 500, 300, 200, 400):
        account = add_account(db)
        add_attempt(db, account, age_seconds=age, expires_in_seconds=3600,
                    link_id=f"L{age}")
    add_attempt(db, add_account(db), age_seconds=900, status=AttemptStatus.EXPIRED)

    seen = []
    mocker.patch(
        "rentpay.reconciler.get_payment_link_status",
        side_effect=lambda link_id: seen.append(link_id) or "ACTIVE",
    )

    counts = run_sweep(db)

    assert counts["total_intentos_revisados"] == 3
    assert seen == ["L500", "L400", "L300"]


def test_fetch_outstanding_ignores_terminal_attempts(db):
    account = add_account(db)
    add_attempt(db, account, age_seconds=50, status=AttemptStatus.ACTIVE)
    add_attempt(db, account, age_seconds=60, status=AttemptStatus.CANCELLED)
    add_attempt(db, account, age_seconds=70, status=AttemptStatus.PAID)

    attempts = fetch_outstanding(db)

    assert [a.status for a in attempts] == [AttemptStatus.ACTIVE]


def test_overlapping_sweeps_release_once(db, mocker):
    account = add_account(db)
    attempt = add_attempt(db, account, age_seconds=400, expires_in_seconds=60)
    mocker.patch("rentpay.reconciler.get_payment_link_status")
    now = now_utc()

    first = run_sweep(db, now=now)
    # A concurrent checkout picked the account up again in between
    db.query(Account).filter(Account.id == account.id).update(
        {Account.state: AccountState.RESERVED}
    )
    db.commit()
    second = run_sweep(db, now=now + timedelta(seconds=5))

    assert first["forzados_a_expirar_via_sync"] == 1
    assert second["total_intentos_revisados"] == 0
    db.expire_all()
    assert db.get(PaymentAttempt, attempt.id).status == AttemptStatus.EXPIRED
    assert db.get(Account, account.id).state == AccountState.RESERVED


def test_sweep_survives_malformed_provider_status(client, db, mocker):
    first = add_account(db)
    second = add_account(db)
    weird = add_attempt(db, first, age_seconds=200, link_id="WEIRD")
    healthy = add_attempt(db, second, age_seconds=100, link_id="OK")

    def bold_get(url, **kwargs):
        if url.endswith("/WEIRD"):
            return httpx.Response(200, json={"status": 5})
        return httpx.Response(200, json={"status": "REJECTED"})

    mocker.patch("rentpay.bold_client.httpx.get", side_effect=bold_get)

    response = client.post("/cron/process-pending-links", headers=CRON_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["invocaciones_sync_errores"] == 1
    assert body["invocaciones_sync_exitosas"] == 1

    db.expire_all()
    assert db.get(PaymentAttempt, weird.id).status == AttemptStatus.PENDING
    assert db.get(PaymentAttempt, healthy.id).status == AttemptStatus.REJECTED
    assert db.get(Account, first.id).state == AccountState.RESERVED
    assert db.get(Account, second.id).state == AccountState.AVAILABLE


def test_sweep_counts_unexpected_item_error_and_moves_on(db, mocker):
    first = add_account(db)
    second = add_account(db)
    add_attempt(db, first, age_seconds=200, link_id="BUG")
    healthy = add_attempt(db, second, age_seconds=100, link_id="OK")

    def provider(link_id):
        if link_id == "BUG":
            raise KeyError("payload")
        return "rejected"

    mocker.patch("rentpay.reconciler.get_payment_link_status", side_effect=provider)

    counts = run_sweep(db)

    assert counts["invocaciones_sync_errores"] == 1
    assert counts["invocaciones_sync_exitosas"] == 1
    db.expire_all()
    assert db.get(PaymentAttempt, healthy.id).status == AttemptStatus.REJECTED

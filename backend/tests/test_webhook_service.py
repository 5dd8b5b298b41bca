import pytest

from settlement.errors import ValidationError
from settlement.models import EscrowTimeout, Payment
from settlement.models.payments import (
    PAYMENT_CONFIRMED,
    PAYMENT_CONFIRMED_FINAL,
    PAYMENT_ESCROW,
    PAYMENT_FAILED,
    SETTLEMENT_DIRECT,
)
from settlement.services import escrow_service, settlement_service
from settlement.services.webhook_service import (
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    FailSafeMapper,
    MtnMomoMapper,
    OrangeMoneyMapper,
    handle_webhook,
    mapper_for,
)

from conftest import ESCROW_T0, PAYMENT_AT, TENANT


def test_mappers_normalize_gateway_payloads():
    orange = OrangeMoneyMapper()
    assert orange.outcome({"status": "SUCCESSFUL"}) == OUTCOME_SUCCESS
    assert orange.outcome({"status": "FAILED"}) == OUTCOME_FAILURE
    assert orange.payment_reference({"order_id": "PAY-1"}) == "PAY-1"
    # Orange Money reports success only as SUCCESSFUL
    assert orange.outcome({"status": "SUCCESS"}) == OUTCOME_FAILURE

    mtn = MtnMomoMapper()
    assert mtn.outcome({"status": "successful"}) == OUTCOME_SUCCESS
    assert mtn.outcome({"status": "PENDING"}) == OUTCOME_FAILURE
    assert mtn.payment_reference({"externalId": "PAY-2"}) == "PAY-2"
    assert mtn.failure_reason({"status": "FAILED", "reason": {"code": "PAYER_NOT_FOUND"}}) == "PAYER_NOT_FOUND"


def test_unknown_gateway_fails_safe():
    mapper = mapper_for("PAYPAL")

    assert isinstance(mapper, FailSafeMapper)
    assert mapper.outcome({"status": "SUCCESSFUL"}) == OUTCOME_FAILURE


def test_success_confirms_and_holds_escrow_payment(db_session, initiated_payment):
    result = handle_webhook(
        "MTN_MOMO",
        {"externalId": initiated_payment.reference, "status": "SUCCESSFUL", "financialTransactionId": "MTN-77"},
        now=ESCROW_T0,
    )

    assert result.outcome == OUTCOME_SUCCESS
    assert result.status == PAYMENT_ESCROW
    assert result.changed is True

    payment = db_session.get(Payment, initiated_payment.id)
    assert payment.gateway == "MTN_MOMO"
    assert payment.gateway_transaction_id == "MTN-77"
    assert payment.confirmed_at == ESCROW_T0
    assert payment.entered_escrow_at == ESCROW_T0
    assert db_session.query(EscrowTimeout).filter_by(payment_id=payment.id).count() == 1


def test_replayed_success_is_noop(db_session, escrow_payment):
    payload = {"order_id": escrow_payment.reference, "status": "SUCCESSFUL", "txnid": "OM-0001"}

    result = handle_webhook("ORANGE_MONEY", payload)

    assert result.changed is False
    assert result.status == PAYMENT_ESCROW
    assert len(escrow_service.get_movements(escrow_payment.id)) == 1


def test_failure_marks_payment_failed_and_replay_is_noop(db_session, fakes, initiated_payment):
    payload = {"order_id": initiated_payment.reference, "status": "FAILED", "message": "Insufficient balance"}

    first = handle_webhook("ORANGE_MONEY", payload)
    second = handle_webhook("ORANGE_MONEY", payload)

    assert first.status == PAYMENT_FAILED
    assert first.changed is True
    assert second.changed is False
    payment = db_session.get(Payment, initiated_payment.id)
    assert payment.failure_reason == "Insufficient balance"
    assert fakes.notifier.events("payment.failed")[0][0] == TENANT


def test_late_failure_after_escrow_is_ignored(db_session, escrow_payment):
    result = handle_webhook("ORANGE_MONEY", {"order_id": escrow_payment.reference, "status": "FAILED"})

    assert result.changed is False
    assert db_session.get(Payment, escrow_payment.id).status == PAYMENT_ESCROW


def test_unknown_gateway_success_marks_failed(db_session, initiated_payment):
    result = handle_webhook("PAYPAL", {"reference": initiated_payment.reference, "status": "SUCCESSFUL"})

    assert result.status == PAYMENT_FAILED
    assert db_session.get(Payment, initiated_payment.id).failure_reason == "Unsupported gateway"


def test_confirmed_payment_resumes_hold_on_replay(db_session, initiated_payment):
    # Crash between confirmation and hold leaves the payment CONFIRMED
    escrow_service.confirm(initiated_payment.id, gateway="ORANGE_MONEY", now=ESCROW_T0)
    assert db_session.get(Payment, initiated_payment.id).status == PAYMENT_CONFIRMED

    result = handle_webhook(
        "ORANGE_MONEY", {"order_id": initiated_payment.reference, "status": "SUCCESSFUL"}, now=ESCROW_T0,
    )

    assert result.status == PAYMENT_ESCROW
    assert result.changed is True


def test_direct_payment_settles_without_escrow(db_session, fakes, locked_contract):
    payment = settlement_service.initiate_payment(
        locked_contract.reference, TENANT, settlement_mode=SETTLEMENT_DIRECT, now=PAYMENT_AT,
    )

    result = handle_webhook("ORANGE_MONEY", {"order_id": payment.reference, "status": "SUCCESSFUL"})

    assert result.status == PAYMENT_CONFIRMED_FINAL
    payment = db_session.get(Payment, payment.id)
    assert payment.entered_escrow_at is None
    assert payment.retained_commission == payment.platform_fee
    assert db_session.query(EscrowTimeout).count() == 0
    assert fakes.receipts.issued == [payment.reference]


def test_unknown_reference_is_rejected(db_session):
    with pytest.raises(ValidationError):
        handle_webhook("ORANGE_MONEY", {"order_id": "PAY-20260101-NOPE0", "status": "SUCCESSFUL"})

    with pytest.raises(ValidationError):
        handle_webhook("ORANGE_MONEY", {"status": "SUCCESSFUL"})

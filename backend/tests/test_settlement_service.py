from datetime import timedelta
from decimal import Decimal

import pytest

from settlement.errors import InvalidStateTransition, ValidationError
from settlement.models import Payment
from settlement.models.payments import (
    PAYMENT_CONFIRMED_FINAL,
    PAYMENT_FAILED,
    PAYMENT_INITIATED,
    PAYMENT_REFUNDED,
)
from settlement.services import settlement_service
from settlement.services.commission_service import ContractFacts

from conftest import ESCROW_T0, OWNER, PAYMENT_AT, STRANGER, TENANT


def test_initiate_payment_prices_from_locked_contract(db_session, locked_contract):
    payment = settlement_service.initiate_payment(locked_contract.reference, TENANT, now=PAYMENT_AT)

    assert payment.status == PAYMENT_INITIATED
    assert payment.reference.startswith("PAY-20260304-")
    assert payment.payer_id == TENANT
    assert payment.payee_id == OWNER
    assert payment.rent_amount == 2_500_000
    assert payment.deposit_amount == 5_000_000
    assert payment.platform_fee == 1_250_000
    assert payment.total_amount == 8_750_000
    assert payment.commission_rate == Decimal("0.50")


def test_loyalty_tier_of_payer_lowers_fee(db_session, fakes, locked_contract):
    fakes.tiers.tiers[TENANT] = "diamond"

    payment = settlement_service.initiate_payment(locked_contract.reference, TENANT, now=PAYMENT_AT)

    assert payment.loyalty_tier == "diamond"
    assert payment.platform_fee == 1_062_500
    assert payment.total_amount == 2_500_000 + 5_000_000 + 1_062_500


def test_payment_requires_locked_contract(db_session, signed_contract):
    with pytest.raises(InvalidStateTransition):
        settlement_service.initiate_payment(signed_contract.reference, TENANT)


def test_payer_must_be_a_party(db_session, locked_contract):
    with pytest.raises(ValidationError):
        settlement_service.initiate_payment(locked_contract.reference, STRANGER)


def test_unknown_settlement_mode_rejected(db_session, locked_contract):
    with pytest.raises(ValidationError):
        settlement_service.initiate_payment(locked_contract.reference, TENANT, settlement_mode="CASH")


def test_only_one_active_payment_per_contract(db_session, initiated_payment, locked_contract):
    with pytest.raises(InvalidStateTransition):
        settlement_service.initiate_payment(locked_contract.reference, TENANT)


def test_concurrent_initiation_creates_one_payment(db_session, fakes, monkeypatch, locked_contract):
    # A second initiation lands while the first is pricing outside the row lock
    original = fakes.tiers.tier_for
    interleaved = []

    def tier_for(party_id):
        if not interleaved:
            interleaved.append(
                settlement_service.initiate_payment(locked_contract.reference, TENANT, now=PAYMENT_AT)
            )
        return original(party_id)

    monkeypatch.setattr(fakes.tiers, "tier_for", tier_for)

    with pytest.raises(InvalidStateTransition, match="already has an active payment"):
        settlement_service.initiate_payment(locked_contract.reference, TENANT, now=PAYMENT_AT)

    payments = db_session.query(Payment).filter_by(contract_id=locked_contract.id).all()
    assert [p.reference for p in payments] == [interleaved[0].reference]


def test_failed_payment_can_be_retried(db_session, initiated_payment, locked_contract):
    settlement_service.on_gateway_webhook("MTN_MOMO", {"externalId": initiated_payment.reference, "status": "FAILED"})
    assert settlement_service.get_payment(initiated_payment.reference).status == PAYMENT_FAILED

    retry = settlement_service.initiate_payment(locked_contract.reference, TENANT, now=PAYMENT_AT)

    assert retry.reference != initiated_payment.reference
    assert retry.status == PAYMENT_INITIATED


def test_unknown_references_are_rejected(db_session):
    with pytest.raises(ValidationError):
        settlement_service.get_contract("CTR-2026-NOPE00")
    with pytest.raises(ValidationError):
        settlement_service.get_payment("PAY-20260101-NOPE0")


def test_release_and_status_by_reference(db_session, escrow_payment):
    status = settlement_service.get_escrow_status(escrow_payment.reference, now=ESCROW_T0 + timedelta(hours=12))
    assert status["payment_reference"] == escrow_payment.reference
    assert status["hours_remaining"] == 36

    result = settlement_service.release_payment(escrow_payment.reference, actor_id=TENANT)
    assert result.status == PAYMENT_CONFIRMED_FINAL


def test_refund_by_reference(db_session, escrow_payment):
    result = settlement_service.refund_payment(escrow_payment.reference, "Owner unreachable", actor_id="admin-1")

    assert result.status == PAYMENT_REFUNDED
    assert result.payment.refund_reason == "Owner unreachable"


def test_verify_integrity_by_reference(db_session, locked_contract):
    report = settlement_service.verify_integrity(locked_contract.reference)

    assert report.verified is True
    assert report.to_dict()["contract_reference"] == locked_contract.reference


def test_calculate_invoice_is_pure(db_session):
    invoice = settlement_service.calculate_invoice(ContractFacts(
        transaction_type="property_sale", base_amount=300_000_000, loyalty_tier="silver",
    ))

    assert invoice.commission == 5_700_000
    assert invoice.total == 305_700_000

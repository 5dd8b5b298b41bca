"""
Pytest fixtures for settlement backend tests.

Provides the app on in-memory SQLite, a fresh database per test, recording
collaborators, and signed/locked contract and escrow payment fixtures.
"""

from datetime import datetime, timedelta

import pytest

from settlement import create_app
from settlement.errors import ExternalDependencyError
from settlement.extensions import db
from settlement.services import settlement_service
from settlement.services.collaborators import Collaborators, DefaultTierLookup


OWNER = "owner-1"
TENANT = "tenant-1"
STRANGER = "stranger-9"

# Both signatures land at T0; retraction closes at T0 + 48h
T0 = datetime(2026, 3, 2, 9, 0, 0)
LOCK_AT = T0 + timedelta(hours=48)
PAYMENT_AT = T0 + timedelta(hours=49)
ESCROW_T0 = T0 + timedelta(hours=50)


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.fail = False

    def notify(self, party_id, event_type, payload):
        if self.fail:
            raise RuntimeError("notification channel down")
        self.sent.append((party_id, event_type, payload))

    def events(self, event_type):
        return [entry for entry in self.sent if entry[1] == event_type]

    def last_otp(self, contract_ref, party_id):
        for sent_to, event_type, payload in reversed(self.sent):
            if event_type == "signature.otp" and sent_to == party_id and payload["contract_id"] == contract_ref:
                return payload["code"]
        return None


class MemoryStorage:
    def __init__(self):
        self.files = {}
        self.fail_writes = False

    def get(self, path):
        if path not in self.files:
            raise ExternalDependencyError(f"Storage read failed: {path}")
        return self.files[path]

    def put(self, path, data):
        if self.fail_writes:
            raise ExternalDependencyError(f"Storage write failed: {path}")
        self.files[path] = bytes(data)
        return True

    def exists(self, path):
        return path in self.files


class FakeReceipts:
    def __init__(self):
        self.issued = []
        self.fail = False

    def generate(self, payment):
        if self.fail:
            raise ExternalDependencyError("receipt renderer unavailable")
        self.issued.append(payment.reference)
        return f"QUIT-{payment.reference}"


class Fakes:
    def __init__(self):
        self.notifier = RecordingNotifier()
        self.storage = MemoryStorage()
        self.receipts = FakeReceipts()
        self.tiers = DefaultTierLookup()

    def reset(self):
        self.notifier.sent.clear()
        self.notifier.fail = False
        self.storage.files.clear()
        self.storage.fail_writes = False
        self.receipts.issued.clear()
        self.receipts.fail = False
        self.tiers.tiers.clear()


@pytest.fixture(scope='session')
def fakes():
    return Fakes()


@pytest.fixture(scope='session')
def app(fakes):
    """Create application for testing."""
    app = create_app(
        config_overrides={
            'TESTING': True,
            'SECRET_KEY': 'test-secret',
            'ARCHIVE_ENCRYPTION_KEY': 'test-archive-secret',
            'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
            'SQLALCHEMY_TRACK_MODIFICATIONS': False,
            'LOCK_RETRY_BACKOFF': 0,
            'TIMEOUT_FIRE_BACKOFF': 0,
        },
        collaborators=Collaborators(
            notifications=fakes.notifier,
            storage=fakes.storage,
            receipts=fakes.receipts,
            tiers=fakes.tiers,
        ),
    )

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app, fakes):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        fakes.reset()

        yield db.session

        # Cleanup after test
        db.session.rollback()


def sign_as(fakes, contract_ref, party_id, now=T0):
    settlement_service.request_signature(contract_ref, party_id)
    code = fakes.notifier.last_otp(contract_ref, party_id)
    return settlement_service.submit_signature(
        contract_ref, party_id, code, origin_ip="10.0.0.7", user_agent="pytest", now=now,
    )


@pytest.fixture(scope='function')
def contract(db_session):
    """Unsigned long-term rental: 2,500,000 monthly rent + 5,000,000 deposit."""
    return settlement_service.register_contract(
        owner_id=OWNER,
        counterparty_id=TENANT,
        transaction_type="rental_long",
        base_amount=2_500_000,
        deposit_amount=5_000_000,
        listing_ref="LST-42",
        now=T0 - timedelta(days=1),
    )


@pytest.fixture(scope='function')
def signed_contract(db_session, fakes, contract):
    """Both parties signed at T0; retraction window open until T0 + 48h."""
    sign_as(fakes, contract.reference, OWNER)
    sign_as(fakes, contract.reference, TENANT)
    return settlement_service.get_contract(contract.reference)


@pytest.fixture(scope='function')
def locked_contract(db_session, signed_contract):
    settlement_service.finalize_contract(signed_contract.reference, now=LOCK_AT)
    return settlement_service.get_contract(signed_contract.reference)


@pytest.fixture(scope='function')
def initiated_payment(db_session, locked_contract):
    return settlement_service.initiate_payment(locked_contract.reference, TENANT, now=PAYMENT_AT)


@pytest.fixture(scope='function')
def escrow_payment(db_session, initiated_payment):
    """Payment confirmed by Orange Money and held in escrow since ESCROW_T0."""
    settlement_service.on_gateway_webhook(
        "ORANGE_MONEY",
        {"order_id": initiated_payment.reference, "status": "SUCCESSFUL", "txnid": "OM-0001"},
        now=ESCROW_T0,
    )
    return settlement_service.get_payment(initiated_payment.reference)

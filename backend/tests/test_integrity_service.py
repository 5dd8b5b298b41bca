import json
import logging
from datetime import datetime, timedelta

import pytest

from settlement.errors import ExternalDependencyError, IntegrityViolation, InvalidStateTransition, ValidationError
from settlement.extensions import db
from settlement.models import Contract
from settlement.services import settlement_service
from settlement.services.encryption_service import (
    NONCE_SIZE,
    TAG_SIZE,
    ArchiveKeyConfig,
    decrypt,
    encrypt,
)
from settlement.services.integrity_service import (
    VERIFY_CORRUPTED,
    VERIFY_ERROR,
    VERIFY_MISSING_ARTIFACT,
    VERIFY_NOT_ARCHIVED,
    VERIFY_TAMPERED,
    VERIFY_VALID,
    IntegrityService,
    get_integrity_service,
)

from conftest import LOCK_AT, T0, TENANT, sign_as


BACKUP_AT = datetime(2026, 3, 5, 2, 0, 0)


def _locked(db_session, locked_contract):
    return db_session.get(Contract, locked_contract.id)


def test_encryption_blob_layout_and_fresh_nonce():
    key = ArchiveKeyConfig.from_secret("unit-test-secret")
    plaintext = b"contrat de bail"

    first = encrypt(plaintext, key)
    second = encrypt(plaintext, key)

    assert len(first) == NONCE_SIZE + TAG_SIZE + len(plaintext)
    assert first[:NONCE_SIZE] != second[:NONCE_SIZE]
    assert decrypt(first, key) == plaintext


def test_decrypt_rejects_wrong_key_truncation_and_flipped_tag():
    key = ArchiveKeyConfig.from_secret("unit-test-secret")
    blob = encrypt(b"terms", key)

    with pytest.raises(IntegrityViolation):
        decrypt(blob, ArchiveKeyConfig.from_secret("another-secret"))
    with pytest.raises(IntegrityViolation):
        decrypt(blob[:NONCE_SIZE + TAG_SIZE - 1], key)

    flipped = bytearray(blob)
    flipped[NONCE_SIZE] ^= 0x01
    with pytest.raises(IntegrityViolation):
        decrypt(bytes(flipped), key)


def test_key_must_be_256_bits():
    with pytest.raises(ValidationError):
        ArchiveKeyConfig(key=b"short")
    with pytest.raises(ValidationError):
        ArchiveKeyConfig.from_secret("")


def test_locked_contract_verifies(db_session, fakes, locked_contract):
    contract = _locked(db_session, locked_contract)

    report = get_integrity_service().verify(contract, now=LOCK_AT)

    assert report.verified is True
    assert report.status == VERIFY_VALID
    assert report.mismatch_detail is None
    audit = contract.integrity_audit
    assert audit.original_hash == contract.archive_hash
    assert audit.algorithm == "AES-256-GCM"
    assert audit.file_size == len(fakes.storage.files[contract.archive_path])


def test_unarchived_contract_reports_not_archived(db_session, signed_contract):
    report = get_integrity_service().verify(db_session.get(Contract, signed_contract.id))

    assert report.verified is False
    assert report.status == VERIFY_NOT_ARCHIVED


def test_modified_blob_is_tampered(db_session, fakes, locked_contract):
    contract = _locked(db_session, locked_contract)
    blob = bytearray(fakes.storage.files[contract.archive_path])
    blob[-1] ^= 0xFF
    fakes.storage.files[contract.archive_path] = bytes(blob)

    report = get_integrity_service().verify(contract)

    assert report.status == VERIFY_TAMPERED
    assert "Encrypted hash mismatch" in report.mismatch_detail


def test_missing_blob_is_reported(db_session, fakes, locked_contract):
    contract = _locked(db_session, locked_contract)
    del fakes.storage.files[contract.archive_path]

    report = get_integrity_service().verify(contract)

    assert report.status == VERIFY_MISSING_ARTIFACT
    with pytest.raises(IntegrityViolation):
        get_integrity_service().read_archived(contract)


def test_diverging_hash_records_are_tampered(db_session, locked_contract):
    contract = _locked(db_session, locked_contract)
    contract.integrity_audit.original_hash = "f" * 64
    db_session.flush()

    report = get_integrity_service().verify(contract)

    assert report.status == VERIFY_TAMPERED
    assert "differs from integrity audit" in report.mismatch_detail


def test_wrong_key_reports_corrupted(db_session, locked_contract):
    contract = _locked(db_session, locked_contract)
    service = IntegrityService(ArchiveKeyConfig.from_secret("rotated-without-migration"))

    report = service.verify(contract)

    assert report.status == VERIFY_CORRUPTED


def test_verify_is_read_only(db_session, fakes, locked_contract):
    contract = _locked(db_session, locked_contract)
    before = dict(fakes.storage.files)
    version = contract.version_id

    get_integrity_service().verify(contract)

    assert fakes.storage.files == before
    assert contract.version_id == version
    assert not db_session.dirty


def test_read_archived_returns_plaintext_record(db_session, locked_contract):
    contract = _locked(db_session, locked_contract)

    content = get_integrity_service().read_archived(contract)

    assert contract.reference.encode("utf-8") in content
    assert contract.seal_hash.encode("utf-8") in content


def test_archive_runs_once(db_session, locked_contract):
    contract = _locked(db_session, locked_contract)

    with pytest.raises(InvalidStateTransition):
        get_integrity_service().archive(contract, b"second copy")


def test_integrity_report_includes_archive_facts(db_session, locked_contract):
    contract = _locked(db_session, locked_contract)

    report = get_integrity_service().integrity_report(contract)

    assert report["verified"] is True
    assert report["locked"] is True
    assert report["algorithm"] == "AES-256-GCM"
    assert report["audit"]["file_path"] == contract.archive_path


def test_verify_all_logs_critical_and_alerts_ops(db_session, fakes, caplog, locked_contract):
    contract = _locked(db_session, locked_contract)
    fakes.storage.files[contract.archive_path] = b"x" * 64

    with caplog.at_level(logging.CRITICAL):
        summary = get_integrity_service().verify_all()

    assert summary["checked"] == 1
    assert summary["valid"] == 0
    assert summary["violations"][0]["contract_reference"] == contract.reference
    assert any(record.levelname == "CRITICAL" for record in caplog.records)
    assert fakes.notifier.events("integrity.violation")[0][0] == "ops"


def test_verify_all_clean_run(db_session, locked_contract):
    summary = get_integrity_service().verify_all()

    assert summary == {"checked": 1, "valid": 1, "violations": []}
    assert db.session.get(Contract, locked_contract.id).locked is True


def _second_locked_contract(fakes):
    second = settlement_service.register_contract(
        owner_id="owner-2",
        counterparty_id=TENANT,
        transaction_type="rental_long",
        base_amount=1_800_000,
        deposit_amount=3_600_000,
        listing_ref="LST-43",
        now=T0 - timedelta(days=1),
    )
    sign_as(fakes, second.reference, "owner-2")
    sign_as(fakes, second.reference, TENANT)
    settlement_service.finalize_contract(second.reference, now=LOCK_AT)
    return settlement_service.get_contract(second.reference)


def test_verify_all_continues_past_unreadable_archive(db_session, fakes, monkeypatch, locked_contract):
    second = _second_locked_contract(fakes)
    unreadable = locked_contract.archive_path
    read = fakes.storage.get

    def get(path):
        if path == unreadable:
            raise ExternalDependencyError(f"Storage read failed: {path}")
        return read(path)

    monkeypatch.setattr(fakes.storage, "get", get)

    summary = get_integrity_service().verify_all()

    assert summary["checked"] == 2
    assert summary["valid"] == 1
    assert [v["contract_reference"] for v in summary["violations"]] == [locked_contract.reference]
    assert summary["violations"][0]["status"] == VERIFY_ERROR
    assert "Storage read failed" in summary["violations"][0]["detail"]
    assert get_integrity_service().verify(second).verified is True


def test_backup_copies_archive_and_writes_manifest(db_session, fakes, locked_contract):
    summary = get_integrity_service().backup_archives(now=BACKUP_AT)

    backup_path = f"backups/contracts/2026/03/05/{locked_contract.reference}.enc"
    assert summary["backed_up"] == 1
    assert summary["failed"] == 0
    assert fakes.storage.files[backup_path] == fakes.storage.files[locked_contract.archive_path]

    manifest = json.loads(fakes.storage.files[summary["manifest_path"]])
    assert summary["manifest_path"] == "backups/contracts/2026/03/05/manifest.json"
    assert manifest["contracts_backed_up"] == 1
    entry = manifest["contracts"][0]
    assert entry["contract_reference"] == locked_contract.reference
    assert entry["encrypted_hash"] == locked_contract.integrity_audit.encrypted_hash
    assert entry["backup_path"] == backup_path


def test_backup_skips_contracts_already_copied_today(db_session, fakes, locked_contract):
    service = get_integrity_service()
    service.backup_archives(now=BACKUP_AT)

    again = service.backup_archives(now=BACKUP_AT)
    forced = service.backup_archives(now=BACKUP_AT, force=True)

    assert again["skipped"] == 1
    assert again["backed_up"] == 0
    assert forced["backed_up"] == 1
    manifest = json.loads(fakes.storage.files[forced["manifest_path"]])
    assert manifest["contracts_backed_up"] == 1


def test_backup_dry_run_copies_nothing(db_session, fakes, locked_contract):
    before = dict(fakes.storage.files)

    summary = get_integrity_service().backup_archives(now=BACKUP_AT, dry_run=True)

    assert summary["references"] == [locked_contract.reference]
    assert summary["manifest_path"] is None
    assert fakes.storage.files == before


def test_backup_refuses_tampered_archive(db_session, fakes, locked_contract):
    fakes.storage.files[locked_contract.archive_path] = b"overwritten"

    summary = get_integrity_service().backup_archives(now=BACKUP_AT)

    assert summary["failed"] == 1
    assert summary["backed_up"] == 0
    assert not any(path.startswith("backups/") for path in fakes.storage.files)

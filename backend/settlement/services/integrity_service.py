# Overview: Service-layer operations for contract archival; hash, encrypt, store, verify.

"""
Integrity & Archival Service

WHY: A locked contract is legal evidence. The signed artifact is hashed,
sealed with authenticated encryption and stored once (WORM). Anyone can later
recompute the hashes and prove the stored artifact was not altered.

DESIGN:
- archive() runs exactly once per contract, inside the caller's transaction
  (the signature protocol holds the contract row lock).
- Hashes are written twice: on the contract row and in integrity_audits, so
  tampering with one record alone cannot make a modified artifact verify.
- verify() never mutates state. It only reads the blob and compares.
- Algorithms are fixed constants so historical artifacts stay verifiable.
- backup_archives() copies blobs that still match their recorded hash into a
  dated backup area and records them in a per-day manifest.json.

VERIFY STATUSES:
- VALID: encrypted hash, authentication tag and plaintext hash all match
- NOT_ARCHIVED: contract has no archive yet
- MISSING_ARTIFACT: storage no longer holds the blob
- TAMPERED: a hash differs from the recorded one
- CORRUPTED: authenticated decryption failed
- STORAGE_ERROR: storage could not be read; the artifact is unverified
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime

from flask import current_app

from ..errors import ExternalDependencyError, IntegrityViolation, InvalidStateTransition
from ..extensions import db
from ..models import Contract, IntegrityAudit
from ..models.contracts import CONTRACT_LOCKED
from settlement.time_utils import add_years, to_utc_z, utcnow
from .collaborators import EXTENSION_KEY, get_collaborators, notify_safely
from .encryption_service import ALGORITHM, ArchiveKeyConfig, decrypt, encrypt, sha256_hex


VERIFY_VALID = "VALID"
VERIFY_NOT_ARCHIVED = "NOT_ARCHIVED"
VERIFY_MISSING_ARTIFACT = "MISSING_ARTIFACT"
VERIFY_TAMPERED = "TAMPERED"
VERIFY_CORRUPTED = "CORRUPTED"
VERIFY_ERROR = "STORAGE_ERROR"


@dataclass(frozen=True)
class IntegrityReport:
    contract_reference: str
    verified: bool
    status: str
    mismatch_detail: str | None
    checked_at: datetime

    def to_dict(self) -> dict:
        return {
            "contract_reference": self.contract_reference,
            "verified": self.verified,
            "status": self.status,
            "detail": self.mismatch_detail,
            "checked_at": to_utc_z(self.checked_at),
        }


def archive_path_for(contract: Contract, archived_at: datetime) -> str:
    return f"contracts/{archived_at:%Y}/{contract.reference}.enc"


def backup_prefix_for(day: datetime) -> str:
    return f"backups/contracts/{day:%Y/%m/%d}"


class IntegrityService:
    def __init__(self, key_config: ArchiveKeyConfig, retention_years: int = 10, ops_recipient: str | None = None):
        self.key_config = key_config
        self.retention_years = retention_years
        self.ops_recipient = ops_recipient

    # =========================================================================
    # ARCHIVE
    # =========================================================================

    def archive(self, contract: Contract, content: bytes, *, now: datetime | None = None) -> IntegrityAudit:
        """
        Seal and store the signed artifact. Caller holds the contract lock and commits.

        Raises:
            InvalidStateTransition: contract already archived
            ExternalDependencyError: storage write failed
        """
        if contract.archive_hash is not None or contract.integrity_audit is not None:
            raise InvalidStateTransition(
                "Contract is already archived",
                contract_reference=contract.reference,
            )
        if not isinstance(content, (bytes, bytearray)):
            raise InvalidStateTransition("Archive content must be bytes", contract_reference=contract.reference)

        archived_at = now or utcnow()
        content = bytes(content)
        original_hash = sha256_hex(content)
        blob = encrypt(content, self.key_config)
        encrypted_hash = sha256_hex(blob)
        path = archive_path_for(contract, archived_at)

        if not get_collaborators().storage.put(path, blob):
            raise ExternalDependencyError(f"Storage refused archive write: {path}", contract_reference=contract.reference)

        retention_until = add_years(archived_at, self.retention_years)

        audit = IntegrityAudit(
            contract=contract,
            file_path=path,
            original_hash=original_hash,
            encrypted_hash=encrypted_hash,
            file_size=len(blob),
            algorithm=ALGORITHM,
            archived_at=archived_at,
            retention_until=retention_until,
        )
        db.session.add(audit)

        contract.archive_hash = original_hash
        contract.archive_path = path
        contract.encryption_algorithm = ALGORITHM
        contract.archived_at = archived_at
        contract.retention_until = retention_until
        db.session.flush()

        current_app.logger.info(
            "Contract %s archived at %s (sha256=%s)", contract.reference, path, original_hash
        )
        return audit

    # =========================================================================
    # VERIFY
    # =========================================================================

    def _report(self, contract: Contract, status: str, detail: str | None, now: datetime) -> IntegrityReport:
        return IntegrityReport(
            contract_reference=contract.reference,
            verified=status == VERIFY_VALID,
            status=status,
            mismatch_detail=detail,
            checked_at=now,
        )

    def _check(self, contract: Contract, now: datetime) -> tuple[IntegrityReport, bytes | None]:
        audit = contract.integrity_audit
        if contract.archive_path is None or audit is None:
            return self._report(contract, VERIFY_NOT_ARCHIVED, "Contract has not been archived", now), None

        if audit.original_hash != contract.archive_hash or audit.file_path != contract.archive_path:
            return self._report(
                contract, VERIFY_TAMPERED, "Contract archive record differs from integrity audit record", now
            ), None

        storage = get_collaborators().storage
        try:
            if not storage.exists(contract.archive_path):
                return self._report(contract, VERIFY_MISSING_ARTIFACT, f"Archive not found: {contract.archive_path}", now), None
            blob = storage.get(contract.archive_path)
        except ExternalDependencyError as exc:
            return self._report(contract, VERIFY_ERROR, exc.message, now), None

        actual_encrypted_hash = sha256_hex(blob)
        if actual_encrypted_hash != audit.encrypted_hash:
            return self._report(
                contract,
                VERIFY_TAMPERED,
                f"Encrypted hash mismatch: expected {audit.encrypted_hash}, got {actual_encrypted_hash}",
                now,
            ), None

        try:
            plaintext = decrypt(blob, self.key_config)
        except IntegrityViolation as exc:
            return self._report(contract, VERIFY_CORRUPTED, exc.message, now), None

        actual_hash = sha256_hex(plaintext)
        if actual_hash != contract.archive_hash:
            return self._report(
                contract,
                VERIFY_TAMPERED,
                f"Content hash mismatch: expected {contract.archive_hash}, got {actual_hash}",
                now,
            ), None

        return self._report(contract, VERIFY_VALID, None, now), plaintext

    def verify(self, contract: Contract, *, now: datetime | None = None) -> IntegrityReport:
        """Recompute hashes of the stored artifact; read-only."""
        report, _ = self._check(contract, now or utcnow())
        return report

    def read_archived(self, contract: Contract) -> bytes:
        """
        Plaintext of the archived artifact, only after a successful verification.

        Raises:
            IntegrityViolation: artifact missing, tampered or corrupted
        """
        report, plaintext = self._check(contract, utcnow())
        if not report.verified:
            raise IntegrityViolation(
                report.mismatch_detail or "Archive failed verification",
                contract_reference=contract.reference,
                status=report.status,
            )
        return plaintext

    def integrity_report(self, contract: Contract) -> dict:
        """Verification result plus the recorded archive facts."""
        report = self.verify(contract)
        audit = contract.integrity_audit
        return {
            **report.to_dict(),
            "contract_status": contract.status,
            "locked": contract.locked,
            "archive_hash": contract.archive_hash,
            "seal_hash": contract.seal_hash,
            "algorithm": contract.encryption_algorithm,
            "archived_at": to_utc_z(contract.archived_at),
            "retention_until": to_utc_z(contract.retention_until),
            "audit": audit.to_dict() if audit is not None else None,
        }

    def verify_all(self, *, now: datetime | None = None) -> dict:
        """
        Bulk sweep over every locked contract.

        Violations are logged CRITICAL and alerted; nothing is corrected.
        """
        now = now or utcnow()
        contracts = db.session.query(Contract).filter(
            Contract.status == CONTRACT_LOCKED,
        ).order_by(Contract.id).all()

        summary = {"checked": 0, "valid": 0, "violations": []}
        for contract in contracts:
            report = self.verify(contract, now=now)
            summary["checked"] += 1
            if report.verified:
                summary["valid"] += 1
                continue

            summary["violations"].append(report.to_dict())
            current_app.logger.critical(
                "Integrity violation on contract %s: %s (%s)",
                contract.reference,
                report.status,
                report.mismatch_detail,
            )
            notify_safely(self.ops_recipient, "integrity.violation", report.to_dict())

        return summary

    # =========================================================================
    # BACKUP
    # =========================================================================

    def backup_archives(self, *, now: datetime | None = None, dry_run: bool = False, force: bool = False) -> dict:
        """
        Copy every locked archive blob to the dated backup area and write a manifest.

        Each copy is checked against the recorded encrypted hash first, so a
        tampered or unreadable artifact is never written to the backup area.
        Contracts already copied for the day are skipped unless force is set.
        """
        now = now or utcnow()
        prefix = backup_prefix_for(now)
        storage = get_collaborators().storage
        contracts = db.session.query(Contract).filter(
            Contract.status == CONTRACT_LOCKED,
            Contract.archive_path.isnot(None),
        ).order_by(Contract.id).all()

        summary = {"found": len(contracts), "backed_up": 0, "skipped": 0, "failed": 0,
                   "references": [], "manifest_path": None}
        entries = []
        for contract in contracts:
            audit = contract.integrity_audit
            backup_path = f"{prefix}/{contract.reference}.enc"
            try:
                if not force and storage.exists(backup_path):
                    summary["skipped"] += 1
                    continue
                if not storage.exists(contract.archive_path):
                    current_app.logger.warning(
                        "Backup skipped for %s: archive not found at %s", contract.reference, contract.archive_path
                    )
                    summary["skipped"] += 1
                    continue
                if dry_run:
                    summary["references"].append(contract.reference)
                    summary["backed_up"] += 1
                    continue

                blob = storage.get(contract.archive_path)
                if audit is None or sha256_hex(blob) != audit.encrypted_hash:
                    raise IntegrityViolation(
                        "Archive does not match its recorded hash; not backed up",
                        contract_reference=contract.reference,
                    )
                if not storage.put(backup_path, blob):
                    raise ExternalDependencyError(f"Storage refused backup write: {backup_path}")
            except (ExternalDependencyError, IntegrityViolation) as exc:
                summary["failed"] += 1
                current_app.logger.error("Failed to back up contract %s: %s", contract.reference, exc.message)
                continue

            summary["backed_up"] += 1
            summary["references"].append(contract.reference)
            entries.append({
                "contract_reference": contract.reference,
                "archive_path": contract.archive_path,
                "backup_path": backup_path,
                "encrypted_hash": audit.encrypted_hash,
                "original_hash": contract.archive_hash,
                "seal_hash": contract.seal_hash,
                "retention_until": to_utc_z(contract.retention_until),
            })
            current_app.logger.info("Contract %s backed up to %s", contract.reference, backup_path)

        if entries:
            try:
                summary["manifest_path"] = self._write_manifest(storage, prefix, entries, now)
            except ExternalDependencyError as exc:
                summary["failed"] += 1
                current_app.logger.error("Failed to write backup manifest under %s: %s", prefix, exc.message)

        current_app.logger.info(
            "Contract backup finished: backed_up=%s skipped=%s failed=%s dry_run=%s",
            summary["backed_up"], summary["skipped"], summary["failed"], dry_run,
        )
        return summary

    def _write_manifest(self, storage, prefix: str, entries: list[dict], now: datetime) -> str:
        # Several runs on one day extend the same manifest
        path = f"{prefix}/manifest.json"
        manifest = {"date": to_utc_z(now), "algorithm": ALGORITHM, "contracts": []}
        if storage.exists(path):
            manifest = json.loads(storage.get(path).decode("utf-8"))
        known = {entry["contract_reference"] for entry in entries}
        manifest["contracts"] = [
            entry for entry in manifest["contracts"] if entry["contract_reference"] not in known
        ] + entries
        manifest["updated_at"] = to_utc_z(now)
        manifest["contracts_backed_up"] = len(manifest["contracts"])
        if not storage.put(path, json.dumps(manifest, indent=2, sort_keys=True).encode("utf-8")):
            raise ExternalDependencyError(f"Storage refused manifest write: {path}")
        return path


def get_integrity_service() -> IntegrityService:
    return current_app.extensions[EXTENSION_KEY]["integrity"]

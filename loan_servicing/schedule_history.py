"""
Schedule History Module

Write-only archive of repayment schedules taken before a destructive
regeneration. Versions are hash-chained with SHA-256 so that tampering
with an earlier snapshot is detectable.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional

from .installments import Component, RepaymentInstallment


class ScheduleHistoryArchive(ABC):
    """Audit store for schedules replaced by regeneration"""

    @abstractmethod
    def archive(
        self,
        installments: Iterable[RepaymentInstallment],
        loan: Any,
        reschedule_request: Optional[Dict[str, Any]] = None,
    ) -> 'ScheduleSnapshot':
        """Store a snapshot of the given installments for the loan"""


@dataclass
class ScheduleSnapshot:
    """One archived version of a loan's schedule"""
    loan_id: str
    version: int
    installments: List[Dict[str, str]]
    previous_hash: str
    current_hash: str
    reschedule_request: Optional[Dict[str, Any]] = None
    archived_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this snapshot
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'loan_id': self.loan_id,
            'version': self.version,
            'installments': self.installments,
            'previous_hash': self.previous_hash,
            'reschedule_request': self.reschedule_request,
            'archived_at': self.archived_at.isoformat(),
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()


def _installment_row(installment: RepaymentInstallment) -> Dict[str, str]:
    row = {
        'installment_number': str(installment.installment_number),
        'from_date': installment.from_date.isoformat(),
        'due_date': installment.due_date.isoformat(),
    }
    for component in Component:
        row[f"{component.value}_due"] = str(installment.due(component).amount)
    return row


class InMemoryScheduleHistoryArchive(ScheduleHistoryArchive):
    """Hash-chained schedule versions kept per loan"""

    def __init__(self):
        self._snapshots: Dict[str, List[ScheduleSnapshot]] = {}
        self._lock = Lock()

    def archive(
        self,
        installments: Iterable[RepaymentInstallment],
        loan: Any,
        reschedule_request: Optional[Dict[str, Any]] = None,
    ) -> ScheduleSnapshot:
        """
        Archive a schedule as the loan's next version

        Args:
            installments: Schedule being replaced
            loan: Loan the schedule belongs to
            reschedule_request: Details of the reschedule that replaced it

        Returns:
            Stored ScheduleSnapshot
        """
        rows = [_installment_row(i) for i in sorted(installments, key=lambda i: i.installment_number)]
        with self._lock:
            history = self._snapshots.setdefault(loan.loan_id, [])
            previous_hash = history[-1].current_hash if history else ""
            snapshot = ScheduleSnapshot(
                loan_id=loan.loan_id,
                version=len(history) + 1,
                installments=rows,
                previous_hash=previous_hash,
                current_hash="",
                reschedule_request=reschedule_request,
            )
            snapshot.current_hash = snapshot.calculate_hash()
            history.append(snapshot)
            return snapshot

    def versions(self, loan_id: str) -> List[ScheduleSnapshot]:
        with self._lock:
            return list(self._snapshots.get(loan_id, []))

    def latest(self, loan_id: str) -> Optional[ScheduleSnapshot]:
        history = self.versions(loan_id)
        return history[-1] if history else None

    def verify_integrity(self, loan_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify every snapshot hash and the chain between versions

        Returns:
            Dictionary with 'valid', 'snapshots_checked' and 'errors'
        """
        with self._lock:
            loan_ids = [loan_id] if loan_id else sorted(self._snapshots)
            errors = []
            checked = 0
            for current_loan in loan_ids:
                previous_hash = ""
                for snapshot in self._snapshots.get(current_loan, []):
                    checked += 1
                    if not snapshot.verify_hash():
                        errors.append(f"Loan {current_loan} version {snapshot.version}: hash mismatch")
                    if snapshot.previous_hash != previous_hash:
                        errors.append(f"Loan {current_loan} version {snapshot.version}: broken chain")
                    previous_hash = snapshot.current_hash
            return {'valid': not errors, 'snapshots_checked': checked, 'errors': errors}

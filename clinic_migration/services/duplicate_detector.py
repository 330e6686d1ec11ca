"""
Duplicate patient detection.

Before a patient is loaded it is compared against patients the target
store already holds and patients loaded earlier in the same run. Matching
is tried in order:

1. Exact email (case-insensitive)
2. Exact phone, compared in E.164 form
3. Similar first name, same last name and same date of birth

Match reasons never include the matched values.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from ..models.canonical import Patient

logger = logging.getLogger(__name__)


class MatchType(str, Enum):
    EXACT_EMAIL = "exact_email"
    EXACT_PHONE = "exact_phone"
    FUZZY_NAME_DOB = "fuzzy_name_dob"


@dataclass
class KnownPatient:
    """A patient a new record may duplicate."""
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    target_id: Optional[str] = None  # set once the patient exists in the target
    canonical_id: Optional[str] = None  # set for patients of this run

    @classmethod
    def from_patient(cls, patient: Patient, target_id: Optional[str] = None) -> "KnownPatient":
        return cls(
            first_name=patient.first_name or "",
            last_name=patient.last_name or "",
            email=patient.email,
            phone=patient.phone,
            date_of_birth=patient.date_of_birth,
            target_id=target_id,
            canonical_id=patient.canonical_id,
        )

    @classmethod
    def from_target(cls, data: Dict[str, Any]) -> "KnownPatient":
        """Build from a patient row returned by the target store."""
        return cls(
            first_name=data.get("first_name") or "",
            last_name=data.get("last_name") or "",
            email=data.get("email"),
            phone=data.get("phone"),
            date_of_birth=(data.get("date_of_birth") or "")[:10] or None,
            target_id=str(data["id"]) if data.get("id") is not None else None,
        )


@dataclass
class DuplicateMatch:
    """A detected duplicate and the patient it duplicates."""
    match_type: MatchType
    existing: KnownPatient
    reason: str


def normalize_phone(phone: str) -> str:
    """Normalize a phone number to E.164 for comparison."""
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _normalize_name(name: str) -> str:
    return name.strip().lower()


class DuplicateDetector:
    """Index of known patients with the duplicate matching rules."""

    def __init__(self, known: Optional[List[KnownPatient]] = None):
        self._by_email: Dict[str, KnownPatient] = {}
        self._by_phone: Dict[str, KnownPatient] = {}
        self._by_dob: Dict[str, List[KnownPatient]] = {}
        for patient in known or []:
            self.add(patient)

    def add(self, patient: KnownPatient) -> None:
        """Index a patient; the first patient seen for an email or phone wins."""
        if patient.email:
            self._by_email.setdefault(_normalize_email(patient.email), patient)
        if patient.phone:
            self._by_phone.setdefault(normalize_phone(patient.phone), patient)
        if patient.date_of_birth:
            self._by_dob.setdefault(patient.date_of_birth, []).append(patient)

    def find(self, patient: Patient) -> Optional[DuplicateMatch]:
        """
        Find a known patient the given patient duplicates.

        Args:
            patient: Canonical patient about to be loaded

        Returns:
            DuplicateMatch, or None if the patient is new
        """
        if patient.email:
            existing = self._by_email.get(_normalize_email(patient.email))
            if existing:
                return DuplicateMatch(MatchType.EXACT_EMAIL, existing, "Matched an existing patient by email")

        if patient.phone:
            existing = self._by_phone.get(normalize_phone(patient.phone))
            if existing:
                return DuplicateMatch(MatchType.EXACT_PHONE, existing, "Matched an existing patient by phone number")

        if patient.date_of_birth and patient.first_name and patient.last_name:
            first = _normalize_name(patient.first_name)
            last = _normalize_name(patient.last_name)
            for existing in self._by_dob.get(patient.date_of_birth, []):
                existing_first = _normalize_name(existing.first_name)
                first_similar = existing_first == first or (
                    len(first) >= 3 and existing_first.startswith(first[:3])
                )
                if first_similar and _normalize_name(existing.last_name) == last:
                    return DuplicateMatch(
                        MatchType.FUZZY_NAME_DOB,
                        existing,
                        "Matched an existing patient by similar name and the same date of birth",
                    )

        return None

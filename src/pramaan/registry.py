"""
Global uniqueness registry of biometric commitments.

A registration is one INSERT guarded by unique indexes on the commitment,
the nullifier, the keyed template tag and the scholar's active slot for the
biometric type. Concurrent registrations of the same biometric therefore
race inside the database and exactly one of them wins; there is no
check-then-insert window.

Conflict messages never reveal which scholar or organization holds the
existing enrollment.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from .data_models import (
    Commitment,
    Nullifier,
    RegistrationResult,
    parse_biometric_type,
    require_identifier,
)
from .exceptions import AlreadyEnrolledError, DuplicateBiometricError, InvalidInputError
from .storage import Database, RegistryEntry
from .utils import Clock, short_digest, utc_now

# Initialize structured logger
logger = structlog.get_logger(__name__)

ACTIVE = "active"
REVOKED = "revoked"

CommitmentRef = Union[Commitment, bytes, str]


@dataclass(frozen=True)
class RegistryRecord:
    """Public view of a registry row. The salt is never exposed."""

    registration_id: int
    biometric_type: str
    commitment: bytes
    nullifier: Nullifier
    owner_scholar_id: str
    organization_id: Optional[str]
    status: str
    created_at: datetime
    revoked_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE


def _commitment_hex(value: CommitmentRef) -> str:
    if isinstance(value, Commitment):
        return value.hex
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, str):
        return value.lower()
    raise InvalidInputError("commitment must be bytes or hex", field="commitment")


def _active_slot(scholar_id: str, biometric_type: str) -> str:
    return f"{scholar_id}|{biometric_type}"


def _to_record(row: RegistryEntry) -> RegistryRecord:
    return RegistryRecord(
        registration_id=row.id,
        biometric_type=row.biometric_type,
        commitment=bytes.fromhex(row.commitment),
        nullifier=Nullifier(bytes.fromhex(row.nullifier)),
        owner_scholar_id=row.owner_scholar_id,
        organization_id=row.organization_id,
        status=row.status,
        created_at=row.created_at,
        revoked_at=row.revoked_at,
    )


class GlobalUniquenessRegistry:
    """
    Registry of enrolled commitments.

    Parameters
    ----------
    database : Database
        Backing store.
    clock : Clock, default=utc_now
        Source of registration and revocation timestamps.
    """

    def __init__(self, database: Database, clock: Clock = utc_now) -> None:
        self.database = database
        self.clock = clock

    def register(
        self,
        biometric_type: str,
        commitment: Commitment,
        nullifier: Nullifier,
        owner_scholar_id: str,
        *,
        salt: bytes,
        template_tag: Optional[bytes] = None,
        organization_id: Optional[str] = None,
    ) -> RegistrationResult:
        """
        Record a new enrollment.

        Returns
        -------
        RegistrationResult
            Identifiers of the inserted row.

        Raises
        ------
        DuplicateBiometricError
            If the commitment, nullifier or template is already registered.
        AlreadyEnrolledError
            If the scholar already holds an active enrollment of this type.
        """
        biometric_type = parse_biometric_type(biometric_type)
        owner_scholar_id = require_identifier(owner_scholar_id, "owner_scholar_id")
        slot = _active_slot(owner_scholar_id, biometric_type)
        tag_hex = template_tag.hex() if template_tag is not None else None

        row = RegistryEntry(
            biometric_type=biometric_type,
            commitment=commitment.hex,
            nullifier=nullifier.hex,
            template_tag=tag_hex,
            active_slot=slot,
            owner_scholar_id=owner_scholar_id,
            organization_id=organization_id,
            salt=salt.hex(),
            status=ACTIVE,
            created_at=self.clock(),
        )

        try:
            with self.database.transaction() as session:
                session.add(row)
                session.flush()
                registration_id = row.id
        except IntegrityError:
            raise self._classify_conflict(commitment, nullifier, tag_hex, owner_scholar_id, slot)

        logger.info(
            "Biometric registered",
            registration_id=registration_id,
            biometric_type=biometric_type,
            commitment_prefix=short_digest(commitment.value),
        )

        return RegistrationResult(
            registration_id=registration_id,
            biometric_type=biometric_type,
            commitment=commitment.hex,
            nullifier=nullifier.hex,
            owner_scholar_id=owner_scholar_id,
            registered_at=row.created_at,
        )

    def _classify_conflict(
        self,
        commitment: Commitment,
        nullifier: Nullifier,
        tag_hex: Optional[str],
        owner_scholar_id: str,
        slot: str,
    ) -> Exception:
        clauses = [
            RegistryEntry.commitment == commitment.hex,
            RegistryEntry.nullifier == nullifier.hex,
        ]
        if tag_hex is not None:
            clauses.append(RegistryEntry.template_tag == tag_hex)

        with self.database.session() as session:
            clashes = session.scalars(select(RegistryEntry).where(or_(*clauses))).all()
            slot_taken = session.scalar(
                select(RegistryEntry.id).where(RegistryEntry.active_slot == slot)
            )

        biometric_type = slot.rsplit("|", 1)[1]
        if any(row.owner_scholar_id != owner_scholar_id for row in clashes):
            logger.warning(
                "Duplicate biometric rejected",
                biometric_type=biometric_type,
                commitment_prefix=short_digest(commitment.value),
            )
            return DuplicateBiometricError(biometric_type)

        if slot_taken is not None:
            logger.info("Active enrollment already exists", biometric_type=biometric_type)
            return AlreadyEnrolledError(owner_scholar_id, biometric_type)

        logger.warning(
            "Reserved commitment reused",
            biometric_type=biometric_type,
            commitment_prefix=short_digest(commitment.value),
        )
        return DuplicateBiometricError(biometric_type)

    def revoke(
        self,
        commitment: CommitmentRef,
        *,
        admin_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Deactivate an enrollment.

        The nullifier lineage becomes inactive and the template tag and
        active slot are released for a fresh enrollment. The commitment and
        nullifier values themselves remain reserved.

        Returns
        -------
        bool
            True if an active enrollment was revoked.
        """
        commitment_hex = _commitment_hex(commitment)
        with self.database.transaction() as session:
            result = session.execute(
                update(RegistryEntry)
                .where(RegistryEntry.commitment == commitment_hex, RegistryEntry.status == ACTIVE)
                .values(
                    status=REVOKED,
                    template_tag=None,
                    active_slot=None,
                    revoked_at=self.clock(),
                    revoked_by=admin_id,
                    revocation_reason=reason,
                )
                .execution_options(synchronize_session=False)
            )
            revoked = result.rowcount == 1

        logger.info(
            "Biometric revocation processed",
            commitment_prefix=short_digest(commitment_hex),
            revoked=revoked,
            admin_id=admin_id,
        )
        return revoked

    def get(self, commitment: CommitmentRef) -> Optional[RegistryRecord]:
        """Look up an enrollment by commitment, active or revoked."""
        with self.database.session() as session:
            row = session.scalar(
                select(RegistryEntry).where(RegistryEntry.commitment == _commitment_hex(commitment))
            )
            return _to_record(row) if row is not None else None

    def find_active(self, scholar_id: str, biometric_type: str) -> Optional[RegistryRecord]:
        with self.database.session() as session:
            row = session.scalar(
                select(RegistryEntry).where(
                    RegistryEntry.active_slot == _active_slot(scholar_id, biometric_type)
                )
            )
            return _to_record(row) if row is not None else None

    def is_nullifier_active(self, nullifier: Nullifier) -> bool:
        with self.database.session() as session:
            found = session.scalar(
                select(RegistryEntry.id).where(
                    RegistryEntry.nullifier == nullifier.hex, RegistryEntry.status == ACTIVE
                )
            )
            return found is not None

    def count(self, status: Optional[str] = None, biometric_type: Optional[str] = None) -> int:
        query = select(func.count()).select_from(RegistryEntry)
        if status is not None:
            query = query.where(RegistryEntry.status == status)
        if biometric_type is not None:
            query = query.where(RegistryEntry.biometric_type == biometric_type)
        with self.database.session() as session:
            return session.scalar(query) or 0

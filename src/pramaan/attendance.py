"""
Attendance session state machine and submission handling.

Every proof submission creates one attendance record in ``pending`` state.
It leaves ``pending`` exactly once, for ``verified``, ``rejected`` or
``expired``, through a compare-and-swap on the status column; terminal
records only change through an audited administrative override.

Expiry is time-triggered: lazily when a pending record is read, in bulk by
``expire_stale_records``, and at commit time when the challenge lapsed while
verification was running.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from .challenges import ChallengeService
from .commitment import attendance_window_key, derive_session_nullifier
from .constants import MAX_PROOF_SIZE
from .data_models import (
    AttendanceRecord,
    AttendanceStatus,
    AttendanceType,
    Location,
    Nullifier,
    Proof,
    PublicInputs,
    SubmissionOutcome,
    require_identifier,
)
from .exceptions import (
    ErrorKind,
    IllegalTransitionError,
    InvalidInputError,
    RecordNotFoundError,
    ReplayDetectedError,
)
from .security_log import ADMIN_OVERRIDE, SecurityAuditor
from .storage import (
    AttendanceRow,
    ChallengeRow,
    Database,
    RegistryEntry,
    SessionNullifierRow,
    StatusOverrideRow,
)
from .utils import Clock, generate_id, timer, utc_now
from .zk_verifier import ProofVerifier

# Initialize structured logger
logger = structlog.get_logger(__name__)


class AttendanceStateMachine:
    """
    Allowed attendance status transitions.

    Only ``pending -> {verified, rejected, expired}`` is legal. Every
    transition is applied as a conditional UPDATE, so two concurrent
    finalizations of the same record cannot both succeed.
    """

    TRANSITIONS = {
        AttendanceStatus.PENDING: frozenset(
            {AttendanceStatus.VERIFIED, AttendanceStatus.REJECTED, AttendanceStatus.EXPIRED}
        ),
    }

    @classmethod
    def can_transition(cls, from_status: AttendanceStatus, to_status: AttendanceStatus) -> bool:
        return to_status in cls.TRANSITIONS.get(from_status, frozenset())

    @classmethod
    def validate(cls, from_status: AttendanceStatus, to_status: AttendanceStatus) -> None:
        """
        Raises
        ------
        IllegalTransitionError
            If the lifecycle forbids the transition.
        """
        if not cls.can_transition(from_status, to_status):
            raise IllegalTransitionError(from_status.value, to_status.value)

    def advance(
        self,
        session,
        proof_id: str,
        to_status: AttendanceStatus,
        *,
        now: datetime,
        error_kind: Optional[ErrorKind] = None,
    ) -> None:
        """
        Move a pending record to ``to_status`` within ``session``.

        Raises
        ------
        IllegalTransitionError
            If the record is no longer pending or the target is not a
            legal successor of pending.
        RecordNotFoundError
            If the record does not exist.
        """
        self.validate(AttendanceStatus.PENDING, to_status)

        values: Dict[str, Any] = {
            "status": to_status.value,
            "error_kind": error_kind.value if error_kind else None,
            "updated_at": now,
        }
        if to_status is AttendanceStatus.VERIFIED:
            values["verified_at"] = now

        result = session.execute(
            update(AttendanceRow)
            .where(
                AttendanceRow.proof_id == proof_id,
                AttendanceRow.status == AttendanceStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return

        current = session.scalar(
            select(AttendanceRow.status).where(AttendanceRow.proof_id == proof_id)
        )
        if current is None:
            raise RecordNotFoundError("attendance_record", proof_id)
        raise IllegalTransitionError(current, to_status.value, context={"proof_id": proof_id})


def _row_to_record(row: AttendanceRow) -> AttendanceRecord:
    return AttendanceRecord(
        proof_id=row.proof_id,
        scholar_id=row.scholar_id,
        organization_id=row.organization_id,
        attendance_type=AttendanceType(row.attendance_type),
        status=AttendanceStatus(row.status),
        challenge_id=row.challenge_id,
        biometric_type=row.biometric_type,
        proof_digest=row.proof_digest,
        created_at=row.created_at,
        updated_at=row.updated_at,
        error_kind=ErrorKind(row.error_kind) if row.error_kind else None,
        verified_at=row.verified_at,
    )


def _parse_proof(proof: Union[Proof, Dict[str, Any]]) -> Proof:
    if isinstance(proof, Proof):
        return proof
    if isinstance(proof, dict) and len(json.dumps(proof, default=str)) > MAX_PROOF_SIZE:
        raise InvalidInputError(f"proof exceeds {MAX_PROOF_SIZE} bytes", field="proof")
    return Proof.from_dict(proof)


def _parse_public_inputs(public_inputs: Union[PublicInputs, Dict[str, Any]]) -> PublicInputs:
    if isinstance(public_inputs, PublicInputs):
        return public_inputs
    return PublicInputs.from_dict(public_inputs)


def _parse_location(location: Union[Location, Dict[str, Any], None]) -> Optional[Location]:
    if location is None or isinstance(location, Location):
        return location
    return Location.from_dict(location)


class AttendanceService:
    """
    Drives attendance records through verification and their lifecycle.

    Parameters
    ----------
    database : Database
        Backing store.
    challenges : ChallengeService
        Challenge lookup.
    verifier : ProofVerifier
        Verification pipeline.
    auditor : SecurityAuditor
        Security event reporter.
    state_machine : AttendanceStateMachine
        Transition rules, shared with the verifier.
    clock : Clock, default=utc_now
        Server clock.
    """

    def __init__(
        self,
        database: Database,
        challenges: ChallengeService,
        verifier: ProofVerifier,
        auditor: SecurityAuditor,
        state_machine: AttendanceStateMachine,
        clock: Clock = utc_now,
    ) -> None:
        self.database = database
        self.challenges = challenges
        self.verifier = verifier
        self.auditor = auditor
        self.state_machine = state_machine
        self.clock = clock

    @timer
    def submit_proof(
        self,
        scholar_id: str,
        proof: Union[Proof, Dict[str, Any]],
        public_inputs: Union[PublicInputs, Dict[str, Any]],
        challenge_id: str,
        attendance_type: Union[AttendanceType, str],
        location: Union[Location, Dict[str, Any], None] = None,
    ) -> SubmissionOutcome:
        """
        Record and verify one attendance proof.

        Parameters
        ----------
        scholar_id : str
            Authenticated scholar submitting the proof.
        proof : Proof or dict
            Proof object or its wire form.
        public_inputs : PublicInputs or dict
            Public inputs or their wire form.
        challenge_id : str
            Challenge the proof answers.
        attendance_type : str
            ``check-in`` or ``check-out``.
        location : Location or dict, optional
            Reported position for geofenced challenges.

        Returns
        -------
        SubmissionOutcome
            Record id, final status and error kind.

        Raises
        ------
        InvalidInputError
            If the payload is malformed or the challenge is unknown; no
            record is created in that case.
        """
        scholar_id = require_identifier(scholar_id, "scholar_id")
        challenge_id = require_identifier(challenge_id, "challenge_id")
        attendance_type = AttendanceType.parse(attendance_type)
        parsed_proof = _parse_proof(proof)
        parsed_inputs = _parse_public_inputs(public_inputs)
        parsed_location = _parse_location(location)

        challenge = self.challenges.load(challenge_id)
        if challenge is None:
            raise InvalidInputError("Unknown challenge", field="challenge_id")

        proof_id = generate_id()
        now = self.clock()
        organization_id = challenge.grant.organization_id

        with self.database.transaction() as session:
            session.add(
                AttendanceRow(
                    proof_id=proof_id,
                    scholar_id=scholar_id,
                    organization_id=organization_id,
                    attendance_type=attendance_type.value,
                    status=AttendanceStatus.PENDING.value,
                    challenge_id=challenge_id,
                    biometric_type=parsed_inputs.biometric_type,
                    proof_json=json.dumps(parsed_proof.to_dict()),
                    public_inputs_json=json.dumps(parsed_inputs.to_dict()),
                    proof_digest=parsed_proof.digest().hex(),
                    created_at=now,
                    updated_at=now,
                )
            )

        logger.info(
            "Attendance proof received",
            proof_id=proof_id,
            challenge_id=challenge_id,
            organization_id=organization_id,
            attendance_type=attendance_type.value,
        )

        result = self.verifier.verify(
            parsed_proof,
            parsed_inputs,
            proof_id=proof_id,
            scholar_id=scholar_id,
            challenge_id=challenge_id,
            attendance_type=attendance_type,
            location=parsed_location,
        )

        status = result.status
        error_kind = result.error_kind
        if not result.ok:
            status, error_kind = self._finalize_failure(proof_id, status, error_kind)
            if result.error_kind is not None:
                self.auditor.record_failure(
                    result.error_kind,
                    organization_id=organization_id,
                    scholar_id=scholar_id,
                    details={
                        "proof_id": proof_id,
                        "challenge_id": challenge_id,
                        "attendance_type": attendance_type.value,
                        "reason": result.detail,
                    },
                )

        logger.info(
            "Attendance submission processed",
            proof_id=proof_id,
            status=status.value,
            error_kind=error_kind.value if error_kind else None,
        )
        return SubmissionOutcome(proof_id=proof_id, status=status, error_kind=error_kind)

    def _finalize_failure(
        self,
        proof_id: str,
        status: AttendanceStatus,
        error_kind: Optional[ErrorKind],
    ) -> Tuple[AttendanceStatus, Optional[ErrorKind]]:
        """Apply a failed verification; a record finalized elsewhere keeps its state."""
        try:
            with self.database.transaction() as session:
                self.state_machine.advance(
                    session, proof_id, status, now=self.clock(), error_kind=error_kind
                )
            return status, error_kind
        except IllegalTransitionError:
            record = self._load(proof_id)
            return record.status, record.error_kind

    def _load(self, proof_id: str) -> AttendanceRecord:
        with self.database.session() as session:
            row = session.get(AttendanceRow, proof_id)
            if row is None:
                raise RecordNotFoundError("attendance_record", proof_id)
            return _row_to_record(row)

    def get_record(self, proof_id: str) -> AttendanceRecord:
        """
        Fetch a record, expiring it first if its challenge has lapsed.

        Raises
        ------
        RecordNotFoundError
            If no record has this id.
        """
        record = self._load(proof_id)
        if record.status is not AttendanceStatus.PENDING:
            return record

        with self.database.session() as session:
            expires_at = session.scalar(
                select(ChallengeRow.expires_at).where(ChallengeRow.id == record.challenge_id)
            )

        now = self.clock()
        if expires_at is None or now < expires_at:
            return record

        try:
            with self.database.transaction() as session:
                self.state_machine.advance(
                    session,
                    proof_id,
                    AttendanceStatus.EXPIRED,
                    now=now,
                    error_kind=ErrorKind.CHALLENGE_EXPIRED,
                )
            logger.info("Pending record expired on read", proof_id=proof_id)
        except IllegalTransitionError:
            pass
        return self._load(proof_id)

    def expire_stale_records(self, now: Optional[datetime] = None) -> int:
        """
        Expire every pending record whose challenge has lapsed.

        Returns
        -------
        int
            Number of records expired.
        """
        now = now or self.clock()
        lapsed = select(ChallengeRow.id).where(ChallengeRow.expires_at <= now)

        with self.database.transaction() as session:
            result = session.execute(
                update(AttendanceRow)
                .where(
                    AttendanceRow.status == AttendanceStatus.PENDING.value,
                    AttendanceRow.challenge_id.in_(lapsed),
                )
                .values(
                    status=AttendanceStatus.EXPIRED.value,
                    error_kind=ErrorKind.CHALLENGE_EXPIRED.value,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            expired = result.rowcount

        logger.info("Stale attendance records expired", count=expired)
        return expired

    def override_status(
        self,
        proof_id: str,
        new_status: Union[AttendanceStatus, str],
        *,
        admin_id: str,
        reason: str,
    ) -> AttendanceRecord:
        """
        Privileged status change, outside the normal lifecycle.

        Overriding to verified claims the record's session nullifier for
        its attendance window; overriding a verified record to anything
        else releases it.

        Raises
        ------
        InvalidInputError
            If the admin id or reason is missing, or the target is pending.
        IllegalTransitionError
            If the record already has the requested status, or cannot be
            tied back to an enrollment when verifying it.
        ReplayDetectedError
            If another verified record already holds the attendance window.
        RecordNotFoundError
            If no record has this id.
        """
        admin_id = require_identifier(admin_id, "admin_id")
        if not isinstance(reason, str) or not reason.strip():
            raise InvalidInputError("override reason is required", field="reason")
        try:
            target = AttendanceStatus(new_status)
        except ValueError:
            raise InvalidInputError(f"unknown status {new_status!r}", field="new_status")
        if target is AttendanceStatus.PENDING:
            raise InvalidInputError("records cannot be returned to pending", field="new_status")

        now = self.clock()
        with self.database.transaction() as session:
            row = session.get(AttendanceRow, proof_id)
            if row is None:
                raise RecordNotFoundError("attendance_record", proof_id)
            previous = AttendanceStatus(row.status)
            if previous is target:
                raise IllegalTransitionError(
                    previous.value, target.value, context={"proof_id": proof_id}
                )

            values: Dict[str, Any] = {"status": target.value, "updated_at": now}
            if target is AttendanceStatus.VERIFIED:
                values.update(error_kind=None, verified_at=now)
            swapped = session.execute(
                update(AttendanceRow)
                .where(AttendanceRow.proof_id == proof_id, AttendanceRow.status == previous.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if swapped.rowcount != 1:
                raise IllegalTransitionError(
                    previous.value, target.value, context={"proof_id": proof_id, "raced": True}
                )

            if target is AttendanceStatus.VERIFIED:
                self._claim_session_nullifier(session, row, now)
            elif previous is AttendanceStatus.VERIFIED:
                session.execute(
                    delete(SessionNullifierRow)
                    .where(SessionNullifierRow.proof_id == proof_id)
                    .execution_options(synchronize_session=False)
                )

            session.add(
                StatusOverrideRow(
                    proof_id=proof_id,
                    from_status=previous.value,
                    to_status=target.value,
                    admin_id=admin_id,
                    reason=reason,
                    created_at=now,
                )
            )
            organization_id = row.organization_id
            scholar_id = row.scholar_id

        self.auditor.record(
            ADMIN_OVERRIDE,
            organization_id=organization_id,
            scholar_id=scholar_id,
            details={
                "proof_id": proof_id,
                "from_status": previous.value,
                "to_status": target.value,
                "admin_id": admin_id,
                "reason": reason,
            },
        )
        logger.warning(
            "Attendance status overridden",
            proof_id=proof_id,
            from_status=previous.value,
            to_status=target.value,
            admin_id=admin_id,
        )
        return self._load(proof_id)

    def _claim_session_nullifier(self, session, row: AttendanceRow, now: datetime) -> None:
        """Reserve the window of a record being verified by override."""
        challenge = session.get(ChallengeRow, row.challenge_id)
        commitment = json.loads(row.public_inputs_json).get("commitment")
        enrollment = session.scalar(
            select(RegistryEntry).where(
                RegistryEntry.commitment == commitment,
                RegistryEntry.owner_scholar_id == row.scholar_id,
            )
        )
        if challenge is None or enrollment is None:
            raise IllegalTransitionError(
                row.status,
                AttendanceStatus.VERIFIED.value,
                context={"proof_id": row.proof_id, "reason": "no enrollment bound to record"},
            )

        # Derived from the registry, never from the submitted public inputs
        window_key = attendance_window_key(
            challenge.organization_id, challenge.issued_at, row.attendance_type
        )
        session_nullifier = derive_session_nullifier(
            Nullifier(bytes.fromhex(enrollment.nullifier)), window_key
        )
        session.add(
            SessionNullifierRow(
                value=session_nullifier.hex(),
                organization_id=challenge.organization_id,
                window_key=window_key,
                proof_id=row.proof_id,
                nullifier=enrollment.nullifier,
                consumed_at=now,
            )
        )
        try:
            session.flush()
        except IntegrityError:
            raise ReplayDetectedError(
                "Attendance window already holds a verified record",
                {"proof_id": row.proof_id, "window_key": window_key},
            )

    def override_history(self, proof_id: str) -> List[Dict[str, Any]]:
        with self.database.session() as session:
            rows = session.scalars(
                select(StatusOverrideRow)
                .where(StatusOverrideRow.proof_id == proof_id)
                .order_by(StatusOverrideRow.id)
            ).all()
            return [
                {
                    "from_status": row.from_status,
                    "to_status": row.to_status,
                    "admin_id": row.admin_id,
                    "reason": row.reason,
                    "created_at": row.created_at.isoformat(),
                }
                for row in rows
            ]

    def records_for_scholar(
        self, scholar_id: str, since: Optional[datetime] = None, limit: int = 100
    ) -> List[AttendanceRecord]:
        """Most recent records of one scholar, newest first."""
        query = select(AttendanceRow).where(AttendanceRow.scholar_id == scholar_id)
        if since is not None:
            query = query.where(AttendanceRow.created_at >= since)
        query = query.order_by(AttendanceRow.created_at.desc()).limit(limit)

        with self.database.session() as session:
            return [_row_to_record(row) for row in session.scalars(query)]

    def records_for_organization(
        self,
        organization_id: str,
        status: Union[AttendanceStatus, str, None] = None,
        limit: int = 500,
    ) -> List[AttendanceRecord]:
        """Records of one organization, optionally filtered by status, newest first."""
        query = select(AttendanceRow).where(AttendanceRow.organization_id == organization_id)
        if status is not None:
            query = query.where(AttendanceRow.status == AttendanceStatus(status).value)
        query = query.order_by(AttendanceRow.created_at.desc()).limit(limit)

        with self.database.session() as session:
            return [_row_to_record(row) for row in session.scalars(query)]

"""
Server-side attendance proof verification.

Verification runs a fixed sequence of checks and stops at the first
failure:

1. the challenge is neither consumed nor expired;
2. the public commitment equals the scholar's active enrollment;
3. the public inputs are consistent with the stored challenge, the
   geofence accepts the reported location, a check-out follows a verified
   check-in on the same day, and the proof verifies;
4. the session nullifier has not been consumed;
5. the challenge, the session nullifier and the attendance record are
   updated in one transaction.

Step 5 re-checks everything it relies on with conditional writes, so a
submission that loses a race to a concurrent one is re-classified and
nothing is applied.
"""

import time
from typing import Optional, Union

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from .challenges import ChallengeService, ChallengeState
from .commitment import attendance_window_key, derive_session_nullifier
from .config import ProtocolConfig
from .constants import PROOF_SYSTEM_ID
from .data_models import (
    AttendanceStatus,
    AttendanceType,
    Location,
    Proof,
    PublicInputs,
    VerificationResult,
)
from .exceptions import (
    ChallengeConsumedError,
    ChallengeExpiredError,
    CommitmentMismatchError,
    ErrorKind,
    IllegalTransitionError,
    InvalidInputError,
    InvalidProofError,
    NoCheckInError,
    ProtocolError,
    ReplayDetectedError,
)
from .geofence import require_inside
from .group import GroupParameters
from .registry import GlobalUniquenessRegistry, RegistryRecord
from .storage import ChallengeRow, Database, SessionNullifierRow
from .utils import Clock, constant_time_equals, short_digest, utc_now
from .worker_pool import VerificationPool
from .zk_statement import AttendanceStatement

# Initialize structured logger
logger = structlog.get_logger(__name__)


def verify_opening_proof(
    group: GroupParameters,
    public_inputs: PublicInputs,
    proof: Proof,
    proof_system: str = PROOF_SYSTEM_ID,
) -> bool:
    """
    Check a proof of knowledge of a commitment opening.

    Accepts iff ``g^s1 * h^s2 == T * P^e (mod p)`` where ``e`` is the
    Fiat-Shamir challenge over the public inputs, after subgroup and range
    checks on ``P``, ``T``, ``s1`` and ``s2``.

    Module-level and free of shared state so it can run in a process pool.
    """
    statement = AttendanceStatement(group, public_inputs, proof_system)
    if statement.input_errors() or statement.proof_errors(proof):
        return False

    e = statement.challenge_scalar(proof.t)
    lhs = group.commit(proof.s1, proof.s2)
    rhs = (proof.t * pow(public_inputs.commitment_point, e, group.p)) % group.p
    return lhs == rhs


class ProofVerifier:
    """
    Ordered verification pipeline.

    Parameters
    ----------
    config : ProtocolConfig
        Group, proof system and geofence policy.
    database : Database
        Store holding challenges, session nullifiers and records.
    registry : GlobalUniquenessRegistry
        Source of active enrollments.
    challenges : ChallengeService
        Loads stored challenges.
    pool : VerificationPool
        Executor for the cryptographic check.
    state_machine
        Object exposing ``advance(session, proof_id, status, now=...)``,
        used to move the record to verified inside the commit transaction.
    clock : Clock, default=utc_now
        Server clock.
    """

    def __init__(
        self,
        config: ProtocolConfig,
        database: Database,
        registry: GlobalUniquenessRegistry,
        challenges: ChallengeService,
        pool: VerificationPool,
        state_machine,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.database = database
        self.registry = registry
        self.challenges = challenges
        self.pool = pool
        self.state_machine = state_machine
        self.clock = clock

    def verify(
        self,
        proof: Proof,
        public_inputs: PublicInputs,
        *,
        proof_id: str,
        scholar_id: str,
        challenge_id: str,
        attendance_type: Union[AttendanceType, str],
        location: Optional[Location] = None,
    ) -> VerificationResult:
        """
        Verify one submission and, on success, commit it.

        Returns
        -------
        VerificationResult
            ``ok`` with status verified, or the first failing check's
            ``ErrorKind``. Protocol failures are returned, not raised.
        """
        start_time = time.perf_counter()
        attendance_type = AttendanceType.parse(attendance_type)
        proof_digest = proof.digest().hex()

        try:
            state = self._check_challenge(challenge_id, proof_digest)
            enrollment = self._check_commitment(scholar_id, public_inputs)
            window_key = self._check_statement(
                state, enrollment, public_inputs, scholar_id, attendance_type, location
            )
            self._check_location(state, public_inputs)
            self._check_checked_in(state, enrollment, attendance_type)
            self._check_proof(proof, public_inputs)
            self._check_not_replayed(public_inputs)
            self._commit(state, enrollment, public_inputs, proof_id, proof_digest, window_key)

        except ProtocolError as e:
            logger.warning(
                "Proof verification failed",
                proof_id=proof_id,
                challenge_id=challenge_id,
                error_kind=e.error_kind.value,
                detail=e.message,
                verification_time_ms=(time.perf_counter() - start_time) * 1000,
            )
            return VerificationResult.failure(e.error_kind, e.message)

        except IllegalTransitionError as e:
            # Record left pending state while verification was in flight
            current = AttendanceStatus(e.context["from_status"])
            logger.info(
                "Verification result discarded",
                proof_id=proof_id,
                current_status=current.value,
            )
            error_kind = ErrorKind.CHALLENGE_EXPIRED if current is AttendanceStatus.EXPIRED else None
            return VerificationResult(
                ok=False, status=current, error_kind=error_kind, detail="record no longer pending"
            )

        logger.info(
            "Proof verified",
            proof_id=proof_id,
            challenge_id=challenge_id,
            attendance_type=attendance_type.value,
            session_nullifier_prefix=short_digest(public_inputs.session_nullifier),
            verification_time_ms=(time.perf_counter() - start_time) * 1000,
        )
        return VerificationResult.success()

    def _check_challenge(self, challenge_id: str, proof_digest: str) -> ChallengeState:
        state = self.challenges.load(challenge_id)
        if state is None:
            raise InvalidInputError("Unknown challenge", field="challenge_id")

        if state.is_consumed:
            if state.consumed_by == proof_digest:
                raise ReplayDetectedError(
                    "Proof already accepted for this challenge", {"challenge_id": challenge_id}
                )
            raise ChallengeConsumedError("Challenge already consumed", {"challenge_id": challenge_id})

        if state.grant.is_expired(self.clock()):
            raise ChallengeExpiredError("Challenge expired", {"challenge_id": challenge_id})

        return state

    def _check_commitment(self, scholar_id: str, public_inputs: PublicInputs) -> RegistryRecord:
        enrollment = self.registry.find_active(scholar_id, public_inputs.biometric_type)
        if enrollment is None or not constant_time_equals(
            enrollment.commitment, public_inputs.commitment
        ):
            raise CommitmentMismatchError("Commitment does not match an active enrollment")
        return enrollment

    def _check_statement(
        self,
        state: ChallengeState,
        enrollment: RegistryRecord,
        public_inputs: PublicInputs,
        scholar_id: str,
        attendance_type: AttendanceType,
        location: Optional[Location],
    ) -> str:
        grant = state.grant
        errors = []

        if public_inputs.challenge_id != grant.challenge_id:
            errors.append("challenge id mismatch")
        if not constant_time_equals(public_inputs.nonce, grant.nonce):
            errors.append("nonce mismatch")
        if public_inputs.issued_at != grant.issued_at_epoch:
            errors.append("issue time mismatch")
        if not constant_time_equals(public_inputs.geofence_token, grant.geofence_token):
            errors.append("geofence token mismatch")
        if public_inputs.organization_id != grant.organization_id:
            errors.append("organization mismatch")
        if public_inputs.scholar_id != scholar_id:
            errors.append("scholar mismatch")
        if public_inputs.attendance_type != attendance_type.value:
            errors.append("attendance type mismatch")
        if location is not None and location != public_inputs.location:
            errors.append("reported location differs from proven location")

        window_key = attendance_window_key(grant.organization_id, grant.issued_at, attendance_type)
        expected_session = derive_session_nullifier(enrollment.nullifier, window_key)
        if not constant_time_equals(expected_session, public_inputs.session_nullifier):
            errors.append("session nullifier mismatch")

        statement = AttendanceStatement(self.config.group, public_inputs, self.config.proof_system)
        errors.extend(statement.input_errors())

        if errors:
            raise InvalidProofError(
                "Public inputs inconsistent: " + "; ".join(errors), {"checks": errors}
            )
        return window_key

    def _check_location(self, state: ChallengeState, public_inputs: PublicInputs) -> None:
        geofence = state.grant.geofence
        if geofence is None or not self.config.enforce_geofence:
            return
        require_inside(geofence, public_inputs.location)

    def _check_checked_in(
        self, state: ChallengeState, enrollment: RegistryRecord, attendance_type: AttendanceType
    ) -> None:
        if attendance_type is not AttendanceType.CHECK_OUT:
            return
        grant = state.grant
        window_key = attendance_window_key(
            grant.organization_id, grant.issued_at, AttendanceType.CHECK_IN
        )
        check_in = derive_session_nullifier(enrollment.nullifier, window_key)
        with self.database.session() as session:
            found = session.get(SessionNullifierRow, check_in.hex())
        if found is None:
            raise NoCheckInError(
                "Cannot check out without checking in first", {"window_key": window_key}
            )

    def _check_proof(self, proof: Proof, public_inputs: PublicInputs) -> None:
        statement = AttendanceStatement(self.config.group, public_inputs, self.config.proof_system)
        errors = statement.proof_errors(proof)
        if errors:
            raise InvalidProofError("Malformed proof: " + "; ".join(errors), {"checks": errors})

        valid = self.pool.run(
            verify_opening_proof, self.config.group, public_inputs, proof, self.config.proof_system
        )
        if not valid:
            raise InvalidProofError("Proof verification equation failed")

    def _check_not_replayed(self, public_inputs: PublicInputs) -> None:
        with self.database.session() as session:
            existing = session.get(SessionNullifierRow, public_inputs.session_nullifier.hex())
        if existing is not None:
            raise ReplayDetectedError(
                "Session nullifier already consumed", {"window_key": existing.window_key}
            )

    def _commit(
        self,
        state: ChallengeState,
        enrollment: RegistryRecord,
        public_inputs: PublicInputs,
        proof_id: str,
        proof_digest: str,
        window_key: str,
    ) -> None:
        challenge_id = state.grant.challenge_id
        now = self.clock()

        try:
            with self.database.transaction() as session:
                consumed = session.execute(
                    update(ChallengeRow)
                    .where(
                        ChallengeRow.id == challenge_id,
                        ChallengeRow.consumed_at.is_(None),
                        ChallengeRow.expires_at > now,
                    )
                    .values(consumed_at=now, consumed_by=proof_digest)
                    .execution_options(synchronize_session=False)
                )
                if consumed.rowcount != 1:
                    row = session.get(ChallengeRow, challenge_id, populate_existing=True)
                    if row.consumed_at is None:
                        raise ChallengeExpiredError(
                            "Challenge expired during verification", {"challenge_id": challenge_id}
                        )
                    if row.consumed_by == proof_digest:
                        raise ReplayDetectedError(
                            "Proof accepted concurrently", {"challenge_id": challenge_id}
                        )
                    raise ChallengeConsumedError(
                        "Challenge consumed concurrently", {"challenge_id": challenge_id}
                    )

                session.add(
                    SessionNullifierRow(
                        value=public_inputs.session_nullifier.hex(),
                        organization_id=state.grant.organization_id,
                        window_key=window_key,
                        proof_id=proof_id,
                        nullifier=enrollment.nullifier.hex,
                        consumed_at=now,
                    )
                )
                session.flush()

                self.state_machine.advance(session, proof_id, AttendanceStatus.VERIFIED, now=now)

        except IntegrityError:
            raise ReplayDetectedError(
                "Session nullifier consumed concurrently", {"window_key": window_key}
            )

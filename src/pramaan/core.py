"""
Service facade for the Pramaan core.

``PramaanCore`` is built once per process from an immutable
``ProtocolConfig`` and wires the persistence layer, the uniqueness
registry, the security auditor, the verification worker pool and the
attendance services together. Request handlers call its methods; they
never touch the components directly.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import structlog

from .attendance import AttendanceService, AttendanceStateMachine
from .challenges import ChallengeService
from .config import DEVELOPMENT_PEPPER, ProtocolConfig
from .data_models import (
    AttendanceRecord,
    AttendanceStatus,
    AttendanceType,
    ChallengeGrant,
    EnrollmentReceipt,
    Geofence,
    Location,
    Proof,
    PublicInputs,
    SubmissionOutcome,
)
from .enrollment import EnrollmentService
from .registry import CommitmentRef, GlobalUniquenessRegistry
from .security_log import SecurityAuditor, SecuritySink, build_security_sink
from .storage import Database
from .utils import Clock, utc_now
from .worker_pool import VerificationPool
from .zk_verifier import ProofVerifier

# Initialize structured logger
logger = structlog.get_logger(__name__)


class PramaanCore:
    """
    Biometric enrollment and attendance-proof verification service.

    Parameters
    ----------
    config : ProtocolConfig, optional
        Protocol configuration. Defaults to ``ProtocolConfig.from_env()``.
    security_sink : SecuritySink, optional
        Destination of security events. Defaults to structured logs plus
        the configured JSON Lines file.
    clock : Clock, default=utc_now
        Server clock shared by every component.
    database : Database, optional
        Pre-built database; by default one is created from the config URL.

    Examples
    --------
    >>> with PramaanCore(ProtocolConfig(database_url="sqlite://")) as core:
    ...     receipt = core.enroll("S1", "face", template_hash, salt)
    ...     challenge = core.issue_challenge("H1")
    """

    def __init__(
        self,
        config: Optional[ProtocolConfig] = None,
        *,
        security_sink: Optional[SecuritySink] = None,
        clock: Clock = utc_now,
        database: Optional[Database] = None,
    ) -> None:
        self.config = config or ProtocolConfig.from_env()
        self.clock = clock

        if self.config.registry_pepper == DEVELOPMENT_PEPPER.encode("utf-8"):
            logger.warning("Development registry pepper in use; set REGISTRY_PEPPER")

        self.database = database or Database(self.config.database_url, echo=self.config.database_echo)
        self.database.create_all()

        self.auditor = SecurityAuditor(
            security_sink or build_security_sink(self.config.security_log_path), clock
        )
        self.registry = GlobalUniquenessRegistry(self.database, clock)
        self.enrollment = EnrollmentService(self.config, self.registry, self.auditor)
        self.challenges = ChallengeService(self.database, self.config, clock)
        self.pool = VerificationPool(self.config.max_workers, self.config.verifier_pool)
        self.state_machine = AttendanceStateMachine()
        self.verifier = ProofVerifier(
            self.config,
            self.database,
            self.registry,
            self.challenges,
            self.pool,
            self.state_machine,
            clock,
        )
        self.attendance = AttendanceService(
            self.database,
            self.challenges,
            self.verifier,
            self.auditor,
            self.state_machine,
            clock,
        )

        logger.info("PramaanCore initialized", **self.config.summary())

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------
    def enroll(
        self,
        scholar_id: str,
        biometric_type: str,
        template_hash: bytes,
        salt: bytes,
        organization_id: Optional[str] = None,
    ) -> EnrollmentReceipt:
        return self.enrollment.enroll(
            scholar_id, biometric_type, template_hash, salt, organization_id
        )

    def revoke_biometric(
        self,
        commitment: CommitmentRef,
        *,
        admin_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        return self.enrollment.revoke(commitment, admin_id=admin_id, reason=reason)

    # ------------------------------------------------------------------
    # Attendance
    # ------------------------------------------------------------------
    def issue_challenge(
        self,
        organization_id: str,
        geofence: Union[Geofence, Dict[str, Any], None] = None,
        ttl_seconds: Optional[int] = None,
    ) -> ChallengeGrant:
        return self.challenges.issue_challenge(organization_id, geofence, ttl_seconds)

    def submit_proof(
        self,
        scholar_id: str,
        proof: Union[Proof, Dict[str, Any]],
        public_inputs: Union[PublicInputs, Dict[str, Any]],
        challenge_id: str,
        attendance_type: Union[AttendanceType, str],
        location: Union[Location, Dict[str, Any], None] = None,
    ) -> SubmissionOutcome:
        return self.attendance.submit_proof(
            scholar_id, proof, public_inputs, challenge_id, attendance_type, location
        )

    def get_record(self, proof_id: str) -> AttendanceRecord:
        return self.attendance.get_record(proof_id)

    def expire_stale_records(self, now: Optional[datetime] = None) -> int:
        return self.attendance.expire_stale_records(now)

    def override_status(
        self,
        proof_id: str,
        new_status: Union[AttendanceStatus, str],
        *,
        admin_id: str,
        reason: str,
    ) -> AttendanceRecord:
        return self.attendance.override_status(
            proof_id, new_status, admin_id=admin_id, reason=reason
        )

    def records_for_scholar(
        self, scholar_id: str, since: Optional[datetime] = None
    ) -> List[AttendanceRecord]:
        return self.attendance.records_for_scholar(scholar_id, since)

    def records_for_organization(
        self, organization_id: str, status: Union[AttendanceStatus, str, None] = None
    ) -> List[AttendanceRecord]:
        return self.attendance.records_for_organization(organization_id, status)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def close(self) -> None:
        """Drain the verification pool and release database connections."""
        self.pool.close()
        self.database.dispose()
        logger.info("PramaanCore closed")

    def __enter__(self) -> "PramaanCore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

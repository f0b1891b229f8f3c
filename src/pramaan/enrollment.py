"""
Enrollment intake.

Turns a client-computed template hash and salt into a registered
commitment: derive the commitment, nullifier and template tag, insert them
into the uniqueness registry, and report the outcome to the security log.
"""

from typing import Optional

import structlog

from .commitment import commit_and_nullify, template_tag
from .config import ProtocolConfig
from .data_models import EnrollmentReceipt, parse_biometric_type, require_identifier
from .exceptions import AlreadyEnrolledError, DuplicateBiometricError, ErrorKind
from .registry import CommitmentRef, GlobalUniquenessRegistry
from .security_log import BIOMETRIC_REGISTRATION, BIOMETRIC_REVOCATION, SecurityAuditor
from .utils import short_digest, timer

# Initialize structured logger
logger = structlog.get_logger(__name__)


class EnrollmentService:
    """
    Registers biometric commitments.

    Parameters
    ----------
    config : ProtocolConfig
        Group, salt policy and template-tag pepper.
    registry : GlobalUniquenessRegistry
        Uniqueness registry.
    auditor : SecurityAuditor
        Security event reporter.
    """

    def __init__(
        self,
        config: ProtocolConfig,
        registry: GlobalUniquenessRegistry,
        auditor: SecurityAuditor,
    ) -> None:
        self.config = config
        self.registry = registry
        self.auditor = auditor

    @timer
    def enroll(
        self,
        scholar_id: str,
        biometric_type: str,
        template_hash: bytes,
        salt: bytes,
        organization_id: Optional[str] = None,
    ) -> EnrollmentReceipt:
        """
        Enroll one biometric for a scholar.

        Parameters
        ----------
        scholar_id : str
            Scholar being enrolled.
        biometric_type : str
            ``face``, ``fingerprint``, ``iris`` or ``voice``.
        template_hash : bytes
            Client-side template hash.
        salt : bytes
            Fresh enrollment salt.
        organization_id : str, optional
            Enrolling organization, recorded for audit.

        Returns
        -------
        EnrollmentReceipt
            Commitment and nullifier of the new enrollment.

        Raises
        ------
        InvalidInputError
            If an input is malformed.
        DuplicateBiometricError
            If the biometric is already enrolled anywhere.
        AlreadyEnrolledError
            If the scholar already has an active enrollment of this type.
        """
        scholar_id = require_identifier(scholar_id, "scholar_id")
        biometric_type = parse_biometric_type(biometric_type)

        commitment, nullifier = commit_and_nullify(
            scholar_id, template_hash, salt, self.config.group, self.config.min_salt_bytes
        )
        tag = template_tag(template_hash, biometric_type, self.config.registry_pepper)

        try:
            result = self.registry.register(
                biometric_type,
                commitment,
                nullifier,
                scholar_id,
                salt=salt,
                template_tag=tag,
                organization_id=organization_id,
            )
        except DuplicateBiometricError:
            self.auditor.record_failure(
                ErrorKind.DUPLICATE_BIOMETRIC,
                organization_id=organization_id,
                scholar_id=scholar_id,
                details={"biometric_type": biometric_type},
            )
            raise
        except AlreadyEnrolledError:
            logger.info(
                "Enrollment refused, type already enrolled",
                biometric_type=biometric_type,
            )
            raise

        self.auditor.record(
            BIOMETRIC_REGISTRATION,
            organization_id=organization_id,
            scholar_id=scholar_id,
            details={
                "biometric_type": biometric_type,
                "registration_id": result.registration_id,
                "commitment_prefix": short_digest(commitment.value),
            },
        )

        return EnrollmentReceipt(
            commitment=commitment,
            nullifier=nullifier,
            biometric_type=biometric_type,
            registered_at=result.registered_at,
        )

    def revoke(
        self,
        commitment: CommitmentRef,
        *,
        admin_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Revoke an enrollment and report it. Returns False if nothing was active."""
        record = self.registry.get(commitment)
        revoked = self.registry.revoke(commitment, admin_id=admin_id, reason=reason)

        if revoked and record is not None:
            self.auditor.record(
                BIOMETRIC_REVOCATION,
                organization_id=record.organization_id,
                scholar_id=record.owner_scholar_id,
                details={
                    "biometric_type": record.biometric_type,
                    "registration_id": record.registration_id,
                    "admin_id": admin_id,
                    "reason": reason,
                },
            )
        return revoked

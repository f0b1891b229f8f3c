"""
Custom exception classes for the Pramaan attendance-proof core.

This module defines the error taxonomy shared by enrollment, challenge
issuance and proof verification. Protocol errors carry an ``ErrorKind``,
a retry hint and a scholar-safe message so the surrounding application can
surface failures without leaking identities or biometric material.
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorKind(str, Enum):
    """Protocol-level outcome classification."""

    INVALID_INPUT = "InvalidInput"
    DUPLICATE_BIOMETRIC = "DuplicateBiometric"
    ALREADY_ENROLLED = "AlreadyEnrolled"
    CHALLENGE_EXPIRED = "ChallengeExpired"
    CHALLENGE_CONSUMED = "ChallengeConsumed"
    COMMITMENT_MISMATCH = "CommitmentMismatch"
    INVALID_PROOF = "InvalidProof"
    REPLAY_DETECTED = "ReplayDetected"
    LOCATION_REJECTED = "LocationRejected"
    NO_CHECK_IN = "NoCheckIn"

    @property
    def retryable(self) -> bool:
        """Only freshness failures may be retried with a new challenge."""
        return self in (ErrorKind.CHALLENGE_EXPIRED, ErrorKind.CHALLENGE_CONSUMED)

    @property
    def user_message(self) -> str:
        """Scholar-visible message for this outcome."""
        return _USER_MESSAGES[self]


_USER_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.INVALID_INPUT: "The submitted data is malformed.",
    ErrorKind.DUPLICATE_BIOMETRIC: "This biometric is already enrolled.",
    ErrorKind.ALREADY_ENROLLED: "This biometric type is already enrolled for your account.",
    ErrorKind.CHALLENGE_EXPIRED: "The attendance challenge expired. Please try again.",
    ErrorKind.CHALLENGE_CONSUMED: "The attendance challenge was already used. Please try again.",
    ErrorKind.COMMITMENT_MISMATCH: "verification failed",
    ErrorKind.INVALID_PROOF: "verification failed",
    ErrorKind.REPLAY_DETECTED: "verification failed",
    ErrorKind.LOCATION_REJECTED: "You are not within the permitted attendance area.",
    ErrorKind.NO_CHECK_IN: "Cannot check out without checking in first.",
}


class PramaanError(Exception):
    """
    Base exception class for all Pramaan related errors.

    Parameters
    ----------
    message : str
        Human-readable error message.
    context : dict, optional
        Additional context information about the error. Must never hold
        templates, template hashes or salts.
    error_code : str, optional
        Unique error code for programmatic handling.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.error_code = error_code
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return a formatted string representation of the error."""
        parts = [self.message]

        if self.error_code:
            parts.append(f"[Error Code: {self.error_code}]")

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"[Context: {context_str}]")

        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the exception to a dictionary for structured logging.

        Returns
        -------
        dict
            Dictionary representation of the exception.
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class ProtocolError(PramaanError):
    """
    Base class for errors that map onto a protocol ``ErrorKind``.

    Subclasses fix ``error_kind``; the retry hint and the scholar-visible
    message are derived from it.
    """

    error_kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message, context, error_code or self.error_kind.value)

    @property
    def retryable(self) -> bool:
        return self.error_kind.retryable

    @property
    def user_message(self) -> str:
        return self.error_kind.user_message

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["error_kind"] = self.error_kind.value
        data["retryable"] = self.retryable
        return data


class InvalidInputError(ProtocolError):
    """Malformed template hash, salt, identifier or proof payload."""

    error_kind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, field: Optional[str] = None, **kwargs) -> None:
        context = dict(kwargs.get("context") or {})
        if field:
            context["field"] = field
        super().__init__(message, context)


class DuplicateBiometricError(ProtocolError):
    """
    Raised when a commitment, nullifier or template is already registered.

    The message is fixed so callers cannot learn which organization or
    scholar holds the conflicting enrollment.
    """

    error_kind = ErrorKind.DUPLICATE_BIOMETRIC

    def __init__(self, biometric_type: Optional[str] = None) -> None:
        context = {"biometric_type": biometric_type} if biometric_type else {}
        super().__init__(ErrorKind.DUPLICATE_BIOMETRIC.user_message, context)


class AlreadyEnrolledError(ProtocolError):
    """Raised when a scholar already holds an active enrollment of a type."""

    error_kind = ErrorKind.ALREADY_ENROLLED

    def __init__(self, scholar_id: str, biometric_type: str) -> None:
        super().__init__(
            f"Scholar already has an active {biometric_type} enrollment",
            {"scholar_id": scholar_id, "biometric_type": biometric_type},
        )


class ChallengeExpiredError(ProtocolError):
    """Raised when a challenge is used after its TTL."""

    error_kind = ErrorKind.CHALLENGE_EXPIRED


class ChallengeConsumedError(ProtocolError):
    """Raised when a challenge was already retired by a verified proof."""

    error_kind = ErrorKind.CHALLENGE_CONSUMED


class CommitmentMismatchError(ProtocolError):
    """Raised when public inputs reference a commitment not on file."""

    error_kind = ErrorKind.COMMITMENT_MISMATCH


class InvalidProofError(ProtocolError):
    """Raised when a proof fails statement or cryptographic verification."""

    error_kind = ErrorKind.INVALID_PROOF


class ReplayDetectedError(ProtocolError):
    """Raised when a session nullifier or proof is presented a second time."""

    error_kind = ErrorKind.REPLAY_DETECTED


class LocationRejectedError(ProtocolError):
    """Raised when a geofenced submission lies outside the permitted area."""

    error_kind = ErrorKind.LOCATION_REJECTED


class NoCheckInError(ProtocolError):
    """Raised when a check-out has no verified check-in for the same day."""

    error_kind = ErrorKind.NO_CHECK_IN


class CryptographyError(PramaanError):
    """
    Exception raised for errors in cryptographic operations.

    This includes group parameter resolution, hashing and proof generation.
    """

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs) -> None:
        context = dict(kwargs.get("context") or {})
        if operation:
            context["cryptographic_operation"] = operation

        super().__init__(message, context, kwargs.get("error_code"))


class TemplateHashingError(CryptographyError):
    """Exception raised while reducing a feature vector to a template hash."""

    def __init__(self, message: str, algorithm: str = "argon2id", **kwargs) -> None:
        context = {"hashing_algorithm": algorithm}
        super().__init__(
            message,
            operation="template_hashing",
            context=context,
            error_code="CRYPTO_001",
        )


class ProofGenerationError(CryptographyError):
    """Exception raised during ZK-proof generation."""

    def __init__(
        self,
        message: str,
        proof_system: str = "unknown",
        **kwargs,
    ) -> None:
        context = {"proof_system": proof_system}
        super().__init__(
            message,
            operation="proof_generation",
            context=context,
            error_code="CRYPTO_002",
        )


class StorageError(PramaanError):
    """Exception raised when the persistence layer fails unexpectedly."""

    def __init__(self, message: str, table: Optional[str] = None, **kwargs) -> None:
        context = dict(kwargs.get("context") or {})
        if table:
            context["table"] = table
        super().__init__(message, context, kwargs.get("error_code", "STORE_001"))


class RecordNotFoundError(PramaanError):
    """Exception raised when an attendance record or challenge is unknown."""

    def __init__(self, entity: str, identifier: str) -> None:
        super().__init__(
            f"{entity} not found",
            {"entity": entity, "identifier": identifier},
            "STORE_002",
        )


class IllegalTransitionError(PramaanError):
    """Exception raised for a state change the attendance lifecycle forbids."""

    def __init__(self, from_status: str, to_status: str, **kwargs) -> None:
        context = {"from_status": from_status, "to_status": to_status}
        context.update(kwargs.get("context") or {})
        super().__init__(
            f"Illegal attendance transition {from_status} -> {to_status}",
            context,
            "STATE_001",
        )


class ConfigurationError(PramaanError):
    """
    Exception raised for configuration-related errors.

    This includes invalid configuration values, missing required
    environment variables, or configuration conflicts.
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[str] = None,
        **kwargs,
    ) -> None:
        context = dict(kwargs.get("context") or {})
        if config_key:
            context["config_key"] = config_key
        if config_value:
            context["config_value"] = config_value

        super().__init__(message, context, kwargs.get("error_code", "CONFIG_001"))



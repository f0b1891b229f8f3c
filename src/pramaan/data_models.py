"""
Data models for the Pramaan attendance-proof core.

This module defines the value objects that flow between the commitment
engine, the registry, the prover, the verifier and the attendance state
machine. All models are dataclasses; the ones that cross the client/server
boundary provide ``to_dict``/``from_dict`` with strict validation so that a
malformed payload surfaces as ``InvalidInputError`` rather than a crash deep
inside verification.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .constants import (
    ATTENDANCE_TYPES,
    BIOMETRIC_TYPES,
    CHALLENGE_NONCE_LENGTH,
    DEFAULT_GEOFENCE_MAX_ACCURACY_M,
    DIGEST_LENGTH,
    PROOF_DIGEST_TAG,
    PROOF_FORMAT_VERSION,
    PROOF_SYSTEM_ID,
)
from .exceptions import ErrorKind, InvalidInputError


class AttendanceType(str, Enum):
    CHECK_IN = "check-in"
    CHECK_OUT = "check-out"

    @classmethod
    def parse(cls, value: Any) -> "AttendanceType":
        if isinstance(value, cls):
            return value
        if value not in ATTENDANCE_TYPES:
            raise InvalidInputError(
                f"attendance type must be one of {ATTENDANCE_TYPES}",
                field="attendance_type",
            )
        return cls(value)


class AttendanceStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not AttendanceStatus.PENDING


def parse_biometric_type(value: Any) -> str:
    """Validate a biometric type name."""
    if value not in BIOMETRIC_TYPES:
        raise InvalidInputError(
            f"biometric type must be one of {BIOMETRIC_TYPES}",
            field="biometric_type",
        )
    return value


def require_identifier(value: Any, field_name: str) -> str:
    """Validate an opaque identifier such as a scholar or organization id."""
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"{field_name} must be a non-empty string", field=field_name)
    if len(value) > 128:
        raise InvalidInputError(f"{field_name} is too long", field=field_name)
    return value


def _hex_bytes(data: Dict[str, Any], key: str, length: Optional[int] = None) -> bytes:
    value = data.get(key)
    if not isinstance(value, str):
        raise InvalidInputError(f"{key} must be a hex string", field=key)
    try:
        raw = bytes.fromhex(value)
    except ValueError:
        raise InvalidInputError(f"{key} is not valid hex", field=key)
    if length is not None and len(raw) != length:
        raise InvalidInputError(f"{key} must be {length} bytes, got {len(raw)}", field=key)
    return raw


def _hex_int(data: Dict[str, Any], key: str) -> int:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidInputError(f"{key} must be a hex string", field=key)
    try:
        return int(value, 16)
    except ValueError:
        raise InvalidInputError(f"{key} is not valid hex", field=key)


def ensure_utc(value: datetime) -> datetime:
    """Reject naive datetimes and normalize aware ones to UTC."""
    if value.tzinfo is None:
        raise InvalidInputError("timestamps must be timezone-aware", field="timestamp")
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Commitment:
    """
    Biometric commitment.

    Attributes
    ----------
    value : bytes
        32-byte digest stored in the registry and compared by the verifier.
    point : int
        Pedersen group element the digest is taken over. The prover sends it
        as a public input; the verifier checks it hashes to ``value``.
    """

    value: bytes
    point: int

    @property
    def hex(self) -> str:
        return self.value.hex()


@dataclass(frozen=True)
class Nullifier:
    """Per-enrollment nullifier digest."""

    value: bytes

    @property
    def hex(self) -> str:
        return self.value.hex()


@dataclass(frozen=True)
class Location:
    """Client-reported position used for geofenced challenges."""

    latitude: float
    longitude: float
    accuracy_m: float = 0.0

    def __post_init__(self) -> None:
        for name in ("latitude", "longitude", "accuracy_m"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidInputError(f"{name} must be a number", field=name)
        if not -90.0 <= self.latitude <= 90.0:
            raise InvalidInputError("latitude out of range", field="latitude")
        if not -180.0 <= self.longitude <= 180.0:
            raise InvalidInputError("longitude out of range", field="longitude")
        if self.accuracy_m < 0:
            raise InvalidInputError("accuracy_m cannot be negative", field="accuracy_m")

    def canonical(self) -> str:
        return f"{self.latitude:.7f},{self.longitude:.7f},{self.accuracy_m:.2f}"

    def to_dict(self) -> Dict[str, float]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy_m": self.accuracy_m,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Location":
        if not isinstance(data, dict):
            raise InvalidInputError("location must be an object", field="location")
        return cls(
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            accuracy_m=data.get("accuracy_m", 0.0),
        )


@dataclass(frozen=True)
class Geofence:
    """
    Accepted attendance area attached to a challenge.

    Parameters
    ----------
    latitude, longitude : float
        Center of the permitted circle.
    radius_m : float
        Radius of the permitted circle in metres.
    polygon : tuple of (lat, lon), optional
        Tighter boundary for irregular campuses. When present the location
        must lie inside both the circle and the polygon.
    max_accuracy_m : float, default=DEFAULT_GEOFENCE_MAX_ACCURACY_M
        Largest GPS accuracy radius accepted.
    """

    latitude: float
    longitude: float
    radius_m: float
    polygon: Optional[Tuple[Tuple[float, float], ...]] = None
    max_accuracy_m: float = DEFAULT_GEOFENCE_MAX_ACCURACY_M

    def __post_init__(self) -> None:
        Location(self.latitude, self.longitude)
        if self.radius_m <= 0:
            raise InvalidInputError("geofence radius must be positive", field="radius_m")
        if self.max_accuracy_m <= 0:
            raise InvalidInputError(
                "geofence max accuracy must be positive", field="max_accuracy_m"
            )
        if self.polygon is not None:
            if len(self.polygon) < 3:
                raise InvalidInputError(
                    "geofence polygon needs at least three vertices", field="polygon"
                )
            object.__setattr__(
                self, "polygon", tuple((float(lat), float(lon)) for lat, lon in self.polygon)
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "radius_m": self.radius_m,
            "polygon": [list(vertex) for vertex in self.polygon] if self.polygon else None,
            "max_accuracy_m": self.max_accuracy_m,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Geofence":
        polygon = data.get("polygon")
        return cls(
            latitude=data["latitude"],
            longitude=data["longitude"],
            radius_m=data["radius_m"],
            polygon=tuple(tuple(vertex) for vertex in polygon) if polygon else None,
            max_accuracy_m=data.get("max_accuracy_m", DEFAULT_GEOFENCE_MAX_ACCURACY_M),
        )


@dataclass(frozen=True)
class ChallengeGrant:
    """
    Server-issued single-use freshness token.

    ``issued_at`` is truncated to whole seconds at issuance so it can be
    carried as an integer in public inputs.
    """

    challenge_id: str
    organization_id: str
    nonce: bytes
    issued_at: datetime
    ttl_seconds: int
    geofence: Optional[Geofence]
    geofence_token: bytes

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.ttl_seconds)

    @property
    def issued_at_epoch(self) -> int:
        return int(self.issued_at.timestamp())

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "challenge_id": self.challenge_id,
            "organization_id": self.organization_id,
            "nonce": self.nonce.hex(),
            "issued_at": self.issued_at.isoformat(),
            "ttl": self.ttl_seconds,
            "expires_at": self.expires_at.isoformat(),
            "geofence": self.geofence.to_dict() if self.geofence else None,
            "geofence_token": self.geofence_token.hex(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChallengeGrant":
        try:
            issued_at = ensure_utc(datetime.fromisoformat(data["issued_at"]))
            geofence = data.get("geofence")
            return cls(
                challenge_id=require_identifier(data.get("challenge_id"), "challenge_id"),
                organization_id=require_identifier(
                    data.get("organization_id"), "organization_id"
                ),
                nonce=_hex_bytes(data, "nonce", CHALLENGE_NONCE_LENGTH),
                issued_at=issued_at,
                ttl_seconds=int(data["ttl"]),
                geofence=Geofence.from_dict(geofence) if geofence else None,
                geofence_token=_hex_bytes(data, "geofence_token", DIGEST_LENGTH),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInputError(f"Malformed challenge payload: {e}", field="challenge")


@dataclass(frozen=True)
class PublicInputs:
    """
    Public inputs of an attendance proof.

    Every field is folded into the Fiat-Shamir transcript, so changing any
    of them after proving invalidates the proof.
    """

    commitment: bytes
    commitment_point: int
    session_nullifier: bytes
    challenge_id: str
    nonce: bytes
    issued_at: int
    geofence_token: bytes
    organization_id: str
    scholar_id: str
    attendance_type: str
    biometric_type: str
    location: Optional[Location] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commitment": self.commitment.hex(),
            "commitment_point": format(self.commitment_point, "x"),
            "session_nullifier": self.session_nullifier.hex(),
            "challenge_id": self.challenge_id,
            "nonce": self.nonce.hex(),
            "issued_at": self.issued_at,
            "geofence_token": self.geofence_token.hex(),
            "organization_id": self.organization_id,
            "scholar_id": self.scholar_id,
            "attendance_type": self.attendance_type,
            "biometric_type": self.biometric_type,
            "location": self.location.to_dict() if self.location else None,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "PublicInputs":
        """
        Parse and shape-check a public-inputs payload.

        Raises
        ------
        InvalidInputError
            If any field is missing or malformed.
        """
        if not isinstance(data, dict):
            raise InvalidInputError("public inputs must be an object", field="public_inputs")

        issued_at = data.get("issued_at")
        if isinstance(issued_at, bool) or not isinstance(issued_at, int) or issued_at < 0:
            raise InvalidInputError("issued_at must be a non-negative integer", field="issued_at")

        location = data.get("location")
        return cls(
            commitment=_hex_bytes(data, "commitment", DIGEST_LENGTH),
            commitment_point=_hex_int(data, "commitment_point"),
            session_nullifier=_hex_bytes(data, "session_nullifier", DIGEST_LENGTH),
            challenge_id=require_identifier(data.get("challenge_id"), "challenge_id"),
            nonce=_hex_bytes(data, "nonce", CHALLENGE_NONCE_LENGTH),
            issued_at=issued_at,
            geofence_token=_hex_bytes(data, "geofence_token", DIGEST_LENGTH),
            organization_id=require_identifier(data.get("organization_id"), "organization_id"),
            scholar_id=require_identifier(data.get("scholar_id"), "scholar_id"),
            attendance_type=AttendanceType.parse(data.get("attendance_type")).value,
            biometric_type=parse_biometric_type(data.get("biometric_type")),
            location=Location.from_dict(location) if location is not None else None,
        )


@dataclass(frozen=True)
class Proof:
    """
    Non-interactive proof of knowledge of a commitment opening.

    Attributes
    ----------
    t : int
        Prover's first message g^a * h^b.
    s1, s2 : int
        Responses a + e*m and b + e*r modulo q.
    proof_system : str
        Proof system identifier; must match the verifier's.
    version : int
        Wire format version.
    """

    t: int
    s1: int
    s2: int
    proof_system: str = PROOF_SYSTEM_ID
    version: int = PROOF_FORMAT_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proof_system": self.proof_system,
            "version": self.version,
            "t": format(self.t, "x"),
            "s1": format(self.s1, "x"),
            "s2": format(self.s2, "x"),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Proof":
        if not isinstance(data, dict):
            raise InvalidInputError("proof must be an object", field="proof")
        proof_system = data.get("proof_system")
        if not isinstance(proof_system, str):
            raise InvalidInputError("proof_system must be a string", field="proof_system")
        version = data.get("version")
        if isinstance(version, bool) or not isinstance(version, int):
            raise InvalidInputError("version must be an integer", field="version")
        return cls(
            t=_hex_int(data, "t"),
            s1=_hex_int(data, "s1"),
            s2=_hex_int(data, "s2"),
            proof_system=proof_system,
            version=version,
        )

    def digest(self) -> bytes:
        """Stable identifier of this exact proof, used for replay attribution."""
        hasher = hashlib.sha256(PROOF_DIGEST_TAG)
        for part in (self.proof_system, str(self.version), format(self.t, "x"),
                     format(self.s1, "x"), format(self.s2, "x")):
            encoded = part.encode("ascii")
            hasher.update(len(encoded).to_bytes(4, "big"))
            hasher.update(encoded)
        return hasher.digest()


@dataclass(frozen=True)
class RegistrationResult:
    """Outcome of a successful registry insert."""

    registration_id: int
    biometric_type: str
    commitment: str
    nullifier: str
    owner_scholar_id: str
    registered_at: datetime


@dataclass(frozen=True)
class EnrollmentReceipt:
    """What enrollment intake returns to the scholar-management collaborator."""

    commitment: Commitment
    nullifier: Nullifier
    biometric_type: str
    registered_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commitment": self.commitment.hex,
            "nullifier": self.nullifier.hex,
            "biometric_type": self.biometric_type,
            "registered_at": self.registered_at.isoformat(),
        }


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of the ordered verification pipeline."""

    ok: bool
    status: AttendanceStatus
    error_kind: Optional[ErrorKind] = None
    detail: str = ""

    @classmethod
    def success(cls) -> "VerificationResult":
        return cls(ok=True, status=AttendanceStatus.VERIFIED)

    @classmethod
    def failure(cls, error_kind: ErrorKind, detail: str = "") -> "VerificationResult":
        status = (
            AttendanceStatus.EXPIRED
            if error_kind is ErrorKind.CHALLENGE_EXPIRED
            else AttendanceStatus.REJECTED
        )
        return cls(ok=False, status=status, error_kind=error_kind, detail=detail)


@dataclass(frozen=True)
class AttendanceRecord:
    """Read model of one check-in or check-out attempt."""

    proof_id: str
    scholar_id: str
    organization_id: str
    attendance_type: AttendanceType
    status: AttendanceStatus
    challenge_id: str
    biometric_type: str
    proof_digest: str
    created_at: datetime
    updated_at: datetime
    error_kind: Optional[ErrorKind] = None
    verified_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proof_id": self.proof_id,
            "scholar_id": self.scholar_id,
            "organization_id": self.organization_id,
            "attendance_type": self.attendance_type.value,
            "status": self.status.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "challenge_id": self.challenge_id,
            "biometric_type": self.biometric_type,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
        }


@dataclass(frozen=True)
class SubmissionOutcome:
    """Result returned to the mobile client for a proof submission."""

    proof_id: str
    status: AttendanceStatus
    error_kind: Optional[ErrorKind] = None

    @property
    def retryable(self) -> bool:
        return bool(self.error_kind and self.error_kind.retryable)

    @property
    def user_message(self) -> str:
        if self.error_kind is None:
            return "Attendance recorded."
        return self.error_kind.user_message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proof_id": self.proof_id,
            "status": self.status.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "retryable": self.retryable,
            "message": self.user_message,
        }


@dataclass
class SecurityEvent:
    """
    Structured event handed to the external security-log store.

    ``details`` must never contain templates, template hashes, salts or
    proof scalars.
    """

    event_type: str
    severity: str
    organization_id: Optional[str]
    scholar_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.event_type,
            "severity": self.severity,
            "organization_id": self.organization_id,
            "scholar_id": self.scholar_id,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }

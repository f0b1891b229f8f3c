"""
Commitment engine for biometric enrollments.

All functions here are pure and deterministic so that the client and the
server compute byte-identical values. Every derivation is domain separated
with its own tag, and variable-length inputs are length-prefixed, so a value
computed for one purpose can never be confused with a value computed for
another.

A commitment is the SHA-256 digest of a Pedersen commitment

    P = g^m * h^r  (mod p),   m = H_q(COMMIT|M| || template_hash),
                              r = H_q(COMMIT|R| || salt)

so it is hiding (through ``r``) and binding (through the discrete-log
assumption), and it has an algebraic opening the prover can demonstrate
knowledge of without revealing it.
"""

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Tuple

import structlog

from .constants import (
    COMMIT_BLINDING_TAG,
    COMMIT_MESSAGE_TAG,
    COMMIT_TAG,
    DEFAULT_MIN_SALT_BYTES,
    NULLIFIER_TAG,
    SESSION_NULLIFIER_TAG,
    TEMPLATE_HASH_LENGTH,
    TEMPLATE_TAG,
)
from .data_models import (
    AttendanceType,
    Commitment,
    Nullifier,
    parse_biometric_type,
    require_identifier,
)
from .exceptions import InvalidInputError
from .group import DEFAULT_GROUP, GroupParameters

# Initialize structured logger
logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CommitmentOpening:
    """Secret opening (m, r) of a Pedersen commitment point. Client side only."""

    message: int
    blinding: int
    point: int


def _length_prefixed(*parts: bytes) -> bytes:
    return b"".join(len(part).to_bytes(4, "big") + part for part in parts)


def validate_template_hash(template_hash: bytes) -> bytes:
    """
    Check a template hash against the feature-extraction contract.

    Raises
    ------
    InvalidInputError
        If the value is not bytes of exactly ``TEMPLATE_HASH_LENGTH``.
    """
    if not isinstance(template_hash, (bytes, bytearray)):
        raise InvalidInputError("template_hash must be bytes", field="template_hash")
    if len(template_hash) != TEMPLATE_HASH_LENGTH:
        raise InvalidInputError(
            f"template_hash must be exactly {TEMPLATE_HASH_LENGTH} bytes, "
            f"got {len(template_hash)}",
            field="template_hash",
        )
    return bytes(template_hash)


def validate_salt(salt: bytes, min_salt_bytes: int = DEFAULT_MIN_SALT_BYTES) -> bytes:
    """
    Check a salt against the minimum entropy requirement.

    Raises
    ------
    InvalidInputError
        If the value is not bytes or is shorter than ``min_salt_bytes``.
    """
    if not isinstance(salt, (bytes, bytearray)):
        raise InvalidInputError("salt must be bytes", field="salt")
    if len(salt) < min_salt_bytes:
        raise InvalidInputError(
            f"salt must be at least {min_salt_bytes} bytes ({min_salt_bytes * 8} bits), "
            f"got {len(salt)}",
            field="salt",
        )
    return bytes(salt)


def open_commitment(
    template_hash: bytes,
    salt: bytes,
    group: GroupParameters = DEFAULT_GROUP,
    min_salt_bytes: int = DEFAULT_MIN_SALT_BYTES,
) -> CommitmentOpening:
    """
    Derive the Pedersen opening for a (template hash, salt) pair.

    Parameters
    ----------
    template_hash : bytes
        Fixed-length digest of the biometric template.
    salt : bytes
        Enrollment salt.
    group : GroupParameters, default=DEFAULT_GROUP
        Commitment group.
    min_salt_bytes : int, default=DEFAULT_MIN_SALT_BYTES
        Minimum accepted salt length.

    Returns
    -------
    CommitmentOpening
        Message scalar, blinding scalar and commitment point.
    """
    template_hash = validate_template_hash(template_hash)
    salt = validate_salt(salt, min_salt_bytes)

    message = group.hash_to_scalar(COMMIT_MESSAGE_TAG, template_hash)
    blinding = group.hash_to_scalar(COMMIT_BLINDING_TAG, salt)
    point = group.commit(message, blinding)
    return CommitmentOpening(message=message, blinding=blinding, point=point)


def commitment_digest(point: int, group: GroupParameters = DEFAULT_GROUP) -> bytes:
    """Return the 32-byte registry value of a commitment point."""
    return hashlib.sha256(
        COMMIT_TAG + _length_prefixed(group.group_id.encode("ascii"), group.encode_element(point))
    ).digest()


def commit(
    template_hash: bytes,
    salt: bytes,
    group: GroupParameters = DEFAULT_GROUP,
    min_salt_bytes: int = DEFAULT_MIN_SALT_BYTES,
) -> Commitment:
    """
    Commit to a biometric template hash under an enrollment salt.

    Examples
    --------
    >>> c1 = commit(bytes(32), bytes(range(32)))
    >>> c2 = commit(bytes(32), bytes(range(32)))
    >>> c1 == c2
    True
    """
    opening = open_commitment(template_hash, salt, group, min_salt_bytes)
    return Commitment(value=commitment_digest(opening.point, group), point=opening.point)


def derive_nullifier(
    scholar_id: str,
    salt: bytes,
    min_salt_bytes: int = DEFAULT_MIN_SALT_BYTES,
) -> Nullifier:
    """Derive the per-enrollment nullifier from the scholar id and salt."""
    scholar_id = require_identifier(scholar_id, "scholar_id")
    salt = validate_salt(salt, min_salt_bytes)
    digest = hashlib.sha256(
        NULLIFIER_TAG + _length_prefixed(scholar_id.encode("utf-8"), salt)
    ).digest()
    return Nullifier(value=digest)


def attendance_window_key(
    organization_id: str, issued_at: datetime, attendance_type: AttendanceType
) -> str:
    """
    Name the attendance window a challenge belongs to.

    A window is one organization, one UTC calendar day and one attendance
    type, so a scholar can check in and check out once each per day.
    """
    day = issued_at.astimezone(timezone.utc).date().isoformat()
    return f"{organization_id}|{day}|{AttendanceType.parse(attendance_type).value}"


def derive_session_nullifier(nullifier: Nullifier, window_key: str) -> bytes:
    """Bind an enrollment nullifier to one attendance window."""
    return hashlib.sha256(
        SESSION_NULLIFIER_TAG + _length_prefixed(nullifier.value, window_key.encode("utf-8"))
    ).digest()


def template_tag(template_hash: bytes, biometric_type: str, pepper: bytes) -> bytes:
    """
    Keyed, salt-independent tag of a template hash.

    The registry indexes it uniquely so the same template enrolled twice under
    different salts is still detected. Without the server-side pepper the tag
    cannot be tested against candidate templates.
    """
    template_hash = validate_template_hash(template_hash)
    biometric_type = parse_biometric_type(biometric_type)
    return hmac.new(
        pepper,
        TEMPLATE_TAG + _length_prefixed(biometric_type.encode("ascii"), template_hash),
        hashlib.sha256,
    ).digest()


def commit_and_nullify(
    scholar_id: str,
    template_hash: bytes,
    salt: bytes,
    group: GroupParameters = DEFAULT_GROUP,
    min_salt_bytes: int = DEFAULT_MIN_SALT_BYTES,
) -> Tuple[Commitment, Nullifier]:
    """Compute both enrollment values in one call."""
    commitment = commit(template_hash, salt, group, min_salt_bytes)
    nullifier = derive_nullifier(scholar_id, salt, min_salt_bytes)
    logger.debug(
        "Commitment derived",
        commitment_prefix=commitment.hex[:12],
        nullifier_prefix=nullifier.hex[:12],
    )
    return commitment, nullifier

"""
Constants and protocol parameters for the Pramaan attendance-proof core.

This module centralizes the fixed protocol parameters: domain-separation
tags, digest and salt lengths, the discrete-log group, and the defaults
used by challenge issuance and template hashing. Values that operators may
tune live in ``config``; values that change the wire format or the
cryptographic meaning of a commitment live here.
"""

from typing import Dict, Final, Tuple

# =============================================================================
# Protocol Versioning
# =============================================================================

# Prefix shared by every domain-separation tag
PROTOCOL_PREFIX: Final[bytes] = b"PRAMAAN/v1/"

# Identifier of the proof system carried on every proof
PROOF_SYSTEM_ID: Final[str] = "okamoto-fs-sha256/rfc3526-2048"

# Wire format version of Proof / PublicInputs payloads
PROOF_FORMAT_VERSION: Final[int] = 1

# =============================================================================
# Domain Separation Tags
# =============================================================================

COMMIT_TAG: Final[bytes] = PROTOCOL_PREFIX + b"COMMIT|"
COMMIT_MESSAGE_TAG: Final[bytes] = PROTOCOL_PREFIX + b"COMMIT|M|"
COMMIT_BLINDING_TAG: Final[bytes] = PROTOCOL_PREFIX + b"COMMIT|R|"
NULLIFIER_TAG: Final[bytes] = PROTOCOL_PREFIX + b"NULL|"
SESSION_NULLIFIER_TAG: Final[bytes] = PROTOCOL_PREFIX + b"SESSION|"
TEMPLATE_TAG: Final[bytes] = PROTOCOL_PREFIX + b"TMPL|"
TEMPLATE_DOMAIN_TAG: Final[bytes] = PROTOCOL_PREFIX + b"TEMPLATE|"
FIAT_SHAMIR_TAG: Final[bytes] = PROTOCOL_PREFIX + b"FS|"
GENERATOR_H_SEED: Final[bytes] = PROTOCOL_PREFIX + b"GENERATOR|H"
GEOFENCE_TAG: Final[bytes] = PROTOCOL_PREFIX + b"GEOFENCE|"
PROOF_DIGEST_TAG: Final[bytes] = PROTOCOL_PREFIX + b"PROOF|"

# =============================================================================
# Digest and Secret Lengths
# =============================================================================

# Length of the template hash produced by the feature-extraction contract
TEMPLATE_HASH_LENGTH: Final[int] = 32

# Length of commitment, nullifier and session nullifier digests
DIGEST_LENGTH: Final[int] = 32

# Minimum salt length in bytes (256 bits of entropy)
DEFAULT_MIN_SALT_BYTES: Final[int] = 32

# Length of freshly generated enrollment salts
SALT_LENGTH: Final[int] = 32

# Length of the random challenge nonce
CHALLENGE_NONCE_LENGTH: Final[int] = 32

# =============================================================================
# Discrete-Log Group (RFC 3526, 2048-bit MODP Group 14)
# =============================================================================

# Safe prime p = 2q + 1; commitments live in the order-q subgroup of
# quadratic residues.
RFC3526_MODP_2048_PRIME: Final[int] = int(
    "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD1"
    "29024E088A67CC74020BBEA63B139B22514A08798E3404DD"
    "EF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245"
    "E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7ED"
    "EE386BFB5A899FA5AE9F24117C4B1FE649286651ECE45B3D"
    "C2007CB8A163BF0598DA48361C55D39A69163FA8FD24CF5F"
    "83655D23DCA3AD961C62F356208552BB9ED529077096966D"
    "670C354E4ABC9804F1746C08CA18217C32905E462E36CE3B"
    "E39E772C180E86039B2783A2EC07A28FB5C55DF06F4C52C9"
    "DE2BCBF6955817183995497CEA956AE515D2261898FA0510"
    "15728E5A8AACAA68FFFFFFFFFFFFFFFF",
    16,
)

# Generator of the quadratic-residue subgroup (2^2)
GROUP_GENERATOR_G: Final[int] = 4

# Byte length of an encoded group element
GROUP_ELEMENT_LENGTH: Final[int] = 256

# Bytes of SHAKE-256 output reduced into a scalar or group element
HASH_EXPANSION_LENGTH: Final[int] = 320

# Identifier folded into every transcript
GROUP_ID: Final[str] = "rfc3526-modp-2048-qr"

# =============================================================================
# Challenge and Attendance Window Defaults
# =============================================================================

# Challenge time-to-live in seconds (2 minutes)
DEFAULT_CHALLENGE_TTL_SECONDS: Final[int] = 120

# Upper bound accepted for a per-challenge TTL override
MAX_CHALLENGE_TTL_SECONDS: Final[int] = 3600

# Maximum GPS accuracy radius accepted for a geofenced submission (metres)
DEFAULT_GEOFENCE_MAX_ACCURACY_M: Final[float] = 50.0

# Mean Earth radius in metres for haversine distance
EARTH_RADIUS_M: Final[float] = 6_371_008.8

# =============================================================================
# Enumerated Vocabularies
# =============================================================================

BIOMETRIC_TYPES: Final[Tuple[str, ...]] = ("face", "fingerprint", "iris", "voice")

ATTENDANCE_TYPES: Final[Tuple[str, ...]] = ("check-in", "check-out")

SECURITY_SEVERITIES: Final[Tuple[str, ...]] = ("info", "warning", "high", "critical")

# =============================================================================
# Template Hashing (Argon2id, client side)
# =============================================================================

# Argon2 time cost parameter (number of iterations)
ARGON2_TIME_COST: Final[int] = 3

# Argon2 memory cost parameter in KB (64 MB)
ARGON2_MEMORY_COST: Final[int] = 65536

# Argon2 parallelism parameter (number of threads)
ARGON2_PARALLELISM: Final[int] = 1

# Quantization step applied to feature vectors before hashing
TEMPLATE_QUANTIZATION_STEP: Final[float] = 0.05

# Expected feature dimensions per biometric type (0 means any)
FEATURE_DIMENSIONS: Final[Dict[str, int]] = {
    "face": 128,
    "fingerprint": 512,
    "iris": 0,
    "voice": 0,
}

# =============================================================================
# Defaults and Limits
# =============================================================================

# Upper bound on a serialized proof payload, in bytes
MAX_PROOF_SIZE: Final[int] = 4096

# Default output file names
DEFAULT_SECURITY_LOG_FILE: Final[str] = "security_events.jsonl"
DEFAULT_DATABASE_FILE: Final[str] = "pramaan.db"

# Short prefix length used when a digest appears in a log line
LOG_DIGEST_PREFIX: Final[int] = 12

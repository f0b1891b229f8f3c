"""
Pramaan - Biometric Commitment and Attendance-Proof Verification

Scholars enroll a salted commitment to their biometric template once, then
check in and out by proving knowledge of its opening against a short-lived,
single-use challenge. The server never sees a template or salt after
enrollment intake, and every accepted proof consumes a per-window session
nullifier so attendance cannot be replayed.
"""

__version__ = "1.0.0"
__author__ = "Pramaan Team"

from .config import ProtocolConfig, configure_logging
from .core import PramaanCore
from .data_models import (
    AttendanceRecord,
    AttendanceStatus,
    AttendanceType,
    ChallengeGrant,
    Commitment,
    EnrollmentReceipt,
    Geofence,
    Location,
    Nullifier,
    Proof,
    PublicInputs,
    SubmissionOutcome,
)
from .exceptions import ErrorKind, PramaanError, ProtocolError
from .zk_prover import ProofGenerator

__all__ = [
    "AttendanceRecord",
    "AttendanceStatus",
    "AttendanceType",
    "ChallengeGrant",
    "Commitment",
    "EnrollmentReceipt",
    "ErrorKind",
    "Geofence",
    "Location",
    "Nullifier",
    "PramaanCore",
    "PramaanError",
    "Proof",
    "ProofGenerator",
    "ProtocolConfig",
    "ProtocolError",
    "PublicInputs",
    "SubmissionOutcome",
    "configure_logging",
]

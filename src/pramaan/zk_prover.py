"""
Client-side attendance proof generation.

The prover runs on the scholar's device. It reopens the enrolled commitment
from the template hash and salt, derives the session nullifier for the
challenge's attendance window, and produces a non-interactive proof of
knowledge of the commitment opening bound to every public input.

Neither the template hash nor the salt appears in the output.
"""

import json
import secrets
import time
from typing import Optional, Tuple

import structlog

from .commitment import (
    attendance_window_key,
    commitment_digest,
    derive_nullifier,
    derive_session_nullifier,
    open_commitment,
)
from .config import ProtocolConfig
from .constants import MAX_PROOF_SIZE
from .data_models import (
    AttendanceType,
    ChallengeGrant,
    Commitment,
    Location,
    Proof,
    PublicInputs,
    parse_biometric_type,
    require_identifier,
)
from .exceptions import InvalidInputError, ProofGenerationError, ProtocolError
from .utils import Clock, constant_time_equals, utc_now
from .zk_statement import AttendanceStatement

# Initialize structured logger
logger = structlog.get_logger(__name__)


class ProofGenerator:
    """
    Generates attendance proofs.

    Parameters
    ----------
    config : ProtocolConfig, optional
        Supplies the group, proof system and salt policy. Defaults to a
        configuration with protocol defaults.
    clock : Clock, default=utc_now
        Device clock used to refuse already-expired challenges.

    Examples
    --------
    >>> generator = ProofGenerator()
    >>> proof, public_inputs = generator.generate_proof(
    ...     template_hash, salt, commitment, challenge,
    ...     scholar_id="S1", attendance_type="check-in", biometric_type="face",
    ... )
    """

    def __init__(self, config: Optional[ProtocolConfig] = None, clock: Clock = utc_now) -> None:
        self.config = config or ProtocolConfig()
        self.group = self.config.group
        self.clock = clock

        logger.info(
            "ProofGenerator initialized",
            proof_system=self.config.proof_system,
            group_id=self.group.group_id,
        )

    def generate_proof(
        self,
        secret_template: bytes,
        salt: bytes,
        commitment: Commitment,
        challenge: ChallengeGrant,
        *,
        scholar_id: str,
        attendance_type: str,
        biometric_type: str,
        location: Optional[Location] = None,
    ) -> Tuple[Proof, PublicInputs]:
        """
        Produce a proof for one attendance attempt.

        Parameters
        ----------
        secret_template : bytes
            Template hash of the fresh capture.
        salt : bytes
            Enrollment salt.
        commitment : Commitment
            Enrolled commitment.
        challenge : ChallengeGrant
            Challenge received from the server.
        scholar_id : str
            Scholar the attendance is recorded for.
        attendance_type : str
            ``check-in`` or ``check-out``.
        biometric_type : str
            Modality of the enrollment.
        location : Location, optional
            Reported position, required for geofenced challenges.

        Returns
        -------
        Tuple[Proof, PublicInputs]
            Proof and the public inputs it is bound to.

        Raises
        ------
        InvalidInputError
            If the template and salt do not reopen the commitment, an input
            is malformed, or the challenge has already expired.
        ProofGenerationError
            If proof construction fails unexpectedly.
        """
        start_time = time.perf_counter()

        try:
            scholar_id = require_identifier(scholar_id, "scholar_id")
            attendance_type = AttendanceType.parse(attendance_type)
            biometric_type = parse_biometric_type(biometric_type)

            opening = open_commitment(
                secret_template, salt, self.group, self.config.min_salt_bytes
            )
            if not constant_time_equals(
                commitment_digest(opening.point, self.group), commitment.value
            ):
                raise InvalidInputError(
                    "Template and salt do not open the enrolled commitment",
                    field="commitment",
                )

            if challenge.is_expired(self.clock()):
                raise InvalidInputError("Challenge has already expired", field="challenge")

            nullifier = derive_nullifier(scholar_id, salt, self.config.min_salt_bytes)
            window_key = attendance_window_key(
                challenge.organization_id, challenge.issued_at, attendance_type
            )

            public_inputs = PublicInputs(
                commitment=commitment.value,
                commitment_point=opening.point,
                session_nullifier=derive_session_nullifier(nullifier, window_key),
                challenge_id=challenge.challenge_id,
                nonce=challenge.nonce,
                issued_at=challenge.issued_at_epoch,
                geofence_token=challenge.geofence_token,
                organization_id=challenge.organization_id,
                scholar_id=scholar_id,
                attendance_type=attendance_type.value,
                biometric_type=biometric_type,
                location=location,
            )

            statement = AttendanceStatement(self.group, public_inputs, self.config.proof_system)
            errors = statement.input_errors()
            if errors:
                raise InvalidInputError(errors[0], field="commitment")

            q = self.group.q
            # Fresh blinding per proof
            a = secrets.randbelow(q)
            b = secrets.randbelow(q)
            commitment_t = self.group.commit(a, b)
            e = statement.challenge_scalar(commitment_t)

            proof = Proof(
                t=commitment_t,
                s1=(a + e * opening.message) % q,
                s2=(b + e * opening.blinding) % q,
                proof_system=self.config.proof_system,
            )

            proof_size = len(json.dumps(proof.to_dict()))
            if proof_size > MAX_PROOF_SIZE:
                raise ProofGenerationError(
                    f"Generated proof too large: {proof_size} > {MAX_PROOF_SIZE} bytes",
                    proof_system=self.config.proof_system,
                )

            logger.info(
                "Attendance proof generated",
                challenge_id=challenge.challenge_id,
                attendance_type=attendance_type.value,
                biometric_type=biometric_type,
                proof_size_bytes=proof_size,
                generation_time_ms=(time.perf_counter() - start_time) * 1000,
            )

            return proof, public_inputs

        except (ProtocolError, ProofGenerationError):
            raise
        except Exception as e:
            raise ProofGenerationError(
                f"Unexpected error during proof generation: {str(e)}",
                proof_system=self.config.proof_system,
            )

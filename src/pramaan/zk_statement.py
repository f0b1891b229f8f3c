"""
Attendance statement shared by the prover and the verifier.

The statement proven for every check-in or check-out is

    "I know (m, r) such that g^m * h^r = P, where SHA-256(P) is my
     registered commitment"

made non-interactive with the Fiat-Shamir transform. The transcript hashed
into the challenge scalar contains every public input, so a proof is bound
to one challenge, one scholar, one attendance type, one attendance window
and one reported location. Changing any of them changes the challenge
scalar and the verification equation fails.
"""

from typing import Any, Dict, List

from .commitment import commitment_digest
from .constants import FIAT_SHAMIR_TAG, PROOF_FORMAT_VERSION, PROOF_SYSTEM_ID
from .data_models import Proof, PublicInputs
from .group import GroupParameters
from .utils import constant_time_equals

# Names of the inputs the statement is defined over
PUBLIC_INPUT_NAMES = (
    "commitment",
    "commitment_point",
    "session_nullifier",
    "challenge_id",
    "nonce",
    "issued_at",
    "geofence_token",
    "organization_id",
    "scholar_id",
    "attendance_type",
    "biometric_type",
    "location",
)
PRIVATE_INPUT_NAMES = ("message", "blinding")


class AttendanceStatement:
    """
    Proof-of-opening statement for one set of public inputs.

    Parameters
    ----------
    group : GroupParameters
        Commitment group.
    public_inputs : PublicInputs
        Public inputs the proof is bound to.
    proof_system : str, default=PROOF_SYSTEM_ID
        Identifier folded into the transcript.
    """

    def __init__(
        self,
        group: GroupParameters,
        public_inputs: PublicInputs,
        proof_system: str = PROOF_SYSTEM_ID,
    ) -> None:
        self.group = group
        self.public_inputs = public_inputs
        self.proof_system = proof_system

    def transcript(self, commitment_t: int) -> List[bytes]:
        """Ordered transcript parts for the Fiat-Shamir hash."""
        group = self.group
        inputs = self.public_inputs
        location = inputs.location.canonical() if inputs.location else ""

        return [
            FIAT_SHAMIR_TAG,
            self.proof_system.encode("ascii"),
            group.group_id.encode("ascii"),
            group.encode_element(group.g),
            group.encode_element(group.h),
            group.encode_element(inputs.commitment_point),
            group.encode_element(commitment_t),
            inputs.commitment,
            inputs.session_nullifier,
            inputs.challenge_id.encode("utf-8"),
            inputs.nonce,
            inputs.issued_at.to_bytes(8, "big"),
            inputs.geofence_token,
            inputs.organization_id.encode("utf-8"),
            inputs.scholar_id.encode("utf-8"),
            inputs.attendance_type.encode("ascii"),
            inputs.biometric_type.encode("ascii"),
            location.encode("ascii"),
        ]

    def challenge_scalar(self, commitment_t: int) -> int:
        """Fiat-Shamir challenge e = H_q(transcript)."""
        return self.group.hash_to_scalar(*self.transcript(commitment_t))

    def input_errors(self) -> List[str]:
        """
        Structural problems with the public inputs.

        Returns
        -------
        list of str
            Empty when the commitment point is a group element that hashes
            to the stated commitment.
        """
        errors = []
        point = self.public_inputs.commitment_point

        if not self.group.is_element(point):
            errors.append("commitment point is not a group element")
        elif not constant_time_equals(
            commitment_digest(point, self.group), self.public_inputs.commitment
        ):
            errors.append("commitment point does not hash to the commitment")

        return errors

    def proof_errors(self, proof: Proof) -> List[str]:
        """Format and range problems with a proof for this statement."""
        errors = []

        if proof.proof_system != self.proof_system:
            errors.append(f"unsupported proof system {proof.proof_system!r}")
        if proof.version != PROOF_FORMAT_VERSION:
            errors.append(f"unsupported proof version {proof.version}")
        if not self.group.is_element(proof.t):
            errors.append("proof commitment T is not a group element")
        if not self.group.is_scalar(proof.s1) or not self.group.is_scalar(proof.s2):
            errors.append("proof responses out of range")

        return errors


def describe_proof_system(group: GroupParameters, proof_system: str = PROOF_SYSTEM_ID) -> Dict[str, Any]:
    """Static description of the statement, independent of any inputs."""
    return {
        "proof_system": proof_system,
        "format_version": PROOF_FORMAT_VERSION,
        "relation": "P = g^m * h^r and SHA-256(P) = commitment",
        "soundness": "special soundness, discrete log in the random oracle model",
        "zero_knowledge": "honest-verifier zero knowledge via Fiat-Shamir",
        "public_inputs": list(PUBLIC_INPUT_NAMES),
        "private_inputs": list(PRIVATE_INPUT_NAMES),
        "proof_size_bytes": group.element_length * 3,
        "group": group.summary(),
    }


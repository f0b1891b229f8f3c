"""
Prime-order group arithmetic for Pedersen commitments and Schnorr-style proofs.

The group is the order-q subgroup of quadratic residues modulo the RFC 3526
2048-bit safe prime p = 2q + 1. Discrete logarithms in this subgroup are
believed hard, which gives Pedersen commitments their binding property and
the attendance proofs their soundness.

The second generator ``h`` is derived by hashing a public seed into the
group, so nobody knows log_g(h).
"""

import hashlib
from dataclasses import dataclass
from typing import Dict, Any

import structlog

from .constants import (
    GENERATOR_H_SEED,
    GROUP_ELEMENT_LENGTH,
    GROUP_GENERATOR_G,
    GROUP_ID,
    HASH_EXPANSION_LENGTH,
    RFC3526_MODP_2048_PRIME,
)
from .exceptions import CryptographyError, InvalidInputError

# Initialize structured logger
logger = structlog.get_logger(__name__)


def expand_hash(*parts: bytes, length: int = HASH_EXPANSION_LENGTH) -> bytes:
    """
    Hash length-prefixed parts into ``length`` bytes with SHAKE-256.

    Every part is prefixed with its 4-byte big-endian length so that
    distinct tuples can never serialize to the same byte string.
    """
    shake = hashlib.shake_256()
    for part in parts:
        shake.update(len(part).to_bytes(4, "big"))
        shake.update(part)
    return shake.digest(length)


@dataclass(frozen=True)
class GroupParameters:
    """
    Immutable description of the commitment group.

    Attributes
    ----------
    p : int
        Safe prime modulus.
    q : int
        Prime order of the quadratic-residue subgroup, (p - 1) / 2.
    g : int
        First generator.
    h : int
        Second generator with unknown discrete log relative to ``g``.
    group_id : str
        Identifier folded into proof transcripts.
    """

    p: int
    q: int
    g: int
    h: int
    group_id: str = GROUP_ID

    @property
    def element_length(self) -> int:
        return (self.p.bit_length() + 7) // 8

    def is_element(self, value: int) -> bool:
        """Return True if ``value`` lies in the order-q subgroup."""
        if not isinstance(value, int) or isinstance(value, bool):
            return False
        if not 1 < value < self.p:
            return False
        return pow(value, self.q, self.p) == 1

    def is_scalar(self, value: int) -> bool:
        if not isinstance(value, int) or isinstance(value, bool):
            return False
        return 0 <= value < self.q

    def hash_to_scalar(self, *parts: bytes) -> int:
        """
        Map byte strings to a scalar in Z_q.

        The SHAKE-256 expansion is 512 bits longer than q, so the bias of the
        final reduction is negligible.
        """
        digest = expand_hash(*parts)
        return int.from_bytes(digest, "big") % self.q

    def hash_to_element(self, *parts: bytes) -> int:
        """Map byte strings to a subgroup element by squaring a hashed integer."""
        counter = 0
        while True:
            candidate = int.from_bytes(
                expand_hash(*parts, counter.to_bytes(4, "big")), "big"
            ) % self.p
            element = pow(candidate, 2, self.p)
            if element > 1:
                return element
            counter += 1

    def commit(self, message: int, blinding: int) -> int:
        """Return the Pedersen commitment g^message * h^blinding mod p."""
        return (pow(self.g, message, self.p) * pow(self.h, blinding, self.p)) % self.p

    def encode_element(self, value: int) -> bytes:
        """Encode a group element as a fixed-width big-endian byte string."""
        return value.to_bytes(self.element_length, "big")

    def decode_element(self, data: bytes) -> int:
        """
        Decode and validate a group element.

        Raises
        ------
        InvalidInputError
            If the encoding has the wrong width or the value is not in the group.
        """
        if len(data) != self.element_length:
            raise InvalidInputError(
                f"Group element must be {self.element_length} bytes, got {len(data)}",
                field="group_element",
            )
        value = int.from_bytes(data, "big")
        if not self.is_element(value):
            raise InvalidInputError(
                "Value is not an element of the commitment group",
                field="group_element",
            )
        return value

    def summary(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "modulus_bits": self.p.bit_length(),
            "order_bits": self.q.bit_length(),
            "g": self.g,
            "h_prefix": hex(self.h)[:18],
        }


def build_group_parameters(
    prime: int = RFC3526_MODP_2048_PRIME,
    generator: int = GROUP_GENERATOR_G,
    group_id: str = GROUP_ID,
) -> GroupParameters:
    """
    Resolve the commitment group from a safe prime.

    Parameters
    ----------
    prime : int, default=RFC3526_MODP_2048_PRIME
        Safe prime modulus.
    generator : int, default=GROUP_GENERATOR_G
        Quadratic residue used as ``g``.
    group_id : str, default=GROUP_ID
        Transcript identifier for the group.

    Returns
    -------
    GroupParameters
        Fully resolved, immutable group parameters.

    Raises
    ------
    CryptographyError
        If the generator does not lie in the prime-order subgroup.
    """
    q = (prime - 1) // 2
    if pow(generator, q, prime) != 1 or generator in (0, 1, prime - 1):
        raise CryptographyError(
            "Generator g is not in the prime-order subgroup",
            operation="group_setup",
        )

    provisional = GroupParameters(p=prime, q=q, g=generator, h=generator, group_id=group_id)
    h = provisional.hash_to_element(GENERATOR_H_SEED, group_id.encode("ascii"))
    if h == generator:
        raise CryptographyError(
            "Derived generator h collides with g", operation="group_setup"
        )

    params = GroupParameters(p=prime, q=q, g=generator, h=h, group_id=group_id)

    if params.element_length != GROUP_ELEMENT_LENGTH:
        logger.warning(
            "Non-default group element width",
            element_length=params.element_length,
            expected=GROUP_ELEMENT_LENGTH,
        )

    logger.debug("Commitment group resolved", **params.summary())
    return params


DEFAULT_GROUP: GroupParameters = build_group_parameters()

"""
Client-side template hashing for biometric enrollments.

This module reduces a biometric feature vector to the fixed-length template
hash that the commitment engine consumes. The vector is quantized so that
small capture noise maps to the same bytes, then hashed with Argon2id under a
per-biometric-type domain salt. Argon2id is deliberately slow and memory
hard, which makes brute-forcing candidate templates from a leaked template
hash expensive.

The raw vector never leaves the device; only the template hash feeds into
``commit``, and only the commitment is sent to the server.
"""

import hashlib
import secrets
from typing import Any, Dict

import numpy as np
import structlog
from argon2.exceptions import Argon2Error
from argon2.low_level import Type, hash_secret_raw

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    FEATURE_DIMENSIONS,
    SALT_LENGTH,
    TEMPLATE_DOMAIN_TAG,
    TEMPLATE_HASH_LENGTH,
    TEMPLATE_QUANTIZATION_STEP,
)
from .data_models import parse_biometric_type
from .exceptions import TemplateHashingError
from .utils import timer

# Initialize structured logger
logger = structlog.get_logger(__name__)


def generate_salt(length: int = SALT_LENGTH) -> bytes:
    """
    Generate a cryptographically secure enrollment salt.

    Examples
    --------
    >>> salt = generate_salt()
    >>> assert len(salt) == SALT_LENGTH
    """
    if length < 16:
        raise TemplateHashingError(f"salt length must be at least 16 bytes, got {length}")
    return secrets.token_bytes(length)


class TemplateHasher:
    """
    Argon2id template hasher.

    Parameters
    ----------
    time_cost : int, default=ARGON2_TIME_COST
        Number of Argon2 iterations.
    memory_cost : int, default=ARGON2_MEMORY_COST
        Memory usage in KB.
    parallelism : int, default=ARGON2_PARALLELISM
        Number of Argon2 lanes.
    quantization_step : float, default=TEMPLATE_QUANTIZATION_STEP
        Grid width applied to feature values before hashing.

    Examples
    --------
    >>> hasher = TemplateHasher(time_cost=1, memory_cost=64)
    >>> vector = np.random.randn(128)
    >>> template_hash = hasher.hash_template(vector, "face")
    >>> assert len(template_hash) == TEMPLATE_HASH_LENGTH
    """

    def __init__(
        self,
        time_cost: int = ARGON2_TIME_COST,
        memory_cost: int = ARGON2_MEMORY_COST,
        parallelism: int = ARGON2_PARALLELISM,
        quantization_step: float = TEMPLATE_QUANTIZATION_STEP,
    ) -> None:
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism
        self.quantization_step = quantization_step

        self._validate_parameters()

        logger.info(
            "TemplateHasher initialized",
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            quantization_step=quantization_step,
        )

    def _validate_parameters(self) -> None:
        """
        Validate Argon2 parameters for security and feasibility.

        Raises
        ------
        TemplateHashingError
            If any parameters are invalid.
        """
        if self.time_cost < 1:
            raise TemplateHashingError(f"time_cost must be at least 1, got {self.time_cost}")

        if self.parallelism < 1:
            raise TemplateHashingError(
                f"parallelism must be at least 1, got {self.parallelism}"
            )

        # Argon2 requires at least 8 KB per lane
        if self.memory_cost < 8 * self.parallelism:
            raise TemplateHashingError(
                f"memory_cost must be at least {8 * self.parallelism} KB, got {self.memory_cost}"
            )

        if self.quantization_step <= 0:
            raise TemplateHashingError(
                f"quantization_step must be positive, got {self.quantization_step}"
            )

    @staticmethod
    def domain_salt(biometric_type: str) -> bytes:
        """Fixed Argon2 salt separating template hashes of different types."""
        return hashlib.sha256(TEMPLATE_DOMAIN_TAG + biometric_type.encode("ascii")).digest()[:16]

    def quantize(self, feature_vector: np.ndarray, biometric_type: str) -> bytes:
        """
        Quantize a feature vector into its canonical byte encoding.

        Raises
        ------
        TemplateHashingError
            If the vector is empty, non-finite or has the wrong dimension.
        """
        if not isinstance(feature_vector, np.ndarray):
            raise TemplateHashingError(
                f"feature_vector must be numpy array, got {type(feature_vector)}"
            )

        if feature_vector.size == 0:
            raise TemplateHashingError("feature_vector cannot be empty")

        if not np.isfinite(feature_vector).all():
            raise TemplateHashingError("feature_vector contains non-finite values")

        expected = FEATURE_DIMENSIONS.get(biometric_type, 0)
        flat = feature_vector.reshape(-1)
        if expected and flat.size != expected:
            raise TemplateHashingError(
                f"{biometric_type} vectors must have {expected} dimensions, got {flat.size}"
            )

        # Big-endian int32 grid cells are stable across platforms
        cells = np.rint(flat.astype(np.float64) / self.quantization_step).astype(">i4")
        return cells.tobytes()

    @timer
    def hash_template(self, feature_vector: np.ndarray, biometric_type: str) -> bytes:
        """
        Reduce a feature vector to a template hash.

        Parameters
        ----------
        feature_vector : np.ndarray
            Output of the external feature-extraction subsystem.
        biometric_type : str
            One of the supported biometric types.

        Returns
        -------
        bytes
            ``TEMPLATE_HASH_LENGTH`` byte digest.

        Raises
        ------
        TemplateHashingError
            If quantization or Argon2 hashing fails.
        """
        biometric_type = parse_biometric_type(biometric_type)
        vector_bytes = self.quantize(feature_vector, biometric_type)

        try:
            template_hash = hash_secret_raw(
                secret=vector_bytes,
                salt=self.domain_salt(biometric_type),
                time_cost=self.time_cost,
                memory_cost=self.memory_cost,
                parallelism=self.parallelism,
                hash_len=TEMPLATE_HASH_LENGTH,
                type=Type.ID,
            )
        except Argon2Error as e:
            raise TemplateHashingError(f"Argon2 hashing failed: {str(e)}")

        logger.debug(
            "Template hash computed",
            biometric_type=biometric_type,
            dimensions=int(feature_vector.size),
        )
        return template_hash

    def matches(
        self, feature_vector: np.ndarray, biometric_type: str, template_hash: bytes
    ) -> bool:
        """Check whether a fresh capture reproduces a stored template hash."""
        computed = self.hash_template(feature_vector, biometric_type)
        return secrets.compare_digest(computed, template_hash)

    def get_parameters(self) -> Dict[str, Any]:
        return {
            "algorithm": "argon2id",
            "time_cost": self.time_cost,
            "memory_cost": self.memory_cost,
            "parallelism": self.parallelism,
            "hash_length": TEMPLATE_HASH_LENGTH,
            "quantization_step": self.quantization_step,
        }

"""
Shared fixtures for the Pramaan test suite.

Every test gets its own file-backed SQLite database under ``tmp_path`` so
that worker threads and concurrent submissions see the same store, and a
frozen clock so challenge lifetimes can be stepped through explicitly.
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone

import pytest

from pramaan.config import ProtocolConfig
from pramaan.core import PramaanCore
from pramaan.data_models import ChallengeGrant, EnrollmentReceipt, Location
from pramaan.security_log import InMemorySecuritySink
from pramaan.template import TemplateHasher
from pramaan.utils import FrozenClock
from pramaan.zk_prover import ProofGenerator

TEST_PEPPER = b"pramaan-test-pepper-0123456789"
MONDAY_9AM = datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)


def make_template_hash(label: str) -> bytes:
    """Stand-in for a client template hash; 32 bytes derived from a label."""
    return hashlib.sha256(b"template:" + label.encode("utf-8")).digest()


def make_salt(label: str) -> bytes:
    return hashlib.sha256(b"salt:" + label.encode("utf-8")).digest()


@dataclass
class EnrolledScholar:
    scholar_id: str
    biometric_type: str
    template_hash: bytes
    salt: bytes
    receipt: EnrollmentReceipt


@pytest.fixture
def clock():
    return FrozenClock(MONDAY_9AM)


@pytest.fixture
def security_sink():
    return InMemorySecuritySink()


@pytest.fixture
def config(tmp_path):
    return ProtocolConfig(
        database_url=f"sqlite:///{tmp_path / 'pramaan.db'}",
        registry_pepper=TEST_PEPPER,
        max_workers=2,
        verifier_pool="thread",
        argon2_time_cost=1,
        argon2_memory_cost=64,
    )


@pytest.fixture
def core(config, security_sink, clock):
    instance = PramaanCore(config, security_sink=security_sink, clock=clock)
    yield instance
    instance.close()


@pytest.fixture
def prover(config, clock):
    return ProofGenerator(config, clock)


@pytest.fixture
def template_hasher():
    return TemplateHasher(time_cost=1, memory_cost=64)


@pytest.fixture
def enroll(core):
    """Enroll a scholar from a label and keep the client-side secrets."""

    def _enroll(scholar_id="S1", biometric_type="face", label=None, salt_label=None):
        label = label or scholar_id
        template_hash = make_template_hash(label)
        salt = make_salt(salt_label or label)
        receipt = core.enroll(scholar_id, biometric_type, template_hash, salt, organization_id="H1")
        return EnrolledScholar(scholar_id, biometric_type, template_hash, salt, receipt)

    return _enroll


@pytest.fixture
def prove(prover):
    """Generate a proof for an enrolled scholar against a challenge."""

    def _prove(
        scholar: EnrolledScholar,
        challenge: ChallengeGrant,
        attendance_type: str = "check-in",
        location: Location = None,
    ):
        return prover.generate_proof(
            scholar.template_hash,
            scholar.salt,
            scholar.receipt.commitment,
            challenge,
            scholar_id=scholar.scholar_id,
            attendance_type=attendance_type,
            biometric_type=scholar.biometric_type,
            location=location,
        )

    return _prove


@pytest.fixture
def submit(core):
    """Submit a proof as the scholar it was generated for."""

    def _submit(proof, public_inputs, challenge, attendance_type="check-in", location=None):
        return core.submit_proof(
            public_inputs.scholar_id,
            proof,
            public_inputs,
            challenge.challenge_id,
            attendance_type,
            location,
        )

    return _submit

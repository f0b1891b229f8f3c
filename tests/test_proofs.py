"""Tests for proof generation, the attendance statement and opening verification."""

import dataclasses

import pytest

from pramaan.constants import PROOF_SYSTEM_ID
from pramaan.data_models import Location, Proof, PublicInputs
from pramaan.exceptions import ErrorKind, InvalidInputError
from pramaan.group import DEFAULT_GROUP
from pramaan.zk_statement import AttendanceStatement, describe_proof_system
from pramaan.zk_verifier import verify_opening_proof

from conftest import make_salt, make_template_hash


@pytest.fixture
def scholar(enroll):
    return enroll("S1")


@pytest.fixture
def challenge(core):
    return core.issue_challenge("H1")


class TestProofGeneration:
    def test_honest_proof_verifies(self, scholar, challenge, prove):
        proof, public_inputs = prove(scholar, challenge)

        assert public_inputs.commitment == scholar.receipt.commitment.value
        assert public_inputs.challenge_id == challenge.challenge_id
        assert public_inputs.issued_at == challenge.issued_at_epoch
        assert verify_opening_proof(DEFAULT_GROUP, public_inputs, proof)

    def test_proofs_are_randomized(self, scholar, challenge, prove):
        first, _ = prove(scholar, challenge)
        second, _ = prove(scholar, challenge)
        assert first.t != second.t
        assert first.digest() != second.digest()

    def test_public_inputs_hold_no_secrets(self, scholar, challenge, prove):
        proof, public_inputs = prove(scholar, challenge)
        wire = repr(public_inputs.to_dict()) + repr(proof.to_dict())
        assert scholar.template_hash.hex() not in wire
        assert scholar.salt.hex() not in wire

    def test_wrong_template_refused(self, scholar, challenge, prover):
        with pytest.raises(InvalidInputError):
            prover.generate_proof(
                make_template_hash("impostor"),
                scholar.salt,
                scholar.receipt.commitment,
                challenge,
                scholar_id="S1",
                attendance_type="check-in",
                biometric_type="face",
            )

    def test_wrong_salt_refused(self, scholar, challenge, prover):
        with pytest.raises(InvalidInputError):
            prover.generate_proof(
                scholar.template_hash,
                make_salt("wrong"),
                scholar.receipt.commitment,
                challenge,
                scholar_id="S1",
                attendance_type="check-in",
                biometric_type="face",
            )

    def test_expired_challenge_refused(self, scholar, challenge, prove, clock):
        clock.advance(seconds=challenge.ttl_seconds)
        with pytest.raises(InvalidInputError):
            prove(scholar, challenge)

    def test_invalid_attendance_type_refused(self, scholar, challenge, prove):
        with pytest.raises(InvalidInputError):
            prove(scholar, challenge, attendance_type="lunch")


class TestOpeningVerification:
    def test_tampered_response_fails(self, scholar, challenge, prove):
        proof, public_inputs = prove(scholar, challenge)
        tampered = dataclasses.replace(proof, s1=(proof.s1 + 1) % DEFAULT_GROUP.q)
        assert not verify_opening_proof(DEFAULT_GROUP, public_inputs, tampered)

    def test_out_of_range_scalar_fails(self, scholar, challenge, prove):
        proof, public_inputs = prove(scholar, challenge)
        tampered = dataclasses.replace(proof, s2=proof.s2 + DEFAULT_GROUP.q)
        assert not verify_opening_proof(DEFAULT_GROUP, public_inputs, tampered)

    def test_non_group_element_fails(self, scholar, challenge, prove):
        proof, public_inputs = prove(scholar, challenge)
        tampered = dataclasses.replace(proof, t=DEFAULT_GROUP.p - 1)
        assert not verify_opening_proof(DEFAULT_GROUP, public_inputs, tampered)

    @pytest.mark.parametrize(
        "field, value",
        [
            ("scholar_id", "S2"),
            ("attendance_type", "check-out"),
            ("organization_id", "H2"),
            ("issued_at", 0),
            ("location", Location(12.97, 77.59, 5.0)),
        ],
    )
    def test_changed_public_input_fails(self, scholar, challenge, prove, field, value):
        proof, public_inputs = prove(scholar, challenge)
        changed = dataclasses.replace(public_inputs, **{field: value})
        assert not verify_opening_proof(DEFAULT_GROUP, changed, proof)

    def test_proof_system_mismatch_fails(self, scholar, challenge, prove):
        proof, public_inputs = prove(scholar, challenge)
        relabeled = dataclasses.replace(proof, proof_system="groth16")
        assert not verify_opening_proof(DEFAULT_GROUP, public_inputs, relabeled)

    def test_statement_reports_errors(self, scholar, challenge, prove):
        proof, public_inputs = prove(scholar, challenge)
        statement = AttendanceStatement(DEFAULT_GROUP, public_inputs)
        assert statement.input_errors() == []
        assert statement.proof_errors(proof) == []

        broken = AttendanceStatement(
            DEFAULT_GROUP, dataclasses.replace(public_inputs, commitment=bytes(32))
        )
        assert broken.input_errors()

    def test_describe_proof_system(self):
        description = describe_proof_system(DEFAULT_GROUP)
        assert description["proof_system"] == PROOF_SYSTEM_ID
        assert "commitment" in description["public_inputs"]


class TestChallengeBinding:
    def test_proof_for_challenge_a_rejected_for_challenge_b(
        self, core, scholar, prove, submit
    ):
        challenge_a = core.issue_challenge("H1")
        challenge_b = core.issue_challenge("H1")
        proof, public_inputs = prove(scholar, challenge_a)

        outcome = submit(proof, public_inputs, challenge_b)
        assert outcome.error_kind is ErrorKind.INVALID_PROOF

    def test_relabeled_public_inputs_rejected(self, core, scholar, prove, submit):
        challenge_a = core.issue_challenge("H1")
        challenge_b = core.issue_challenge("H1")
        proof, public_inputs = prove(scholar, challenge_a)

        # Same window, so only the transcript binding can catch the swap
        relabeled = dataclasses.replace(
            public_inputs,
            challenge_id=challenge_b.challenge_id,
            nonce=challenge_b.nonce,
            issued_at=challenge_b.issued_at_epoch,
            geofence_token=challenge_b.geofence_token,
        )
        outcome = submit(proof, relabeled, challenge_b)
        assert outcome.error_kind is ErrorKind.INVALID_PROOF


class TestWireFormat:
    def test_round_trip(self, scholar, challenge, prove):
        proof, public_inputs = prove(scholar, challenge)
        assert Proof.from_dict(proof.to_dict()) == proof
        assert PublicInputs.from_dict(public_inputs.to_dict()) == public_inputs

    @pytest.mark.parametrize(
        "mutation",
        [
            {"t": "not-hex"},
            {"s1": None},
            {"version": "1"},
            {"proof_system": 7},
        ],
    )
    def test_malformed_proof(self, scholar, challenge, prove, mutation):
        proof, _ = prove(scholar, challenge)
        payload = dict(proof.to_dict(), **mutation)
        with pytest.raises(InvalidInputError):
            Proof.from_dict(payload)

    @pytest.mark.parametrize(
        "mutation",
        [
            {"commitment": "ab"},
            {"issued_at": -1},
            {"issued_at": True},
            {"attendance_type": "lunch"},
            {"biometric_type": "gait"},
            {"scholar_id": ""},
            {"location": {"latitude": 91, "longitude": 0}},
        ],
    )
    def test_malformed_public_inputs(self, scholar, challenge, prove, mutation):
        _, public_inputs = prove(scholar, challenge)
        payload = dict(public_inputs.to_dict(), **mutation)
        with pytest.raises(InvalidInputError):
            PublicInputs.from_dict(payload)

    def test_malformed_submission_creates_no_record(self, core, scholar, challenge, prove):
        proof, public_inputs = prove(scholar, challenge)
        payload = dict(proof.to_dict(), t="zz")

        with pytest.raises(InvalidInputError):
            core.submit_proof("S1", payload, public_inputs.to_dict(), challenge.challenge_id, "check-in")
        assert core.records_for_scholar("S1") == []

    def test_unknown_challenge_creates_no_record(self, core, scholar, challenge, prove):
        proof, public_inputs = prove(scholar, challenge)

        with pytest.raises(InvalidInputError):
            core.submit_proof("S1", proof, public_inputs, "missing-challenge", "check-in")
        assert core.records_for_scholar("S1") == []

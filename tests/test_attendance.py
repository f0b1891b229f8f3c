"""End-to-end tests for attendance submission and the record lifecycle."""

import json
import threading

import pytest

from pramaan.attendance import AttendanceStateMachine
from pramaan.data_models import AttendanceStatus
from pramaan.exceptions import (
    ErrorKind,
    IllegalTransitionError,
    InvalidInputError,
    RecordNotFoundError,
    ReplayDetectedError,
)
from pramaan.security_log import ADMIN_OVERRIDE, BIOMETRIC_MISMATCH, REPLAY_DETECTED
from pramaan.storage import AttendanceRow, SessionNullifierRow
from pramaan.utils import generate_id

from conftest import make_salt


@pytest.fixture
def scholar(enroll):
    return enroll("S1")


def insert_pending_record(core, challenge, scholar_id="S1"):
    """Simulate a submission whose verification never finished."""
    proof_id = generate_id()
    now = core.clock()
    with core.database.transaction() as session:
        session.add(
            AttendanceRow(
                proof_id=proof_id,
                scholar_id=scholar_id,
                organization_id=challenge.organization_id,
                attendance_type="check-in",
                status=AttendanceStatus.PENDING.value,
                challenge_id=challenge.challenge_id,
                biometric_type="face",
                proof_json=json.dumps({}),
                public_inputs_json=json.dumps({}),
                proof_digest="00" * 32,
                created_at=now,
                updated_at=now,
            )
        )
    return proof_id


class TestSubmission:
    def test_check_in_verified(self, core, scholar, prove, submit):
        challenge = core.issue_challenge("H1")
        proof, public_inputs = prove(scholar, challenge)

        outcome = submit(proof, public_inputs, challenge)

        assert outcome.status is AttendanceStatus.VERIFIED
        assert outcome.error_kind is None
        assert outcome.to_dict()["message"] == "Attendance recorded."

        record = core.get_record(outcome.proof_id)
        assert record.status is AttendanceStatus.VERIFIED
        assert record.organization_id == "H1"
        assert record.verified_at == core.clock()
        assert core.challenges.load(challenge.challenge_id).is_consumed

        with core.database.session() as session:
            consumed = session.get(SessionNullifierRow, public_inputs.session_nullifier.hex())
            assert consumed.window_key == "H1|2026-01-05|check-in"
            assert consumed.proof_id == outcome.proof_id

    def test_wire_payloads_accepted(self, core, scholar, prove):
        challenge = core.issue_challenge("H1")
        proof, public_inputs = prove(scholar, challenge)

        outcome = core.submit_proof(
            "S1", proof.to_dict(), public_inputs.to_dict(), challenge.challenge_id, "check-in"
        )
        assert outcome.status is AttendanceStatus.VERIFIED

    def test_resubmitting_same_proof_is_replay(self, core, scholar, prove, submit, security_sink):
        challenge = core.issue_challenge("H1")
        proof, public_inputs = prove(scholar, challenge)
        first = submit(proof, public_inputs, challenge)

        second = submit(proof, public_inputs, challenge)

        assert first.status is AttendanceStatus.VERIFIED
        assert second.status is AttendanceStatus.REJECTED
        assert second.error_kind is ErrorKind.REPLAY_DETECTED
        assert not second.retryable
        assert second.to_dict()["message"] == "verification failed"

        events = security_sink.of_type(REPLAY_DETECTED)
        assert len(events) == 1
        assert events[0].severity == "critical"
        assert events[0].details["proof_id"] == second.proof_id

    def test_new_proof_on_consumed_challenge(self, core, scholar, prove, submit):
        challenge = core.issue_challenge("H1")
        proof, public_inputs = prove(scholar, challenge)
        submit(proof, public_inputs, challenge)

        other_proof, other_inputs = prove(scholar, challenge)
        outcome = submit(other_proof, other_inputs, challenge)

        assert outcome.error_kind is ErrorKind.CHALLENGE_CONSUMED
        assert outcome.retryable

    def test_second_check_in_same_day_is_replay(self, core, scholar, prove, submit, clock):
        first_challenge = core.issue_challenge("H1")
        submit(*prove(scholar, first_challenge), first_challenge)

        clock.advance(hours=2)
        second_challenge = core.issue_challenge("H1")
        outcome = submit(*prove(scholar, second_challenge), second_challenge)

        assert outcome.error_kind is ErrorKind.REPLAY_DETECTED

    def test_check_out_and_next_day_accepted(self, core, scholar, prove, submit, clock):
        check_in = core.issue_challenge("H1")
        assert submit(*prove(scholar, check_in), check_in).status is AttendanceStatus.VERIFIED

        clock.advance(hours=8)
        check_out = core.issue_challenge("H1")
        outcome = submit(
            *prove(scholar, check_out, "check-out"), check_out, attendance_type="check-out"
        )
        assert outcome.status is AttendanceStatus.VERIFIED

        clock.advance(days=1)
        next_day = core.issue_challenge("H1")
        assert submit(*prove(scholar, next_day), next_day).status is AttendanceStatus.VERIFIED

    def test_check_out_without_check_in(self, core, scholar, prove, submit):
        challenge = core.issue_challenge("H1")
        outcome = submit(
            *prove(scholar, challenge, "check-out"), challenge, attendance_type="check-out"
        )

        assert outcome.status is AttendanceStatus.REJECTED
        assert outcome.error_kind is ErrorKind.NO_CHECK_IN
        assert not outcome.retryable
        assert not core.challenges.load(challenge.challenge_id).is_consumed

    def test_check_out_needs_check_in_same_day_and_organization(
        self, core, scholar, prove, submit, clock
    ):
        check_in = core.issue_challenge("H1")
        assert submit(*prove(scholar, check_in), check_in).status is AttendanceStatus.VERIFIED

        elsewhere = core.issue_challenge("H2")
        outcome = submit(
            *prove(scholar, elsewhere, "check-out"), elsewhere, attendance_type="check-out"
        )
        assert outcome.error_kind is ErrorKind.NO_CHECK_IN

        clock.advance(days=1)
        next_day = core.issue_challenge("H1")
        outcome = submit(
            *prove(scholar, next_day, "check-out"), next_day, attendance_type="check-out"
        )
        assert outcome.error_kind is ErrorKind.NO_CHECK_IN

    def test_expired_challenge(self, core, scholar, prove, submit, clock):
        challenge = core.issue_challenge("H1", ttl_seconds=120)
        proof, public_inputs = prove(scholar, challenge)

        clock.advance(minutes=3)
        outcome = submit(proof, public_inputs, challenge)

        assert outcome.status is AttendanceStatus.EXPIRED
        assert outcome.error_kind is ErrorKind.CHALLENGE_EXPIRED
        assert outcome.retryable
        assert not core.challenges.load(challenge.challenge_id).is_consumed

    def test_attendance_type_mismatch(self, core, scholar, prove, submit):
        challenge = core.issue_challenge("H1")
        proof, public_inputs = prove(scholar, challenge)

        outcome = submit(proof, public_inputs, challenge, attendance_type="check-out")
        assert outcome.error_kind is ErrorKind.INVALID_PROOF

    def test_submitting_as_another_scholar(self, core, scholar, enroll, prove):
        enroll("S2")
        challenge = core.issue_challenge("H1")
        proof, public_inputs = prove(scholar, challenge)

        outcome = core.submit_proof("S2", proof, public_inputs, challenge.challenge_id, "check-in")
        assert outcome.error_kind is ErrorKind.COMMITMENT_MISMATCH

    def test_revoked_enrollment_rejected(self, core, scholar, prove, submit, security_sink):
        challenge = core.issue_challenge("H1")
        proof, public_inputs = prove(scholar, challenge)
        core.revoke_biometric(scholar.receipt.commitment, admin_id="A1", reason="lost device")

        outcome = submit(proof, public_inputs, challenge)

        assert outcome.status is AttendanceStatus.REJECTED
        assert outcome.error_kind is ErrorKind.COMMITMENT_MISMATCH
        assert len(security_sink.of_type(BIOMETRIC_MISMATCH)) == 1

    def test_reenrolled_scholar_can_attend(self, core, scholar, prove, submit):
        core.revoke_biometric(scholar.receipt.commitment, admin_id="A1", reason="lost device")
        scholar.salt = make_salt("fresh")
        scholar.receipt = core.enroll("S1", "face", scholar.template_hash, scholar.salt)

        challenge = core.issue_challenge("H1")
        assert submit(*prove(scholar, challenge), challenge).status is AttendanceStatus.VERIFIED

    def test_concurrent_duplicate_submissions(self, core, scholar, prove, submit):
        challenge = core.issue_challenge("H1")
        proof, public_inputs = prove(scholar, challenge)
        outcomes = []
        barrier = threading.Barrier(4)

        def worker():
            barrier.wait()
            outcomes.append(submit(proof, public_inputs, challenge))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        statuses = [outcome.status for outcome in outcomes]
        assert statuses.count(AttendanceStatus.VERIFIED) == 1
        assert statuses.count(AttendanceStatus.REJECTED) == 3
        for outcome in outcomes:
            if outcome.status is AttendanceStatus.REJECTED:
                assert outcome.error_kind is ErrorKind.REPLAY_DETECTED


class TestExpiry:
    def test_lazy_expiry_on_read(self, core, clock):
        challenge = core.issue_challenge("H1", ttl_seconds=120)
        proof_id = insert_pending_record(core, challenge)

        assert core.get_record(proof_id).status is AttendanceStatus.PENDING

        clock.advance(seconds=120)
        record = core.get_record(proof_id)
        assert record.status is AttendanceStatus.EXPIRED
        assert record.error_kind is ErrorKind.CHALLENGE_EXPIRED

    def test_sweep_expires_only_lapsed(self, core, clock):
        stale = core.issue_challenge("H1", ttl_seconds=60)
        fresh = core.issue_challenge("H1", ttl_seconds=600)
        stale_id = insert_pending_record(core, stale)
        fresh_id = insert_pending_record(core, fresh)

        clock.advance(minutes=2)
        assert core.expire_stale_records() == 1
        assert core.get_record(stale_id).status is AttendanceStatus.EXPIRED
        assert core.get_record(fresh_id).status is AttendanceStatus.PENDING
        assert core.expire_stale_records() == 0

    def test_unknown_record(self, core):
        with pytest.raises(RecordNotFoundError):
            core.get_record("nope")


class TestStateMachine:
    @pytest.mark.parametrize(
        "target", [AttendanceStatus.VERIFIED, AttendanceStatus.REJECTED, AttendanceStatus.EXPIRED]
    )
    def test_pending_successors(self, target):
        assert AttendanceStateMachine.can_transition(AttendanceStatus.PENDING, target)

    @pytest.mark.parametrize(
        "source", [AttendanceStatus.VERIFIED, AttendanceStatus.REJECTED, AttendanceStatus.EXPIRED]
    )
    def test_terminal_states_are_final(self, source):
        for target in AttendanceStatus:
            with pytest.raises(IllegalTransitionError):
                AttendanceStateMachine.validate(source, target)

    def test_advance_refuses_finalized_record(self, core, scholar, prove, submit):
        challenge = core.issue_challenge("H1")
        outcome = submit(*prove(scholar, challenge), challenge)

        with pytest.raises(IllegalTransitionError) as exc_info:
            with core.database.transaction() as session:
                core.state_machine.advance(
                    session, outcome.proof_id, AttendanceStatus.REJECTED, now=core.clock()
                )
        assert exc_info.value.context["from_status"] == "verified"
        assert core.get_record(outcome.proof_id).status is AttendanceStatus.VERIFIED

    def test_advance_unknown_record(self, core):
        with pytest.raises(RecordNotFoundError):
            with core.database.transaction() as session:
                core.state_machine.advance(
                    session, "missing", AttendanceStatus.EXPIRED, now=core.clock()
                )


class TestOverride:
    def test_override_is_audited(self, core, scholar, prove, submit, security_sink):
        challenge = core.issue_challenge("H1")
        outcome = submit(*prove(scholar, challenge), challenge)

        record = core.override_status(
            outcome.proof_id, "rejected", admin_id="A1", reason="proxy attendance"
        )

        assert record.status is AttendanceStatus.REJECTED
        history = core.attendance.override_history(outcome.proof_id)
        assert len(history) == 1
        assert history[0]["from_status"] == "verified"
        assert history[0]["admin_id"] == "A1"

        events = security_sink.of_type(ADMIN_OVERRIDE)
        assert len(events) == 1
        assert events[0].details["reason"] == "proxy attendance"

    def test_override_to_verified_clears_error(self, core, scholar, prove, submit, clock):
        challenge = core.issue_challenge("H1")
        proof, public_inputs = prove(scholar, challenge)
        clock.advance(minutes=5)
        outcome = submit(proof, public_inputs, challenge)
        assert outcome.status is AttendanceStatus.EXPIRED

        record = core.override_status(
            outcome.proof_id, AttendanceStatus.VERIFIED, admin_id="A1", reason="network outage"
        )
        assert record.status is AttendanceStatus.VERIFIED
        assert record.error_kind is None
        assert record.verified_at is not None

    def test_override_to_verified_claims_window(self, core, scholar, prove, submit, clock):
        challenge = core.issue_challenge("H1")
        proof, public_inputs = prove(scholar, challenge)
        clock.advance(minutes=5)
        outcome = submit(proof, public_inputs, challenge)
        core.override_status(outcome.proof_id, "verified", admin_id="A1", reason="outage")

        with core.database.session() as session:
            claimed = session.get(SessionNullifierRow, public_inputs.session_nullifier.hex())
        assert claimed.proof_id == outcome.proof_id

        retry = core.issue_challenge("H1")
        assert submit(*prove(scholar, retry), retry).error_kind is ErrorKind.REPLAY_DETECTED

    def test_override_cannot_verify_second_record_in_window(
        self, core, scholar, prove, submit, clock
    ):
        first = core.issue_challenge("H1")
        assert submit(*prove(scholar, first), first).status is AttendanceStatus.VERIFIED

        clock.advance(hours=1)
        second = core.issue_challenge("H1")
        replayed = submit(*prove(scholar, second), second)
        assert replayed.error_kind is ErrorKind.REPLAY_DETECTED

        with pytest.raises(ReplayDetectedError):
            core.override_status(replayed.proof_id, "verified", admin_id="A1", reason="x")

        assert core.get_record(replayed.proof_id).status is AttendanceStatus.REJECTED
        assert core.attendance.override_history(replayed.proof_id) == []
        assert len(core.records_for_organization("H1", "verified")) == 1

    def test_override_from_verified_releases_window(self, core, scholar, prove, submit, clock):
        first = core.issue_challenge("H1")
        outcome = submit(*prove(scholar, first), first)
        core.override_status(outcome.proof_id, "rejected", admin_id="A1", reason="proxy")

        clock.advance(hours=1)
        second = core.issue_challenge("H1")
        assert submit(*prove(scholar, second), second).status is AttendanceStatus.VERIFIED

    def test_override_to_verified_without_enrollment(self, core, clock):
        challenge = core.issue_challenge("H1")
        proof_id = insert_pending_record(core, challenge)
        clock.advance(minutes=5)
        assert core.get_record(proof_id).status is AttendanceStatus.EXPIRED

        with pytest.raises(IllegalTransitionError):
            core.override_status(proof_id, "verified", admin_id="A1", reason="x")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"new_status": "rejected", "admin_id": "", "reason": "x"},
            {"new_status": "rejected", "admin_id": "A1", "reason": " "},
            {"new_status": "pending", "admin_id": "A1", "reason": "x"},
            {"new_status": "approved", "admin_id": "A1", "reason": "x"},
        ],
    )
    def test_override_validation(self, core, scholar, prove, submit, kwargs):
        challenge = core.issue_challenge("H1")
        outcome = submit(*prove(scholar, challenge), challenge)

        with pytest.raises(InvalidInputError):
            core.override_status(outcome.proof_id, **kwargs)

    def test_override_to_same_status(self, core, scholar, prove, submit):
        challenge = core.issue_challenge("H1")
        outcome = submit(*prove(scholar, challenge), challenge)

        with pytest.raises(IllegalTransitionError):
            core.override_status(outcome.proof_id, "verified", admin_id="A1", reason="x")

    def test_override_unknown_record(self, core):
        with pytest.raises(RecordNotFoundError):
            core.override_status("missing", "rejected", admin_id="A1", reason="x")


class TestReadModels:
    def test_records_for_scholar_newest_first(self, core, scholar, prove, submit, clock):
        first = core.issue_challenge("H1")
        first_outcome = submit(*prove(scholar, first), first)
        clock.advance(hours=8)
        second = core.issue_challenge("H1")
        second_outcome = submit(*prove(scholar, second, "check-out"), second, "check-out")

        records = core.records_for_scholar("S1")
        assert [r.proof_id for r in records] == [second_outcome.proof_id, first_outcome.proof_id]

        since = core.records_for_scholar("S1", since=clock())
        assert [r.proof_id for r in since] == [second_outcome.proof_id]

    def test_records_for_organization_by_status(self, core, scholar, prove, submit):
        challenge = core.issue_challenge("H1")
        proof, public_inputs = prove(scholar, challenge)
        submit(proof, public_inputs, challenge)
        submit(proof, public_inputs, challenge)

        assert len(core.records_for_organization("H1")) == 2
        assert len(core.records_for_organization("H1", "verified")) == 1
        assert len(core.records_for_organization("H1", AttendanceStatus.REJECTED)) == 1
        assert core.records_for_organization("H2") == []

    def test_record_serialization(self, core, scholar, prove, submit):
        challenge = core.issue_challenge("H1")
        outcome = submit(*prove(scholar, challenge), challenge)

        data = core.get_record(outcome.proof_id).to_dict()
        assert data["status"] == "verified"
        assert data["attendance_type"] == "check-in"
        assert data["error_kind"] is None

"""Tests for the commitment engine and the commitment group."""

import secrets
from datetime import datetime, timezone

import pytest

from pramaan.commitment import (
    attendance_window_key,
    commit,
    commit_and_nullify,
    commitment_digest,
    derive_nullifier,
    derive_session_nullifier,
    open_commitment,
    template_tag,
)
from pramaan.data_models import AttendanceType
from pramaan.exceptions import InvalidInputError
from pramaan.group import DEFAULT_GROUP, expand_hash

from conftest import make_salt, make_template_hash


TEMPLATE = make_template_hash("alice")
SALT = make_salt("alice")


class TestCommit:
    def test_deterministic(self):
        assert commit(TEMPLATE, SALT) == commit(TEMPLATE, SALT)

    def test_value_is_digest_of_point(self):
        commitment = commit(TEMPLATE, SALT)
        assert len(commitment.value) == 32
        assert commitment.value == commitment_digest(commitment.point)
        assert DEFAULT_GROUP.is_element(commitment.point)

    def test_salt_changes_commitment(self):
        assert commit(TEMPLATE, SALT).value != commit(TEMPLATE, make_salt("other")).value

    def test_template_changes_commitment(self):
        assert commit(TEMPLATE, SALT).value != commit(make_template_hash("bob"), SALT).value

    def test_no_collisions_across_random_inputs(self):
        values = {
            commit(secrets.token_bytes(32), secrets.token_bytes(32)).value for _ in range(100)
        }
        assert len(values) == 100

    def test_opening_matches_commitment(self):
        opening = open_commitment(TEMPLATE, SALT)
        assert DEFAULT_GROUP.commit(opening.message, opening.blinding) == opening.point
        assert commit(TEMPLATE, SALT).point == opening.point

    @pytest.mark.parametrize("template_hash", [b"", bytes(31), bytes(33), "00" * 32])
    def test_rejects_malformed_template_hash(self, template_hash):
        with pytest.raises(InvalidInputError) as exc_info:
            commit(template_hash, SALT)
        assert exc_info.value.context["field"] == "template_hash"

    def test_rejects_short_salt(self):
        with pytest.raises(InvalidInputError) as exc_info:
            commit(TEMPLATE, bytes(31))
        assert exc_info.value.context["field"] == "salt"

    def test_min_salt_is_configurable(self):
        commit(TEMPLATE, bytes(range(16)), min_salt_bytes=16)


class TestNullifiers:
    def test_nullifier_deterministic(self):
        assert derive_nullifier("S1", SALT) == derive_nullifier("S1", SALT)

    def test_nullifier_depends_on_scholar_and_salt(self):
        base = derive_nullifier("S1", SALT)
        assert base != derive_nullifier("S2", SALT)
        assert base != derive_nullifier("S1", make_salt("fresh"))

    def test_nullifier_rejects_empty_scholar(self):
        with pytest.raises(InvalidInputError):
            derive_nullifier("", SALT)

    def test_commit_and_nullify(self):
        commitment, nullifier = commit_and_nullify("S1", TEMPLATE, SALT)
        assert commitment == commit(TEMPLATE, SALT)
        assert nullifier == derive_nullifier("S1", SALT)

    def test_window_key_format(self):
        issued_at = datetime(2026, 1, 5, 23, 59, 59, tzinfo=timezone.utc)
        key = attendance_window_key("H1", issued_at, AttendanceType.CHECK_IN)
        assert key == "H1|2026-01-05|check-in"

    def test_session_nullifier_per_window(self):
        nullifier = derive_nullifier("S1", SALT)
        day = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        next_day = datetime(2026, 1, 6, 9, 0, tzinfo=timezone.utc)

        check_in = derive_session_nullifier(
            nullifier, attendance_window_key("H1", day, "check-in")
        )
        assert check_in == derive_session_nullifier(
            nullifier, attendance_window_key("H1", day, "check-in")
        )
        assert check_in != derive_session_nullifier(
            nullifier, attendance_window_key("H1", day, "check-out")
        )
        assert check_in != derive_session_nullifier(
            nullifier, attendance_window_key("H1", next_day, "check-in")
        )
        assert check_in != derive_session_nullifier(
            nullifier, attendance_window_key("H2", day, "check-in")
        )
        assert check_in != nullifier.value


class TestTemplateTag:
    def test_independent_of_salt(self):
        assert template_tag(TEMPLATE, "face", b"k" * 16) == template_tag(TEMPLATE, "face", b"k" * 16)

    def test_keyed_by_pepper_and_type(self):
        tag = template_tag(TEMPLATE, "face", b"k" * 16)
        assert tag != template_tag(TEMPLATE, "face", b"j" * 16)
        assert tag != template_tag(TEMPLATE, "fingerprint", b"k" * 16)

    def test_rejects_unknown_type(self):
        with pytest.raises(InvalidInputError):
            template_tag(TEMPLATE, "gait", b"k" * 16)


class TestGroup:
    def test_generators_in_subgroup(self):
        assert DEFAULT_GROUP.is_element(DEFAULT_GROUP.g)
        assert DEFAULT_GROUP.is_element(DEFAULT_GROUP.h)
        assert DEFAULT_GROUP.g != DEFAULT_GROUP.h

    def test_non_residue_rejected(self):
        # p - 1 is -1, a non-residue modulo a safe prime
        assert not DEFAULT_GROUP.is_element(DEFAULT_GROUP.p - 1)
        assert not DEFAULT_GROUP.is_element(1)
        assert not DEFAULT_GROUP.is_element(DEFAULT_GROUP.p)

    def test_decode_element(self):
        encoded = DEFAULT_GROUP.encode_element(DEFAULT_GROUP.h)
        assert DEFAULT_GROUP.decode_element(encoded) == DEFAULT_GROUP.h

        with pytest.raises(InvalidInputError):
            DEFAULT_GROUP.decode_element(encoded[1:])
        with pytest.raises(InvalidInputError):
            DEFAULT_GROUP.decode_element(DEFAULT_GROUP.encode_element(DEFAULT_GROUP.p - 1))

    def test_hash_to_scalar_in_range(self):
        for i in range(20):
            assert DEFAULT_GROUP.is_scalar(DEFAULT_GROUP.hash_to_scalar(bytes([i])))

    def test_expand_hash_is_length_prefixed(self):
        assert expand_hash(b"ab", b"c") != expand_hash(b"a", b"bc")
        assert len(expand_hash(b"x", length=64)) == 64

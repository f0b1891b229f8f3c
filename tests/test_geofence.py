"""Tests for geofence evaluation and geofenced attendance challenges."""

import pytest

from pramaan.data_models import AttendanceStatus, Geofence, Location
from pramaan.exceptions import ErrorKind, InvalidInputError, LocationRejectedError
from pramaan.geofence import (
    evaluate_location,
    geofence_token,
    haversine_distance_m,
    point_in_polygon,
    require_inside,
)
from pramaan.security_log import LOCATION_SPOOFING_DETECTED

CAMPUS = Geofence(latitude=12.9716, longitude=77.5946, radius_m=200.0)
SQUARE = ((12.970, 77.593), (12.970, 77.596), (12.973, 77.596), (12.973, 77.593))


class TestDistance:
    def test_zero_distance(self):
        assert haversine_distance_m(12.9716, 77.5946, 12.9716, 77.5946) == 0.0

    def test_one_degree_of_latitude(self):
        assert haversine_distance_m(0.0, 0.0, 1.0, 0.0) == pytest.approx(111_195, rel=1e-3)

    def test_symmetric(self):
        forward = haversine_distance_m(12.97, 77.59, 13.0, 77.6)
        backward = haversine_distance_m(13.0, 77.6, 12.97, 77.59)
        assert forward == pytest.approx(backward)


class TestPolygon:
    def test_inside(self):
        assert point_in_polygon(12.9716, 77.5946, SQUARE)

    def test_outside(self):
        assert not point_in_polygon(12.975, 77.5946, SQUARE)
        assert not point_in_polygon(12.9716, 77.590, SQUARE)


class TestEvaluateLocation:
    def test_accepts_inside(self):
        check = evaluate_location(CAMPUS, Location(12.9717, 77.5947, 10.0))
        assert check.accepted
        assert check.reason is None
        assert check.distance_m < 50

    def test_rejects_outside_radius(self):
        check = evaluate_location(CAMPUS, Location(12.99, 77.5946, 10.0))
        assert not check.accepted
        assert check.reason == "outside_radius"

    def test_rejects_poor_accuracy(self):
        check = evaluate_location(CAMPUS, Location(12.9716, 77.5946, 500.0))
        assert check.reason == "gps_accuracy_too_low"

    def test_polygon_tightens_circle(self):
        fenced = Geofence(12.9716, 77.5946, 1000.0, polygon=SQUARE)
        check = evaluate_location(fenced, Location(12.9716, 77.5990, 5.0))
        assert check.reason == "outside_polygon"

    def test_require_inside_missing_location(self):
        with pytest.raises(LocationRejectedError) as exc_info:
            require_inside(CAMPUS, None)
        assert exc_info.value.context["reason"] == "location_missing"


class TestGeofenceModel:
    def test_token_distinguishes_geofences(self):
        assert geofence_token(CAMPUS) == geofence_token(Geofence(12.9716, 77.5946, 200.0))
        assert geofence_token(CAMPUS) != geofence_token(Geofence(12.9716, 77.5946, 201.0))
        assert geofence_token(CAMPUS) != geofence_token(None)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"latitude": 95.0, "longitude": 0.0, "radius_m": 10.0},
            {"latitude": 0.0, "longitude": 0.0, "radius_m": 0.0},
            {"latitude": 0.0, "longitude": 0.0, "radius_m": 10.0, "polygon": ((0, 0), (1, 1))},
        ],
    )
    def test_invalid_geofence(self, kwargs):
        with pytest.raises(InvalidInputError):
            Geofence(**kwargs)


class TestGeofencedAttendance:
    def test_inside_geofence_verified(self, core, enroll, prove, submit):
        scholar = enroll("S1")
        challenge = core.issue_challenge("H1", geofence=CAMPUS)
        location = Location(12.9717, 77.5947, 10.0)

        proof, public_inputs = prove(scholar, challenge, location=location)
        outcome = submit(proof, public_inputs, challenge, location=location)

        assert outcome.status is AttendanceStatus.VERIFIED

    def test_geofence_dict_gets_default_accuracy(self, core, config):
        challenge = core.issue_challenge(
            "H1", geofence={"latitude": 12.9716, "longitude": 77.5946, "radius_m": 200.0}
        )
        assert challenge.geofence.max_accuracy_m == config.geofence_max_accuracy_m
        assert core.challenges.load(challenge.challenge_id).grant == challenge

    def test_outside_geofence_rejected(self, core, enroll, prove, submit, security_sink):
        scholar = enroll("S1")
        challenge = core.issue_challenge("H1", geofence=CAMPUS)
        location = Location(13.05, 77.5946, 10.0)

        proof, public_inputs = prove(scholar, challenge, location=location)
        outcome = submit(proof, public_inputs, challenge, location=location)

        assert outcome.status is AttendanceStatus.REJECTED
        assert outcome.error_kind is ErrorKind.LOCATION_REJECTED
        events = security_sink.of_type(LOCATION_SPOOFING_DETECTED)
        assert len(events) == 1
        assert events[0].organization_id == "H1"

    def test_missing_location_rejected(self, core, enroll, prove, submit):
        scholar = enroll("S1")
        challenge = core.issue_challenge("H1", geofence=CAMPUS)

        outcome = submit(*prove(scholar, challenge), challenge)
        assert outcome.error_kind is ErrorKind.LOCATION_REJECTED

    def test_reported_location_must_match_proven(self, core, enroll, prove, submit):
        scholar = enroll("S1")
        challenge = core.issue_challenge("H1", geofence=CAMPUS)
        proven = Location(13.05, 77.5946, 10.0)

        proof, public_inputs = prove(scholar, challenge, location=proven)
        outcome = submit(
            proof, public_inputs, challenge, location=Location(12.9717, 77.5947, 10.0)
        )
        assert outcome.error_kind is ErrorKind.INVALID_PROOF

    def test_invalid_ttl(self, core):
        with pytest.raises(InvalidInputError):
            core.issue_challenge("H1", ttl_seconds=0)
        with pytest.raises(InvalidInputError):
            core.issue_challenge("H1", ttl_seconds=7200)
        with pytest.raises(InvalidInputError):
            core.issue_challenge("")

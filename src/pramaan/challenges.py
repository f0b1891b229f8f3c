"""
Challenge issuance for attendance proofs.

Every check-in or check-out starts with a server-issued challenge: a random
nonce with a short time-to-live, optionally bound to a geofence. A challenge
is retired by the first proof that verifies against it.
"""

import json
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Union

import structlog

from .config import ProtocolConfig
from .constants import CHALLENGE_NONCE_LENGTH, MAX_CHALLENGE_TTL_SECONDS
from .data_models import ChallengeGrant, Geofence, require_identifier
from .exceptions import InvalidInputError
from .geofence import geofence_token
from .storage import ChallengeRow, Database
from .utils import Clock, generate_id, short_digest, utc_now

# Initialize structured logger
logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ChallengeState:
    """Stored challenge together with its consumption marker."""

    grant: ChallengeGrant
    consumed_at: Optional[datetime] = None
    consumed_by: Optional[str] = None

    @property
    def is_consumed(self) -> bool:
        return self.consumed_at is not None


def _row_to_state(row: ChallengeRow) -> ChallengeState:
    geofence = Geofence.from_dict(json.loads(row.geofence_json)) if row.geofence_json else None
    grant = ChallengeGrant(
        challenge_id=row.id,
        organization_id=row.organization_id,
        nonce=bytes.fromhex(row.nonce),
        issued_at=row.issued_at,
        ttl_seconds=row.ttl_seconds,
        geofence=geofence,
        geofence_token=bytes.fromhex(row.geofence_token),
    )
    return ChallengeState(grant=grant, consumed_at=row.consumed_at, consumed_by=row.consumed_by)


class ChallengeService:
    """
    Issues and loads single-use attendance challenges.

    Parameters
    ----------
    database : Database
        Backing store.
    config : ProtocolConfig
        Supplies the default TTL and geofence accuracy limit.
    clock : Clock, default=utc_now
        Source of issuance timestamps.
    """

    def __init__(self, database: Database, config: ProtocolConfig, clock: Clock = utc_now) -> None:
        self.database = database
        self.config = config
        self.clock = clock

    def _resolve_geofence(
        self, geofence: Union[Geofence, Dict[str, Any], None]
    ) -> Optional[Geofence]:
        if geofence is None or isinstance(geofence, Geofence):
            return geofence
        if not isinstance(geofence, dict):
            raise InvalidInputError("geofence must be an object", field="geofence")
        data = dict(geofence)
        data.setdefault("max_accuracy_m", self.config.geofence_max_accuracy_m)
        try:
            return Geofence.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInputError(f"Malformed geofence: {e}", field="geofence")

    def issue_challenge(
        self,
        organization_id: str,
        geofence: Union[Geofence, Dict[str, Any], None] = None,
        ttl_seconds: Optional[int] = None,
    ) -> ChallengeGrant:
        """
        Issue a fresh challenge.

        Parameters
        ----------
        organization_id : str
            Organization the attendance is recorded for.
        geofence : Geofence or dict, optional
            Permitted area; dicts missing ``max_accuracy_m`` get the
            configured default.
        ttl_seconds : int, optional
            Lifetime override. Defaults to the configured TTL.

        Returns
        -------
        ChallengeGrant
            The persisted challenge.

        Raises
        ------
        InvalidInputError
            If the organization id, geofence or TTL is invalid.
        """
        organization_id = require_identifier(organization_id, "organization_id")
        ttl = self.config.challenge_ttl_seconds if ttl_seconds is None else ttl_seconds
        if isinstance(ttl, bool) or not isinstance(ttl, int) or not 1 <= ttl <= MAX_CHALLENGE_TTL_SECONDS:
            raise InvalidInputError(
                f"ttl_seconds must be an integer within 1..{MAX_CHALLENGE_TTL_SECONDS}",
                field="ttl_seconds",
            )
        resolved_geofence = self._resolve_geofence(geofence)

        # Whole seconds so the issue time travels as an integer in public inputs
        issued_at = self.clock().replace(microsecond=0)

        grant = ChallengeGrant(
            challenge_id=generate_id(),
            organization_id=organization_id,
            nonce=secrets.token_bytes(CHALLENGE_NONCE_LENGTH),
            issued_at=issued_at,
            ttl_seconds=ttl,
            geofence=resolved_geofence,
            geofence_token=geofence_token(resolved_geofence),
        )

        with self.database.transaction() as session:
            session.add(
                ChallengeRow(
                    id=grant.challenge_id,
                    organization_id=organization_id,
                    nonce=grant.nonce.hex(),
                    issued_at=grant.issued_at,
                    expires_at=grant.expires_at,
                    ttl_seconds=ttl,
                    geofence_json=(
                        json.dumps(resolved_geofence.to_dict()) if resolved_geofence else None
                    ),
                    geofence_token=grant.geofence_token.hex(),
                )
            )

        logger.info(
            "Challenge issued",
            challenge_id=grant.challenge_id,
            organization_id=organization_id,
            ttl_seconds=ttl,
            geofenced=resolved_geofence is not None,
            geofence_token_prefix=short_digest(grant.geofence_token),
        )
        return grant

    def load(self, challenge_id: str) -> Optional[ChallengeState]:
        """Fetch a challenge and its consumption state."""
        with self.database.session() as session:
            row = session.get(ChallengeRow, challenge_id)
            return _row_to_state(row) if row is not None else None

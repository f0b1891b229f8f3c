"""
Security event auditing for the Pramaan core.

Duplicate enrollments, replays, invalid proofs, commitment mismatches and
location rejections are always reported to the security-log store, as are
registrations, revocations and administrative overrides. Reporting is best
effort: a failing sink is logged and never aborts the protocol step that
raised the event.

Event details are scrubbed of biometric material before emission.
"""

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import structlog

from .constants import SECURITY_SEVERITIES
from .data_models import SecurityEvent
from .exceptions import ErrorKind
from .utils import Clock, utc_now

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Event types
DUPLICATE_BIOMETRIC_ATTEMPT = "DUPLICATE_BIOMETRIC_ATTEMPT"
REPLAY_DETECTED = "REPLAY_DETECTED"
INVALID_PROOF = "INVALID_PROOF"
BIOMETRIC_MISMATCH = "BIOMETRIC_MISMATCH"
LOCATION_SPOOFING_DETECTED = "LOCATION_SPOOFING_DETECTED"
BIOMETRIC_REGISTRATION = "BIOMETRIC_REGISTRATION"
BIOMETRIC_REVOCATION = "BIOMETRIC_REVOCATION"
ADMIN_OVERRIDE = "ADMIN_OVERRIDE"

EVENT_SEVERITIES: Dict[str, str] = {
    DUPLICATE_BIOMETRIC_ATTEMPT: "high",
    REPLAY_DETECTED: "critical",
    INVALID_PROOF: "high",
    BIOMETRIC_MISMATCH: "high",
    LOCATION_SPOOFING_DETECTED: "warning",
    BIOMETRIC_REGISTRATION: "info",
    BIOMETRIC_REVOCATION: "info",
    ADMIN_OVERRIDE: "warning",
}

# Protocol outcomes that must always reach the security log
ERROR_EVENTS: Dict[ErrorKind, str] = {
    ErrorKind.DUPLICATE_BIOMETRIC: DUPLICATE_BIOMETRIC_ATTEMPT,
    ErrorKind.REPLAY_DETECTED: REPLAY_DETECTED,
    ErrorKind.INVALID_PROOF: INVALID_PROOF,
    ErrorKind.COMMITMENT_MISMATCH: BIOMETRIC_MISMATCH,
    ErrorKind.LOCATION_REJECTED: LOCATION_SPOOFING_DETECTED,
}

_FORBIDDEN_DETAIL_KEYS = frozenset(
    {"template", "template_hash", "secret_template", "salt", "feature_vector", "s1", "s2", "t"}
)


class SecuritySink(Protocol):
    def emit(self, event: SecurityEvent) -> None:
        ...


class StructlogSecuritySink:
    """Writes events as structured log lines on a dedicated logger."""

    _LEVELS = {"info": "info", "warning": "warning", "high": "error", "critical": "critical"}

    def __init__(self, logger_name: str = "pramaan.security") -> None:
        self._logger = structlog.get_logger(logger_name)

    def emit(self, event: SecurityEvent) -> None:
        log = getattr(self._logger, self._LEVELS.get(event.severity, "warning"))
        log(
            "Security event",
            security_event=event.event_type,
            severity=event.severity,
            organization_id=event.organization_id,
            scholar_id=event.scholar_id,
            details=event.details,
        )


class JsonLinesSecuritySink:
    """
    Append-only JSON Lines file of security events.

    Parameters
    ----------
    path : Path
        Output file. Parent directories are created on first use.

    Examples
    --------
    >>> sink = JsonLinesSecuritySink(Path("./logs/security_events.jsonl"))
    >>> sink.emit(event)
    >>> sink.read_events()[-1]["type"]
    'REPLAY_DETECTED'
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

        logger.info("JsonLinesSecuritySink initialized", path=str(self.path))

    def emit(self, event: SecurityEvent) -> None:
        line = json.dumps(event.to_dict(), default=str, ensure_ascii=False, sort_keys=True)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read_events(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]


class InMemorySecuritySink:
    """Collects events in memory. Used by tests and local tooling."""

    def __init__(self) -> None:
        self.events: List[SecurityEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: SecurityEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> List[SecurityEvent]:
        with self._lock:
            return [event for event in self.events if event.event_type == event_type]


class CompositeSecuritySink:
    """Fans events out to several sinks; one failing sink does not block the rest."""

    def __init__(self, *sinks: SecuritySink) -> None:
        self.sinks = list(sinks)

    def emit(self, event: SecurityEvent) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception as e:
                logger.error(
                    "Security sink failed",
                    sink=type(sink).__name__,
                    security_event=event.event_type,
                    error=str(e),
                    error_type=type(e).__name__,
                )


class SecurityAuditor:
    """
    Builds security events and hands them to a sink.

    Parameters
    ----------
    sink : SecuritySink
        Destination of events.
    clock : Clock, default=utc_now
        Source of event timestamps.
    """

    def __init__(self, sink: SecuritySink, clock: Clock = utc_now) -> None:
        self.sink = sink
        self.clock = clock

    @staticmethod
    def _scrub(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not details:
            return {}
        dropped = sorted(key for key in details if key in _FORBIDDEN_DETAIL_KEYS)
        if dropped:
            logger.warning("Sensitive fields removed from security event", fields=dropped)
        return {key: value for key, value in details.items() if key not in _FORBIDDEN_DETAIL_KEYS}

    def record(
        self,
        event_type: str,
        *,
        organization_id: Optional[str],
        scholar_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ) -> SecurityEvent:
        """
        Emit one security event.

        Returns
        -------
        SecurityEvent
            The event as handed to the sink, whether or not emission
            succeeded.
        """
        severity = severity or EVENT_SEVERITIES.get(event_type, "warning")
        if severity not in SECURITY_SEVERITIES:
            raise ValueError(f"severity must be one of {SECURITY_SEVERITIES}")

        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            organization_id=organization_id,
            scholar_id=scholar_id,
            details=self._scrub(details),
            timestamp=self.clock(),
        )

        try:
            self.sink.emit(event)
        except Exception as e:
            logger.error(
                "Security event emission failed",
                security_event=event_type,
                error=str(e),
                error_type=type(e).__name__,
            )

        return event

    def record_failure(
        self,
        error_kind: ErrorKind,
        *,
        organization_id: Optional[str],
        scholar_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        """Emit the event mandated for a protocol failure, if there is one."""
        event_type = ERROR_EVENTS.get(error_kind)
        if event_type is None:
            return None
        merged = {"error_kind": error_kind.value}
        merged.update(details or {})
        return self.record(
            event_type,
            organization_id=organization_id,
            scholar_id=scholar_id,
            details=merged,
        )


def build_security_sink(path: Optional[Path] = None) -> SecuritySink:
    """Default sink: structured log lines, plus a JSON Lines file when a path is set."""
    sinks: List[SecuritySink] = [StructlogSecuritySink()]
    if path is not None:
        sinks.append(JsonLinesSecuritySink(path))
    return CompositeSecuritySink(*sinks)

"""Observer hooks for token lifecycle events."""

from __future__ import annotations

from typing import Protocol

from prometheus_client import Counter, Histogram


TOKENS_ISSUED = Counter(
    "contentforge_refresh_tokens_issued_total",
    "Refresh tokens issued",
    ["kind"],
)
CREDENTIALS_REJECTED = Counter(
    "contentforge_credentials_rejected_total",
    "Refresh credentials rejected, by internal reason",
    ["reason"],
)
TAMPERING_DETECTED = Counter(
    "contentforge_token_tampering_detected_total",
    "Hash matched but signature verification failed",
)
TOKENS_REVOKED = Counter(
    "contentforge_refresh_tokens_revoked_total",
    "Refresh tokens revoked",
    ["scope", "reason"],
)
AUTHORITY_UNAVAILABLE = Counter(
    "contentforge_token_authority_unavailable_total",
    "Token operations that failed on infrastructure errors",
    ["operation"],
)
SESSION_RISK = Histogram(
    "contentforge_session_risk_score",
    "Risk score computed on refresh token rotation",
    buckets=(0, 20, 40, 60, 80, 100),
)


class TokenObserver(Protocol):
    """Receives token lifecycle events; must never raise into the caller."""

    def token_issued(self, user_id: str, rotated: bool) -> None: ...

    def credential_rejected(self, reason: str) -> None: ...

    def tampering_detected(self, user_id: str) -> None: ...

    def tokens_revoked(self, scope: str, reason: str, count: int) -> None: ...

    def authority_unavailable(self, operation: str) -> None: ...

    def session_risk(self, score: int) -> None: ...


class NullTokenObserver:
    def token_issued(self, user_id: str, rotated: bool) -> None:
        pass

    def credential_rejected(self, reason: str) -> None:
        pass

    def tampering_detected(self, user_id: str) -> None:
        pass

    def tokens_revoked(self, scope: str, reason: str, count: int) -> None:
        pass

    def authority_unavailable(self, operation: str) -> None:
        pass

    def session_risk(self, score: int) -> None:
        pass


class PrometheusTokenObserver:
    """Default observer backed by prometheus_client metrics."""

    def token_issued(self, user_id: str, rotated: bool) -> None:
        TOKENS_ISSUED.labels("rotation" if rotated else "initial").inc()

    def credential_rejected(self, reason: str) -> None:
        CREDENTIALS_REJECTED.labels(reason).inc()

    def tampering_detected(self, user_id: str) -> None:
        TAMPERING_DETECTED.inc()

    def tokens_revoked(self, scope: str, reason: str, count: int) -> None:
        if count > 0:
            TOKENS_REVOKED.labels(scope, reason).inc(count)

    def authority_unavailable(self, operation: str) -> None:
        AUTHORITY_UNAVAILABLE.labels(operation).inc()

    def session_risk(self, score: int) -> None:
        SESSION_RISK.observe(score)


class RecordingTokenObserver(NullTokenObserver):
    """Keeps events in memory; used by tests and local debugging."""

    def __init__(self) -> None:
        self.events: list = []

    def token_issued(self, user_id: str, rotated: bool) -> None:
        self.events.append(("token_issued", user_id, rotated))

    def credential_rejected(self, reason: str) -> None:
        self.events.append(("credential_rejected", reason))

    def tampering_detected(self, user_id: str) -> None:
        self.events.append(("tampering_detected", user_id))

    def tokens_revoked(self, scope: str, reason: str, count: int) -> None:
        self.events.append(("tokens_revoked", scope, reason, count))

    def authority_unavailable(self, operation: str) -> None:
        self.events.append(("authority_unavailable", operation))

    def session_risk(self, score: int) -> None:
        self.events.append(("session_risk", score))

    def reasons(self) -> list:
        return [event[1] for event in self.events if event[0] == "credential_rejected"]

"""Prometheus counters describing rate limiter decisions."""

from __future__ import annotations

from prometheus_client import Counter

IMPERSONATION_CHECKS = Counter(
    "impersonation_rate_limit_checks_total",
    "Impersonation rate limit evaluations grouped by outcome",
    labelnames=("outcome",),
)
IMPERSONATION_STARTS = Counter(
    "impersonation_session_starts_total",
    "Impersonation start attempts grouped by status",
    labelnames=("status",),
)
SESSION_TERMINATIONS = Counter(
    "impersonation_session_terminations_total",
    "Impersonation sessions removed from the active set grouped by outcome",
    labelnames=("outcome",),
)
RATE_LIMIT_VIOLATIONS = Counter(
    "impersonation_rate_limit_violations_total",
    "Recorded rate limit violations grouped by type",
    labelnames=("violation_type",),
)

"""Health subsystem: probe, certificate inspection, evaluation, fleet scan."""

from .engine import (
    CertificateFailure,
    CertificateResult,
    HealthReport,
    HealthStatus,
    ProbeFailure,
    ProbeResult,
    evaluate,
    inspect_certificate,
    probe,
)

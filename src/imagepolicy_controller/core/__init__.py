"""Core — domain models, protocols, and reconciliation services.

Contains:
- models.py      — ImagePolicy resource and status models
- interfaces.py  — Protocols for registry, transparency log, cluster, audit
- images.py      — Image reference matching and digest pinning
- selectors.py   — Label selector rendering
- backoff.py     — Linear-backoff retry helper
- attestation.py — Attestation verifier
- conditions.py  — Condition merge and compliance aggregation
- services.py    — Digest resolver, scanner, analyzer, remediation actuator
- reconciler.py  — ReconciliationService (one cycle per call)
"""

__all__: list[str] = []

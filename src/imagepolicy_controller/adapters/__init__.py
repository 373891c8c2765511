"""Adapters — external integrations for the controller.

Contains:
- registry_client.py — Registry token exchange and manifest digest lookup
- rekor_client.py    — Rekor transparency-log search
- kubernetes.py      — Kubernetes REST client (policies, deployments, events)
- audit_recorder.py  — Audit signals as Kubernetes Events
"""

__all__: list[str] = []

"""HTTP API — probes and the policy status/trigger routes."""

__all__: list[str] = []

"""imagepolicy-controller: continuous compliance for ImagePolicy resources.

Keeps Deployments pinned to the latest published digest of a repository,
verifies their attestations against a transparency log, and optionally
rewrites opted-in workloads to the latest digest.
"""

__version__ = "0.1.0"

"""
Documents module: the lifecycle and version-integrity engine.

- Fixed state machine: draft -> pending_approval -> approved -> issued -> superseded
- Issued and superseded versions are immutable; revising forks a new draft
- Issue is gated by the readiness validator, evaluated server-side at transition time
- Every transition is recorded to the append-only audit trail
"""

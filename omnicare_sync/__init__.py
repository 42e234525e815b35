"""OmniCare offline synchronization core.

Encrypted offline storage, a retry/backoff queue, conflict resolution and a
sync engine reconciling local FHIR edits against a remote FHIR server.
"""

__version__ = "0.1.0"

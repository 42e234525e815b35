"""OmniCare Offline Sync Test Suite.

Medical-compliant testing for offline PHI handling

This test suite enforces:
- Encryption of all offline PHI at rest
- Complete audit trails for offline data access
- No silently dropped clinical edits
"""

__version__ = "0.1.0"
__compliance__ = {
    "hipaa": "2024",
    "encryption": "AES-256-GCM",
}

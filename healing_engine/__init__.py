"""
Self-Healing Engine Service
===========================

Closed-loop remediation for organizational anomalies:
- Detect: turn activity signals into typed patterns
- Gate: admit actions through an ordered battery of safety checks
- Execute: run remediation executors with audit and rollback guarantees
- Escalate: route untrusted actions through human approval
- Learn: feed outcomes back into pattern-to-action weights
"""

"""
Escalation Module
=================

Bounded Context for the ticket lifecycle and rule-driven escalation.

Responsibilities:
- Enforce the ticket state machine for staff and automatic actions
- Derive SLA deadlines from the priority -> duration policy
- Evaluate escalation rules on a fixed tick, once per reference time
- Apply rule actions atomically and keep an append-only escalation log
- Hand notification requests to the dispatcher after each commit
- Serve escalation history, range queries and statistics
"""

__version__ = "1.0.0"

"""Collections Escalation Sequencer

Drives overdue patient balances through a fixed, time-based escalation:
- Starts a sequence when a balance crosses the practice minimum
- Advances statement, SMS, email, phone, final notice and agency steps on schedule
- Applies payments and terminates sequences paid in full
- Supports operator pause, resume, manual escalation and re-open
"""

__version__ = "1.0.0"

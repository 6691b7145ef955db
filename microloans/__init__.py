"""
Micro-Loan Back Office

Loan underwriting math, the loan lifecycle state machine, and the scheduled
escalation jobs that move overdue loans through grace, penalty and default.
"""

__version__ = "1.0.0"

"""
CaseFlow Engine

Workflow engine for Cases and Tickets: stage transitions, queue routing,
SLA aging and append-only history.
"""

__version__ = "1.0.0"

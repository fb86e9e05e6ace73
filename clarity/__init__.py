"""
Clarity - Expense Capture Core

The computational core of a personal finance tracker: voice and
AI-assisted expense capture, category resolution against a user-defined
taxonomy, and budget aggregation.

DESIGN PRINCIPLES:
1. Speech suggests → Human confirms → System records
2. Degrade gracefully: flag uncertain fields, never guess silently
3. Only a missing amount aborts a capture
4. Every step must be auditable
5. Storage and speech recognition are external collaborators
"""

__version__ = "1.0.0"
__author__ = "Clarity Team"

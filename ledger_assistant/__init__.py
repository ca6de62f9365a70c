"""
Ledger Assistant - Source Package

Natural-language bulk edits for personal finance records. A user types an
instruction, a language model turns it into a structured update, the user
reviews a preview, and only an explicit confirmation applies it.

DESIGN PRINCIPLES:
1. AI suggests → Human confirms → System applies
2. The model is untrusted input, never an authority
3. Every query is scoped to the authenticated user
4. A staged command is applied at most once
5. Every attempt is auditable
"""

__version__ = "1.0.0"
__author__ = "Ledger Assistant Team"

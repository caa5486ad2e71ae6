"""Core linking and course logic, independent of Slack and HTTP.

WHY: The account-linking state machine and course resolution are the
parts of the bot with real invariants (single-use states, unambiguous
course matches). Keeping them free of Slack and FastAPI makes them easy
to test and reuse from both surfaces.

HOW: linking.py drives LinkState issue/consume/complete over the store
and gateway; courses.py resolves user input to a course id; signing.py
signs modal correlation tokens; errors.py holds the domain errors.

RULES:
- No Slack or FastAPI imports in this package
- All durable state goes through CredentialStore
"""

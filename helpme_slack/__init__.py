"""HelpMe Slack bot: ask a course chatbot questions from Slack.

WHY: Students and instructors live in Slack; the HelpMe course chatbot
lives behind a web app. This package lets a Slack user link their Slack
identity to a HelpMe account once, then ask questions, pick courses and
tune chatbot settings with slash commands.

HOW: Four layers. store (durable, encrypted credentials and caches),
api (the authenticated HTTP gateway to HelpMe), core (the linking state
machine and course resolution), and the outer surfaces: slack (Bolt
command handlers) and server (FastAPI callback and health endpoints).

RULES:
- Slack identity is always (team_id, user_id)
- Backend calls only go through api.HelpMeClient
- Durable state only goes through store.CredentialStore
"""

__version__ = "0.1.0"

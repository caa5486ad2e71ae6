"""Slack surface of the HelpMe bot.

WHY: Users interact with HelpMe through slash commands, answer feedback
buttons, and a file-upload modal.

HOW: bot.py builds a slack-bolt AsyncApp and registers the handlers from
commands.py; messages.py holds the wording and Block Kit builders. The app
runs in Socket Mode or behind the FastAPI server's /slack/events route.

RULES:
- All Slack actions must be ack()'d within 3 seconds
- Handlers reach the backend only through api.HelpMeClient
"""

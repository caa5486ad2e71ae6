"""Package entry point for ``python -m helpme_slack``.

Starts the HTTP server (and, when SLACK_BOT_TOKEN is set, the Slack app)
with settings from the environment.
"""

from helpme_slack.server.app import run_server

if __name__ == "__main__":
    run_server()

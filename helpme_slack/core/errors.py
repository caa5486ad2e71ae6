"""Domain errors raised by the core and mapped to user messages by handlers.

Backend failures are the HelpMeAPIError family in api.client; these cover
everything that goes wrong on our side of the gateway.
"""

from __future__ import annotations


class HelpMeSlackError(Exception):
    """Base class for domain errors."""


class NotLinked(HelpMeSlackError):
    """The Slack user has no stored HelpMe link (or no usable token)."""


class InvalidInput(HelpMeSlackError):
    """Command arguments could not be understood.

    The message is shown to the user, so it should say what to type.
    """


class StateExpiredOrConsumed(HelpMeSlackError):
    """A link state was never issued, already used, or expired."""


class Unauthorized(HelpMeSlackError):
    """A caller presented a missing or wrong shared secret or signature."""


class FileUnavailable(HelpMeSlackError):
    """An uploaded Slack file could not be downloaded or is not supported."""

"""
Exception hierarchy for the trading agent.

Errors fall into four groups which callers handle differently:

* transient I/O (``TransientExchangeError``) — logged, retried after a delay;
* protocol / auth (``ExchangeAuthError``, ``ExchangeProtocolError``) — logged
  distinctly because retrying without a fix is futile, but still retried;
* startup / configuration (``ConfigError``, ``StoreCorruptError``,
  ``StartupError``) — fatal before the trading loop starts;
* store commits (``StoreCommitError``) — previous snapshot kept, retried.
"""


class NapaError(Exception):
    """Base class for every error raised by the agent."""


class ExchangeError(NapaError):
    """Any failure talking to the exchange."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientExchangeError(ExchangeError):
    """Timeouts, connection resets, rate limits and 5xx responses."""


class ExchangeAuthError(ExchangeError):
    """The exchange rejected our credentials or request signature."""


class ExchangeProtocolError(ExchangeError):
    """The exchange answered with something we cannot interpret."""


class ConfigError(NapaError):
    """Settings or credentials are missing or malformed."""


class StoreError(NapaError):
    """Base class for durable store failures."""


class StoreCommitError(StoreError):
    """A commit failed before the new snapshot became visible."""


class StoreCorruptError(StoreError):
    """Neither the primary nor the backup snapshot could be read."""


class StartupError(NapaError):
    """Initialization failed; the agent must not trade."""

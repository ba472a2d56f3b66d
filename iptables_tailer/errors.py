"""Exception types shared across the tailer pipeline."""


class TailerError(Exception):
    """Base class for all tailer errors."""


class ConfigError(TailerError):
    """Required configuration is missing or invalid. Fatal at startup."""


class ParseError(TailerError):
    """A packet drop log line could not be turned into a PacketDrop."""


class RotationCheckError(TailerError):
    """The fingerprint of the watched file could not be read this cycle."""


class JournalFormatError(TailerError):
    """A journal entry lacks the fields needed to build a log line."""


class JournalOpenError(TailerError):
    """The journal could not be opened for following."""


class CacheSyncTimeoutError(TailerError):
    """The pod cache did not finish its first sync in time."""


class PermanentError(TailerError):
    """An error that retrying will not fix."""


class InvalidTargetError(PermanentError):
    """The notification target cannot be referenced by the event sink."""

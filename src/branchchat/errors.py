"""Exception taxonomy shared by the store, the coordinator and the session."""


class BranchchatError(Exception):
    """Base class for every error raised by branchchat."""


class ConfigurationError(BranchchatError):
    """A required setting, such as the API credential, is missing."""


class InvalidOperationError(BranchchatError):
    """The requested tree operation does not apply to the given message."""


class TransportError(BranchchatError):
    """The streaming request failed on the network or at the endpoint."""


class StreamTimeoutError(TransportError):
    """The stream exceeded its wall-clock budget."""


class GenerationAborted(BranchchatError):
    """The user stopped the generation. Not a failure."""


class PersistenceError(BranchchatError):
    """The durable store could not be read or written."""

"""Exceptions raised by the transfer protocol."""


class TransferError(Exception):
    """Base class for every transfer failure."""


class InvalidBatch(TransferError):
    """A batch could not be proposed or decided; nothing was sent."""


class ChannelError(TransferError):
    """The underlying channel failed or was closed."""


class ReadError(TransferError):
    """A local file source could not be read."""


class WriteError(TransferError):
    """A received file could not be stored."""


class ProtocolViolation(TransferError):
    """The peer sent something the protocol does not allow here."""


class IllegalTransition(TransferError):
    """The session state machine refused a transition."""

"""Exception types shared across the automation engine and its API."""


class MemberMailError(Exception):
    """Base class for errors raised by MemberMail."""


class ValidationError(MemberMailError):
    """Rejected CRUD input. The message is safe to show to the caller."""


class NotFoundError(MemberMailError):
    pass


class ConflictError(MemberMailError):
    """The request is valid but clashes with current state."""


class SignatureError(MemberMailError):
    """Webhook authenticity could not be established."""


class SendError(MemberMailError):
    pass


class TransientSendError(SendError):
    """Provider or network hiccup; the send may succeed on a later attempt."""


class PermanentSendError(SendError):
    """The send can never succeed as-is (bad recipient, validation, config)."""

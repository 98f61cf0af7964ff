"""Custom exceptions for mailmirror."""


class MailMirrorError(Exception):
    """Base exception for all mailmirror errors."""


class StorageError(MailMirrorError):
    """Exception raised when the local cache cannot be read or written."""


class RemoteError(MailMirrorError):
    """Exception raised for Gmail API related errors."""


class ConfigurationError(MailMirrorError):
    """Exception raised for configuration related errors."""


class AuthenticationError(MailMirrorError):
    """Exception raised for authentication failures."""

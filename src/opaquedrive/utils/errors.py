"""Exception classes shared by every layer of the drive."""

GENERIC_AUTH_MESSAGE = "Keys don't match this storage"


class OpaqueDriveError(Exception):
    """
    Base exception class for all drive errors.
    """
    pass


class ValidationError(OpaqueDriveError):
    """
    Raised when input or configuration is malformed.
    """
    pass


class MalformedBackup(ValidationError):
    """
    Raised when a key backup document is missing fields or holds an inconsistent key pair.
    """
    pass


class MalformedManifest(ValidationError):
    """
    Raised when a manifest decrypts but cannot be decoded or migrated.
    """
    pass


class AuthenticationFailure(OpaqueDriveError):
    """
    Raised when an authenticated-encryption tag check fails: wrong key, wrong
    password or tampered data. The default message carries no cipher details.
    """

    def __init__(self, message: str = GENERIC_AUTH_MESSAGE):
        super().__init__(message)


class WrongPassword(AuthenticationFailure):
    """
    Raised when a password-wrapped backup or share bundle cannot be opened.
    """

    def __init__(self, message: str = "Wrong password"):
        super().__init__(message)


class TagMismatch(AuthenticationFailure):
    """
    Raised when file content fails authentication.
    """

    def __init__(self, message: str = "File content failed authentication"):
        super().__init__(message)


class NotFoundError(OpaqueDriveError):
    """
    Raised when a manifest, file or folder does not exist.
    """
    pass


class BlobNotFound(NotFoundError):
    """
    Raised by a blob store when a key is absent.
    """
    pass


class StateError(OpaqueDriveError):
    """
    Raised when an operation needs an unlocked session.
    """
    pass


class TransportError(OpaqueDriveError):
    """
    Raised when the blob store fails. Never retried internally.
    """
    pass


class VersionConflict(TransportError):
    """
    Raised when a conditional write finds the remote object changed.
    """
    pass

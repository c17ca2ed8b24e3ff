"""
Centralized error hierarchy for the chat inbox.

This module provides a base exception class and the error taxonomy shared by
the stores, the merge/split engine and the sync coordinator, along with a
helper for converting errors to user-friendly messages.
"""
from typing import Union


class InboxError(Exception):
    """
    Base exception class for all chat inbox errors.

    All application-specific exceptions should inherit from this class
    to enable centralized error handling and user-friendly message mapping.
    """
    pass


class AuthRequiredError(InboxError):
    """Raised when the mail backend needs the user to sign in again."""
    pass


class TransientError(InboxError):
    """Raised when a network or server failure may succeed on a later attempt."""
    pass


class ConflictError(InboxError):
    """Raised when a change collides with existing state (e.g. duplicate member)."""
    pass


class NotFoundError(InboxError):
    """Raised when operating on a group, tab or message that no longer exists."""
    pass


class InvalidArgumentError(InboxError):
    """Raised when an operation is called with arguments it cannot accept."""
    pass


class AttachmentError(InboxError):
    """Raised when an attachment cannot be downloaded or opened."""
    pass


class CacheError(InboxError):
    """Raised when the local cache cannot be read or written."""
    pass


class DecryptionError(CacheError):
    """Raised when decryption fails due to corruption or a changed key."""
    pass


def is_recoverable(exc: BaseException) -> bool:
    """Every taxonomy member except AuthRequiredError is locally recoverable."""
    return not isinstance(exc, AuthRequiredError)


def human_friendly_message(exc: Union[InboxError, Exception]) -> str:
    """
    Convert technical error exceptions to user-friendly messages.

    This function maps error types to messages that are appropriate for a
    dismissible banner in the UI, hiding technical details while providing
    actionable information.

    Args:
        exc: The exception to convert.

    Returns:
        A user-friendly error message string.
    """
    error_msg = str(exc) if str(exc) else ""

    if isinstance(exc, InboxError):
        if isinstance(exc, AuthRequiredError):
            return (
                "Your account session has expired. Please sign in again.\n\n"
                "Automatic synchronization is paused until you re-authenticate."
            )

        elif isinstance(exc, TransientError):
            if "timeout" in error_msg.lower():
                return (
                    "Synchronization timed out. This might be due to a slow "
                    "connection or server issues. Please try again."
                )
            elif "connection" in error_msg.lower() or "connect" in error_msg.lower():
                return (
                    "Synchronization failed due to a connection problem. "
                    "Please check your internet connection and try again."
                )
            else:
                return (
                    "An error occurred while synchronizing your email. "
                    "Some messages may not have been updated. Please try "
                    "refreshing to sync again."
                )

        elif isinstance(exc, ConflictError):
            if "member" in error_msg.lower() or "address" in error_msg.lower():
                return "That address already belongs to a conversation."
            return "The change conflicts with existing data and was not applied."

        elif isinstance(exc, NotFoundError):
            if "tab" in error_msg.lower():
                return "The requested tab could not be found. It may have been deleted."
            elif "message" in error_msg.lower():
                return "The requested message could not be found."
            return "The requested conversation could not be found. It may have been deleted."

        elif isinstance(exc, InvalidArgumentError):
            if error_msg:
                return f"Invalid input: {error_msg}"
            return "Invalid input. Please check the values and try again."

        elif isinstance(exc, AttachmentError):
            return (
                "The attachment could not be downloaded. Please check your "
                "connection and the download folder, then try again."
            )

        elif isinstance(exc, DecryptionError):
            return (
                "Could not decrypt stored data. This might indicate that:\n\n"
                "• The application data has been corrupted\n"
                "• The encryption key has been lost or changed\n\n"
                "Cached messages will be downloaded again on the next sync."
            )

        elif isinstance(exc, CacheError):
            return "Could not access the local message cache. Please try again."

        else:
            if error_msg:
                return f"An error occurred: {error_msg}"
            return "An unexpected error occurred. Please try again."

    # Handle standard Python exceptions
    elif isinstance(exc, ConnectionError):
        return (
            "Could not connect to the server. Please check your internet "
            "connection and try again."
        )
    elif isinstance(exc, TimeoutError):
        return (
            "The operation timed out. This might be due to a slow connection "
            "or server issues. Please try again."
        )
    elif isinstance(exc, PermissionError):
        return (
            "Permission denied. Please check that you have the necessary "
            "permissions to perform this operation."
        )
    elif isinstance(exc, ValueError):
        return f"Invalid input: {str(exc)}"

    # Fallback for unknown exceptions
    else:
        error_msg = str(exc) if str(exc) else "Unknown error"
        return f"An error occurred: {error_msg}"

"""
hwicontrol library exceptions.

This module defines all custom exceptions used throughout the library.
"""


class HwiError(Exception):
    """Base exception for HWI protocol errors"""
    pass


class HwiConnectionError(HwiError):
    """Raised when the connection to the panel (or IPC server) fails or is lost"""
    pass


class HwiSendError(HwiError):
    """Raised when a command could not be transmitted"""
    pass


class HwiConfigurationError(HwiError):
    """Raised when a circuit record or configuration is invalid"""
    pass

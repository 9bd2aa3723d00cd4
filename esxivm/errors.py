"""Project-specific exception types."""

from __future__ import annotations


class ESXiVMError(RuntimeError):
    """Base error for domain-level esxivm failures."""


class ConfigError(ESXiVMError):
    """Raised when the configuration file is missing or invalid."""


class PreconditionError(ESXiVMError):
    """Raised before any work starts when a global precondition is violated."""


class UnreachableError(ESXiVMError):
    """Raised when a hypervisor cannot be reached (network, auth or timeout)."""

    def __init__(self, host: str, message: str):
        self.host = host
        super().__init__(f'{host}: {message}')


class ToolMissingError(ESXiVMError):
    """Raised when required tooling is absent on a hypervisor."""

    def __init__(self, host: str, message: str):
        self.host = host
        super().__init__(f'{host}: {message}')


class ProtocolError(ESXiVMError):
    """Raised when a hypervisor returns output that cannot be interpreted."""

    def __init__(self, host: str, message: str):
        self.host = host
        super().__init__(f'{host}: {message}')


class SoftFailureError(ESXiVMError):
    """Raised when a graceful operation fails and force was not requested."""


class BuildAbortedError(ESXiVMError):
    """Raised when an unreachable host aborts a strict fleet map build."""


class BuildCancelledError(ESXiVMError):
    """Raised when a fleet map build is interrupted as a unit."""

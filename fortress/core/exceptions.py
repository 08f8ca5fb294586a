"""
Base exceptions for fortress.

This module defines the hierarchy of exceptions used by fortress.
"""

class FortressError(Exception):
    """Base exception for fortress errors"""
    pass


class PreconditionError(FortressError):
    """Exception raised when the environment cannot support an installation"""
    pass


class DiskNotFoundError(PreconditionError):
    """Exception raised when specified disk is not found"""
    pass


class ConfirmationRequiredError(PreconditionError):
    """Exception raised when a destructive step runs without operator confirmation"""
    pass


class MissingSecretError(PreconditionError):
    """Exception raised when a passphrase needed by a step was not supplied"""
    pass


class NotEnoughSpaceError(FortressError):
    """Exception raised when there's not enough space for partitioning"""
    pass


class ActionError(FortressError):
    """Base exception for a reconciler action that could not be completed"""
    pass


class PartitioningError(ActionError):
    """Exception raised when there's an error in partitioning"""
    pass


class EncryptionError(ActionError):
    """Exception raised when there's an error in encryption setup"""
    pass


class FilesystemError(ActionError):
    """Exception raised when there's an error in filesystem creation"""
    pass


class MountError(ActionError):
    """Exception raised when there's an error in mounting"""
    pass


class BootstrapError(ActionError):
    """Exception raised when the base system could not be installed"""
    pass


class BootloaderError(ActionError):
    """Exception raised when the bootloader could not be installed or configured"""
    pass


class ConfigurationError(ActionError):
    """Exception raised when the target system configuration fails"""
    pass


class FstabError(ActionError):
    """Exception raised when there's an error in fstab generation"""
    pass


class CrypttabError(ActionError):
    """Exception raised when there's an error in crypttab generation"""
    pass


class UnknownPhaseError(FortressError):
    """Exception raised when no action sequence exists for a phase"""
    pass


class ReconcileStalledError(FortressError):
    """Exception raised when a reconcile pass leaves the phase where it was"""
    pass


class InstallCancelled(FortressError):
    """Exception raised when the run is interrupted by a termination signal"""
    pass

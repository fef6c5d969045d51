"""Custom exceptions for qemu-vm-manager."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ValidationError(ManagerError):
    """Operator input failed validation; always safe to re-prompt."""


class NotFoundError(ManagerError):
    """No configuration record exists for the requested VM."""


class DuplicateIdentityError(ManagerError):
    """A VM with the requested name already exists."""


class DependencyError(ManagerError):
    """A required external tool is missing from PATH."""


class ImageFetchError(ManagerError):
    """The base image could not be downloaded or converted."""


class ResizeError(ManagerError):
    """Neither a direct resize nor the overlay fallback succeeded."""


class SeedGenerationError(ManagerError):
    """The cloud-init seed image could not be produced."""


class LaunchError(ManagerError):
    """The hypervisor could not be started or exited right away."""


class StopError(ManagerError):
    """A hypervisor process survived SIGKILL."""


class VMBusyError(ManagerError):
    """The operation requires the VM to be stopped."""


class DeleteError(ManagerError):
    """Deleting a VM failed while removing its artifacts; the record is kept.

    Some artifacts may already be gone, so the delete can be retried.
    """

    def __init__(self, message: str, phase: str) -> None:
        super().__init__(message)
        self.phase = phase


class PartialDeleteError(DeleteError):
    """Artifacts were removed but the configuration record was not."""


class StorageError(ManagerError):
    """The store directory could not be read or written. Fatal."""

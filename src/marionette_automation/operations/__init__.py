from .base import Operation
from .directory import DirectoryOperation, EnsureDirectoryOperation
from .package import AptOperation, DnfOperation, PackageOperation, YumOperation
from .service import ServiceOperation, SystemdOperation
from .template import CopyOperation, TemplateOperation

OPERATION_REGISTRY = {
    "package": PackageOperation,
    "apt": AptOperation,
    "dnf": DnfOperation,
    "yum": YumOperation,
    "template": TemplateOperation,
    "copy": CopyOperation,
    "file": DirectoryOperation,
    "directory": EnsureDirectoryOperation,
    "service": ServiceOperation,
    "systemd": SystemdOperation,
}

__all__ = [
    "Operation",
    "PackageOperation",
    "AptOperation",
    "DnfOperation",
    "YumOperation",
    "TemplateOperation",
    "CopyOperation",
    "DirectoryOperation",
    "EnsureDirectoryOperation",
    "ServiceOperation",
    "SystemdOperation",
    "OPERATION_REGISTRY",
]

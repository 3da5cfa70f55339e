"""AWS Organizations account directory access."""

from .directory import (
    AccountDirectorySnapshot,
    AccountInfo,
    DirectoryError,
    OrganizationalUnitInfo,
    OrganizationsDirectory,
)

__all__ = [
    "AccountDirectorySnapshot",
    "AccountInfo",
    "DirectoryError",
    "OrganizationalUnitInfo",
    "OrganizationsDirectory",
]

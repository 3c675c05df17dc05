# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Provider types and the generic OAuth scope vocabulary.

Generic scopes are mapped to provider-specific scope strings here so that a
provider configuration can declare what it needs without knowing each
provider's naming.
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Set


class ProviderType(str, Enum):
    GOOGLE_DRIVE = "google_drive"
    ONE_DRIVE = "one_drive"
    DROPBOX = "dropbox"
    CUSTOM = "custom"
    LOCAL_SERVER = "local_server"


class OAuthScope(str, Enum):
    READ_FILES = "read_files"
    WRITE_FILES = "write_files"
    CREATE_FOLDERS = "create_folders"
    DELETE_FILES = "delete_files"
    SHARE_FILES = "share_files"
    READ_PROFILE = "read_profile"
    READ_METADATA = "read_metadata"
    MOVE_FILES = "move_files"
    COPY_FILES = "copy_files"
    RENAME_FILES = "rename_files"

    @property
    def description(self) -> str:
        return _SCOPE_DESCRIPTIONS[self]


_SCOPE_DESCRIPTIONS: Dict[OAuthScope, str] = {
    OAuthScope.READ_FILES: "Read access to your files",
    OAuthScope.WRITE_FILES: "Create, modify and delete your files",
    OAuthScope.CREATE_FOLDERS: "Create new folders",
    OAuthScope.DELETE_FILES: "Delete files and folders",
    OAuthScope.SHARE_FILES: "Share files and folders with others",
    OAuthScope.READ_PROFILE: "Access to your profile information",
    OAuthScope.READ_METADATA: "Read file information without content",
    OAuthScope.MOVE_FILES: "Move files between folders",
    OAuthScope.COPY_FILES: "Copy files and folders",
    OAuthScope.RENAME_FILES: "Rename files and folders",
}

DEFAULT_REQUIRED_SCOPES: FrozenSet[OAuthScope] = frozenset(
    {
        OAuthScope.READ_FILES,
        OAuthScope.WRITE_FILES,
        OAuthScope.CREATE_FOLDERS,
        OAuthScope.READ_PROFILE,
    }
)

_DRIVE_FILE = "https://www.googleapis.com/auth/drive.file"

SCOPE_MAPPINGS: Dict[ProviderType, Dict[OAuthScope, str]] = {
    ProviderType.GOOGLE_DRIVE: {
        OAuthScope.READ_FILES: "https://www.googleapis.com/auth/drive.readonly",
        OAuthScope.WRITE_FILES: _DRIVE_FILE,
        OAuthScope.CREATE_FOLDERS: _DRIVE_FILE,
        OAuthScope.DELETE_FILES: _DRIVE_FILE,
        OAuthScope.SHARE_FILES: _DRIVE_FILE,
        OAuthScope.READ_PROFILE: "https://www.googleapis.com/auth/userinfo.profile",
        OAuthScope.READ_METADATA: "https://www.googleapis.com/auth/drive.metadata.readonly",
        OAuthScope.MOVE_FILES: _DRIVE_FILE,
        OAuthScope.COPY_FILES: _DRIVE_FILE,
        OAuthScope.RENAME_FILES: _DRIVE_FILE,
    },
    ProviderType.ONE_DRIVE: {
        OAuthScope.READ_FILES: "Files.Read",
        OAuthScope.WRITE_FILES: "Files.ReadWrite",
        OAuthScope.CREATE_FOLDERS: "Files.ReadWrite",
        OAuthScope.DELETE_FILES: "Files.ReadWrite",
        OAuthScope.SHARE_FILES: "Files.ReadWrite.All",
        OAuthScope.READ_PROFILE: "User.Read",
        OAuthScope.READ_METADATA: "Files.Read",
        OAuthScope.MOVE_FILES: "Files.ReadWrite",
        OAuthScope.COPY_FILES: "Files.ReadWrite",
        OAuthScope.RENAME_FILES: "Files.ReadWrite",
    },
    ProviderType.DROPBOX: {
        OAuthScope.READ_FILES: "files.content.read",
        OAuthScope.WRITE_FILES: "files.content.write",
        OAuthScope.CREATE_FOLDERS: "files.content.write",
        OAuthScope.DELETE_FILES: "files.content.write",
        OAuthScope.SHARE_FILES: "sharing.write",
        OAuthScope.READ_PROFILE: "account_info.read",
        OAuthScope.READ_METADATA: "files.metadata.read",
        OAuthScope.MOVE_FILES: "files.content.write",
        OAuthScope.COPY_FILES: "files.content.write",
        OAuthScope.RENAME_FILES: "files.content.write",
    },
    # Custom and local server providers don't use OAuth scopes
    ProviderType.CUSTOM: {},
    ProviderType.LOCAL_SERVER: {},
}


def supported_scopes(provider_type: ProviderType) -> Set[OAuthScope]:
    return set(SCOPE_MAPPINGS.get(provider_type, {}))


def map_scopes_to_provider(
    scopes: Iterable[OAuthScope], provider_type: ProviderType
) -> List[str]:
    """
    Map generic scopes to the unique provider scope strings.

    Output order follows the generic scope names so the result is stable.

    Providers without a scope mapping return an empty list.
    """
    mapping = SCOPE_MAPPINGS.get(provider_type, {})
    mapped: List[str] = []
    for scope in sorted(scopes, key=lambda s: s.value):
        provider_scope = mapping.get(scope)
        if provider_scope and provider_scope not in mapped:
            mapped.append(provider_scope)
    return mapped


def validate_scopes(scopes: Iterable[OAuthScope], provider_type: ProviderType) -> None:
    """Raise ValueError if the provider cannot grant every requested scope."""
    mapping = SCOPE_MAPPINGS.get(provider_type, {})
    if not mapping:
        return
    unsupported = sorted(s.value for s in scopes if s not in mapping)
    if unsupported:
        raise ValueError(
            f"Provider '{provider_type.value}' does not support scopes: {', '.join(unsupported)}"
        )

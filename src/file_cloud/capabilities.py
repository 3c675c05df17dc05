# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Capability negotiation.

Capabilities are declared once per provider configuration and never probed
over the network. Every lookup here is pure; a violation raises before any
I/O can happen.
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Tuple

from .error_handler import CapabilityViolationError

if TYPE_CHECKING:
    from .config import ProviderConfiguration


@dataclass(frozen=True)
class ProviderCapabilities:
    """Static feature set of one configured provider instance."""

    can_upload: bool = True
    can_create_folders: bool = True
    can_delete: bool = False
    can_permanent_delete: bool = False
    can_search: bool = False
    can_chunked_upload: bool = False
    has_thumbnails: bool = False
    can_share: bool = False
    can_move: bool = False
    can_copy: bool = False
    can_rename: bool = False
    max_upload_size: Optional[int] = None  # bytes, None = unlimited
    supported_upload_types: Optional[Tuple[str, ...]] = None  # None = all types
    max_page_size: int = 50

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.supported_upload_types is not None:
            data["supported_upload_types"] = list(self.supported_upload_types)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProviderCapabilities":
        upload_types = data.get("supported_upload_types")
        return cls(
            can_upload=bool(data.get("can_upload", True)),
            can_create_folders=bool(data.get("can_create_folders", True)),
            can_delete=bool(data.get("can_delete", False)),
            can_permanent_delete=bool(data.get("can_permanent_delete", False)),
            can_search=bool(data.get("can_search", False)),
            can_chunked_upload=bool(data.get("can_chunked_upload", False)),
            has_thumbnails=bool(data.get("has_thumbnails", False)),
            can_share=bool(data.get("can_share", False)),
            can_move=bool(data.get("can_move", False)),
            can_copy=bool(data.get("can_copy", False)),
            can_rename=bool(data.get("can_rename", False)),
            max_upload_size=data.get("max_upload_size"),
            supported_upload_types=tuple(upload_types) if upload_types is not None else None,
            max_page_size=int(data.get("max_page_size", 50)),
        )


class Operation(str, Enum):
    """File operations a caller may invoke through a configured provider."""

    LIST = "list"
    DOWNLOAD = "download"
    UPLOAD = "upload"
    CHUNKED_UPLOAD = "chunked_upload"
    CREATE_FOLDER = "create_folder"
    DELETE = "delete"
    PERMANENT_DELETE = "permanent_delete"
    SEARCH = "search"
    THUMBNAIL = "thumbnail"
    SHARE = "share"
    MOVE = "move"
    COPY = "copy"
    RENAME = "rename"


# Operation -> capability flag; None means always supported
OPERATION_CAPABILITY: Dict[Operation, Optional[str]] = {
    Operation.LIST: None,
    Operation.DOWNLOAD: None,
    Operation.UPLOAD: "can_upload",
    Operation.CHUNKED_UPLOAD: "can_chunked_upload",
    Operation.CREATE_FOLDER: "can_create_folders",
    Operation.DELETE: "can_delete",
    Operation.PERMANENT_DELETE: "can_permanent_delete",
    Operation.SEARCH: "can_search",
    Operation.THUMBNAIL: "has_thumbnails",
    Operation.SHARE: "can_share",
    Operation.MOVE: "can_move",
    Operation.COPY: "can_copy",
    Operation.RENAME: "can_rename",
}


def capabilities_of(config: "ProviderConfiguration") -> ProviderCapabilities:
    return config.capabilities


def supports(config: "ProviderConfiguration", operation: Operation) -> bool:
    flag = OPERATION_CAPABILITY[operation]
    if flag is None:
        return True
    return bool(getattr(config.capabilities, flag))


def require(config: "ProviderConfiguration", operation: Operation) -> None:
    """Raise CapabilityViolationError if the configuration does not declare the operation."""
    if not supports(config, operation):
        raise CapabilityViolationError(operation.value, config.provider_key)


def check_upload(
    config: "ProviderConfiguration",
    size: Optional[int] = None,
    mime_type: Optional[str] = None,
    chunked: bool = False,
) -> None:
    """Validate an upload against the declared limits before touching the network."""
    require(config, Operation.CHUNKED_UPLOAD if chunked else Operation.UPLOAD)
    caps = config.capabilities

    if size is not None and caps.max_upload_size is not None and size > caps.max_upload_size:
        raise CapabilityViolationError(
            Operation.UPLOAD.value,
            config.provider_key,
            f"{size} bytes exceeds the {caps.max_upload_size} byte limit",
        )

    if mime_type is not None and caps.supported_upload_types is not None:
        if mime_type not in caps.supported_upload_types:
            raise CapabilityViolationError(
                Operation.UPLOAD.value,
                config.provider_key,
                f"type '{mime_type}' is not accepted",
            )


def clamp_page_size(config: "ProviderConfiguration", requested: Optional[int] = None) -> int:
    limit = config.capabilities.max_page_size
    if requested is None or requested <= 0:
        return limit
    return min(requested, limit)

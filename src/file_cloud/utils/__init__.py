# src/file_cloud/utils/__init__.py

from .headless_detection import is_headless_environment
from .credential_formatter import format_account_for_display, mask_token

__all__ = ['is_headless_environment', 'mask_token', 'format_account_for_display']

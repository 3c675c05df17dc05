"""
Reference OAuth intermediary for file_cloud.

This service holds the provider client secrets. It performs the code and
refresh exchanges with the provider and hands tokens to the app keyed by the
handshake state. The file_cloud library never imports this package.
"""

from auth_relay.main import create_app

__all__ = ["create_app"]

"""
Utility for formatting secrets and account identifiers for display in logs.

Tokens are never written to logs in clear: only their last 6 characters are
shown. Accounts are shown by provider and a shortened local id.
"""

from typing import Optional


def mask_token(token: Optional[str]) -> str:
    """
    Format a token for display in logs.

    Args:
        token: An access or refresh token, possibly None

    Returns:
        A display-safe string representation of the token

    Examples:
        >>> mask_token("ya29.a0AfH6SMBx1234567890abcdef")
        "...abcdef"
        >>> mask_token(None)
        "<none>"
    """
    if not token:
        return "<none>"
    if len(token) <= 6:
        return "..."
    return f"...{token[-6:]}"


def format_account_for_display(provider_type: str, account_id: str) -> str:
    return f"{provider_type}:{account_id[:8]}"

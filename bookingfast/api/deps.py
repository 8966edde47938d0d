"""
bookingfast/api/deps.py
Shared request dependencies.
"""

from typing import Optional

from fastapi import Header, HTTPException


def get_acting_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Acting user from the x-user-id header (set by the auth gateway)."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()

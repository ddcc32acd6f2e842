"""
Caller identity.

Authentication happens upstream; the gateway forwards the authenticated
user id in the ``X-User-Id`` header. The pipeline only checks ownership.
"""

from typing import Optional
from fastapi import Header, HTTPException

from workers.extraction.errors import AuthorizationError, DocumentValidationError


def get_current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def check_storage_path(storage_path: Optional[str], user_id: str) -> str:
    """
    Validate that a storage path is well formed and owned by the user.

    Raises:
        DocumentValidationError: empty path or path traversal
        AuthorizationError: path belongs to another user
    """
    if not storage_path or not storage_path.strip():
        raise DocumentValidationError("Missing storage path")
    storage_path = storage_path.strip()
    if ".." in storage_path.split("/") or storage_path.startswith("/"):
        raise DocumentValidationError(f"Invalid storage path: {storage_path}")
    if not storage_path.startswith(f"{user_id}/"):
        raise AuthorizationError("Unauthorized: cannot access files belonging to other users")
    return storage_path

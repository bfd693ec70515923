"""
Shared request dependencies
"""
from typing import Optional

from fastapi import Header, HTTPException, status


def get_actor(x_participant_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Acting participant id, supplied by the presentation tier"""
    return x_participant_id


def require_actor(x_participant_id: Optional[str] = Header(default=None)) -> str:
    if not x_participant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Participant-Id header is required"
        )
    return x_participant_id

"""
cryptotax/utils/auth.py

Session-based auth dependency. /api/login stores 'user_id' in the signed
session cookie; every protected route resolves it back to a User here.
"""

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from cryptotax.database import get_db
from cryptotax.models.user import User


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """
    Looks up 'user_id' in request.session. Raises 401 if the session is
    empty or points at a user that no longer exists.
    """
    user_id = request.session.get("user_id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        request.session.clear()
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user

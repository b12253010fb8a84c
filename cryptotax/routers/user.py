# FILE: cryptotax/routers/user.py

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from cryptotax.database import get_db
from cryptotax.models.user import User
from cryptotax.schemas.user import TaxProfileUpdate, UserCreate, UserRead
from cryptotax.services.user import create_user, get_user_by_username, update_tax_profile
from cryptotax.utils.auth import get_current_user

# main.py sets the final prefix ("/api/users")
router = APIRouter(tags=["users"])


@router.post("/register", response_model=UserRead, status_code=201)
def register_user(user: UserCreate, db: Session = Depends(get_db)):
    """
    Register a new user: POST /api/users/register
    The password is bcrypt-hashed before storing; 400 if the username is taken.
    """
    if get_user_by_username(user.username, db):
        raise HTTPException(status_code=400, detail="Username already registered")

    new_user = create_user(user, db)
    if not new_user:
        raise HTTPException(status_code=500, detail="Unable to create user")
    return new_user


@router.get("/me", response_model=UserRead)
def read_me(current_user: User = Depends(get_current_user)):
    return current_user


@router.patch("/me/tax-profile", response_model=UserRead)
def patch_tax_profile(
    profile: TaxProfileUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Filing status, ordinary (non-crypto) income and default lot method.
    These feed estimatedTax on the summary endpoint.
    """
    return update_tax_profile(current_user, profile, db)

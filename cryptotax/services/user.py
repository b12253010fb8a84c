"""
cryptotax/services/user.py

User-level operations: lookup, registration and the tax profile.
"""

from sqlalchemy.orm import Session

from cryptotax.models.user import User
from cryptotax.schemas.user import TaxProfileUpdate, UserCreate


def get_user(user_id: int, db: Session) -> User | None:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_username(username: str, db: Session) -> User | None:
    return db.query(User).filter(User.username == username).first()


def create_user(user_data: UserCreate, db: Session) -> User | None:
    """
    Create a new User with a bcrypt-hashed password.
    Returns None if the username is taken.
    """
    if get_user_by_username(user_data.username, db):
        return None

    new_user = User(username=user_data.username)
    new_user.set_password(user_data.password)
    db.add(new_user)
    db.commit()
    db.refresh(new_user)
    return new_user


def update_tax_profile(user: User, profile: TaxProfileUpdate, db: Session) -> User:
    if profile.filing_status is not None:
        user.filing_status = profile.filing_status
    if profile.ordinary_income_usd is not None:
        user.ordinary_income_usd = profile.ordinary_income_usd
    if profile.default_tax_method is not None:
        user.default_tax_method = profile.default_tax_method
    db.commit()
    db.refresh(user)
    return user

#!/usr/bin/env python
"""
cryptotax/main.py

FastAPI entrypoint for CryptoTax, a multi-asset crypto tax-lot engine
(FIFO / LIFO / HIFO / SpecificID cost basis).

  /api/transactions   ledger rows, summary, pnl-history, lots, recompute
  /api/sources        exchanges / wallets and exchange sync
  /api/users          registration and tax profile
  /api/reports        Form 8949 CSV
  /api/login, /api/logout

Run with:  uvicorn cryptotax.main:app --reload
"""

import logging
import os

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from cryptotax.database import create_tables, get_db
from cryptotax.routers import reports, source, transaction, user
from cryptotax.schemas.user import LoginRequest
from cryptotax.services.user import get_user_by_username

load_dotenv()

logger = logging.getLogger(__name__)

# ---------------------------------------------------------
# Settings
# ---------------------------------------------------------
SECRET_KEY = os.getenv("SECRET_KEY", "change-me-cryptotax")
SESSION_HTTPS_ONLY = os.getenv("SESSION_HTTPS_ONLY", "false").lower() in ("1", "true", "yes")

# Local frontend dev servers
DEV_ORIGINS = [
    f"http://{host}:{port}"
    for port in (3000, 5173)
    for host in ("localhost", "127.0.0.1")
]
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOW_ORIGINS", ",".join(DEV_ORIGINS)).split(",")
    if origin.strip()
]

# ---------------------------------------------------------
# App
# ---------------------------------------------------------
app = FastAPI(
    title="CryptoTax API",
    description=(
        "Crypto transaction ledger with per-asset tax-lot matching, realized "
        "gain/loss summaries and exchange sync. Session-based auth."
    ),
    version="1.0",
    redirect_slashes=True,
)

app.add_middleware(
    SessionMiddleware,
    secret_key=SECRET_KEY,
    session_cookie="cryptotax_session_id",
    https_only=SESSION_HTTPS_ONLY,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup_event():
    """Create missing tables; existing data is never touched."""
    create_tables()


app.include_router(transaction.router, prefix="/api/transactions", tags=["transactions"])
app.include_router(source.router, prefix="/api/sources", tags=["sources"])
app.include_router(user.router, prefix="/api/users", tags=["users"])
app.include_router(reports.reports_router, prefix="/api/reports", tags=["reports"])


# ---------------------------------------------------------
# Session login
# ---------------------------------------------------------
@app.post("/api/login")
def login(login_req: LoginRequest, request: Request, db: Session = Depends(get_db)):
    """Check the bcrypt hash and put the user id into the signed session cookie."""
    found = get_user_by_username(login_req.username, db)
    # one message for unknown user and wrong password
    if found is None or not found.verify_password(login_req.password):
        logger.info(f"Failed login for '{login_req.username}'")
        raise HTTPException(status_code=401, detail="Invalid username or password.")

    request.session["user_id"] = found.id
    logger.info(f"User {found.username} logged in")
    return {"detail": f"Logged in as {found.username}"}


@app.post("/api/logout")
def logout(request: Request):
    request.session.clear()
    return {"detail": "Logged out"}


@app.get("/")
def read_root():
    return {"message": "CryptoTax API is running"}

# campusride/auth.py
"""Identity provider: Firebase ID token -> (user id, role).

The ride core trusts the resolved id; verification happens only here.
"""
from dataclasses import dataclass
from typing import Dict

from fastapi import Depends, HTTPException, Request
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import id_token
from google.auth.transport.requests import Request as GoogleRequest
from sqlmodel import select

from .core import RideCore
from .models import Role, User


@dataclass(frozen=True)
class Caller:
    user_id: int
    role: Role


def get_core(request: Request) -> RideCore:
    return request.app.state.core


def _verify_firebase_token(request: Request, core: RideCore = Depends(get_core)) -> Dict:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    project_id = core.settings.firebase_project_id
    if not project_id:
        raise HTTPException(status_code=500, detail="FIREBASE_PROJECT_ID not configured")
    token = auth.split(" ", 1)[1]
    try:
        return id_token.verify_firebase_token(token, GoogleRequest(), audience=project_id)
    except (ValueError, GoogleAuthError):
        raise HTTPException(status_code=401, detail="Invalid Firebase token")


def get_current_user(
    info: Dict = Depends(_verify_firebase_token),
    core: RideCore = Depends(get_core),
) -> Caller:
    email = info.get("email")
    if not email:
        raise HTTPException(status_code=401, detail="Token missing email")

    with core.sessions() as session:
        user = session.exec(select(User).where(User.email == email)).first()
        if not user:
            user = User(
                name=info.get("name") or "New User",
                email=email,
                firebase_uid=info.get("user_id") or info.get("sub"),
                role=Role.rider,
            )
            session.add(user)
            session.commit()
            session.refresh(user)
        if user.is_banned:
            raise HTTPException(status_code=403, detail="Account is banned")
        return Caller(user_id=user.id, role=user.role)

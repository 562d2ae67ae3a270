from datetime import datetime, timedelta
from typing import Optional

from fastapi import HTTPException, Depends
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from sqlalchemy.orm import Session

from lineage.config import settings
from lineage.database import get_db
from lineage.models.node import Node


# Tokens come from the identity provider; we only verify them.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=settings.TOKEN_URL)


# ============================================================
# TOKEN CREATION (local dev + tests)
# ============================================================

def create_actor_token(actor_id: str, expires_minutes: Optional[int] = None) -> str:
    minutes = expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    expire = datetime.utcnow() + timedelta(minutes=minutes)
    to_encode = {"sub": actor_id, "exp": expire}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


# ============================================================
# GET CURRENT ACTOR
# ============================================================

def get_current_actor(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> Node:
    """
    The actor is the person node the token's `sub` points at.
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        actor_id: str = payload.get("sub")

        if actor_id is None:
            raise HTTPException(status_code=401, detail="Invalid token")

    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    actor = db.query(Node).filter(Node.id == actor_id, Node.deleted_at.is_(None)).first()

    # token outlived the node (deleted or DB reset)
    if not actor:
        raise HTTPException(status_code=401, detail="Actor not found")

    return actor

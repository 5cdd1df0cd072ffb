"""
Security Module for the Collection Core
=======================================
- Secret key management
- Bearer token decoding (tokens are issued by the external auth service)
- Role-based access control with fine-grained permissions
- Audit logging of sensitive actions
"""

import hashlib
import json
import os
import secrets
import warnings
from datetime import datetime, timedelta
from typing import Dict, Optional, Set

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .db import SessionLocal
from .logging_config import get_logger

logger = get_logger("security")


# =============================================================================
# CONFIGURATION
# =============================================================================

def get_secret_key() -> str:
    """
    Get secret key from environment with validation.
    NEVER use a default secret key in production!
    """
    secret = os.getenv("COLLECTION_SECRET_KEY")

    if not secret:
        if config.ENVIRONMENT == "production":
            raise RuntimeError(
                "CRITICAL: COLLECTION_SECRET_KEY environment variable must be set in production! "
                "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
            )
        warnings.warn(
            "Using development secret key. Set COLLECTION_SECRET_KEY for production!",
            RuntimeWarning
        )
        # Deterministic in development so tokens survive hot-reload
        secret = hashlib.sha256(b"collection-core-dev-key").hexdigest()

    if len(secret) < 32:
        raise RuntimeError("COLLECTION_SECRET_KEY must be at least 32 characters")

    return secret


SECRET_KEY = get_secret_key()
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("TOKEN_EXPIRE_MINUTES", "60"))


# =============================================================================
# TOKEN MANAGEMENT
# =============================================================================

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token (used by scripts and tests; login lives elsewhere)"""
    to_encode = data.copy()

    now = datetime.utcnow()
    expire = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({
        "exp": expire,
        "iat": now,
        "jti": secrets.token_urlsafe(16),
        "type": "access"
    })

    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """
    Decode and validate a JWT token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"}
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"}
        )


# =============================================================================
# ROLE-BASED ACCESS CONTROL (RBAC)
# =============================================================================

class Permission:
    """Fine-grained permissions for collection and ledger operations"""

    COLLECTION_VIEW = "collection:view"
    COLLECTION_EDIT = "collection:edit"

    WCN_FINALIZE = "wcn:finalize"
    WCN_RECTIFY = "wcn:rectify"

    INVENTORY_VIEW = "inventory:view"
    INVENTORY_ADJUST = "inventory:adjust"  # manual adjustments and FIFO issue


ROLE_PERMISSIONS: Dict[str, Set[str]] = {
    "Admin": {
        Permission.COLLECTION_VIEW, Permission.COLLECTION_EDIT,
        Permission.WCN_FINALIZE, Permission.WCN_RECTIFY,
        Permission.INVENTORY_VIEW, Permission.INVENTORY_ADJUST,
    },

    "Collection Supervisor": {
        Permission.COLLECTION_VIEW, Permission.COLLECTION_EDIT,
        Permission.WCN_FINALIZE, Permission.WCN_RECTIFY,
        Permission.INVENTORY_VIEW,
    },

    "Field Operator": {
        Permission.COLLECTION_VIEW, Permission.COLLECTION_EDIT,
        Permission.INVENTORY_VIEW,
    },

    "Store Keeper": {
        Permission.COLLECTION_VIEW,
        Permission.INVENTORY_VIEW, Permission.INVENTORY_ADJUST,
    },

    "Viewer": {
        Permission.COLLECTION_VIEW,
        Permission.INVENTORY_VIEW,
    },
}


def get_role_permissions(role: str) -> Set[str]:
    """Get permissions for a role"""
    return ROLE_PERMISSIONS.get(role, set())


# =============================================================================
# DEPENDENCY INJECTION
# =============================================================================

def get_db():
    """Database session dependency"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
):
    """Get current authenticated user from JWT token."""
    from .models import User

    payload = decode_token(token)

    username = payload.get("sub")
    if username is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"}
        )

    user = db.query(User).filter(User.username == username).first()

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"}
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is disabled"
        )

    return user


def require_permission(*required_permissions: str):
    """
    Dependency that requires user to have specific permissions.
    """
    async def permission_checker(current_user = Depends(get_current_user)):
        user_permissions = get_role_permissions(current_user.role)

        missing = set(required_permissions) - user_permissions
        if missing:
            logger.warning(
                "permission_denied",
                extra={"user_id": current_user.id, "missing": sorted(missing)},
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(sorted(missing))}"
            )

        return current_user

    return permission_checker


# =============================================================================
# AUDIT LOGGING
# =============================================================================

class SecurityAuditLog:
    """Audit trail of finalizations, rectifications and manual adjustments"""

    @staticmethod
    def log_sensitive_action(
        db: Session,
        user_id: Optional[int],
        action: str,
        entity_type: str,
        entity_id: int,
        details: dict
    ):
        """
        Log a sensitive operation for audit trail.

        Runs after the audited operation has committed, so a failed audit
        write is rolled back and logged rather than raised. Returns whether
        the row was stored.
        """
        from .models import AuditLog

        log = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            new_values=json.dumps(details, default=str),
            user_id=user_id
        )
        try:
            db.add(log)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                "audit_log_failed",
                extra={"action": action, "entity_type": entity_type, "entity_id": entity_id},
            )
            return False
        return True

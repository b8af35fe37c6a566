"""
Dependencias de autenticación para los endpoints de operador.
"""
from uuid import UUID
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
import jwt

from invoicepay.database.database import get_db
from invoicepay.modules.auth.schemas import AuthContext
from invoicepay.modules.merchants.models import Merchant
from invoicepay.core.config import settings

# Security scheme
security = HTTPBearer()


class AuthDependencies:
    """Dependencias de autenticación reutilizables."""

    @staticmethod
    def get_auth_context(
        credentials: HTTPAuthorizationCredentials = Depends(security),
        db: Session = Depends(get_db)
    ) -> AuthContext:
        """
        Resolver el merchant del token JWT (claim ``sub``).
        """
        credentials_exception = HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

        try:
            payload = jwt.decode(
                credentials.credentials,
                settings.APP_SECRET_STRING,
                algorithms=[settings.ALGORITHM]
            )
            merchant_id = UUID(str(payload.get("sub")))
            if payload.get("type") != "access":
                raise credentials_exception
        except (jwt.PyJWTError, ValueError):
            raise credentials_exception

        merchant = db.query(Merchant).filter(Merchant.id == merchant_id).first()
        if merchant is None or not merchant.is_active:
            raise credentials_exception

        return AuthContext(merchant_id=merchant.id, is_admin=bool(merchant.is_admin))

    @staticmethod
    def require_admin():
        """Restringir a operadores administradores."""

        def admin_checker(auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)):
            if not auth_context.is_admin:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="Admin privileges required"
                )
            return auth_context

        return admin_checker

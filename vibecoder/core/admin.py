from fastapi import Depends, HTTPException, status
from vibecoder.core.deps import get_current_user
from vibecoder.models.user import User, UserRole


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin only")
    return user


def require_seller_or_admin(user: User = Depends(get_current_user)) -> User:
    if user.role not in (UserRole.SELLER, UserRole.ADMIN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Sellers and admins only"
        )
    return user

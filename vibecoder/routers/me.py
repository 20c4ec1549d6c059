from fastapi import APIRouter, Depends
from vibecoder.core.deps import get_current_user
from vibecoder.models.user import User
from vibecoder.schemas.auth import UserOut
from vibecoder.schemas.common import Envelope

router = APIRouter(tags=["me"])


@router.get("/me", response_model=Envelope[UserOut])
def me(user: User = Depends(get_current_user)):
    return Envelope(message="Current user", data=UserOut.model_validate(user))

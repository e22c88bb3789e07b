from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.dependencies.auth import get_current_user
from app.models.user import User
from app.schemas.api_tokens import ApiTokenIn, ApiTokenOut
from app.services.api_tokens import ApiTokenConfigError, ApiTokenError, ApiTokensService

router = APIRouter(prefix="/settings/api-tokens", tags=["settings"])


@router.get("", response_model=list[ApiTokenOut])
def list_api_tokens(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> list[ApiTokenOut]:
    return [ApiTokenOut.model_validate(record) for record in ApiTokensService(db).list_tokens(user.id)]


@router.put("/{provider}", response_model=ApiTokenOut)
def save_api_token(
    provider: str,
    payload: ApiTokenIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> ApiTokenOut:
    try:
        record = ApiTokensService(db).set_token(user.id, provider, payload.token, display_name=payload.display_name)
    except ApiTokenConfigError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except ApiTokenError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return ApiTokenOut.model_validate(record)


@router.delete("/{provider}", status_code=status.HTTP_204_NO_CONTENT)
def delete_api_token(
    provider: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> Response:
    try:
        deleted = ApiTokensService(db).delete_token(user.id, provider)
    except ApiTokenError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API token not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)

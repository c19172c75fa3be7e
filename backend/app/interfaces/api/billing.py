from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.application.services.billing_query_service import get_billing_outcome
from app.interfaces.api.deps import require_admin_token
from app.infrastructure.db.session import get_db

router = APIRouter(prefix="/billing", tags=["billing"], dependencies=[Depends(require_admin_token)])


@router.get("/profiles/{email}", status_code=status.HTTP_200_OK)
def get_profile_billing(email: str, db: Session = Depends(get_db)) -> dict:
    outcome = get_billing_outcome(db, email=email)
    if outcome is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return outcome

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.dependencies import get_current_user_id
from app.schemas.wallet import WalletResponse, WalletTransactionResponse
from app.services.wallet import WalletService

router = APIRouter(prefix="/wallet", tags=["Wallet"])


@router.get("/me", response_model=WalletResponse)
def get_my_wallet(
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    service = WalletService(db)
    return WalletResponse(
        user_id=user_id,
        balance=service.get_balance(user_id),
        transactions=[
            WalletTransactionResponse.model_validate(t)
            for t in service.list_transactions(user_id, limit=limit)
        ],
    )

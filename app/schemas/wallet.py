from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class WalletTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: int
    source: str
    reference_id: str
    description: Optional[str] = None
    created_at: datetime


class WalletResponse(BaseModel):
    user_id: int
    balance: int
    transactions: List[WalletTransactionResponse]

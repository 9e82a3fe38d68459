import logging
from typing import List

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.wallet_transaction import WalletTransaction

logger = logging.getLogger(__name__)


class WalletService:
    """Signed ledger. Each (user, source, reference) entry can be written once."""

    def __init__(self, db: Session):
        self.db = db

    def get_balance(self, user_id: int) -> int:
        balance = (
            self.db.query(func.coalesce(func.sum(WalletTransaction.amount), 0))
            .filter(WalletTransaction.user_id == user_id)
            .scalar()
        )
        return int(balance or 0)

    def has_balance(self, user_id: int, amount: int) -> bool:
        return amount <= 0 or self.get_balance(user_id) >= amount

    def list_transactions(
        self, user_id: int, skip: int = 0, limit: int = 50
    ) -> List[WalletTransaction]:
        return (
            self.db.query(WalletTransaction)
            .filter(WalletTransaction.user_id == user_id)
            .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def grant(
        self, user_id: int, amount: int, reference_id: str, description: str = None
    ) -> bool:
        """Credit coins from outside the duel economy (rewards, admin top-ups)"""
        return self.apply_entries(
            [
                WalletTransaction(
                    user_id=user_id,
                    amount=amount,
                    source="grant",
                    reference_id=reference_id,
                    description=description,
                )
            ]
        )

    def transfer(
        self,
        from_user_id: int,
        to_user_id: int,
        amount: int,
        reference_id: str,
        description: str = None,
    ) -> bool:
        """
        Move amount from loser to winner as two ledger entries in one commit.

        Returns False when the entries already exist, so repeating the same
        settlement never moves coins twice.
        """
        if amount <= 0:
            return False
        return self.apply_entries(
            [
                WalletTransaction(
                    user_id=to_user_id,
                    amount=amount,
                    source="challenge_win",
                    reference_id=reference_id,
                    description=description,
                ),
                WalletTransaction(
                    user_id=from_user_id,
                    amount=-amount,
                    source="challenge_loss",
                    reference_id=reference_id,
                    description=description,
                ),
            ]
        )

    def apply_entries(self, entries: List[WalletTransaction]) -> bool:
        try:
            self.db.add_all(entries)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(
                f"Ledger entries for reference {entries[0].reference_id} already applied"
            )
            return False
        return True

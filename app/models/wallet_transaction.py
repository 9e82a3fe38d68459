from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from app.core.database import Base


class WalletTransaction(Base):
    """Signed ledger entry. A user's balance is the sum of their amounts."""

    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # positive = gain, negative = loss
    source = Column(String(30), nullable=False)  # grant, challenge_win, challenge_loss
    reference_id = Column(String(64), nullable=False)
    description = Column(String(255), nullable=True)

    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    # One entry per (user, source, reference): settlement can never apply twice
    __table_args__ = (
        UniqueConstraint(
            "user_id", "source", "reference_id", name="uix_wallet_user_source_ref"
        ),
    )

    def __repr__(self):
        return f"<WalletTransaction(user_id={self.user_id}, amount={self.amount}, source={self.source})>"

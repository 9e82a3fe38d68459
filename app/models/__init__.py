"""
Models package initialization
Import all models so Base.metadata knows every table
"""

from .challenge import Challenge
from .notification import Notification
from .quiz_attempt import QuizAttempt
from .quiz_question import QuizQuestion
from .wallet_transaction import WalletTransaction

# Make models available at package level
__all__ = [
    "Challenge",
    "Notification",
    "QuizAttempt",
    "QuizQuestion",
    "WalletTransaction",
]

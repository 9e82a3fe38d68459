import logging

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.security import jwt_manager
from app.services.challenge import ChallengeService
from app.services.notification import NotificationService
from app.services.question_pool import QuestionPoolService
from app.services.quiz_session import QuizSessionService
from app.services.scoring import ScoringService
from app.services.wallet import WalletService
from app.utils.ai import ai_service

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Security(security),
) -> int:
    """
    Dependency that requires a valid Bearer token and returns the caller's user id.
    Raises 401 Unauthorized if the token is missing or invalid.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = jwt_manager.verify_token(credentials.credentials, "access")
    if "user_id" not in payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: Not a valid user token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return int(payload["user_id"])


def get_ai_collaborator():
    """Content generator and subjective evaluator used by the quiz services"""
    return ai_service


def get_challenge_service(
    db: Session = Depends(get_db), ai=Depends(get_ai_collaborator)
) -> ChallengeService:
    return ChallengeService(
        db,
        pool=QuestionPoolService(db, generator=ai),
        scoring=ScoringService(evaluator=ai),
        wallet=WalletService(db),
        notifications=NotificationService(db),
    )


def get_quiz_session_service(
    challenges: ChallengeService = Depends(get_challenge_service),
) -> QuizSessionService:
    return challenges.sessions()

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request, status

from app.core.dependencies import get_challenge_service, get_current_user_id
from app.core.events import challenge_topic
from app.schemas.challenge import (
    ChallengeCreate,
    ChallengeListResponse,
    ChallengeResponse,
    ChallengeStatus,
)
from app.schemas.quiz import QuestionForAttempt, QuizAttemptResponse, StartQuizResponse
from app.services.challenge import ChallengeService
from app.utils.sse import sse_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/challenges", tags=["Challenges"])


def _response(service: ChallengeService, challenge) -> ChallengeResponse:
    return ChallengeResponse.build(challenge, service.clock())


@router.post("", response_model=ChallengeResponse, status_code=status.HTTP_201_CREATED)
async def create_challenge(
    challenge_in: ChallengeCreate,
    user_id: int = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    challenge = await service.create_challenge(
        challenger_id=user_id,
        challenged_id=challenge_in.challenged_id,
        scope=challenge_in.scope,
        bet_amount=challenge_in.bet_amount,
        from_attempt_id=challenge_in.from_attempt_id,
        title=challenge_in.title,
    )
    return _response(service, challenge)


@router.get("", response_model=ChallengeListResponse)
def list_challenges(
    role: Optional[Literal["sent", "received"]] = None,
    status_filter: Optional[ChallengeStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    challenges = service.list_challenges(user_id, role, status_filter, skip, limit)
    return ChallengeListResponse(
        challenges=[_response(service, c) for c in challenges],
        total=service.count_challenges(user_id, role, status_filter),
    )


@router.get("/{challenge_id}", response_model=ChallengeResponse)
def get_challenge(
    challenge_id: int,
    user_id: int = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    return _response(service, service.get_challenge(user_id, challenge_id))


@router.post("/{challenge_id}/accept", response_model=ChallengeResponse)
def accept_challenge(
    challenge_id: int,
    user_id: int = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    return _response(service, service.accept(user_id, challenge_id))


@router.post("/{challenge_id}/reject", response_model=ChallengeResponse)
def reject_challenge(
    challenge_id: int,
    user_id: int = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    return _response(service, service.reject(user_id, challenge_id))


@router.post("/{challenge_id}/cancel", response_model=ChallengeResponse)
def cancel_challenge(
    challenge_id: int,
    user_id: int = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    return _response(service, service.cancel(user_id, challenge_id))


@router.post("/{challenge_id}/play", response_model=StartQuizResponse)
async def play_challenge(
    challenge_id: int,
    user_id: int = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    """Start or resume the caller's attempt on the challenge deck"""
    result = await service.start_challenge_attempt(user_id, challenge_id)
    return StartQuizResponse(
        attempt=QuizAttemptResponse.model_validate(result.attempt),
        questions=[QuestionForAttempt.from_question(q) for q in result.questions],
        resume_index=result.resume_index,
        resumed=result.resumed,
        message=result.message,
    )


@router.get("/{challenge_id}/events")
def challenge_events(
    challenge_id: int,
    request: Request,
    user_id: int = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    """Server-Sent Events stream of status and score changes on this challenge"""
    challenge = service.get_challenge(user_id, challenge_id)
    snapshot = _response(service, challenge).model_dump(mode="json")
    return sse_response(request, challenge_topic(challenge_id), snapshot)

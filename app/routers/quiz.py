import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import ValidationError

from app.core.dependencies import get_current_user_id, get_quiz_session_service
from app.core.events import attempt_topic
from app.schemas.quiz import (
    NavigateRequest,
    NavigateResponse,
    QuestionForAttempt,
    QuizAttemptResponse,
    QuizHistoryResponse,
    QuizScope,
    QuizType,
    RecordAnswerRequest,
    StartQuizRequest,
    StartQuizResponse,
    SubmissionResponse,
    SubmitQuizRequest,
)
from app.services.quiz_session import QuizSessionService, SubmissionResult
from app.utils.sse import sse_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/quizzes", tags=["Quizzes"])


def _submission_response(result: SubmissionResult) -> SubmissionResponse:
    return SubmissionResponse(
        attempt=QuizAttemptResponse.model_validate(result.attempt),
        summary=result.summary,
        ungraded_question_ids=result.ungraded_question_ids,
        cached=result.cached,
        challenge_id=result.challenge_id,
    )


@router.post("/start", response_model=StartQuizResponse)
async def start_quiz(
    request_in: StartQuizRequest,
    user_id: int = Depends(get_current_user_id),
    service: QuizSessionService = Depends(get_quiz_session_service),
):
    """
    Start a quiz in a scope, or resume the unfinished one.

    Returns 409 with the unfinished attempt's id, scope and title when a quiz
    in another scope is still in progress.
    """
    result = await service.start(
        user_id,
        request_in.scope,
        retake_mode=request_in.retake_mode,
        title=request_in.title,
    )
    return StartQuizResponse(
        attempt=QuizAttemptResponse.model_validate(result.attempt),
        questions=[QuestionForAttempt.from_question(q) for q in result.questions],
        resume_index=result.resume_index,
        resumed=result.resumed,
        previous_attempt_id=result.previous_attempt_id,
        message=result.message,
    )


@router.get("/active", response_model=Optional[QuizAttemptResponse])
def get_active_quiz(
    user_id: int = Depends(get_current_user_id),
    service: QuizSessionService = Depends(get_quiz_session_service),
):
    return service.get_active_attempt(user_id)


@router.get("/history", response_model=QuizHistoryResponse)
def get_quiz_history(
    course_id: Optional[int] = None,
    quiz_type: Optional[QuizType] = None,
    module_index: Optional[int] = None,
    lesson_index: Optional[int] = None,
    limit: int = Query(20, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    service: QuizSessionService = Depends(get_quiz_session_service),
):
    scope = None
    if course_id is not None and quiz_type is not None:
        try:
            scope = QuizScope(
                course_id=course_id,
                quiz_type=quiz_type,
                module_index=module_index,
                lesson_index=lesson_index,
            )
        except ValidationError as e:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=e.errors(include_url=False),
            )

    attempts = service.get_history(user_id, scope, limit)
    return QuizHistoryResponse(
        attempts=[QuizAttemptResponse.model_validate(a) for a in attempts],
        total=len(attempts),
    )


@router.get("/attempts/{attempt_id}", response_model=QuizAttemptResponse)
def get_attempt(
    attempt_id: int,
    user_id: int = Depends(get_current_user_id),
    service: QuizSessionService = Depends(get_quiz_session_service),
):
    return service.get_attempt(user_id, attempt_id)


@router.put("/attempts/{attempt_id}/answers", response_model=QuizAttemptResponse)
def record_answer(
    attempt_id: int,
    answer_in: RecordAnswerRequest,
    user_id: int = Depends(get_current_user_id),
    service: QuizSessionService = Depends(get_quiz_session_service),
):
    """Checkpoint one answer. Sending null clears a previous answer."""
    return service.record_answer(
        user_id,
        attempt_id,
        answer_in.question_id,
        answer_in.value,
        current_index=answer_in.current_index,
    )


@router.put("/attempts/{attempt_id}/position", response_model=NavigateResponse)
def navigate(
    attempt_id: int,
    navigate_in: NavigateRequest,
    user_id: int = Depends(get_current_user_id),
    service: QuizSessionService = Depends(get_quiz_session_service),
):
    index = service.navigate(user_id, attempt_id, navigate_in.index)
    return NavigateResponse(attempt_id=attempt_id, current_index=index)


@router.post("/attempts/{attempt_id}/submit", response_model=SubmissionResponse)
async def submit_quiz(
    attempt_id: int,
    submit_in: Optional[SubmitQuizRequest] = None,
    user_id: int = Depends(get_current_user_id),
    service: QuizSessionService = Depends(get_quiz_session_service),
):
    submit_in = submit_in or SubmitQuizRequest()
    result = await service.submit(
        user_id,
        attempt_id,
        challenge_recipient_id=submit_in.challenge_recipient_id,
        bet_amount=submit_in.bet_amount,
    )
    return _submission_response(result)


@router.post("/attempts/{attempt_id}/regrade", response_model=SubmissionResponse)
async def regrade_quiz(
    attempt_id: int,
    user_id: int = Depends(get_current_user_id),
    service: QuizSessionService = Depends(get_quiz_session_service),
):
    result = await service.regrade(user_id, attempt_id)
    return _submission_response(result)


@router.post("/attempts/{attempt_id}/abandon", response_model=QuizAttemptResponse)
def abandon_quiz(
    attempt_id: int,
    user_id: int = Depends(get_current_user_id),
    service: QuizSessionService = Depends(get_quiz_session_service),
):
    return service.abandon(user_id, attempt_id)


@router.get("/attempts/{attempt_id}/events")
def attempt_events(
    attempt_id: int,
    request: Request,
    user_id: int = Depends(get_current_user_id),
    service: QuizSessionService = Depends(get_quiz_session_service),
):
    """Server-Sent Events stream of checkpoints made on this attempt from any device"""
    attempt = service.get_attempt(user_id, attempt_id)
    snapshot = QuizAttemptResponse.model_validate(attempt).model_dump(mode="json")
    return sse_response(request, attempt_topic(attempt_id), snapshot)

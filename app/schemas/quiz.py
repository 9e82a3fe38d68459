from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

QuizType = Literal["lesson", "module", "course"]
RetakeMode = Literal["same", "new"]

# A given answer: option index, true/false, or free text.
# bool is listed first so JSON true/false never coerces into an index.
AnswerValue = Union[bool, int, str]

OBJECTIVE_MARKS = 1
SUBJECTIVE_MARKS = 4


# ==================== Scope ====================


class QuizScope(BaseModel):
    """Granularity a quiz applies to: whole course, one module or one lesson"""

    model_config = ConfigDict(frozen=True)

    course_id: int = Field(..., ge=0)
    quiz_type: QuizType
    module_index: Optional[int] = Field(None, ge=0)
    lesson_index: Optional[int] = Field(None, ge=0)

    @model_validator(mode="after")
    def check_indices(self):
        if self.quiz_type == "lesson":
            if self.module_index is None or self.lesson_index is None:
                raise ValueError("lesson quizzes need module_index and lesson_index")
        elif self.quiz_type == "module":
            if self.module_index is None:
                raise ValueError("module quizzes need module_index")
            if self.lesson_index is not None:
                raise ValueError("module quizzes cannot carry lesson_index")
        elif self.module_index is not None or self.lesson_index is not None:
            raise ValueError("course quizzes cannot carry module or lesson indices")
        return self

    @property
    def scope_key(self) -> str:
        if self.quiz_type == "lesson":
            return f"lesson:{self.course_id}:{self.module_index}:{self.lesson_index}"
        if self.quiz_type == "module":
            return f"module:{self.course_id}:{self.module_index}"
        return f"course:{self.course_id}"

    @classmethod
    def from_record(cls, record: Any) -> "QuizScope":
        """Build a scope from any ORM row carrying the scope columns"""
        return cls(
            course_id=record.course_id,
            quiz_type=record.quiz_type,
            module_index=record.module_index,
            lesson_index=record.lesson_index,
        )

    def columns(self) -> Dict[str, Any]:
        return {
            "course_id": self.course_id,
            "quiz_type": self.quiz_type,
            "module_index": self.module_index,
            "lesson_index": self.lesson_index,
            "scope_key": self.scope_key,
        }


class KindSplit(BaseModel):
    """How many objective and subjective questions a deck needs"""

    objective: int = Field(0, ge=0)
    subjective: int = Field(0, ge=0)

    @property
    def total(self) -> int:
        return self.objective + self.subjective

    def scaled(self, factor: int) -> "KindSplit":
        return KindSplit(
            objective=self.objective * factor, subjective=self.subjective * factor
        )


# ==================== Questions (closed tagged variant) ====================


class _QuestionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_id: str
    scope: QuizScope
    prompt: str = Field(..., min_length=1)


class MultipleChoiceQuestion(_QuestionBase):
    question_type: Literal["multiple_choice"] = "multiple_choice"
    options: List[str] = Field(..., min_length=2)
    correct_answer: int = Field(..., ge=0, description="Index into options")

    @model_validator(mode="after")
    def check_answer_index(self):
        if self.correct_answer >= len(self.options):
            raise ValueError("correct_answer must index into options")
        return self

    @property
    def kind(self) -> str:
        return "objective"

    @property
    def objective_kind(self) -> Optional[str]:
        return "multiple_choice"

    @property
    def max_marks(self) -> int:
        return OBJECTIVE_MARKS


class TrueFalseQuestion(_QuestionBase):
    question_type: Literal["true_false"] = "true_false"
    correct_answer: bool

    @property
    def kind(self) -> str:
        return "objective"

    @property
    def objective_kind(self) -> Optional[str]:
        return "true_false"

    @property
    def max_marks(self) -> int:
        return OBJECTIVE_MARKS


class SubjectiveQuestion(_QuestionBase):
    question_type: Literal["subjective"] = "subjective"
    suggested_answer: Optional[str] = None

    @property
    def kind(self) -> str:
        return "subjective"

    @property
    def objective_kind(self) -> Optional[str]:
        return None

    @property
    def max_marks(self) -> int:
        return SUBJECTIVE_MARKS


QuizQuestion = Annotated[
    Union[MultipleChoiceQuestion, TrueFalseQuestion, SubjectiveQuestion],
    Field(discriminator="question_type"),
]
ObjectiveQuestion = Union[MultipleChoiceQuestion, TrueFalseQuestion]


def question_from_record(record: Any) -> QuizQuestion:
    """Convert a quiz_questions row into its variant"""
    scope = QuizScope.from_record(record)
    if record.question_type == "multiple_choice":
        return MultipleChoiceQuestion(
            question_id=record.question_id,
            scope=scope,
            prompt=record.prompt,
            options=list(record.options or []),
            correct_answer=int(record.correct_answer),
        )
    if record.question_type == "true_false":
        return TrueFalseQuestion(
            question_id=record.question_id,
            scope=scope,
            prompt=record.prompt,
            correct_answer=bool(record.correct_answer),
        )
    return SubjectiveQuestion(
        question_id=record.question_id,
        scope=scope,
        prompt=record.prompt,
        suggested_answer=record.suggested_answer,
    )


class QuestionForAttempt(BaseModel):
    """Question shown during an attempt - WITHOUT correct answer"""

    question_id: str
    question_type: str
    kind: str
    prompt: str
    options: Optional[List[str]] = None

    @classmethod
    def from_question(cls, question: QuizQuestion) -> "QuestionForAttempt":
        return cls(
            question_id=question.question_id,
            question_type=question.question_type,
            kind=question.kind,
            prompt=question.prompt,
            options=getattr(question, "options", None),
        )


# ==================== Scores ====================


class QuestionScore(BaseModel):
    correct: bool
    marks_awarded: int = Field(..., ge=0)
    max_marks: int = Field(..., ge=0)
    feedback: Optional[str] = None
    ungraded: bool = False


class ScoreSummary(BaseModel):
    total_marks: int
    max_marks: int
    percentage: int
    grade: str


# ==================== Requests ====================


class StartQuizRequest(BaseModel):
    scope: QuizScope
    retake_mode: Optional[RetakeMode] = Field(
        None,
        description="same = reuse the last completed deck, new = fresh deck",
    )
    title: Optional[str] = Field(None, max_length=255)


class RecordAnswerRequest(BaseModel):
    question_id: str
    value: Optional[AnswerValue] = Field(
        None, description="Given answer; null clears a previous answer"
    )
    current_index: Optional[int] = Field(None, ge=0)


class NavigateRequest(BaseModel):
    index: int


class SubmitQuizRequest(BaseModel):
    challenge_recipient_id: Optional[int] = Field(
        None, description="Turn this attempt into a challenge for a friend"
    )
    bet_amount: int = Field(0, ge=0)


# ==================== Responses ====================


class QuizAttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    course_id: int
    quiz_type: str
    module_index: Optional[int] = None
    lesson_index: Optional[int] = None
    title: Optional[str] = None
    question_ids: List[str]
    answers: Dict[str, AnswerValue] = Field(default_factory=dict)
    current_index: Optional[int] = None
    status: str
    scores: Optional[Dict[str, QuestionScore]] = None
    total_marks: Optional[int] = None
    max_marks: Optional[int] = None
    percentage: Optional[int] = None
    grade: Optional[str] = None
    time_taken: Optional[int] = None
    is_retake: bool
    challenge_id: Optional[int] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class StartQuizResponse(BaseModel):
    attempt: QuizAttemptResponse
    questions: List[QuestionForAttempt]
    resume_index: int
    resumed: bool
    previous_attempt_id: Optional[int] = None
    message: str


class NavigateResponse(BaseModel):
    attempt_id: int
    current_index: int


class SubmissionResponse(BaseModel):
    attempt: QuizAttemptResponse
    summary: ScoreSummary
    ungraded_question_ids: List[str] = Field(default_factory=list)
    cached: bool = False
    challenge_id: Optional[int] = None


class QuizHistoryResponse(BaseModel):
    attempts: List[QuizAttemptResponse]
    total: int

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI
from pydantic import ValidationError

from app.core.config import settings
from app.core.exceptions import (
    EvaluationUnavailable,
    GenerationFailed,
    GenerationTimeout,
)
from app.schemas.quiz import (
    KindSplit,
    MultipleChoiceQuestion,
    QuizQuestion,
    QuizScope,
    SubjectiveQuestion,
    TrueFalseQuestion,
)
from app.services.question_pool import make_question_id
from app.utils.prompts import (
    EVALUATION_SYSTEM_MESSAGE,
    QUIZ_SYSTEM_MESSAGE,
    get_evaluation_prompt,
    get_generation_prompt,
)

logger = logging.getLogger(__name__)


def marks_from_score(score: float) -> int:
    """Band the evaluator's 0..1 score into subjective marks"""
    if score >= 0.9:
        return 4
    if score >= 0.7:
        return 3
    if score >= 0.5:
        return 2
    return 0


class AIService:
    """Content generator and subjective evaluator backed by an OpenAI-compatible API"""

    def __init__(self):
        self.api_key = settings.ai_api_key
        self.api_endpoint = settings.ai_api_endpoint
        self.model = settings.ai_model

        # Our own deadlines are enforced with asyncio.wait_for
        self.client = AsyncOpenAI(
            api_key=self.api_key or "not-configured",
            base_url=(
                self.api_endpoint.replace("/chat/completions", "")
                if self.api_endpoint
                else None
            ),
            max_retries=2,
        )

        if not self.api_key:
            logger.warning("AI_API_KEY not configured. AI features will be disabled.")
        if not self.api_endpoint:
            logger.warning(
                "AI_API_ENDPOINT not configured. AI features will be disabled."
            )

    async def close(self):
        """Close the OpenAI client and release resources"""
        await self.client.close()

    def is_configured(self) -> bool:
        """Check if AI service is properly configured"""
        return bool(self.api_key and self.api_endpoint and self.model)

    def _extract_json_from_response(self, text: str) -> Any:
        """
        Extract and parse JSON from AI response that may contain markdown formatting

        Raises:
            ValueError: If JSON parsing fails
        """
        json_pattern = r"```(?:json)?\s*\n?([\s\S]*?)\n?```"
        match = re.search(json_pattern, text)
        json_text = match.group(1).strip() if match else text.strip()

        try:
            return json.loads(json_text)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse JSON from AI response: {str(e)}")
            logger.error(f"Response length: {len(text)} characters")
            raise ValueError(f"Failed to parse AI response as JSON: {str(e)}") from e

    async def generate_completion(
        self,
        prompt: str,
        system_message: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        Generate a text completion

        Args:
            prompt: The user prompt
            system_message: Optional system message to set context
            temperature: Controls randomness (0.0 to 2.0)
            max_tokens: Maximum tokens in response

        Returns:
            Generated text response
        """
        if not self.is_configured():
            raise RuntimeError(
                "AI service is not configured. Please check API key and endpoint."
            )

        messages: List[Dict[str, str]] = []
        if system_message:
            messages.append({"role": "system", "content": system_message})
        messages.append({"role": "user", "content": prompt})

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        completion = response.choices[0].message.content
        return completion.strip() if completion else ""

    # ==================== Content generation ====================

    def _parse_question(self, scope: QuizScope, item: Dict[str, Any]) -> QuizQuestion:
        question_type = str(item.get("question_type", "")).replace("-", "_")
        prompt = str(item.get("prompt") or item.get("question") or "").strip()
        common = {
            "question_id": make_question_id(scope.scope_key, question_type, prompt),
            "scope": scope,
            "prompt": prompt,
        }

        if question_type == "multiple_choice":
            options = [str(o) for o in item.get("options") or []]
            answer = item.get("correct_answer")
            if isinstance(answer, str) and not answer.isdigit():
                # Some models answer with the option text instead of the index
                answer = options.index(answer)
            return MultipleChoiceQuestion(
                **common, options=options, correct_answer=int(answer)
            )
        if question_type == "true_false":
            answer = item.get("correct_answer")
            if isinstance(answer, str):
                answer = answer.strip().lower() == "true"
            return TrueFalseQuestion(**common, correct_answer=bool(answer))
        if question_type == "subjective":
            return SubjectiveQuestion(
                **common, suggested_answer=item.get("suggested_answer")
            )
        raise ValueError(f"Unknown question_type: {question_type!r}")

    async def generate_questions(
        self,
        scope: QuizScope,
        count: int,
        kind_split: Optional[KindSplit] = None,
        topic: Optional[str] = None,
    ) -> List[QuizQuestion]:
        """
        Generate new questions for a scope

        Args:
            scope: Course, module or lesson the questions belong to
            count: Total number of questions wanted
            kind_split: Objective/subjective composition; all objective when omitted
            topic: Optional title of the scope to steer the model

        Returns:
            Parsed questions. Malformed items are skipped and logged.
        """
        kind_split = kind_split or KindSplit(objective=count, subjective=0)
        prompt = get_generation_prompt(
            scope.quiz_type, kind_split.objective, kind_split.subjective, topic
        )

        try:
            response_text = await asyncio.wait_for(
                self.generate_completion(
                    prompt=prompt,
                    system_message=QUIZ_SYSTEM_MESSAGE,
                    temperature=0.85,
                    max_tokens=8000,
                ),
                timeout=settings.ai_generation_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"⏱️ Question generation timed out for {scope.scope_key}")
            raise GenerationTimeout(
                "Question generation timed out, please retry",
                scope=scope.scope_key,
            ) from e
        except Exception as e:
            logger.error(f"AI API request error: {str(e)}")
            raise GenerationFailed(
                f"Question generation failed: {str(e)}", scope=scope.scope_key
            ) from e

        try:
            data = self._extract_json_from_response(response_text)
        except ValueError as e:
            raise GenerationFailed(str(e), scope=scope.scope_key) from e

        items = data.get("questions", []) if isinstance(data, dict) else data
        questions: List[QuizQuestion] = []
        for item in items or []:
            try:
                questions.append(self._parse_question(scope, item))
            except (ValueError, TypeError, ValidationError) as e:
                logger.warning(f"Skipping malformed generated question: {e}")

        logger.info(
            f"✅ Generated {len(questions)}/{count} question(s) for {scope.scope_key}"
        )
        return questions

    # ==================== Subjective evaluation ====================

    async def evaluate_answer(
        self, prompt: str, user_answer: str, reference_answer: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Grade an open-ended answer

        Returns:
            {"correct": bool, "feedback": str, "marks": int}
        """
        try:
            response_text = await asyncio.wait_for(
                self.generate_completion(
                    prompt=get_evaluation_prompt(prompt, user_answer, reference_answer),
                    system_message=EVALUATION_SYSTEM_MESSAGE,
                    temperature=0.2,
                    max_tokens=600,
                ),
                timeout=settings.ai_evaluation_timeout,
            )
            data = self._extract_json_from_response(response_text)
            score = float(data.get("score", 0))
        except asyncio.TimeoutError as e:
            logger.warning("⏱️ Answer evaluation timed out")
            raise EvaluationUnavailable("Answer evaluation timed out") from e
        except Exception as e:
            logger.warning(f"Answer evaluation failed: {str(e)}")
            raise EvaluationUnavailable(f"Answer evaluation failed: {str(e)}") from e

        return {
            "correct": score >= 0.5,
            "feedback": data.get("feedback") or "",
            "marks": marks_from_score(score),
        }


# Create singleton instance
ai_service = AIService()

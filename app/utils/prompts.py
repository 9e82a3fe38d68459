from typing import Optional

# ============================================
# SYSTEM MESSAGES
# ============================================

QUIZ_SYSTEM_MESSAGE = """You are an expert educational assessment designer.

━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
🎯 MANDATORY REQUIREMENTS
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

1. EXACT COUNTS: produce exactly the number of objective and subjective
   questions requested, no more and no less.
2. UNIQUENESS: every question must test a different idea. Never repeat a
   question or rephrase an earlier one.
3. CLARITY: one unambiguous correct answer per objective question.
4. OUTPUT FORMAT:
   • Return ONLY valid JSON
   • NO markdown formatting (no ```json```)
   • NO additional text outside the JSON object
"""

EVALUATION_SYSTEM_MESSAGE = """You are a fair and consistent examiner.
You grade open-ended student answers against a reference answer. The student
does not need to match the reference word for word; judge understanding.
Return ONLY valid JSON with no markdown formatting."""


# ============================================
# SCOPE DESCRIPTIONS
# ============================================


def get_scope_description(quiz_type: str, topic: Optional[str]) -> str:
    """Human readable description of what the quiz covers"""
    subject = topic or "the course material"
    if quiz_type == "lesson":
        return f'a single lesson: "{subject}". Questions must stay within this lesson.'
    if quiz_type == "module":
        return (
            f'a whole module: "{subject}". Spread the questions across the '
            "lessons of the module."
        )
    return (
        f'a final exam for the course "{subject}". Cover every module of the '
        "course and favour questions that link concepts together."
    )


# ============================================
# GENERATION PROMPT
# ============================================


def get_generation_prompt(
    quiz_type: str,
    objective_count: int,
    subjective_count: int,
    topic: Optional[str] = None,
) -> str:
    return f"""Generate {objective_count + subjective_count} quiz questions for {get_scope_description(quiz_type, topic)}

━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
📋 REQUIREMENTS
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
- Generate {objective_count} objective questions (mix of multiple_choice and true_false)
- Generate {subjective_count} subjective questions (open-ended text questions)
- multiple_choice questions have exactly 4 options
- correct_answer for multiple_choice is the 0-based index of the right option
- correct_answer for true_false is a JSON boolean
- subjective questions carry a suggested_answer showing good understanding

Return ONLY valid JSON following this exact structure:

{{
  "questions": [
    {{
      "question_type": "multiple_choice",
      "prompt": "Question text here",
      "options": ["Option 1", "Option 2", "Option 3", "Option 4"],
      "correct_answer": 0
    }},
    {{
      "question_type": "true_false",
      "prompt": "Statement to judge",
      "correct_answer": true
    }},
    {{
      "question_type": "subjective",
      "prompt": "Open question here",
      "suggested_answer": "A comprehensive reference answer"
    }}
  ]
}}

Return only the JSON object."""


# ============================================
# EVALUATION PROMPT
# ============================================


def get_evaluation_prompt(
    prompt: str, user_answer: str, reference_answer: Optional[str]
) -> str:
    reference = reference_answer or "No reference answer available, rely on your own knowledge."
    return f"""Evaluate the student's answer to this question:

Question: {prompt}

Suggested Answer (reference): {reference}

Student's Answer: {user_answer}

Evaluate whether the student's answer demonstrates understanding of the concept. Consider:
- Does it show comprehension of key concepts?
- Is it factually correct?
- Does it address the question adequately?

Return ONLY valid JSON:
{{
  "correct": true/false,
  "feedback": "Brief feedback explaining what was good or what was missing",
  "score": 0-1 (1 for a correct answer, 0.5-0.9 for partially correct, 0-0.4 for incorrect)
}}"""

"""
Expert Evaluator - Question Generator
Asks the LLM for multiple-choice questions about an uploaded project and
persists them against the assessment.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from backend.database import Assessment, Question, MAX_QUESTIONS
from backend.llm_provider import LLMClient, LLMResponseError, extract_json
from prompts.assessment_prompts import QUESTION_GENERATION_PROMPT

logger = logging.getLogger(__name__)


class QuestionGenerationError(RuntimeError):
    pass


@dataclass
class GeneratedQuestion:
    question_text: str
    options: List[str]
    correct_answer: str


def parse_questions(raw_text: str, limit: int = MAX_QUESTIONS) -> List[GeneratedQuestion]:
    """
    Parse the model reply into validated questions.

    Items without text, with fewer than two options, or whose correct answer
    is not one of the options are dropped. Raises QuestionGenerationError when
    the reply is not a JSON array or nothing usable survives.
    """
    try:
        data = extract_json(raw_text)
    except LLMResponseError as e:
        logger.error("Failed to parse AI response: %s", raw_text[:200])
        raise QuestionGenerationError("Invalid AI response format") from e

    if isinstance(data, dict) and isinstance(data.get("questions"), list):
        data = data["questions"]
    if not isinstance(data, list):
        raise QuestionGenerationError("Invalid AI response format")

    questions = []
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            continue
        text = str(item.get("questionText") or "").strip()
        options = [str(o).strip() for o in (item.get("options") or []) if str(o).strip()]
        correct = str(item.get("correctAnswer") or "").strip()

        if not text or len(options) < 2 or correct not in options:
            logger.warning("Dropping malformed question #%d from AI response", i + 1)
            continue
        questions.append(GeneratedQuestion(question_text=text, options=options, correct_answer=correct))
        if len(questions) >= limit:
            break

    if not questions:
        raise QuestionGenerationError("AI response contained no usable questions")
    return questions


class QuestionGenerator:
    """
    Generates and stores up to MAX_QUESTIONS questions for an assessment.
    """

    def __init__(self, client: Optional[LLMClient] = None):
        self._client = client

    def _get_client(self) -> LLMClient:
        if self._client is None:
            self._client = LLMClient.from_env()
            logger.info("QuestionGenerator using: %s", self._client.active_provider)
        return self._client

    def build_prompt(self, source_digest: str, count: int = MAX_QUESTIONS) -> str:
        return QUESTION_GENERATION_PROMPT.format(count=count, project_files=source_digest)

    def generate(self, db, assessment: Assessment, source_digest: str) -> List[Question]:
        existing = (
            db.query(Question)
            .filter_by(assessment_id=assessment.id)
            .order_by(Question.question_number)
            .all()
        )
        if existing:
            logger.info("Assessment %s already has %d questions; reusing.", assessment.id, len(existing))
            return existing

        if not source_digest.strip():
            raise QuestionGenerationError("No project files to generate questions from")

        try:
            response = self._get_client().generate(self.build_prompt(source_digest))
        except RuntimeError as e:
            raise QuestionGenerationError("Failed to generate questions") from e

        parsed = parse_questions(response.text)

        rows = [
            Question(
                assessment_id=assessment.id,
                question_number=index,
                question_text=q.question_text,
                options=q.options,
                correct_answer=q.correct_answer,
            )
            for index, q in enumerate(parsed, start=1)
        ]
        try:
            db.add_all(rows)
            db.commit()
        except Exception:
            db.rollback()
            logger.error("Database insert error for assessment %s", assessment.id, exc_info=True)
            raise

        for row in rows:
            db.refresh(row)
        logger.info("Generated %d questions for assessment %s via %s",
                    len(rows), assessment.id, response.provider)
        return rows

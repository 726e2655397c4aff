"""
Expert Evaluator - Report Evaluator
Scores a finished assessment and asks the LLM for the plagiarism / code
quality analysis, then writes the one-and-only AssessmentReport.

Flow:
  questions (persisted) → score_answers()          → total_score
                        → ANALYSIS_PROMPT → LLM    → plagiarism + analysis
                        → AssessmentReport row + assessment marked completed
"""

import logging
import math
from datetime import datetime
from typing import Optional

from backend.database import Assessment, AssessmentReport, ProjectFile, Question, STATUS_COMPLETED
from backend.llm_provider import LLMClient
from backend.scoring import performance_metrics, question_pairs
from prompts.assessment_prompts import (
    ANALYSIS_PROMPT,
    ANALYSIS_REQUIRED_FIELDS,
    DEFAULT_ANALYSIS,
    format_qa_section,
)

logger = logging.getLogger(__name__)


class EvaluationError(RuntimeError):
    pass


def _clamp_int(value, low: int, high: int, default: int) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return max(low, min(high, int(round(number))))


def _as_str_list(value) -> list:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if str(v).strip()]
    return []


def normalise_analysis(data: dict) -> dict:
    """Coerce a model reply into the report shape with sane ranges."""
    quality = data.get("codeQualityAnalysis")
    if not isinstance(quality, dict):
        quality = dict(DEFAULT_ANALYSIS["codeQualityAnalysis"])
    quality = dict(quality)
    quality["overallRating"] = _clamp_int(quality.get("overallRating"), 1, 10, 5)

    return {
        "plagiarismScore": _clamp_int(data.get("plagiarismScore"), 0, 100, DEFAULT_ANALYSIS["plagiarismScore"]),
        "codeQualityAnalysis": quality,
        "securitySuggestions": _as_str_list(data.get("securitySuggestions")),
        "optimizationSuggestions": _as_str_list(data.get("optimizationSuggestions")),
        "overallAssessment": str(data.get("overallAssessment") or ""),
    }


class ReportEvaluator:

    def __init__(self, client: Optional[LLMClient] = None):
        self._client = client

    def _get_client(self) -> LLMClient:
        if self._client is None:
            self._client = LLMClient.from_env()
            logger.info("ReportEvaluator using: %s", self._client.active_provider)
        return self._client

    def build_prompt(self, project_name: str, questions: list, file_names: list, metrics: dict) -> str:
        return ANALYSIS_PROMPT.format(
            project_name=project_name,
            score=metrics["score"],
            correct=metrics["correctAnswers"],
            total=metrics["totalQuestions"],
            qa_section=format_qa_section(questions),
            file_list="\n".join(file_names) or "(no files recorded)",
        )

    def evaluate(self, db, assessment: Assessment, user_name: str) -> dict:
        existing = db.query(AssessmentReport).filter_by(assessment_id=assessment.id).first()
        if existing:
            logger.info("Report for assessment %s already exists, returning it.", assessment.id)
            return self._report_payload(assessment, existing)

        questions = (
            db.query(Question)
            .filter_by(assessment_id=assessment.id)
            .order_by(Question.question_number)
            .all()
        )
        if not questions:
            raise EvaluationError("Assessment has no questions to evaluate.")

        q_dicts = [q.to_dict(include_answer=True) for q in questions]
        metrics = performance_metrics(question_pairs(q_dicts))
        file_names = [
            f.file_name for f in db.query(ProjectFile).filter_by(assessment_id=assessment.id).all()
        ]

        prompt = self.build_prompt(assessment.project_name, q_dicts, file_names, metrics)
        data, parsed_ok = self._get_client().generate_json(
            prompt,
            required=ANALYSIS_REQUIRED_FIELDS,
            defaults=DEFAULT_ANALYSIS,
        )
        if not parsed_ok:
            logger.warning("Analysis for assessment %s fell back to the default payload.", assessment.id)
        analysis = normalise_analysis(data)

        report = AssessmentReport(
            assessment_id=assessment.id,
            user_id=assessment.user_id,
            plagiarism_score=analysis["plagiarismScore"],
            code_quality_analysis=analysis["codeQualityAnalysis"],
            security_suggestions=analysis["securitySuggestions"],
            optimization_suggestions=analysis["optimizationSuggestions"],
            performance_metrics=metrics,
            overall_assessment=analysis["overallAssessment"],
            analysis_fallback=not parsed_ok,
            certificate_data={
                "userName": user_name,
                "projectName": assessment.project_name,
                "score": metrics["score"],
                "issuedAt": datetime.utcnow().isoformat(),
            },
        )

        assessment.total_score = metrics["score"]
        assessment.plagiarism_score = analysis["plagiarismScore"]
        assessment.plagiarism_report = analysis
        assessment.assessment_result = analysis["overallAssessment"]
        assessment.status = STATUS_COMPLETED

        try:
            db.add(report)
            db.commit()
        except Exception:
            db.rollback()
            logger.error("Failed to persist report for assessment %s", assessment.id, exc_info=True)
            raise
        db.refresh(report)

        logger.info(
            "Assessment %s evaluated: score=%d plagiarism=%d fallback=%s",
            assessment.id, metrics["score"], analysis["plagiarismScore"], not parsed_ok,
        )
        return self._report_payload(assessment, report)

    @staticmethod
    def _report_payload(assessment: Assessment, report: AssessmentReport) -> dict:
        metrics = report.performance_metrics or {}
        return {
            "assessmentId": assessment.id,
            "score": metrics.get("score", assessment.total_score or 0),
            "correctAnswers": metrics.get("correctAnswers", 0),
            "totalQuestions": metrics.get("totalQuestions", 0),
            "plagiarismScore": report.plagiarism_score,
            "codeQualityAnalysis": report.code_quality_analysis or {},
            "securitySuggestions": report.security_suggestions or [],
            "optimizationSuggestions": report.optimization_suggestions or [],
            "overallAssessment": report.overall_assessment or "",
            "performanceMetrics": metrics,
            "analysisFallback": bool(report.analysis_fallback),
        }

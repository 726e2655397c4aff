"""
Expert Evaluator - Report & Certificate PDF
Page 1: assessment report.  Page 2: certificate of completion.
"""

import logging
from datetime import datetime
from io import BytesIO
from typing import List

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter, landscape
from reportlab.lib.units import inch
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas as pdf_canvas

logger = logging.getLogger(__name__)

BODY_FONT = "Helvetica"
BOLD_FONT = "Helvetica-Bold"


class _Writer:
    """Top-down line writer that starts a new page when it runs out of room."""

    def __init__(self, pdf, width, height, margin=1 * inch):
        self.pdf = pdf
        self.width = width
        self.height = height
        self.margin = margin
        self.y = height - margin

    def _ensure(self, needed):
        if self.y - needed < self.margin:
            self.pdf.showPage()
            self.y = self.height - self.margin

    def heading(self, text, size=14):
        self._ensure(0.45 * inch)
        self.y -= 0.15 * inch
        self.pdf.setFont(BOLD_FONT, size)
        self.pdf.drawString(self.margin, self.y, text)
        self.y -= 0.3 * inch

    def line(self, text, size=10, indent=0.0, font=BODY_FONT):
        max_width = self.width - 2 * self.margin - indent
        for chunk in simpleSplit(str(text), font, size, max_width) or [""]:
            self._ensure(0.2 * inch)
            self.pdf.setFont(font, size)
            self.pdf.drawString(self.margin + indent, self.y, chunk)
            self.y -= size * 1.4

    def bullets(self, items: List[str], empty="None reported."):
        if not items:
            self.line(empty, indent=0.2 * inch)
        for item in items:
            self.line(f"- {item}", indent=0.2 * inch)


def _score_colour(score: int):
    if score >= 80:
        return colors.green
    if score >= 60:
        return colors.orange
    return colors.red


def _draw_report(pdf, assessment: dict, questions: List[dict], report: dict) -> None:
    w, h = letter
    out = _Writer(pdf, w, h)
    metrics = report.get("performance_metrics") or {}
    quality = report.get("code_quality_analysis") or {}
    score = int(assessment.get("total_score") or metrics.get("score") or 0)

    pdf.setFont(BOLD_FONT, 20)
    pdf.drawString(out.margin, out.y, "Expert Evaluator: Assessment Report")
    out.y -= 0.45 * inch
    out.line(f"Project: {assessment.get('project_name', '')}", size=12)
    completed = assessment.get("completed_at") or assessment.get("created_at") or ""
    out.line(f"Completed: {completed[:19].replace('T', ' ')}", size=12)

    out.heading("Scores")
    pdf.setFillColor(_score_colour(score))
    out.line(f"Overall score: {score} / 100", size=12, font=BOLD_FONT)
    pdf.setFillColor(colors.black)
    out.line(f"Correct answers: {metrics.get('correctAnswers', 0)} of {metrics.get('totalQuestions', 0)}")
    plagiarism = report.get("plagiarism_score") or 0
    out.line(f"Plagiarism: {plagiarism}%   Originality: {100 - plagiarism}%")
    if report.get("analysis_fallback"):
        out.line("Note: automated analysis was unavailable; default analysis shown.", size=9)

    out.heading("Code Quality")
    out.line(f"Overall rating: {quality.get('overallRating', '-')} / 10")
    for label, key in (("Architecture", "architecture"),
                       ("Code organization", "codeOrganization"),
                       ("Best practices", "bestPractices")):
        if quality.get(key):
            out.line(f"{label}: {quality[key]}")

    out.heading("Security Suggestions")
    out.bullets(report.get("security_suggestions") or [])
    out.heading("Optimization Suggestions")
    out.bullets(report.get("optimization_suggestions") or [])

    if report.get("overall_assessment"):
        out.heading("Overall Assessment")
        out.line(report["overall_assessment"])

    out.heading("Question Results")
    for q in questions:
        answer = q.get("user_answer")
        verdict = "Correct" if answer is not None and answer == q.get("correct_answer") else "Incorrect"
        out.line(f"Q{q.get('question_number', '?')}. {q.get('question_text', '')}", font=BOLD_FONT)
        out.line(f"Your answer: {answer if answer is not None else '(no answer)'}  [{verdict}]",
                 indent=0.2 * inch, size=9)
        if verdict == "Incorrect" and q.get("correct_answer"):
            out.line(f"Correct answer: {q['correct_answer']}", indent=0.2 * inch, size=9)

    pdf.showPage()


def _draw_certificate(pdf, assessment: dict, report: dict) -> None:
    pdf.setPageSize(landscape(letter))
    w, h = landscape(letter)
    cert = report.get("certificate_data") or {}
    score = int(cert.get("score", assessment.get("total_score") or 0))
    originality = 100 - int(report.get("plagiarism_score") or 0)
    issued = cert.get("issuedAt") or datetime.utcnow().isoformat()

    pdf.setStrokeColor(colors.darkblue)
    pdf.setLineWidth(4)
    pdf.rect(0.5 * inch, 0.5 * inch, w - inch, h - inch)

    pdf.setFont(BOLD_FONT, 32)
    pdf.drawCentredString(w / 2, h - 1.6 * inch, "Certificate of Completion")
    pdf.setFont(BODY_FONT, 14)
    pdf.drawCentredString(w / 2, h - 2.3 * inch, "This certifies that")
    pdf.setFont(BOLD_FONT, 26)
    pdf.drawCentredString(w / 2, h - 3.0 * inch, cert.get("userName", ""))
    pdf.setFont(BODY_FONT, 14)
    pdf.drawCentredString(w / 2, h - 3.6 * inch, "has successfully completed the expert evaluation of")
    pdf.setFont(BOLD_FONT, 18)
    pdf.drawCentredString(w / 2, h - 4.2 * inch,
                          cert.get("projectName") or assessment.get("project_name", ""))
    pdf.setFont(BODY_FONT, 14)
    pdf.drawCentredString(w / 2, h - 5.0 * inch, f"Score: {score}%     Originality: {originality}%")
    pdf.setFont(BODY_FONT, 11)
    pdf.drawCentredString(w / 2, 1.0 * inch, f"Issued {issued[:10]}")
    pdf.showPage()


def render_report_pdf(assessment: dict, questions: List[dict], report: dict) -> bytes:
    """
    assessment : Assessment.to_dict()
    questions  : Question.to_dict(include_answer=True) list
    report     : AssessmentReport.to_dict()
    """
    buf = BytesIO()
    pdf = pdf_canvas.Canvas(buf, pagesize=letter)
    pdf.setTitle(f"Expert Evaluator - {assessment.get('project_name', 'Assessment')}")
    _draw_report(pdf, assessment, questions, report)
    _draw_certificate(pdf, assessment, report)
    pdf.save()
    data = buf.getvalue()
    logger.info("Rendered report PDF for assessment %s (%d bytes)", assessment.get("id"), len(data))
    return data

"""
Expert Evaluator - Test Suite
Unit tests for the scoring, archive, AI, proctoring and wizard components.
"""

import sys
import os
import tempfile
sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), ".."))

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("MEDIA_DIR", tempfile.mkdtemp(prefix="expert-evaluator-media-"))

import asyncio
import base64
import io
import json
import re
import unittest
import zipfile
from unittest.mock import AsyncMock, MagicMock, patch

import numpy as np
from PIL import Image


def _make_zip(entries: dict) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in entries.items():
            zf.writestr(name, content)
    return buf.getvalue()


def _png_bytes(size=(8, 8), color=(120, 80, 40)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color=color).save(buf, format="PNG")
    return buf.getvalue()


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class DatabaseTestCase(unittest.TestCase):
    """Fresh in-memory schema per test."""

    def setUp(self):
        from backend.database import Base, SessionLocal, engine, Profile, Assessment
        Base.metadata.drop_all(bind=engine)
        Base.metadata.create_all(bind=engine)
        self.db = SessionLocal()
        self.user = Profile(email="dev@example.com", username="dev", password_hash="x")
        self.db.add(self.user)
        self.db.commit()
        self.assessment = Assessment(user_id=self.user.id, project_name="Todo App")
        self.db.add(self.assessment)
        self.db.commit()

    def tearDown(self):
        self.db.close()

    def add_questions(self, answers):
        """answers: list of (user_answer, correct_answer)."""
        from backend.database import Question
        for i, (given, correct) in enumerate(answers, start=1):
            self.db.add(Question(
                assessment_id=self.assessment.id,
                question_number=i,
                question_text=f"Question {i}?",
                options=["A", "B", "C", "D"],
                correct_answer=correct,
                user_answer=given,
            ))
        self.db.commit()


# ─────────────────────────────────────────────────────────
# Scoring Tests
# ─────────────────────────────────────────────────────────

class TestScoring(unittest.TestCase):

    def test_round_half_up(self):
        from backend.scoring import round_half_up
        self.assertEqual(round_half_up(12.5), 13)
        self.assertEqual(round_half_up(62.5), 63)
        self.assertEqual(round_half_up(66.4), 66)

    def test_score_is_percentage_of_correct(self):
        from backend.scoring import score_answers
        pairs = [("A", "A"), ("B", "A"), ("C", "C")]
        self.assertEqual(score_answers(pairs), 67)

    def test_one_of_eight_rounds_up(self):
        from backend.scoring import score_answers
        pairs = [("A", "A")] + [(None, "A")] * 7
        self.assertEqual(score_answers(pairs), 13)

    def test_unanswered_counts_as_incorrect(self):
        from backend.scoring import score_answers
        self.assertEqual(score_answers([(None, "A"), ("  ", "A")]), 0)

    def test_empty_scores_zero(self):
        from backend.scoring import score_answers
        self.assertEqual(score_answers([]), 0)

    def test_score_always_in_range(self):
        from backend.scoring import score_answers
        for correct in range(0, 11):
            pairs = [("A", "A")] * correct + [("B", "A")] * (10 - correct)
            score = score_answers(pairs)
            self.assertGreaterEqual(score, 0)
            self.assertLessEqual(score, 100)

    def test_performance_metrics(self):
        from backend.scoring import performance_metrics
        m = performance_metrics([("A", "A"), ("B", "A"), (None, "C"), ("D", "D")])
        self.assertEqual(m, {"totalQuestions": 4, "correctAnswers": 2,
                             "incorrectAnswers": 2, "score": 50})

    def test_question_pairs_from_dicts(self):
        from backend.scoring import question_pairs
        pairs = question_pairs([{"user_answer": "A", "correct_answer": "B"}])
        self.assertEqual(pairs, [("A", "B")])


# ─────────────────────────────────────────────────────────
# Archive Tests
# ─────────────────────────────────────────────────────────

class TestArchive(unittest.TestCase):

    def test_skips_vendor_and_git_paths(self):
        from backend.archive import extract_project
        data = _make_zip({
            "src/app.py": "print('hi')",
            "README.md": "# Todo",
            "node_modules/react/index.js": "module.exports = {}",
            ".git/config": "[core]",
        })
        files = extract_project(data)
        self.assertEqual(sorted(f.name for f in files), ["README.md", "src/app.py"])

    def test_preview_truncated_to_500_chars(self):
        from backend.archive import extract_project
        files = extract_project(_make_zip({"big.txt": "x" * 1200}))
        self.assertEqual(files[0].size, 1200)
        self.assertEqual(len(files[0].preview), 500)
        self.assertEqual(len(files[0].content), 1200)

    def test_invalid_utf8_is_replaced(self):
        from backend.archive import extract_project
        files = extract_project(_make_zip({"bin.dat": b"ok\xff\xfe"}))
        self.assertIn("�", files[0].content)

    def test_non_zip_names_rejected(self):
        from backend.archive import ArchiveError, validate_archive_name
        for name in ("project.rar", "project.tar.gz", "zip", ""):
            with self.assertRaises(ArchiveError):
                validate_archive_name(name)

    def test_zip_name_check_is_case_insensitive(self):
        from backend.archive import validate_archive_name
        validate_archive_name("Project.ZIP")

    def test_corrupt_zip_rejected(self):
        from backend.archive import ArchiveError, extract_project
        with self.assertRaises(ArchiveError):
            extract_project(b"this is not a zip file")

    def test_empty_archive_rejected(self):
        from backend.archive import ArchiveError, extract_project
        with self.assertRaises(ArchiveError):
            extract_project(_make_zip({"node_modules/a.js": "x"}))

    def test_too_many_files_rejected(self):
        from backend.archive import ArchiveError, extract_project
        with patch("backend.archive.MAX_ARCHIVE_FILES", 2):
            with self.assertRaises(ArchiveError):
                extract_project(_make_zip({"a.py": "1", "b.py": "2", "c.py": "3"}))

    def test_source_digest_format(self):
        from backend.archive import build_source_digest, extract_project
        files = extract_project(_make_zip({f"f{i}.py": f"code {i}" for i in range(7)}))
        digest = build_source_digest(files, limit=5)
        self.assertEqual(digest.count("File: "), 5)
        self.assertTrue(digest.startswith("File: f0.py\ncode 0"))
        self.assertIn("\n\nFile: f1.py\n", digest)


# ─────────────────────────────────────────────────────────
# LLM Client Tests
# ─────────────────────────────────────────────────────────

class TestLLMClient(unittest.TestCase):

    def _failing_provider(self):
        p = MagicMock()
        p.is_available.return_value = True
        p.generate.side_effect = Exception("network down")
        return p

    def _text_provider(self, text):
        from backend.llm_provider import LLMResponse
        p = MagicMock()
        p.is_available.return_value = True
        p.generate.return_value = LLMResponse(text=text, provider="mock", model="m", latency_ms=1.0)
        return p

    def test_extract_json_with_markdown_fence(self):
        from backend.llm_provider import extract_json
        self.assertEqual(extract_json('```json\n{"a": 1}\n```'), {"a": 1})

    def test_extract_json_embedded_in_prose(self):
        from backend.llm_provider import extract_json
        self.assertEqual(extract_json('Here you go: [1, 2, 3] hope it helps'), [1, 2, 3])

    def test_extract_json_raises_on_garbage(self):
        from backend.llm_provider import LLMResponseError, extract_json
        with self.assertRaises(LLMResponseError):
            extract_json("no json here")

    def test_falls_through_to_next_provider(self):
        from backend.llm_provider import LLMClient
        client = LLMClient([self._failing_provider(), self._text_provider("{}")])
        self.assertEqual(client.generate("hi").provider, "mock")

    def test_all_providers_failing_raises(self):
        from backend.llm_provider import LLMClient
        with self.assertRaises(RuntimeError):
            LLMClient([self._failing_provider()]).generate("hi")

    def test_generate_json_falls_back_to_defaults(self):
        from backend.llm_provider import LLMClient
        client = LLMClient([self._text_provider("definitely not json")])
        data, ok = client.generate_json("hi", defaults={"x": 1}, max_retries=1)
        self.assertFalse(ok)
        self.assertEqual(data, {"x": 1})

    def test_generate_json_fills_required_fields(self):
        from backend.llm_provider import LLMClient
        client = LLMClient([self._text_provider('{"plagiarismScore": 3}')])
        data, ok = client.generate_json("hi", required=["plagiarismScore", "overallAssessment"],
                                        defaults={"overallAssessment": "fine"})
        self.assertTrue(ok)
        self.assertEqual(data["plagiarismScore"], 3)
        self.assertEqual(data["overallAssessment"], "fine")

    def test_fallback_provider_builds_questions_from_file_headers(self):
        from backend.llm_provider import RuleBasedFallbackProvider
        from backend.question_generator import QuestionGenerator, parse_questions
        prompt = QuestionGenerator(client=MagicMock()).build_prompt("File: src/app.py\nprint(1)\n\nFile: README.md\n# hi")
        questions = parse_questions(RuleBasedFallbackProvider().generate(prompt).text)
        self.assertEqual([q.correct_answer for q in questions], ["src/app.py", "README.md"])
        for q in questions:
            self.assertEqual(len(q.options), 4)
            self.assertIn(q.correct_answer, q.options)

    def test_fallback_provider_returns_default_analysis(self):
        from backend.llm_provider import RuleBasedFallbackProvider
        from prompts.assessment_prompts import ANALYSIS_TASK_MARKER, DEFAULT_ANALYSIS
        reply = RuleBasedFallbackProvider().generate(f"{ANALYSIS_TASK_MARKER}\n...")
        self.assertEqual(json.loads(reply.text), DEFAULT_ANALYSIS)


# ─────────────────────────────────────────────────────────
# Question Generator Tests
# ─────────────────────────────────────────────────────────

QUESTIONS_JSON = json.dumps([
    {"questionText": "What does app.py print?", "options": ["1", "2", "3", "4"], "correctAnswer": "1"},
    {"questionText": "Which framework is used?", "options": ["Flask", "Django", "None", "FastAPI"],
     "correctAnswer": "None"},
])


class TestQuestionParsing(unittest.TestCase):

    def test_drops_malformed_items(self):
        from backend.question_generator import parse_questions
        raw = json.dumps([
            {"questionText": "Good?", "options": ["a", "b"], "correctAnswer": "a"},
            {"questionText": "", "options": ["a", "b"], "correctAnswer": "a"},
            {"questionText": "Bad answer?", "options": ["a", "b"], "correctAnswer": "z"},
            "not a dict",
        ])
        questions = parse_questions(raw)
        self.assertEqual([q.question_text for q in questions], ["Good?"])

    def test_accepts_wrapped_object(self):
        from backend.question_generator import parse_questions
        raw = json.dumps({"questions": json.loads(QUESTIONS_JSON)})
        self.assertEqual(len(parse_questions(raw)), 2)

    def test_limit_is_applied(self):
        from backend.question_generator import parse_questions
        items = [{"questionText": f"Q{i}?", "options": ["a", "b"], "correctAnswer": "a"} for i in range(15)]
        self.assertEqual(len(parse_questions(json.dumps(items))), 10)

    def test_unparseable_reply_raises(self):
        from backend.question_generator import QuestionGenerationError, parse_questions
        with self.assertRaises(QuestionGenerationError):
            parse_questions("I cannot help with that.")

    def test_object_without_questions_raises(self):
        from backend.question_generator import QuestionGenerationError, parse_questions
        with self.assertRaises(QuestionGenerationError):
            parse_questions('{"error": "nope"}')


class TestQuestionGenerator(DatabaseTestCase):

    def _client(self, text=QUESTIONS_JSON):
        from backend.llm_provider import LLMResponse
        client = MagicMock()
        client.generate.return_value = LLMResponse(text=text, provider="mock", model="m", latency_ms=1.0)
        return client

    def test_persists_numbered_questions(self):
        from backend.question_generator import QuestionGenerator
        client = self._client()
        rows = QuestionGenerator(client=client).generate(self.db, self.assessment, "File: app.py\nprint(1)")
        self.assertEqual([r.question_number for r in rows], [1, 2])
        self.assertEqual(rows[1].correct_answer, "None")
        prompt = client.generate.call_args[0][0]
        self.assertIn("File: app.py", prompt)

    def test_existing_questions_are_reused(self):
        from backend.question_generator import QuestionGenerator
        client = self._client()
        gen = QuestionGenerator(client=client)
        first = gen.generate(self.db, self.assessment, "File: app.py\nx")
        second = gen.generate(self.db, self.assessment, "File: app.py\nx")
        self.assertEqual([q.id for q in first], [q.id for q in second])
        client.generate.assert_called_once()

    def test_empty_digest_raises(self):
        from backend.question_generator import QuestionGenerationError, QuestionGenerator
        with self.assertRaises(QuestionGenerationError):
            QuestionGenerator(client=self._client()).generate(self.db, self.assessment, "   ")

    def test_provider_failure_raises(self):
        from backend.question_generator import QuestionGenerationError, QuestionGenerator
        client = MagicMock()
        client.generate.side_effect = RuntimeError("All LLM providers failed.")
        with self.assertRaises(QuestionGenerationError):
            QuestionGenerator(client=client).generate(self.db, self.assessment, "File: a\nb")


# ─────────────────────────────────────────────────────────
# Report Evaluator Tests
# ─────────────────────────────────────────────────────────

class TestNormaliseAnalysis(unittest.TestCase):

    def test_scores_are_clamped(self):
        from backend.report_evaluator import normalise_analysis
        result = normalise_analysis({"plagiarismScore": 140,
                                     "codeQualityAnalysis": {"overallRating": 0}})
        self.assertEqual(result["plagiarismScore"], 100)
        self.assertEqual(result["codeQualityAnalysis"]["overallRating"], 1)

    def test_garbage_values_get_defaults(self):
        from backend.report_evaluator import normalise_analysis
        result = normalise_analysis({"plagiarismScore": "lots",
                                     "codeQualityAnalysis": "great",
                                     "securitySuggestions": "Use HTTPS"})
        self.assertEqual(result["plagiarismScore"], 15)
        self.assertEqual(result["codeQualityAnalysis"]["overallRating"], 8)
        self.assertEqual(result["securitySuggestions"], ["Use HTTPS"])
        self.assertEqual(result["optimizationSuggestions"], [])

    def test_non_finite_numbers_get_defaults(self):
        from backend.report_evaluator import normalise_analysis
        data = json.loads('{"plagiarismScore": Infinity, '
                          '"codeQualityAnalysis": {"overallRating": 1e400}}')
        result = normalise_analysis(data)
        self.assertEqual(result["plagiarismScore"], 15)
        self.assertEqual(result["codeQualityAnalysis"]["overallRating"], 5)
        result = normalise_analysis(json.loads('{"plagiarismScore": NaN}'))
        self.assertEqual(result["plagiarismScore"], 15)


class TestReportEvaluator(DatabaseTestCase):

    ANALYSIS = {
        "plagiarismScore": 20,
        "codeQualityAnalysis": {"architecture": "ok", "codeOrganization": "ok",
                                "bestPractices": "ok", "overallRating": 7},
        "securitySuggestions": ["Validate input"],
        "optimizationSuggestions": ["Cache results"],
        "overallAssessment": "Solid understanding.",
    }

    def _client(self, analysis=None, ok=True):
        client = MagicMock()
        client.generate_json.return_value = (dict(analysis or self.ANALYSIS), ok)
        return client

    def test_scores_and_completes_assessment(self):
        from backend.database import AssessmentReport, STATUS_COMPLETED
        from backend.report_evaluator import ReportEvaluator
        self.add_questions([("A", "A"), ("B", "B"), ("C", "C"), (None, "D")])

        payload = ReportEvaluator(client=self._client()).evaluate(self.db, self.assessment, "dev")

        self.assertEqual(payload["score"], 75)
        self.assertEqual(payload["correctAnswers"], 3)
        self.assertEqual(payload["plagiarismScore"], 20)
        self.assertFalse(payload["analysisFallback"])

        self.db.refresh(self.assessment)
        self.assertEqual(self.assessment.status, STATUS_COMPLETED)
        self.assertEqual(self.assessment.total_score, 75)
        self.assertIsNotNone(self.assessment.completed_at)

        report = self.db.query(AssessmentReport).one()
        self.assertEqual(report.certificate_data["userName"], "dev")
        self.assertEqual(report.certificate_data["projectName"], "Todo App")

    def test_report_created_only_once(self):
        from backend.database import AssessmentReport
        from backend.report_evaluator import ReportEvaluator
        self.add_questions([("A", "A")])
        client = self._client()
        evaluator = ReportEvaluator(client=client)
        evaluator.evaluate(self.db, self.assessment, "dev")
        evaluator.evaluate(self.db, self.assessment, "dev")
        client.generate_json.assert_called_once()
        self.assertEqual(self.db.query(AssessmentReport).count(), 1)

    def test_fallback_analysis_is_flagged(self):
        from backend.report_evaluator import ReportEvaluator
        from prompts.assessment_prompts import DEFAULT_ANALYSIS
        self.add_questions([("A", "A")])
        client = self._client(analysis=DEFAULT_ANALYSIS, ok=False)
        payload = ReportEvaluator(client=client).evaluate(self.db, self.assessment, "dev")
        self.assertTrue(payload["analysisFallback"])
        self.assertEqual(payload["plagiarismScore"], 15)

    def test_no_questions_raises(self):
        from backend.report_evaluator import EvaluationError, ReportEvaluator
        with self.assertRaises(EvaluationError):
            ReportEvaluator(client=self._client()).evaluate(self.db, self.assessment, "dev")


# ─────────────────────────────────────────────────────────
# Face Verifier Tests
# ─────────────────────────────────────────────────────────

class TestFaceVerifier(unittest.TestCase):

    def test_euclidean_distance(self):
        from backend.face_verifier import euclidean_distance
        self.assertAlmostEqual(euclidean_distance([0, 0], [3, 4]), 5.0)

    def test_distance_length_mismatch(self):
        from backend.face_verifier import euclidean_distance
        with self.assertRaises(ValueError):
            euclidean_distance([0, 0], [1, 2, 3])

    def test_decode_image_bytes_and_data_url(self):
        from backend.face_verifier import decode_image
        png = _png_bytes(size=(6, 4))
        self.assertEqual(decode_image(png).shape, (4, 6, 3))
        data_url = "data:image/png;base64," + base64.b64encode(png).decode()
        self.assertEqual(decode_image(data_url).shape, (4, 6, 3))

    def test_decode_image_rejects_garbage(self):
        from backend.face_verifier import FaceDetectionError, decode_image
        with self.assertRaises(FaceDetectionError):
            decode_image(b"not an image")

    def test_validate_descriptor_length(self):
        from backend.face_verifier import FaceDetectionError, validate_descriptor
        self.assertEqual(len(validate_descriptor([0.1] * 128)), 128)
        with self.assertRaises(FaceDetectionError):
            validate_descriptor([0.1] * 10)

    def test_model_load_failure_is_terminal(self):
        from backend.face_verifier import FaceModelUnavailable, FaceVerifier
        verifier = FaceVerifier()
        with patch.dict(sys.modules, {"face_recognition": None}):
            with self.assertRaises(FaceModelUnavailable):
                verifier.load()
        # cached: still unavailable even once the module could import
        self.assertFalse(verifier.available)

    def _verifier_with(self, boxes):
        from backend.face_verifier import FaceVerifier
        lib = MagicMock()
        lib.face_locations.return_value = boxes
        lib.face_encodings.return_value = [np.full(128, i, dtype=float) for i in range(len(boxes))]
        verifier = FaceVerifier()
        verifier._lib = lib
        return verifier

    def test_detect_returns_descriptors(self):
        detections = self._verifier_with([(0, 10, 10, 0)]).detect(np.zeros((10, 10, 3), dtype=np.uint8))
        self.assertEqual(len(detections), 1)
        self.assertEqual(len(detections[0].descriptor), 128)

    def test_describe_single_requires_exactly_one_face(self):
        from backend.face_verifier import FaceDetectionError
        frame = np.zeros((10, 10, 3), dtype=np.uint8)
        with self.assertRaises(FaceDetectionError):
            self._verifier_with([]).describe_single(frame)
        with self.assertRaises(FaceDetectionError):
            self._verifier_with([(0, 5, 5, 0), (5, 10, 10, 5)]).describe_single(frame)


# ─────────────────────────────────────────────────────────
# Proctoring Tests
# ─────────────────────────────────────────────────────────

def _first_component(reference, descriptor):
    """Comparator for tests: the distance is the descriptor's first value."""
    return descriptor[0]


class TestProctoringMonitor(unittest.TestCase):

    def setUp(self):
        from backend.proctoring import ProctoringMonitor
        self.clock = FakeClock()
        self.sink = MagicMock()
        self.monitor = ProctoringMonitor(
            [0.0], comparator=_first_component, threshold=0.6,
            cooldown_sec=5.0, clock=self.clock, sink=self.sink,
        )

    def test_initial_state(self):
        from backend.proctoring import VerificationStatus
        self.assertEqual(self.monitor.status, VerificationStatus.VERIFYING)
        self.assertFalse(self.monitor.paused)

    def test_no_face_is_warning(self):
        from backend.proctoring import Severity, VerificationStatus
        result = self.monitor.process([])
        self.assertEqual(result.status, VerificationStatus.NO_FACE)
        self.assertEqual(result.violation.severity, Severity.WARNING)
        self.assertFalse(self.monitor.paused)

    def test_multiple_faces_is_critical_and_pauses(self):
        from backend.proctoring import Severity, VerificationStatus
        result = self.monitor.process([[0.1], [0.2]])
        self.assertEqual(result.status, VerificationStatus.MULTIPLE_FACES)
        self.assertEqual(result.violation.event_type, "multiple_faces")
        self.assertEqual(result.violation.severity, Severity.CRITICAL)
        self.assertTrue(self.monitor.paused)

    def test_status_follows_face_count_from_any_state(self):
        from backend.proctoring import VerificationStatus
        self.monitor.process([[0.1]])
        self.assertEqual(self.monitor.process([[0.1], [0.1], [0.1]]).status,
                         VerificationStatus.MULTIPLE_FACES)
        self.assertEqual(self.monitor.process([]).status, VerificationStatus.NO_FACE)

    def test_match_verifies_and_resets_streak(self):
        from backend.proctoring import VerificationStatus
        self.monitor.process([])
        self.assertEqual(self.monitor.violation_count, 1)
        result = self.monitor.process([[0.3]])
        self.assertEqual(result.status, VerificationStatus.VERIFIED)
        self.assertEqual(self.monitor.violation_count, 0)

    def test_distance_at_threshold_is_mismatch(self):
        from backend.proctoring import VerificationStatus
        result = self.monitor.process([[0.6]])
        self.assertEqual(result.status, VerificationStatus.MISMATCH)
        self.assertEqual(result.violation.event_type, "face_mismatch")
        self.assertEqual(result.violation.details["distance"], 0.6)

    def test_mismatches_inside_cooldown_log_once(self):
        self.monitor.process([[0.9]])
        self.clock.now = 2.0
        second = self.monitor.process([[0.9]])
        self.assertIsNone(second.violation)
        self.assertIsNotNone(second.suppressed)
        self.assertEqual(self.sink.call_count, 1)
        self.assertEqual(self.monitor.total_violations, 1)

    def test_cooldown_expires(self):
        self.monitor.process([[0.9]])
        self.clock.now = 5.0
        self.monitor.process([[0.9]])
        self.assertEqual(self.sink.call_count, 2)

    def test_cooldown_spans_violation_types(self):
        from backend.proctoring import VerificationStatus
        self.monitor.process([])
        self.clock.now = 1.0
        result = self.monitor.process([[0.1], [0.2]])
        self.assertEqual(result.status, VerificationStatus.MULTIPLE_FACES)
        self.assertIsNone(result.violation)
        self.assertFalse(self.monitor.paused)
        self.assertEqual(self.sink.call_count, 1)

    def test_pause_survives_verified_tick_until_resume(self):
        self.monitor.process([[0.9]])
        self.clock.now = 1.0
        self.monitor.process([[0.1]])
        self.assertTrue(self.monitor.paused)
        self.monitor.resume()
        self.assertFalse(self.monitor.paused)

    def test_detector_error_leaves_status_unchanged(self):
        from backend.proctoring import VerificationStatus
        self.monitor.process([[0.1]])
        result = self.monitor.tick("frame", MagicMock(side_effect=RuntimeError("camera gone")))
        self.assertEqual(result.status, VerificationStatus.VERIFIED)
        self.assertEqual(result.error, "camera gone")
        self.sink.assert_not_called()

    def test_tick_runs_detector(self):
        detector = MagicMock(return_value=[[0.1]])
        self.monitor.tick("frame", detector)
        detector.assert_called_once_with("frame")


class TestProctorEventSink(DatabaseTestCase):

    def test_record_appends_log(self):
        from backend.database import ProctoringLog, SessionLocal
        from backend.proctoring import ProctorEventSink, Severity, Violation
        sink = ProctorEventSink(SessionLocal)
        record = sink.bind(self.assessment.id, self.user.id)
        self.assertTrue(record(Violation("face_mismatch", Severity.CRITICAL, {"distance": 0.8})))

        logs = self.db.query(ProctoringLog).all()
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0].event_type, "face_mismatch")
        self.assertEqual(logs[0].severity, "critical")
        self.assertEqual(logs[0].details, {"distance": 0.8})

    def test_write_failure_is_swallowed(self):
        from backend.proctoring import ProctorEventSink, Severity, Violation
        session = MagicMock()
        session.commit.side_effect = RuntimeError("disk full")
        sink = ProctorEventSink(lambda: session)
        ok = sink.record("a", "u", Violation("no_face", Severity.WARNING))
        self.assertFalse(ok)
        session.rollback.assert_called_once()
        session.close.assert_called_once()


class TestProctoringLoop(unittest.TestCase):

    def _monitor(self):
        from backend.proctoring import ProctoringMonitor
        return ProctoringMonitor([0.0], comparator=_first_component)

    def test_loop_ticks_until_stopped(self):
        from backend.proctoring import ProctoringLoop
        monitor = self._monitor()
        detector = MagicMock(return_value=[[0.1]])

        async def run():
            loop = ProctoringLoop(monitor, lambda: "frame", detector, interval=0.01)
            async with loop:
                await asyncio.sleep(0.2)
                self.assertTrue(loop.running)
            self.assertFalse(loop.running)
            return loop.ticks

        ticks = asyncio.run(run())
        self.assertGreaterEqual(ticks, 1)
        self.assertEqual(monitor.status.value, "verified")

    def test_missing_frames_are_skipped(self):
        from backend.proctoring import ProctoringLoop
        detector = MagicMock()

        async def run():
            loop = ProctoringLoop(self._monitor(), lambda: None, detector, interval=0.01)
            await loop.start()
            await asyncio.sleep(0.05)
            await loop.stop()

        asyncio.run(run())
        detector.assert_not_called()

    def test_model_load_failure_prevents_start(self):
        from backend.face_verifier import FaceModelUnavailable
        from backend.proctoring import ProctoringLoop
        load = MagicMock(side_effect=FaceModelUnavailable("no dlib"))
        loop = ProctoringLoop(self._monitor(), lambda: "f", MagicMock(), load_models=load)
        with self.assertRaises(FaceModelUnavailable):
            asyncio.run(loop.start())
        self.assertFalse(loop.running)


class TestMonitorRegistry(unittest.TestCase):

    def test_get_or_create_and_discard(self):
        from backend.proctoring import MonitorRegistry, ProctoringMonitor
        registry = MonitorRegistry()
        factory = MagicMock(side_effect=lambda: ProctoringMonitor([0.0]))
        first = registry.get_or_create("a1", factory)
        self.assertIs(registry.get_or_create("a1", factory), first)
        factory.assert_called_once()
        self.assertFalse(registry.is_paused("a1"))
        registry.discard("a1")
        self.assertIsNone(registry.get("a1"))
        self.assertFalse(registry.is_paused("a1"))

    def test_idle_monitors_expire(self):
        from backend.proctoring import MonitorRegistry, ProctoringMonitor
        clock = FakeClock()
        registry = MonitorRegistry(idle_ttl_sec=60, clock=clock)
        registry.replace("idle", ProctoringMonitor([0.0]))
        registry.replace("busy", ProctoringMonitor([0.0]))
        clock.now = 50
        registry.get("busy")
        clock.now = 100
        self.assertEqual(registry.active_ids(), ["busy"])
        self.assertIsNone(registry.get("idle"))

    def test_paused_monitor_outlives_idle_ttl(self):
        from backend.proctoring import MonitorRegistry, ProctoringMonitor
        clock = FakeClock()
        registry = MonitorRegistry(idle_ttl_sec=60, clock=clock)
        monitor = ProctoringMonitor([0.0], clock=clock)
        monitor.process([[5.0]])
        self.assertTrue(monitor.paused)
        registry.replace("a1", monitor)
        clock.now = 1000
        self.assertTrue(registry.is_paused("a1"))
        monitor.resume()
        clock.now = 2000
        self.assertEqual(registry.active_ids(), [])


# ─────────────────────────────────────────────────────────
# Live Proctoring Client Tests
# ─────────────────────────────────────────────────────────

def _rgb_frame():
    return np.full((8, 8, 3), 128, dtype=np.uint8)


class TestRemoteMonitor(unittest.TestCase):

    def test_mirrors_server_answer_and_resume(self):
        from frontend.live_proctor import RemoteMonitor
        post = MagicMock(return_value={"status": "mismatch", "paused": True})
        monitor = RemoteMonitor(post, clock=FakeClock())
        monitor.tick(_rgb_frame())
        self.assertEqual(monitor.snapshot(), {"status": "mismatch", "paused": True,
                                              "error": None, "ticks": 1})
        self.assertFalse(monitor.is_live(max_age=6))
        self.assertTrue(post.call_args[0][0].startswith(b"\xff\xd8"))
        monitor.resume()
        self.assertFalse(monitor.snapshot()["paused"])

    def test_verified_answer_goes_stale(self):
        from frontend.live_proctor import RemoteMonitor
        clock = FakeClock()
        monitor = RemoteMonitor(MagicMock(return_value={"status": "verified", "paused": False}), clock=clock)
        self.assertFalse(monitor.is_live(max_age=6))
        monitor.tick(_rgb_frame())
        self.assertTrue(monitor.is_live(max_age=6))
        clock.now = 10
        self.assertFalse(monitor.is_live(max_age=6))

    def test_upload_failure_keeps_status_and_is_not_live(self):
        import requests
        from frontend.live_proctor import RemoteMonitor
        post = MagicMock(return_value={"status": "verified", "paused": False})
        monitor = RemoteMonitor(post, clock=FakeClock())
        monitor.tick(_rgb_frame())
        post.side_effect = requests.ConnectionError("api down")
        result = monitor.tick(_rgb_frame())
        self.assertEqual(result["status"], "verified")
        self.assertIn("api down", result["error"])
        self.assertFalse(monitor.is_live(max_age=6))


class TestFrameBuffer(unittest.TestCase):

    def test_each_frame_is_taken_once(self):
        from frontend.live_proctor import FrameBuffer
        frames = FrameBuffer()
        self.assertIsNone(frames.take())
        frames.put(_rgb_frame())
        self.assertIsNotNone(frames.take())
        self.assertIsNone(frames.take())


class TestLiveProctor(unittest.TestCase):

    def _wait_for(self, predicate, timeout=5.0):
        import time
        deadline = time.monotonic() + timeout
        while not predicate() and time.monotonic() < deadline:
            time.sleep(0.01)
        return predicate()

    def test_polls_camera_frames_on_a_timer(self):
        from frontend.live_proctor import FrameBuffer, LiveProctor

        class Camera(FrameBuffer):
            def take(self):
                return _rgb_frame()

        post = MagicMock(return_value={"status": "verified", "paused": False})
        proctor = LiveProctor(post, Camera(), interval=0.01, clock=FakeClock())
        proctor.start()
        try:
            self.assertTrue(self._wait_for(lambda: post.call_count >= 3))
            self.assertTrue(proctor.is_live())
        finally:
            proctor.stop()
        self.assertFalse(proctor.running)
        self.assertFalse(proctor.is_live())

    def test_no_frames_means_no_uploads(self):
        import time
        from frontend.live_proctor import FrameBuffer, LiveProctor
        post = MagicMock()
        proctor = LiveProctor(post, FrameBuffer(), interval=0.01)
        proctor.start()
        try:
            time.sleep(0.1)
            self.assertFalse(proctor.is_live())
        finally:
            proctor.stop()
        post.assert_not_called()

    def test_pause_reported_by_server_reaches_snapshot(self):
        from frontend.live_proctor import FrameBuffer, LiveProctor
        frames = FrameBuffer()
        post = MagicMock(return_value={"status": "multiple_faces", "paused": True})
        proctor = LiveProctor(post, frames, interval=0.01)
        proctor.start()
        try:
            frames.put(_rgb_frame())
            self.assertTrue(self._wait_for(lambda: proctor.monitor.snapshot()["paused"]))
            self.assertFalse(proctor.is_live())
        finally:
            proctor.stop()
        self.assertEqual(post.call_count, 1)


# ─────────────────────────────────────────────────────────
# Assessment Store Tests
# ─────────────────────────────────────────────────────────

API_QUESTIONS = [
    {"id": "q1", "question_number": 1, "question_text": "One?", "options": ["a", "b"], "user_answer": None},
    {"id": "q2", "question_number": 2, "question_text": "Two?", "options": ["c", "d"], "user_answer": None},
]


class TestAssessmentStore(unittest.TestCase):

    def test_defaults(self):
        from backend.assessment_store import AssessmentStore
        store = AssessmentStore()
        self.assertIsNone(store.current_assessment_id)
        self.assertEqual(store.uploaded_files, [])
        self.assertEqual(store.permissions, {"camera": False, "microphone": False})
        self.assertIsNone(store.face_embedding)
        self.assertEqual(store.questions, [])
        self.assertEqual(store.current_question_index, 0)
        self.assertEqual(store.time_remaining, 30)
        self.assertFalse(store.is_assessment_complete)

    def test_set_user_answer(self):
        from backend.assessment_store import AssessmentStore
        store = AssessmentStore()
        store.set_questions(API_QUESTIONS)
        store.set_user_answer(1, "d")
        self.assertEqual(store.questions[1].user_answer, "d")
        self.assertIsNone(store.questions[0].user_answer)
        with self.assertRaises(IndexError):
            store.set_user_answer(5, "a")

    def test_unknown_permission_rejected(self):
        from backend.assessment_store import AssessmentStore
        with self.assertRaises(ValueError):
            AssessmentStore().set_permissions(bluetooth=True)

    def test_reset_restores_every_default(self):
        from backend.assessment_store import AssessmentStore
        store = AssessmentStore()
        store.set_current_assessment_id("a1")
        store.set_uploaded_files([{"name": "x"}])
        store.set_permissions(camera=True, microphone=True)
        store.set_face_embedding([0.1] * 128)
        store.set_questions(API_QUESTIONS)
        store.set_current_question_index(1)
        store.set_time_remaining(3)
        store.set_assessment_complete(True)

        store.reset()
        self.assertEqual(store, AssessmentStore())

    def test_dict_round_trip(self):
        from backend.assessment_store import AssessmentStore
        store = AssessmentStore()
        store.set_questions(API_QUESTIONS)
        store.set_permissions(camera=True)
        restored = AssessmentStore.from_dict(store.to_dict())
        self.assertEqual(restored, store)


# ─────────────────────────────────────────────────────────
# Wizard Tests
# ─────────────────────────────────────────────────────────

class TestWizardGuard(unittest.TestCase):

    def _store(self, files=False, camera=False, face=False, assessment_id=None):
        from backend.assessment_store import AssessmentStore
        store = AssessmentStore()
        if files:
            store.set_uploaded_files([{"name": "a.py"}])
        store.set_permissions(camera=camera)
        if face:
            store.set_face_embedding([0.0] * 128)
        store.set_current_assessment_id(assessment_id)
        return store

    def test_unauthenticated_goes_to_auth(self):
        from backend.wizard import Step, guard
        self.assertEqual(guard(Step.UPLOAD, self._store(), authenticated=False), Step.AUTH)

    def test_permissions_requires_files(self):
        from backend.wizard import Step, guard
        self.assertEqual(guard(Step.PERMISSIONS, self._store(), True), Step.UPLOAD)
        self.assertEqual(guard(Step.PERMISSIONS, self._store(files=True), True), Step.PERMISSIONS)

    def test_questions_requires_camera_and_face(self):
        from backend.wizard import Step, guard
        self.assertEqual(guard(Step.QUESTIONS, self._store(), True), Step.UPLOAD)
        self.assertEqual(guard(Step.QUESTIONS, self._store(files=True, camera=True), True), Step.PERMISSIONS)
        self.assertEqual(guard(Step.QUESTIONS, self._store(files=True, face=True), True), Step.PERMISSIONS)
        ready = self._store(files=True, camera=True, face=True)
        self.assertEqual(guard(Step.QUESTIONS, ready, True), Step.QUESTIONS)

    def test_complete_and_result_require_id(self):
        from backend.wizard import Step, guard
        self.assertEqual(guard(Step.COMPLETE, self._store(), True), Step.UPLOAD)
        self.assertEqual(guard(Step.COMPLETE, self._store(assessment_id="a1"), True), Step.COMPLETE)
        self.assertEqual(guard(Step.RESULT, self._store(), True, assessment_id="a1"), Step.RESULT)


class TestQuestionPhase(unittest.TestCase):

    def setUp(self):
        from backend.assessment_store import AssessmentStore
        from backend.wizard import QuestionPhase
        self.store = AssessmentStore()
        self.store.set_questions(API_QUESTIONS)
        self.submit = MagicMock()
        self.phase = QuestionPhase(self.store, self.submit)

    def _verified(self):
        self.phase.apply_proctoring("verified", False)

    def test_selection_blocked_until_verified(self):
        from backend.wizard import SelectionBlocked
        with self.assertRaises(SelectionBlocked):
            self.phase.select("a")
        self._verified()
        self.phase.select("a")
        self.assertEqual(self.phase.selected, "a")

    def test_selection_blocked_while_paused(self):
        from backend.wizard import SelectionBlocked
        self.phase.apply_proctoring("mismatch", True)
        with self.assertRaises(SelectionBlocked):
            self.phase.select("a")
        self.phase.resume()
        self.phase.select("a")

    def test_unknown_option_rejected(self):
        self._verified()
        with self.assertRaises(ValueError):
            self.phase.select("zzz")

    def test_cannot_advance_without_selection(self):
        from backend.wizard import NoOptionSelected
        self._verified()
        with self.assertRaises(NoOptionSelected):
            self.phase.advance()
        self.assertEqual(self.store.current_question_index, 0)

    def test_advance_records_answer_and_resets_timer(self):
        self._verified()
        self.store.set_time_remaining(12)
        self.phase.select("b")
        self.phase.advance()
        self.submit.assert_called_once()
        self.assertEqual(self.submit.call_args[0][1], "b")
        self.assertEqual(self.store.questions[0].user_answer, "b")
        self.assertEqual(self.store.current_question_index, 1)
        self.assertEqual(self.store.time_remaining, 30)
        self.assertIsNone(self.phase.selected)

    def test_timeout_advances_unanswered(self):
        for _ in range(30):
            self.phase.tick()
        self.assertEqual(self.store.current_question_index, 1)
        self.assertIsNone(self.store.questions[0].user_answer)
        self.submit.assert_not_called()
        self.assertEqual(self.store.time_remaining, 30)

    def test_last_question_completes(self):
        self._verified()
        self.phase.select("a")
        self.phase.advance()
        self.phase.select("d")
        self.phase.advance()
        self.assertTrue(self.store.is_assessment_complete)
        self.assertEqual(self.submit.call_count, 2)

    def test_failed_submit_does_not_advance(self):
        self._verified()
        self.submit.side_effect = RuntimeError("offline")
        self.phase.select("a")
        with self.assertRaises(RuntimeError):
            self.phase.advance()
        self.assertEqual(self.store.current_question_index, 0)


class TestRunSession(unittest.TestCase):

    def test_session_runs_to_completion_and_stops_loops(self):
        from backend.assessment_store import AssessmentStore
        from backend.wizard import CountdownTimer, QuestionPhase, run_session
        store = AssessmentStore()
        store.set_questions(API_QUESTIONS[:1])
        phase = QuestionPhase(store, MagicMock(), time_limit=2)
        proctoring = MagicMock()
        proctoring.start = AsyncMock()
        proctoring.stop = AsyncMock()

        with patch("backend.wizard.CountdownTimer",
                   side_effect=lambda p: CountdownTimer(p, interval=0.001)):
            asyncio.run(run_session(phase, proctoring))

        self.assertTrue(store.is_assessment_complete)
        proctoring.start.assert_awaited_once()
        proctoring.stop.assert_awaited_once()


# ─────────────────────────────────────────────────────────
# Auth Tests
# ─────────────────────────────────────────────────────────

class TestAuth(DatabaseTestCase):

    def test_sign_up_and_sign_in(self):
        from backend.auth import sign_in, sign_up
        profile = sign_up(self.db, " Ada@Example.com ", "secret1", "ada")
        self.assertEqual(profile.email, "ada@example.com")
        self.assertNotEqual(profile.password_hash, "secret1")
        self.assertEqual(sign_in(self.db, "ada@example.com", "secret1").id, profile.id)

    def test_short_password_rejected(self):
        from backend.auth import AuthError, sign_up
        with self.assertRaises(AuthError):
            sign_up(self.db, "a@b.com", "123", "abc")

    def test_duplicates_rejected(self):
        from backend.auth import DuplicateAccount, sign_up
        sign_up(self.db, "a@b.com", "secret1", "abc")
        with self.assertRaises(DuplicateAccount):
            sign_up(self.db, "A@B.com", "secret1", "other")
        with self.assertRaises(DuplicateAccount):
            sign_up(self.db, "c@d.com", "secret1", "abc")

    def test_wrong_password_rejected(self):
        from backend.auth import AuthError, sign_in, sign_up
        sign_up(self.db, "a@b.com", "secret1", "abc")
        with self.assertRaises(AuthError):
            sign_in(self.db, "a@b.com", "wrong-pw")

    def test_token_round_trip(self):
        from backend.auth import decode_token, issue_token
        self.assertEqual(decode_token(issue_token(self.user)), self.user.id)

    def test_expired_token_rejected(self):
        from backend.auth import AuthError, decode_token, issue_token
        with patch("backend.auth.JWT_EXP_HOURS", -1):
            token = issue_token(self.user)
        with self.assertRaises(AuthError):
            decode_token(token)

    def test_tampered_token_rejected(self):
        from backend.auth import AuthError, decode_token, issue_token
        with self.assertRaises(AuthError):
            decode_token(issue_token(self.user) + "x")


# ─────────────────────────────────────────────────────────
# Certificate Tests
# ─────────────────────────────────────────────────────────

class TestCertificate(unittest.TestCase):

    def test_renders_two_page_pdf(self):
        from backend.certificate import render_report_pdf
        assessment = {"id": "a1", "project_name": "Todo App", "total_score": 80,
                      "completed_at": "2026-01-01T10:00:00"}
        questions = [
            {"question_number": 1, "question_text": "What?", "user_answer": "A", "correct_answer": "A"},
            {"question_number": 2, "question_text": "Why?", "user_answer": None, "correct_answer": "B"},
        ]
        report = {
            "plagiarism_score": 10,
            "code_quality_analysis": {"architecture": "Layered", "overallRating": 7},
            "security_suggestions": ["Validate input"],
            "optimization_suggestions": [],
            "performance_metrics": {"score": 80, "correctAnswers": 1, "totalQuestions": 2},
            "certificate_data": {"userName": "ada", "projectName": "Todo App", "score": 80,
                                 "issuedAt": "2026-01-01T10:00:00"},
            "overall_assessment": "Good.",
            "analysis_fallback": False,
        }
        pdf = render_report_pdf(assessment, questions, report)
        self.assertTrue(pdf.startswith(b"%PDF"))
        self.assertEqual(len(re.findall(rb"/Type /Page\b", pdf)), 2)


if __name__ == "__main__":
    unittest.main(verbosity=2)

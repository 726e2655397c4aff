"""
Expert Evaluator - FastAPI Backend
==================================
REST API for the proctored project assessment flow.

  signup/signin → create assessment → upload ZIP → register face
    → generate questions → answer (proctored) → evaluate → result / PDF

AI calls and face detection are CPU/network bound, so they run in a
thread-pool executor to keep the event loop free.
"""

import os
import json
import logging
import time
import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, List
from contextlib import asynccontextmanager

from fastapi import FastAPI, UploadFile, File, Form, HTTPException, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session
from dotenv import load_dotenv

load_dotenv()

from backend.database import (
    get_db, init_db, owned_assessment, owned_question, SessionLocal,
    Assessment, AssessmentReport, FaceEmbedding, Profile, ProctoringLog, ProjectFile, Question,
    STATUS_COMPLETED,
)
from backend.archive import (
    ArchiveError, MAX_ARCHIVE_MB, build_source_digest, extract_project, validate_archive_name,
)
from backend.auth import (
    AuthError, DuplicateAccount, get_current_user, issue_token, sign_in, sign_up,
)
from backend.certificate import render_report_pdf
from backend.face_verifier import (
    FaceDetectionError, FaceModelUnavailable, FaceVerifier, decode_image, validate_descriptor,
)
from backend.proctoring import MonitorRegistry, ProctorEventSink, ProctoringMonitor
from backend.question_generator import QuestionGenerationError, QuestionGenerator
from backend.report_evaluator import EvaluationError, ReportEvaluator
from backend.storage import ensure_media_dir, save_profile_photo

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MAX_PHOTO_MB = int(os.getenv("MAX_PHOTO_MB", "5"))
SOURCE_DIGEST_FILES = 5

# Thread-pool for AI calls and face detection
_executor = ThreadPoolExecutor(
    max_workers=int(os.getenv("AI_WORKERS", "4")),
    thread_name_prefix="ai-worker",
)


# ─────────────────────────────────────────────────────────
# Singletons (overridable in tests via app.dependency_overrides)
# ─────────────────────────────────────────────────────────

_question_generator: Optional[QuestionGenerator] = None
_report_evaluator: Optional[ReportEvaluator] = None
_face_verifier = FaceVerifier()
monitor_registry = MonitorRegistry()
proctor_sink = ProctorEventSink(SessionLocal)


def get_question_generator() -> QuestionGenerator:
    global _question_generator
    if _question_generator is None:
        _question_generator = QuestionGenerator()
    return _question_generator


def get_report_evaluator() -> ReportEvaluator:
    global _report_evaluator
    if _report_evaluator is None:
        _report_evaluator = ReportEvaluator()
    return _report_evaluator


def get_face_verifier() -> FaceVerifier:
    return _face_verifier


def get_monitor_registry() -> MonitorRegistry:
    return monitor_registry


async def _in_executor(fn, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, fn, *args)


# ─────────────────────────────────────────────────────────
# App setup
# ─────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Expert Evaluator API started.  Media dir: %s", ensure_media_dir())
    yield
    logger.info("Expert Evaluator API shutting down.")
    _executor.shutdown(wait=False)

app = FastAPI(
    title="Expert Evaluator API",
    description="Proctored, AI-generated assessments of uploaded software projects.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/media", StaticFiles(directory=str(ensure_media_dir())), name="media")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


# ─────────────────────────────────────────────────────────
# Pydantic schemas
# ─────────────────────────────────────────────────────────

class SignInRequest(BaseModel):
    email: str
    password: str


class CreateAssessmentRequest(BaseModel):
    project_name: str

    @field_validator("project_name")
    @classmethod
    def validate_project_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("project_name must not be empty")
        if len(v) > 255:
            raise ValueError("project_name must be at most 255 characters")
        return v


class AnswerRequest(BaseModel):
    answer: str

    @field_validator("answer")
    @classmethod
    def validate_answer(cls, v):
        if not v.strip():
            raise ValueError("answer must not be empty")
        return v


# ─────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────

def _get_owned_assessment(db: Session, assessment_id: str, user: Profile) -> Assessment:
    assessment = owned_assessment(db, assessment_id, user.id)
    if assessment is None:
        raise HTTPException(404, "Assessment not found.")
    return assessment


def _require_in_progress(assessment: Assessment, registry: Optional[MonitorRegistry] = None) -> None:
    if assessment.status == STATUS_COMPLETED:
        if registry is not None:
            registry.discard(assessment.id)
        raise HTTPException(409, "Assessment is already completed.")


def _latest_face_embedding(db: Session, assessment: Assessment) -> Optional[FaceEmbedding]:
    return (
        db.query(FaceEmbedding)
        .filter_by(assessment_id=assessment.id, user_id=assessment.user_id)
        .order_by(FaceEmbedding.registered_at.desc())
        .first()
    )


def _new_monitor(descriptor, assessment: Assessment) -> ProctoringMonitor:
    return ProctoringMonitor(descriptor, sink=proctor_sink.bind(assessment.id, assessment.user_id))


def _monitor_for(db: Session, assessment: Assessment, registry: MonitorRegistry) -> ProctoringMonitor:
    """Registry monitor, rebuilt from the stored descriptor after a restart."""
    monitor = registry.get(assessment.id)
    if monitor is not None:
        return monitor
    embedding = _latest_face_embedding(db, assessment)
    if embedding is None:
        raise HTTPException(409, "Face not registered for this assessment.")
    return registry.get_or_create(assessment.id, lambda: _new_monitor(embedding.embedding_data, assessment))


def _project_file_dict(f: ProjectFile) -> dict:
    return {
        "id": f.id,
        "name": f.file_name,
        "path": f.file_path,
        "size": f.file_size,
        "content": f.content_preview or "",
    }


async def _describe_face(verifier: FaceVerifier, data: bytes) -> List[float]:
    try:
        return await _in_executor(verifier.describe_image, data)
    except FaceModelUnavailable as e:
        raise HTTPException(503, str(e))
    except FaceDetectionError as e:
        raise HTTPException(400, str(e))


# ─────────────────────────────────────────────────────────
# Endpoints
# ─────────────────────────────────────────────────────────

@app.get("/")
async def root():
    return {
        "message": "Expert Evaluator API is running.",
        "version": "1.0.0",
        "endpoints": ["/auth/signup", "/auth/signin", "/profile", "/assessments",
                      "/questions/{id}/answer", "/health"],
    }


@app.get("/health")
async def health(registry: MonitorRegistry = Depends(get_monitor_registry)):
    return {
        "status": "ok",
        "timestamp": time.time(),
        "active_monitors": len(registry.active_ids()),
    }


# ── Auth ─────────────────────────────────────────────────

@app.post("/auth/signup", summary="Create an account (optional profile photo)")
async def signup(
    email: str = Form(...),
    password: str = Form(...),
    username: str = Form(...),
    photo: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
    verifier: FaceVerifier = Depends(get_face_verifier),
):
    photo_bytes = await photo.read() if photo is not None else b""
    if len(photo_bytes) > MAX_PHOTO_MB * 1024 * 1024:
        raise HTTPException(413, f"Photo too large. Max {MAX_PHOTO_MB} MB.")

    descriptor = None
    if photo_bytes:
        descriptor = await _describe_face(verifier, photo_bytes)

    try:
        profile = sign_up(db, email, password, username, face_embedding=descriptor)
    except DuplicateAccount as e:
        raise HTTPException(409, str(e))
    except AuthError as e:
        raise HTTPException(400, str(e))

    if photo_bytes:
        try:
            profile.profile_photo_url = await save_profile_photo(profile.id, photo_bytes)
            db.commit()
        except OSError as e:
            # the account stands even if the photo could not be stored
            db.rollback()
            logger.error("Photo upload error for %s: %s", profile.id, e, exc_info=True)

    db.refresh(profile)
    return {
        "access_token": issue_token(profile),
        "token_type": "bearer",
        "user": profile.to_dict(),
    }


@app.post("/auth/signin", summary="Exchange credentials for a bearer token")
async def signin(req: SignInRequest, db: Session = Depends(get_db)):
    try:
        profile = sign_in(db, req.email, req.password)
    except AuthError as e:
        raise HTTPException(401, str(e))
    return {
        "access_token": issue_token(profile),
        "token_type": "bearer",
        "user": profile.to_dict(),
    }


@app.get("/profile")
async def get_profile(user: Profile = Depends(get_current_user)):
    return user.to_dict()


# ── Assessments ──────────────────────────────────────────

@app.get("/assessments", summary="List the caller's assessments, newest first")
async def list_assessments(user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    rows = (
        db.query(Assessment)
        .filter(Assessment.user_id == user.id)
        .order_by(Assessment.created_at.desc())
        .all()
    )
    return [a.to_dict() for a in rows]


@app.post("/assessments", status_code=201)
async def create_assessment(
    req: CreateAssessmentRequest,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    assessment = Assessment(user_id=user.id, project_name=req.project_name)
    db.add(assessment)
    db.commit()
    db.refresh(assessment)
    logger.info("Assessment %s created for %s", assessment.id, user.id)
    return assessment.to_dict()


@app.post("/assessments/{assessment_id}/upload", summary="Upload the project ZIP")
async def upload_project(
    assessment_id: str,
    file: UploadFile = File(...),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    assessment = _get_owned_assessment(db, assessment_id, user)
    _require_in_progress(assessment)

    try:
        validate_archive_name(file.filename or "")
    except ArchiveError as e:
        raise HTTPException(415, str(e))

    data = await file.read()
    if len(data) > MAX_ARCHIVE_MB * 1024 * 1024:
        raise HTTPException(413, f"File too large. Max {MAX_ARCHIVE_MB} MB.")

    if db.query(Question).filter_by(assessment_id=assessment.id).first():
        raise HTTPException(409, "Questions already generated for this assessment.")

    try:
        extracted = await _in_executor(extract_project, data)
    except ArchiveError as e:
        raise HTTPException(400, str(e))

    db.query(ProjectFile).filter_by(assessment_id=assessment.id).delete()
    rows = [
        ProjectFile(
            assessment_id=assessment.id,
            file_name=f.name,
            file_path=f.path,
            file_size=f.size,
            content_preview=f.preview,
        )
        for f in extracted
    ]
    db.add_all(rows)
    db.commit()

    logger.info("Assessment %s: stored %d project files", assessment.id, len(rows))
    return {
        "assessment_id": assessment.id,
        "count": len(rows),
        "files": [_project_file_dict(r) for r in rows],
    }


@app.post("/assessments/{assessment_id}/face", summary="Register the reference face")
async def register_face(
    assessment_id: str,
    image: Optional[UploadFile] = File(None),
    descriptor: Optional[str] = Form(None),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    verifier: FaceVerifier = Depends(get_face_verifier),
    registry: MonitorRegistry = Depends(get_monitor_registry),
):
    assessment = _get_owned_assessment(db, assessment_id, user)
    _require_in_progress(assessment)

    # the reference face is fixed once the question phase has begun
    if db.query(Question).filter_by(assessment_id=assessment.id).first():
        raise HTTPException(409, "Questions already generated; the face can no longer be changed.")

    if image is not None:
        values = await _describe_face(verifier, await image.read())
    elif descriptor:
        try:
            values = validate_descriptor(json.loads(descriptor))
        except (json.JSONDecodeError, TypeError) as e:
            raise HTTPException(400, f"descriptor must be a JSON array: {e}")
        except FaceDetectionError as e:
            raise HTTPException(400, str(e))
    else:
        raise HTTPException(400, "Provide an image or a descriptor.")

    embedding = FaceEmbedding(user_id=user.id, assessment_id=assessment.id, embedding_data=values)
    db.add(embedding)
    db.commit()

    registry.replace(assessment.id, _new_monitor(values, assessment))
    logger.info("Face registered for assessment %s", assessment.id)
    return {"registered": True, "assessment_id": assessment.id, "descriptor": values}


# ── Questions ────────────────────────────────────────────

@app.post("/assessments/{assessment_id}/questions/generate")
async def generate_questions(
    assessment_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    generator: QuestionGenerator = Depends(get_question_generator),
):
    assessment = _get_owned_assessment(db, assessment_id, user)
    _require_in_progress(assessment)

    files = db.query(ProjectFile).filter_by(assessment_id=assessment.id).order_by(ProjectFile.created_at).all()
    if not files:
        raise HTTPException(400, "Upload the project before generating questions.")
    digest = build_source_digest([_project_file_dict(f) for f in files], limit=SOURCE_DIGEST_FILES)

    try:
        questions = await _in_executor(generator.generate, db, assessment, digest)
    except QuestionGenerationError as e:
        logger.error("Question generation failed for %s: %s", assessment.id, e, exc_info=True)
        raise HTTPException(502, str(e))

    return {"questions": [q.to_dict() for q in questions]}


@app.get("/assessments/{assessment_id}/questions")
async def list_questions(
    assessment_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    assessment = _get_owned_assessment(db, assessment_id, user)
    reveal = assessment.status == STATUS_COMPLETED
    return {"questions": [q.to_dict(include_answer=reveal) for q in assessment.questions]}


@app.post("/questions/{question_id}/answer", summary="Record the answer to one question")
async def submit_answer(
    question_id: str,
    req: AnswerRequest,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    registry: MonitorRegistry = Depends(get_monitor_registry),
):
    question = owned_question(db, question_id, user.id)
    if question is None:
        raise HTTPException(404, "Question not found.")
    _require_in_progress(question.assessment, registry)

    if registry.is_paused(question.assessment_id):
        raise HTTPException(423, "Assessment paused by a proctoring violation.")
    if req.answer not in (question.options or []):
        raise HTTPException(400, "Answer is not one of the options.")

    question.user_answer = req.answer
    db.commit()
    return question.to_dict()


# ── Proctoring ───────────────────────────────────────────

@app.post("/assessments/{assessment_id}/proctoring/frame", summary="Run one proctoring check")
async def proctoring_frame(
    assessment_id: str,
    frame: UploadFile = File(...),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    verifier: FaceVerifier = Depends(get_face_verifier),
    registry: MonitorRegistry = Depends(get_monitor_registry),
):
    assessment = _get_owned_assessment(db, assessment_id, user)
    _require_in_progress(assessment, registry)
    monitor = _monitor_for(db, assessment, registry)

    try:
        verifier.load()
    except FaceModelUnavailable as e:
        raise HTTPException(503, str(e))

    try:
        image = decode_image(await frame.read())
    except FaceDetectionError as e:
        raise HTTPException(400, str(e))

    result = await _in_executor(monitor.tick, image, verifier.detect)
    return {**result.to_dict(), "violation_count": monitor.violation_count}


@app.post("/assessments/{assessment_id}/proctoring/resume")
async def proctoring_resume(
    assessment_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    registry: MonitorRegistry = Depends(get_monitor_registry),
):
    assessment = _get_owned_assessment(db, assessment_id, user)
    _require_in_progress(assessment, registry)
    monitor = _monitor_for(db, assessment, registry)
    monitor.resume()
    logger.info("Assessment %s resumed after proctoring pause", assessment.id)
    return monitor.snapshot()


@app.get("/assessments/{assessment_id}/proctoring/logs")
async def proctoring_logs(
    assessment_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    assessment = _get_owned_assessment(db, assessment_id, user)
    logs = (
        db.query(ProctoringLog)
        .filter_by(assessment_id=assessment.id, user_id=user.id)
        .order_by(ProctoringLog.timestamp)
        .all()
    )
    return {"logs": [log.to_dict() for log in logs]}


# ── Evaluation & results ─────────────────────────────────

@app.post("/assessments/{assessment_id}/evaluate", summary="Score and analyse the assessment")
async def evaluate_assessment(
    assessment_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    evaluator: ReportEvaluator = Depends(get_report_evaluator),
    registry: MonitorRegistry = Depends(get_monitor_registry),
):
    assessment = _get_owned_assessment(db, assessment_id, user)
    try:
        payload = await _in_executor(evaluator.evaluate, db, assessment, user.username)
    except EvaluationError as e:
        raise HTTPException(400, str(e))

    registry.discard(assessment.id)
    return payload


@app.get("/assessments/{assessment_id}/result")
async def get_result(
    assessment_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    assessment = _get_owned_assessment(db, assessment_id, user)
    reveal = assessment.status == STATUS_COMPLETED
    report = db.query(AssessmentReport).filter_by(assessment_id=assessment.id).first()
    return {
        "assessment": assessment.to_dict(),
        "questions": [q.to_dict(include_answer=reveal) for q in assessment.questions],
        "report": report.to_dict() if report else None,
    }


@app.get("/assessments/{assessment_id}/report.pdf", summary="Download report + certificate")
async def download_report(
    assessment_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    assessment = _get_owned_assessment(db, assessment_id, user)
    report = db.query(AssessmentReport).filter_by(assessment_id=assessment.id).first()
    if report is None:
        raise HTTPException(404, "Report not generated yet.")

    pdf = render_report_pdf(
        assessment.to_dict(),
        [q.to_dict(include_answer=True) for q in assessment.questions],
        report.to_dict(),
    )
    filename = f"expert-evaluator-{assessment.id[:8]}.pdf"
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ─────────────────────────────────────────────────────────
# Run
# ─────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "backend.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_excludes=["tests/*", "*.pyc"],
    )

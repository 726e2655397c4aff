"""
Expert Evaluator - Database Models
SQLAlchemy ORM models for the application.

Tables mirror the hosted schema: profiles, assessments, questions,
project_files, face_embeddings, proctoring_logs, assessment_reports.

Every assessment-scoped row carries (directly or through its assessment)
the owning user id.  Queries are always filtered by that id (see
owned_assessment()), so a row belonging to someone else is simply
"not found".
"""

import os
import uuid
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, ForeignKey, Boolean, JSON,
    CheckConstraint, create_engine, event,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv

load_dotenv()

Base = declarative_base()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./expert_evaluator.db")


def _engine_kwargs(url: str) -> dict:
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        # in-memory databases must share one connection across threads
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True
    return kwargs


engine = create_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _uuid() -> str:
    return str(uuid.uuid4())


# ─────────────────────────────────────────────────────────
# Assessment status
# ─────────────────────────────────────────────────────────

STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED   = "completed"
STATUS_EXPIRED     = "expired"
ASSESSMENT_STATUSES = (STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_EXPIRED)

MAX_QUESTIONS = 10


# ─────────────────────────────────────────────────────────
# Models
# ─────────────────────────────────────────────────────────

class Profile(Base):
    __tablename__ = "profiles"

    id                = Column(String(36), primary_key=True, default=_uuid)
    email             = Column(String(255), unique=True, nullable=False, index=True)
    username          = Column(String(80), unique=True, nullable=False)
    password_hash     = Column(String(512), nullable=False)
    profile_photo_url = Column(String(500), nullable=True)
    face_embedding    = Column(JSON, nullable=True)
    created_at        = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at        = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    assessments = relationship("Assessment", back_populates="user", cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "profile_photo_url": self.profile_photo_url,
            "has_face_embedding": bool(self.face_embedding),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Assessment(Base):
    __tablename__ = "assessments"
    __table_args__ = (
        CheckConstraint(
            "(total_score IS NULL OR (total_score >= 0 AND total_score <= 100)) AND "
            "(plagiarism_score IS NULL OR (plagiarism_score >= 0 AND plagiarism_score <= 100))",
            name="valid_scores",
        ),
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'expired')",
            name="valid_status",
        ),
    )

    id                = Column(String(36), primary_key=True, default=_uuid)
    user_id           = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    project_name      = Column(String(255), nullable=False)
    status            = Column(String(20), default=STATUS_IN_PROGRESS, nullable=False, index=True)
    total_score       = Column(Integer, nullable=True)
    plagiarism_score  = Column(Integer, nullable=True)
    plagiarism_report = Column(JSON, nullable=True)
    assessment_result = Column(Text, nullable=True)
    created_at        = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at      = Column(DateTime, nullable=True)

    user          = relationship("Profile", back_populates="assessments")
    questions     = relationship("Question", back_populates="assessment",
                                 cascade="all, delete-orphan", order_by="Question.question_number")
    project_files = relationship("ProjectFile", back_populates="assessment", cascade="all, delete-orphan")
    report        = relationship("AssessmentReport", back_populates="assessment",
                                 uselist=False, cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "project_name": self.project_name,
            "status": self.status,
            "total_score": self.total_score,
            "plagiarism_score": self.plagiarism_score,
            "assessment_result": self.assessment_result,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@event.listens_for(Assessment.status, "set")
def _stamp_completed_at(target, value, oldvalue, initiator):
    """Stamp completed_at the first time an assessment becomes completed."""
    if value == STATUS_COMPLETED and oldvalue != STATUS_COMPLETED:
        target.completed_at = datetime.utcnow()


class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        CheckConstraint(
            f"question_number >= 1 AND question_number <= {MAX_QUESTIONS}",
            name="valid_question_number",
        ),
    )

    id              = Column(String(36), primary_key=True, default=_uuid)
    assessment_id   = Column(String(36), ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False, index=True)
    question_number = Column(Integer, nullable=False)
    question_text   = Column(Text, nullable=False)
    options         = Column(JSON, nullable=False)
    correct_answer  = Column(Text, nullable=False)
    user_answer     = Column(Text, nullable=True)
    created_at      = Column(DateTime, default=datetime.utcnow, nullable=False)

    assessment = relationship("Assessment", back_populates="questions")

    def to_dict(self, include_answer=False):
        d = {
            "id": self.id,
            "question_number": self.question_number,
            "question_text": self.question_text,
            "options": list(self.options or []),
            "user_answer": self.user_answer,
        }
        if include_answer:
            d["correct_answer"] = self.correct_answer
        return d


class ProjectFile(Base):
    __tablename__ = "project_files"

    id              = Column(String(36), primary_key=True, default=_uuid)
    assessment_id   = Column(String(36), ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False, index=True)
    file_name       = Column(Text, nullable=False)
    file_path       = Column(Text, nullable=False)
    file_size       = Column(Integer, nullable=False)
    content_preview = Column(Text, nullable=True)
    created_at      = Column(DateTime, default=datetime.utcnow, nullable=False)

    assessment = relationship("Assessment", back_populates="project_files")


class FaceEmbedding(Base):
    __tablename__ = "face_embeddings"

    id             = Column(String(36), primary_key=True, default=_uuid)
    user_id        = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    assessment_id  = Column(String(36), ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False, index=True)
    embedding_data = Column(JSON, nullable=False)
    registered_at  = Column(DateTime, default=datetime.utcnow)
    created_at     = Column(DateTime, default=datetime.utcnow)


class ProctoringLog(Base):
    """Append-only audit trail of proctoring violations."""
    __tablename__ = "proctoring_logs"

    id            = Column(String(36), primary_key=True, default=_uuid)
    assessment_id = Column(String(36), ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id       = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type    = Column(String(50), nullable=False)
    severity      = Column(String(20), nullable=False, default="warning")
    details       = Column(JSON, default=dict)
    timestamp     = Column(DateTime, default=datetime.utcnow)
    created_at    = Column(DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "event_type": self.event_type,
            "severity": self.severity,
            "details": self.details or {},
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class AssessmentReport(Base):
    """One-to-one with an assessment; written once, never revised."""
    __tablename__ = "assessment_reports"

    id                       = Column(String(36), primary_key=True, default=_uuid)
    assessment_id            = Column(String(36), ForeignKey("assessments.id", ondelete="CASCADE"),
                                      unique=True, nullable=False, index=True)
    user_id                  = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    plagiarism_score         = Column(Integer, default=0)
    code_quality_analysis    = Column(JSON, default=dict)
    security_suggestions     = Column(JSON, default=list)
    optimization_suggestions = Column(JSON, default=list)
    performance_metrics      = Column(JSON, default=dict)
    certificate_data         = Column(JSON, default=dict)
    overall_assessment       = Column(Text, nullable=True)
    analysis_fallback        = Column(Boolean, default=False, nullable=False)
    generated_at             = Column(DateTime, default=datetime.utcnow)
    created_at               = Column(DateTime, default=datetime.utcnow)

    assessment = relationship("Assessment", back_populates="report")

    def to_dict(self):
        return {
            "plagiarism_score": self.plagiarism_score,
            "code_quality_analysis": self.code_quality_analysis or {},
            "security_suggestions": self.security_suggestions or [],
            "optimization_suggestions": self.optimization_suggestions or [],
            "performance_metrics": self.performance_metrics or {},
            "certificate_data": self.certificate_data or {},
            "overall_assessment": self.overall_assessment,
            "analysis_fallback": bool(self.analysis_fallback),
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
        }


# ─────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────

def owned_assessment(db, assessment_id: str, user_id: str):
    """Return the assessment if it exists AND belongs to user_id, else None."""
    return (
        db.query(Assessment)
        .filter(Assessment.id == assessment_id, Assessment.user_id == user_id)
        .first()
    )


def owned_question(db, question_id: str, user_id: str):
    return (
        db.query(Question)
        .join(Assessment, Question.assessment_id == Assessment.id)
        .filter(Question.id == question_id, Assessment.user_id == user_id)
        .first()
    )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    Base.metadata.create_all(bind=engine)

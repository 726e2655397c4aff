"""
Expert Evaluator - Assessment Store
Client-side state for one assessment attempt, held in st.session_state by the
dashboard and driven by the wizard.
"""

import copy
import os
from dataclasses import asdict, dataclass, field, fields
from typing import List, Optional

QUESTION_TIME_LIMIT = int(os.getenv("QUESTION_TIME_LIMIT", "30"))


def _default_permissions() -> dict:
    return {"camera": False, "microphone": False}


@dataclass
class StoredQuestion:
    id: str
    question_text: str
    options: List[str]
    user_answer: Optional[str] = None
    correct_answer: Optional[str] = None
    question_number: int = 0

    @classmethod
    def from_api(cls, data: dict) -> "StoredQuestion":
        return cls(
            id=data["id"],
            question_text=data["question_text"],
            options=list(data.get("options") or []),
            user_answer=data.get("user_answer"),
            correct_answer=data.get("correct_answer"),
            question_number=data.get("question_number", 0),
        )


@dataclass
class AssessmentStore:
    current_assessment_id: Optional[str] = None
    uploaded_files: list = field(default_factory=list)
    permissions: dict = field(default_factory=_default_permissions)
    face_embedding: Optional[List[float]] = None
    questions: List[StoredQuestion] = field(default_factory=list)
    current_question_index: int = 0
    time_remaining: int = QUESTION_TIME_LIMIT
    is_assessment_complete: bool = False

    # ── setters (last write wins) ────────────────────────

    def set_current_assessment_id(self, assessment_id: Optional[str]) -> None:
        self.current_assessment_id = assessment_id

    def set_uploaded_files(self, files: list) -> None:
        self.uploaded_files = list(files)

    def set_permissions(self, **permissions: bool) -> None:
        unknown = set(permissions) - {"camera", "microphone"}
        if unknown:
            raise ValueError(f"Unknown permission(s): {', '.join(sorted(unknown))}")
        self.permissions = {**self.permissions, **permissions}

    def set_face_embedding(self, descriptor: Optional[List[float]]) -> None:
        self.face_embedding = list(descriptor) if descriptor is not None else None

    def set_questions(self, questions: list) -> None:
        self.questions = [
            q if isinstance(q, StoredQuestion) else StoredQuestion.from_api(q)
            for q in questions
        ]

    def set_current_question_index(self, index: int) -> None:
        self.current_question_index = index

    def set_time_remaining(self, seconds: int) -> None:
        self.time_remaining = seconds

    def set_assessment_complete(self, complete: bool) -> None:
        self.is_assessment_complete = complete

    def set_user_answer(self, index: int, answer: Optional[str]) -> None:
        if not 0 <= index < len(self.questions):
            raise IndexError(f"No question at index {index}")
        self.questions[index].user_answer = answer

    # ── helpers ──────────────────────────────────────────

    @property
    def current_question(self) -> Optional[StoredQuestion]:
        if 0 <= self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None

    def reset(self) -> None:
        """Back to defaults, permissions included."""
        fresh = type(self)()
        for f in fields(self):
            setattr(self, f.name, getattr(fresh, f.name))

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AssessmentStore":
        store = cls()
        known = {f.name for f in fields(cls)}
        for key, value in (data or {}).items():
            if key not in known:
                continue
            if key == "questions":
                store.set_questions(value or [])
            elif key == "permissions":
                store.permissions = {**_default_permissions(), **(value or {})}
            else:
                setattr(store, key, copy.deepcopy(value))
        return store

"""
Expert Evaluator - Candidate Dashboard
Streamlit interface for the proctored assessment wizard.

Run:  streamlit run frontend/dashboard.py
"""

import logging
import os
import sys
import time
from pathlib import Path

import requests
import streamlit as st
from streamlit_webrtc import RTCConfiguration, VideoProcessorBase, webrtc_streamer

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from backend.assessment_store import AssessmentStore
from backend.wizard import NoOptionSelected, QuestionPhase, SelectionBlocked, Step, guard
from frontend.live_proctor import FrameBuffer, LiveProctor

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────

API_BASE = os.getenv("API_BASE", "http://localhost:8000")
STUN_SERVER = os.getenv("STUN_SERVER", "stun:stun.l.google.com:19302")
RTC_CONFIGURATION = RTCConfiguration({"iceServers": [{"urls": [STUN_SERVER]}]})
STEPS = [Step.UPLOAD, Step.PERMISSIONS, Step.QUESTIONS, Step.COMPLETE, Step.RESULT]
STEP_LABELS = ["Upload", "Permissions", "Questions", "Complete", "Result"]

st.set_page_config(
    page_title="Expert Evaluator",
    page_icon="🧠",
    layout="wide",
    initial_sidebar_state="expanded"
)

# ─────────────────────────────────────────────────────────
# Custom CSS
# ─────────────────────────────────────────────────────────

st.markdown("""
<style>
    /* Score card */
    .score-card {
        background: linear-gradient(135deg, #1a1a2e, #16213e);
        border-radius: 16px;
        padding: 24px;
        text-align: center;
        color: white;
        margin-bottom: 16px;
    }
    .score-value { font-size: 52px; font-weight: 800; }
    .score-label { font-size: 13px; opacity: 0.65; text-transform: uppercase; letter-spacing: 1px; }

    /* Proctoring status pills */
    .pill-done   { background:#dcfce7; color:#166534; border-radius:20px; padding:3px 10px; font-size:12px; font-weight:600; }
    .pill-wait   { background:#fef9c3; color:#713f12; border-radius:20px; padding:3px 10px; font-size:12px; font-weight:600; }
    .pill-err    { background:#fee2e2; color:#991b1b; border-radius:20px; padding:3px 10px; font-size:12px; font-weight:600; }

    /* Step tracker */
    .step-bar {
        display: flex;
        align-items: center;
        gap: 0;
        margin: 18px 0 24px 0;
    }
    .step-node {
        width: 32px; height: 32px;
        border-radius: 50%;
        display: flex; align-items: center; justify-content: center;
        font-weight: 700; font-size: 13px;
        flex-shrink: 0;
    }
    .step-active  { background:#4a7cf7; color:white; }
    .step-done    { background:#22c55e; color:white; }
    .step-pending { background:#e5e7eb; color:#9ca3af; }
    .step-line    { flex: 1; height: 3px; background: #e5e7eb; }
    .step-line-done { background: #22c55e; }
    .step-label   { font-size: 11px; color:#6b7280; text-align:center; margin-top:4px; }
</style>
""", unsafe_allow_html=True)


# ─────────────────────────────────────────────────────────
# Session state
# ─────────────────────────────────────────────────────────

_DEFAULTS = {
    "token": None,
    "user": None,
    "store": AssessmentStore().to_dict(),
    "step": Step.UPLOAD.value,
    "selected": None,
    "paused": False,
    "monitoring_valid": False,
    "live_proctor": None,
    "tick_at": None,
}
for _key, _value in _DEFAULTS.items():
    st.session_state.setdefault(_key, _value)


def load_store() -> AssessmentStore:
    return AssessmentStore.from_dict(st.session_state.store)


def save_store(store: AssessmentStore):
    st.session_state.store = store.to_dict()


def go(step: Step):
    st.session_state.step = step.value
    st.rerun()


def stop_live_proctor():
    proctor = st.session_state.live_proctor
    if proctor is not None:
        proctor.stop()
    st.session_state.live_proctor = None


def start_new_assessment():
    stop_live_proctor()
    store = load_store()
    store.reset()
    save_store(store)
    st.session_state.update(selected=None, paused=False, monitoring_valid=False,
                            tick_at=None)
    st.session_state.step = Step.UPLOAD.value


# ─────────────────────────────────────────────────────────
# Helper Functions
# ─────────────────────────────────────────────────────────

def _headers():
    return {"Authorization": f"Bearer {st.session_state.token}"}


def api_health_check():
    try:
        r = requests.get(f"{API_BASE}/health", timeout=3)
        return r.status_code == 200
    except requests.RequestException:
        return False


def api_get(path, timeout=30):
    r = requests.get(f"{API_BASE}{path}", headers=_headers(), timeout=timeout)
    r.raise_for_status()
    return r


def api_post(path, timeout=60, **kwargs):
    r = requests.post(f"{API_BASE}{path}", headers=_headers(), timeout=timeout, **kwargs)
    r.raise_for_status()
    return r.json()


def error_detail(e: requests.RequestException) -> str:
    response = getattr(e, "response", None)
    if response is not None:
        try:
            detail = response.json().get("detail")
            if isinstance(detail, str):
                return detail
        except ValueError:
            pass
    return "Something went wrong. Please try again."


def fail(message: str, e: Exception):
    logger.error("%s: %s", message, e, exc_info=True)
    st.error(f"❌ {message}: {error_detail(e) if isinstance(e, requests.RequestException) else e}")


def render_score_card(score, label="Final Score"):
    color = "#4CAF50" if score >= 80 else "#FF9800" if score >= 60 else "#f44336"
    st.markdown(f"""
    <div class="score-card">
        <div class="score-label">{label}</div>
        <div class="score-value" style="color:{color};">{score}%</div>
    </div>
    """, unsafe_allow_html=True)
    st.progress(score / 100)


def step_tracker(steps: list, current: int):
    """Render a horizontal step progress bar."""
    nodes_html = ""
    for i, label in enumerate(steps):
        if i < current:
            cls = "step-done"
            icon = "✓"
        elif i == current:
            cls = "step-active"
            icon = str(i + 1)
        else:
            cls = "step-pending"
            icon = str(i + 1)

        line_cls = "step-line-done" if i < len(steps) - 1 and i < current else "step-line"
        line = f'<div class="step-line {line_cls}"></div>' if i < len(steps) - 1 else ""

        nodes_html += f"""
        <div style="display:flex;flex-direction:column;align-items:center;min-width:56px">
            <div class="step-node {cls}">{icon}</div>
            <div class="step-label">{label}</div>
        </div>
        {line}
        """

    st.markdown(f'<div class="step-bar">{nodes_html}</div>', unsafe_allow_html=True)


# ─────────────────────────────────────────────────────────
# Page: Auth
# ─────────────────────────────────────────────────────────

def page_auth():
    st.title("🧠 Expert Evaluator")
    st.subheader("Prove you built it: AI questions about your own project, under proctoring.")

    if not api_health_check():
        st.error("❌ API Server is offline. Start: `uvicorn backend.api:app --reload`")

    tab_in, tab_up = st.tabs(["Sign In", "Sign Up"])

    with tab_in:
        with st.form("signin"):
            email = st.text_input("Email")
            password = st.text_input("Password", type="password")
            submitted = st.form_submit_button("Sign In", type="primary")
        if submitted:
            try:
                r = requests.post(f"{API_BASE}/auth/signin",
                                  json={"email": email, "password": password}, timeout=15)
                r.raise_for_status()
                data = r.json()
                st.session_state.token = data["access_token"]
                st.session_state.user = data["user"]
                st.rerun()
            except requests.RequestException as e:
                fail("Sign in failed", e)

    with tab_up:
        with st.form("signup"):
            username = st.text_input("Username")
            email = st.text_input("Email", key="signup_email")
            password = st.text_input("Password (min 6 characters)", type="password", key="signup_pw")
            photo = st.file_uploader("Profile photo (optional)", type=["jpg", "jpeg", "png"])
            submitted = st.form_submit_button("Create Account", type="primary")
        if submitted:
            files = {"photo": (photo.name, photo.getvalue(), photo.type)} if photo else None
            try:
                r = requests.post(
                    f"{API_BASE}/auth/signup",
                    data={"email": email, "password": password, "username": username},
                    files=files,
                    timeout=60,
                )
                r.raise_for_status()
                data = r.json()
                st.session_state.token = data["access_token"]
                st.session_state.user = data["user"]
                st.success("✅ Account created!")
                st.rerun()
            except requests.RequestException as e:
                fail("Sign up failed", e)


# ─────────────────────────────────────────────────────────
# Page: Dashboard
# ─────────────────────────────────────────────────────────

def page_dashboard():
    user = st.session_state.user or {}
    st.title(f"👋 Welcome, {user.get('username', '')}")

    try:
        assessments = api_get("/assessments").json()
    except requests.RequestException as e:
        fail("Could not load assessments", e)
        return

    completed = [a for a in assessments if a["status"] == "completed"]
    scores = [a["total_score"] for a in completed if a["total_score"] is not None]

    col1, col2, col3 = st.columns(3)
    col1.metric("Assessments", len(assessments))
    col2.metric("Completed", len(completed))
    col3.metric("Avg Score", f"{round(sum(scores) / len(scores))}%" if scores else "—")

    st.divider()
    if st.button("🚀 Start New Assessment", type="primary"):
        start_new_assessment()
        st.session_state.goto_assessment = True
        st.rerun()

    st.subheader("Recent Assessments")
    if not assessments:
        st.info("No assessments yet.")
    for a in assessments:
        c1, c2, c3, c4 = st.columns([3, 2, 1, 1])
        c1.markdown(f"**{a['project_name']}**")
        c2.caption((a.get("created_at") or "")[:19].replace("T", " "))
        c3.markdown(f"{a['total_score']}%" if a["total_score"] is not None else "—")
        if a["status"] == "completed" and c4.button("View", key=f"view_{a['id']}"):
            store = load_store()
            store.set_current_assessment_id(a["id"])
            save_store(store)
            st.session_state.step = Step.RESULT.value
            st.session_state.goto_assessment = True
            st.rerun()


# ─────────────────────────────────────────────────────────
# Wizard steps
# ─────────────────────────────────────────────────────────

def step_upload(store: AssessmentStore):
    st.header("📤 Upload Your Project")
    project_name = st.text_input("Project name", value="My Project")
    upload = st.file_uploader("Project archive (.zip)", type=None)

    if upload is not None and st.button("Upload & Continue", type="primary"):
        if not upload.name.lower().endswith(".zip"):
            st.error("Please upload a ZIP file")
            return
        with st.spinner("Extracting project..."):
            try:
                if not store.current_assessment_id:
                    created = api_post("/assessments", json={"project_name": project_name})
                    store.set_current_assessment_id(created["id"])
                    save_store(store)
                data = api_post(
                    f"/assessments/{store.current_assessment_id}/upload",
                    files={"file": (upload.name, upload.getvalue(), "application/zip")},
                    timeout=120,
                )
            except requests.RequestException as e:
                fail("Failed to extract ZIP file", e)
                return
        store.set_uploaded_files(data["files"])
        save_store(store)
        st.success(f"✅ Extracted {data['count']} files")
        go(Step.PERMISSIONS)

    if store.uploaded_files:
        with st.expander(f"📁 {len(store.uploaded_files)} files uploaded"):
            for f in store.uploaded_files:
                st.text(f"{f['name']}  ({f['size']} chars)")


def step_permissions(store: AssessmentStore):
    st.header("📷 Permissions & Face Registration")
    st.caption("Camera access is required for identity verification during the assessment.")

    camera = st.checkbox("Allow camera", value=store.permissions.get("camera", False))
    microphone = st.checkbox("Allow microphone", value=store.permissions.get("microphone", False))
    store.set_permissions(camera=camera, microphone=microphone)
    save_store(store)

    if not camera:
        st.info("Enable the camera to register your face.")
        return

    snapshot = st.camera_input("Look at the camera and take a photo")
    if snapshot is not None and st.button("Register Face"):
        try:
            data = api_post(
                f"/assessments/{store.current_assessment_id}/face",
                files={"image": ("face.jpg", snapshot.getvalue(), "image/jpeg")},
            )
        except requests.RequestException as e:
            fail("Face registration failed", e)
            return
        store.set_face_embedding(data["descriptor"])
        save_store(store)
        st.success("✅ Face registered")

    if store.face_embedding and st.button("Start Assessment", type="primary"):
        with st.spinner("Generating questions from your code..."):
            try:
                data = api_post(f"/assessments/{store.current_assessment_id}/questions/generate", timeout=180)
            except requests.RequestException as e:
                fail("Failed to initialize assessment", e)
                return
        store.set_questions(data["questions"])
        store.set_current_question_index(0)
        save_store(store)
        st.session_state.tick_at = time.time()
        go(Step.QUESTIONS)


def _submit_answer(question, answer):
    api_post(f"/questions/{question.id}/answer", json={"answer": answer})


class ProctorVideoProcessor(VideoProcessorBase):
    """Hands every received webcam frame to the proctoring buffer."""

    def __init__(self, frames: FrameBuffer):
        self.frames = frames

    def recv(self, frame):
        self.frames.put(frame.to_ndarray(format="rgb24"))
        return frame


def _live_proctor(store: AssessmentStore) -> LiveProctor:
    proctor = st.session_state.live_proctor
    if proctor is not None and proctor.assessment_id == store.current_assessment_id:
        return proctor
    stop_live_proctor()

    url = f"{API_BASE}/assessments/{store.current_assessment_id}/proctoring/frame"
    headers = _headers()

    def post_frame(data: bytes) -> dict:
        r = requests.post(url, headers=headers, timeout=15,
                          files={"frame": ("frame.jpg", data, "image/jpeg")})
        r.raise_for_status()
        return r.json()

    proctor = LiveProctor(post_frame, FrameBuffer(), assessment_id=store.current_assessment_id)
    st.session_state.live_proctor = proctor
    return proctor


def _proctoring_panel(store: AssessmentStore, phase: QuestionPhase):
    proctor = _live_proctor(store)
    frames = proctor.frames
    ctx = webrtc_streamer(
        key=f"proctoring-{store.current_assessment_id}",
        video_processor_factory=lambda: ProctorVideoProcessor(frames),
        rtc_configuration=RTC_CONFIGURATION,
        media_stream_constraints={"video": True, "audio": False},
        async_processing=True,
    )

    if ctx.state.playing:
        proctor.start()
    else:
        proctor.stop()
        frames.clear()

    snap = proctor.monitor.snapshot()
    phase.apply_proctoring(snap["status"], snap["paused"])
    if not proctor.is_live():
        phase.monitoring_valid = False

    if not ctx.state.playing:
        status, pill = "camera off", "pill-err"
    else:
        status = snap["status"]
        pill = "pill-done" if phase.monitoring_valid else "pill-wait" if status == "verifying" else "pill-err"
    st.markdown(f'<span class="{pill}">{status.replace("_", " ").title()}</span>', unsafe_allow_html=True)
    if snap["error"]:
        st.caption("Verification error; retrying.")


def step_questions(store: AssessmentStore):
    phase = QuestionPhase(store, _submit_answer, reset_timer=False)
    phase.selected = st.session_state.selected
    phase.paused = st.session_state.paused
    phase.monitoring_valid = st.session_state.monitoring_valid

    # catch up the countdown for the time spent since the last rerun
    now = time.time()
    tick_at = st.session_state.tick_at or now
    for _ in range(int(now - tick_at)):
        try:
            phase.tick()
        except requests.RequestException as e:
            fail("Failed to submit answer", e)
            break
    st.session_state.tick_at = tick_at + int(now - tick_at)

    if phase.complete:
        save_store(store)
        stop_live_proctor()
        go(Step.COMPLETE)

    question = phase.question
    total = len(store.questions)
    if question is None:
        st.warning("No questions loaded for this assessment.")
        return
    st.header(f"Question {store.current_question_index + 1} of {total}")
    st.progress((store.current_question_index + 1) / total)

    left, right = st.columns([3, 1])
    with right:
        st.metric("⏱ Time remaining", f"{store.time_remaining}s")
        _proctoring_panel(store, phase)

    with left:
        if phase.paused:
            st.error("⚠️ Assessment paused: a proctoring violation was detected.")
            if st.button("I understand, resume"):
                try:
                    api_post(f"/assessments/{store.current_assessment_id}/proctoring/resume")
                    phase.resume()
                    _live_proctor(store).monitor.resume()
                except requests.RequestException as e:
                    fail("Could not resume", e)

        st.markdown(f"### {question.question_text}")
        choice = st.radio("Options", question.options, index=None,
                          key=f"q_{question.id}", label_visibility="collapsed",
                          disabled=phase.blocked)
        if choice is not None and choice != phase.selected:
            try:
                phase.select(choice)
            except SelectionBlocked as e:
                st.error(str(e))

        last = store.current_question_index == total - 1
        if st.button("Finish" if last else "Next →", type="primary"):
            try:
                phase.advance()
            except NoOptionSelected as e:
                st.warning(str(e))
            except requests.RequestException as e:
                fail("Failed to submit answer", e)
            else:
                st.session_state.tick_at = time.time()

    st.session_state.update(selected=phase.selected, paused=phase.paused,
                            monitoring_valid=phase.monitoring_valid)
    save_store(store)

    if phase.complete:
        stop_live_proctor()
        go(Step.COMPLETE)
    time.sleep(1)
    st.rerun()


def step_complete(store: AssessmentStore):
    st.header("🎉 Assessment Complete")
    answered = sum(1 for q in store.questions if q.user_answer)
    st.write(f"You answered {answered} of {len(store.questions)} questions.")

    if st.button("Evaluate My Project", type="primary"):
        with st.spinner("Analysing answers and code quality..."):
            try:
                api_post(f"/assessments/{store.current_assessment_id}/evaluate", timeout=180)
            except requests.RequestException as e:
                fail("Failed to evaluate assessment", e)
                return
        go(Step.RESULT)


def step_result(store: AssessmentStore):
    try:
        data = api_get(f"/assessments/{store.current_assessment_id}/result").json()
    except requests.RequestException as e:
        fail("Failed to load results", e)
        return

    assessment, report = data["assessment"], data["report"]
    st.header(f"📊 Results: {assessment['project_name']}")
    if report is None:
        st.info("This assessment has not been evaluated yet.")
        return

    metrics = report["performance_metrics"]
    quality = report["code_quality_analysis"]

    c1, c2, c3 = st.columns(3)
    with c1:
        render_score_card(metrics.get("score", 0))
    c2.metric("Originality", f"{100 - report['plagiarism_score']}%")
    c2.metric("Plagiarism", f"{report['plagiarism_score']}%")
    c3.metric("Code Quality", f"{quality.get('overallRating', '—')}/10")
    c3.metric("Correct", f"{metrics.get('correctAnswers', 0)}/{metrics.get('totalQuestions', 0)}")

    if report.get("analysis_fallback"):
        st.warning("Automated analysis was unavailable; a default analysis is shown.")

    with st.expander("🏗 Code Quality", expanded=True):
        for label, key in (("Architecture", "architecture"),
                           ("Code organization", "codeOrganization"),
                           ("Best practices", "bestPractices")):
            if quality.get(key):
                st.markdown(f"**{label}:** {quality[key]}")
    with st.expander("🔒 Security Suggestions"):
        for s in report["security_suggestions"]:
            st.markdown(f"- {s}")
    with st.expander("⚡ Optimization Suggestions"):
        for s in report["optimization_suggestions"]:
            st.markdown(f"- {s}")
    if report.get("overall_assessment"):
        st.info(report["overall_assessment"])

    st.subheader("Question Review")
    for q in data["questions"]:
        ok = q.get("user_answer") == q.get("correct_answer")
        st.markdown(f"{'✅' if ok else '❌'} **Q{q['question_number']}.** {q['question_text']}")
        st.caption(f"Your answer: {q.get('user_answer') or '(no answer)'}  |  Correct: {q.get('correct_answer')}")

    try:
        pdf = api_get(f"/assessments/{store.current_assessment_id}/report.pdf").content
        st.download_button("📄 Download Report & Certificate", pdf,
                           file_name=f"expert-evaluator-{assessment['id'][:8]}.pdf",
                           mime="application/pdf")
    except requests.RequestException as e:
        fail("Could not prepare the PDF", e)


STEP_RENDERERS = {
    Step.UPLOAD: step_upload,
    Step.PERMISSIONS: step_permissions,
    Step.QUESTIONS: step_questions,
    Step.COMPLETE: step_complete,
    Step.RESULT: step_result,
}


# ─────────────────────────────────────────────────────────
# Sidebar Navigation
# ─────────────────────────────────────────────────────────

if not st.session_state.token:
    page_auth()
    st.stop()

if st.session_state.pop("goto_assessment", False):
    st.session_state.nav = "📝 Assessment"

with st.sidebar:
    st.markdown("## 🧠 Expert Evaluator")
    st.caption(st.session_state.user.get("email", "") if st.session_state.user else "")
    st.divider()
    page = st.radio(
        "Navigate",
        ["🏠 Dashboard", "📝 Assessment"],
        key="nav",
        label_visibility="collapsed"
    )
    st.divider()
    if st.button("Sign Out"):
        for key in list(st.session_state.keys()):
            del st.session_state[key]
        st.rerun()


# ─────────────────────────────────────────────────────────
# Pages
# ─────────────────────────────────────────────────────────

if page == "🏠 Dashboard":
    page_dashboard()

elif page == "📝 Assessment":
    store = load_store()
    requested = Step(st.session_state.step)
    step = guard(requested, store, authenticated=True)
    if step is not requested:
        st.session_state.step = step.value
    step_tracker(STEP_LABELS, STEPS.index(step))
    STEP_RENDERERS[step](store)

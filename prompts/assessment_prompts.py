# Expert Evaluator: Prompt Templates
# Used by question_generator.py and report_evaluator.py.
# Scoring itself is deterministic (backend/scoring.py); no LLM prompt needed.

# ─────────────────────────────────────────────────────────
# QUESTION GENERATION PROMPT
# ─────────────────────────────────────────────────────────

# Marker lines let the offline fallback provider recognise which task it is
# being asked to do.
QUESTION_TASK_MARKER = "TASK: GENERATE MULTIPLE-CHOICE QUESTIONS"
ANALYSIS_TASK_MARKER = "TASK: ANALYZE CODING ASSESSMENT"

QUESTION_GENERATION_PROMPT = """
""" + QUESTION_TASK_MARKER + """

You are an expert code reviewer. Generate {count} multiple-choice questions about the provided project code.
Each question should test understanding of the code functionality, architecture, or implementation details.

Rules:
- Exactly 4 options per question
- "correctAnswer" must be copied verbatim from "options"
- Questions must be answerable by someone who actually wrote this code

Return ONLY a valid JSON array with this exact structure, no additional text:
[
  {{
    "questionText": "Question here?",
    "options": ["Option A", "Option B", "Option C", "Option D"],
    "correctAnswer": "Option A"
  }}
]

Based on this project code:

{project_files}
"""


# ─────────────────────────────────────────────────────────
# ASSESSMENT ANALYSIS PROMPT (plagiarism / quality report)
# ─────────────────────────────────────────────────────────

ANALYSIS_PROMPT = """
""" + ANALYSIS_TASK_MARKER + """

Analyze this coding assessment and provide a detailed evaluation:

Project: {project_name}
Score: {score}/100 ({correct}/{total} correct)

Questions and Answers:
{qa_section}

Project Files Overview:
{file_list}

Provide:
1. Plagiarism Score (0-100): Estimate based on answer patterns
2. Code Quality Analysis: Assess architecture, organization, and best practices
3. Security Suggestions: Identify potential vulnerabilities (provide as array of strings)
4. Optimization Suggestions: Performance improvements (provide as array of strings)
5. Overall Assessment: Brief summary of strengths and areas for improvement

Respond ONLY with valid JSON (no markdown) with these keys:
{{
  "plagiarismScore": <integer 0-100>,
  "codeQualityAnalysis": {{
    "architecture": "<string>",
    "codeOrganization": "<string>",
    "bestPractices": "<string>",
    "overallRating": <integer 1-10>
  }},
  "securitySuggestions": [<strings>],
  "optimizationSuggestions": [<strings>],
  "overallAssessment": "<string>"
}}
"""


def format_qa_section(questions) -> str:
    """questions: iterable of dicts with question_text / user_answer / correct_answer."""
    lines = []
    for i, q in enumerate(questions, start=1):
        lines.append(
            f"{i}. {q['question_text']}\n"
            f"   User Answer: {q.get('user_answer') or 'Not answered'}\n"
            f"   Correct Answer: {q['correct_answer']}"
        )
    return "\n\n".join(lines)


# ─────────────────────────────────────────────────────────
# DEFAULT ANALYSIS: used when the model reply can't be parsed
# ─────────────────────────────────────────────────────────

DEFAULT_ANALYSIS = {
    "plagiarismScore": 15,
    "codeQualityAnalysis": {
        "architecture": "Clean modular structure with good separation of concerns.",
        "codeOrganization": "Well-organized with clear component hierarchy.",
        "bestPractices": "Follows common best practices and modern patterns.",
        "overallRating": 8,
    },
    "securitySuggestions": [
        "Implement input validation on all user inputs",
        "Add rate limiting to API endpoints",
        "Use environment variables for sensitive data",
    ],
    "optimizationSuggestions": [
        "Implement code splitting for better performance",
        "Add memoization for expensive computations",
        "Optimize bundle size by removing unused dependencies",
    ],
    "overallAssessment": "Good overall performance with room for optimization.",
}

ANALYSIS_REQUIRED_FIELDS = list(DEFAULT_ANALYSIS.keys())

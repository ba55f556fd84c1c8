"""
hirecall/constants.py

Central repository for cross-cutting constants that are not operational knobs.

Rules for what belongs here:
  - Pure Python only. No Django model imports (prevents circular import risk).
  - Referenced by more than one module.

Tunable values (rate cap, calling hours, thresholds, retry ceilings) live in
settings.py so they can be overridden from .env.
"""

# ── Scoring ────────────────────────────────────────────────────────────────────

# Maximum points per screening criterion. The overall qualification score is
# sum(points) / sum(maxima) * 100.
CRITERION_MAX_SCORES = {
    "notice_period_score": 20,
    "budget_score": 20,
    "location_score": 20,
    "experience_score": 20,
    "technical_score": 40,
    "communication_score": 20,
}

MAX_TOTAL_SCORE = sum(CRITERION_MAX_SCORES.values())

# ── Resume fields ──────────────────────────────────────────────────────────────

# Placeholder stored when a resume field could not be extracted.
NOT_AVAILABLE = "Not available"
NOT_SPECIFIED = "Not specified"

# Resumes yielding less text than this are treated as unreadable.
MIN_RESUME_TEXT_LENGTH = 50

# Characters of resume text forwarded to the LLM parser.
RESUME_TEXT_LIMIT = 4000

# Maximum PDF pages extracted per resume (pdfplumber).
PDF_MAX_PAGES = 5

# ── Callback parsing ───────────────────────────────────────────────────────────

# Fallback delay applied when a callback request cannot be interpreted.
DEFAULT_CALLBACK_DELAY_HOURS = 2

# Preferred local hours for vague parts of the day ("tomorrow morning").
# The callback parser pulls them inside the calling window.
PART_OF_DAY_HOURS = {
    "morning": 10,
    "afternoon": 14,
    "evening": 18,
    "night": 20,
}

# ── Follow-up slots ────────────────────────────────────────────────────────────

# A missed call is retried the next day: in the afternoon when it was missed
# before this local hour, otherwise in the morning.
FOLLOW_UP_CUTOFF_HOUR = 14
FOLLOW_UP_AFTERNOON_HOUR = 16
FOLLOW_UP_MORNING_HOUR = 10

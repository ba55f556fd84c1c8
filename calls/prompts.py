"""
calls/prompts.py

System prompts handed to the voice agent before each dial.

  screening_prompt(candidate)   — first screening call (queue tick, follow-up)
  callback_prompt(candidate)    — redial a candidate who asked to be called back
  scheduling_prompt(candidate)  — assessment-scheduling call for qualified candidates

Templates use {placeholder} tokens filled by _apply_placeholders().
"""

_SCREENING_TEMPLATE = """\
You are a friendly recruiter calling on behalf of {company}.
Speak naturally and keep each turn to one or two sentences.

CANDIDATE
- Name: {candidate_name}
- Skills from resume: {skills}
- Current company: {current_company}

ROLE
- Position: {job_role}
- Location: {location}
- Experience range: {experience_range}
- Budget range: {budget_range}
- Required notice period: {notice_period}

{opening}

CALL FLOW (5-7 minutes)
1. Ask whether they have five minutes. If not, ask when to call back, confirm
   the time, thank them and end the call.
2. Ask if they are open to a job change.
3. Ask their notice period.
4. Ask their current and expected compensation.
5. Ask whether {location} works for them.
6. Ask two or three short technical questions on {skills}.
7. Thank them, say the team will be in touch within 24 hours, and end the call.

RULES
- Never mention scoring or evaluation.
- If asked about salary details, say specifics are shared with shortlisted candidates.
- End the call right after the closing line."""

_SCREENING_OPENING = (
    'OPENING: "Hi {candidate_name}, I\'m calling from {company} about a {job_role} '
    'opportunity that matches your profile. Do you have about five minutes?"'
)

_CALLBACK_OPENING = (
    'OPENING: "Hi {candidate_name}, you asked us to call you back about the {job_role} '
    'opportunity at {company}. Is this a good time?" '
    "They asked for this call ({callback_reason}); if it is still a bad time, "
    "ask for a better time once and end politely."
)

_SCHEDULING_TEMPLATE = """\
You are a friendly recruiter calling on behalf of {company} to schedule an
online technical assessment.

CANDIDATE
- Name: {candidate_name}
- Email on file: {email}
- Notice period: {candidate_notice_period}

CALL FLOW (2-4 minutes)
1. Congratulate them on clearing the screening call.
2. Confirm the email on file. If it is wrong, ask for the correct address and
   read it back until they confirm it.
3. Explain the assessment takes 30-45 minutes on a laptop with stable internet.
4. Ask for a date and time to take it. Read the slot back and get an explicit yes.
5. Tell them the link will arrive by email, thank them and end the call.

RULES
- Always verify the email before agreeing a slot.
- End the call right after the closing line."""


def screening_prompt(candidate) -> str:
    context = _build_placeholder_context(candidate)
    opening = _apply_placeholders(_SCREENING_OPENING, context)
    return _apply_placeholders(_SCREENING_TEMPLATE, {**context, "opening": opening})


def callback_prompt(candidate) -> str:
    context = _build_placeholder_context(candidate)
    opening = _apply_placeholders(_CALLBACK_OPENING, context)
    return _apply_placeholders(_SCREENING_TEMPLATE, {**context, "opening": opening})


def scheduling_prompt(candidate) -> str:
    return _apply_placeholders(_SCHEDULING_TEMPLATE, _build_placeholder_context(candidate))


# ── Placeholder helpers ────────────────────────────────────────────────────────

def _build_placeholder_context(candidate) -> dict:
    requirements = candidate.batch.requirements
    return {
        "candidate_name": candidate.name or "there",
        "skills": candidate.skills or "their listed skills",
        "current_company": candidate.current_company or "not given",
        "email": candidate.contact_email or "not on file",
        "notice_period": requirements["required_notice_period"] or candidate.notice_period or "not given",
        "company": requirements["target_company"] or "our client",
        "job_role": requirements["target_job_role"] or "software",
        "location": requirements["location"] or "the office location",
        "experience_range": _format_range(requirements["min_experience"], requirements["max_experience"], "years"),
        "budget_range": _format_range(requirements["budget_min_lpa"], requirements["budget_max_lpa"], "LPA"),
        "candidate_notice_period": candidate.stated_notice_period or candidate.notice_period or "not given",
        "callback_reason": candidate.callback_reason or "they were busy",
    }


def _format_range(low, high, unit: str) -> str:
    if low is None and high is None:
        return "open"
    if high is None:
        return f"{low:g}+ {unit}"
    if low is None:
        return f"up to {high:g} {unit}"
    return f"{low:g}-{high:g} {unit}"


def _apply_placeholders(template: str, context: dict) -> str:
    """
    Replace {placeholder} tokens in a prompt template string.
    Unknown placeholders are left as-is.
    """
    for key, value in context.items():
        template = template.replace(f"{{{key}}}", str(value))
    return template

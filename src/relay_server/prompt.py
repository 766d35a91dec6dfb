"""System prompt rendering from a per-turn context snapshot."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

MAX_LISTED_APPLICATIONS = 10

BASE_PROMPT = """You are Plug, an AI HR assistant. You help users with job applications, interview preparation, resume tips, and career advice.

Key traits:
- Friendly and supportive
- Practical and actionable advice
- Use emojis sparingly to be engaging
- Keep responses concise but helpful
- Support both English and Hebrew (respond in the same language as the user)

You have access to the user's data and can help them with specific questions about their job search."""

CAPABILITIES = """You can help the user with:
- Questions about their applications and status
- Interview preparation for upcoming interviews
- Resume improvement suggestions
- Career advice based on their vouches and skills
- Job search strategy"""


def _parse_date(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _date(value: Any) -> str:
    dt = _parse_date(value)
    return dt.date().isoformat() if dt else (str(value) if value else "N/A")


def _application_section(ctx: Mapping[str, Any]) -> Optional[str]:
    # application-specific chats send the job fields at the top level
    if not (ctx.get("jobTitle") or ctx.get("companyName")):
        return None
    lines = [
        "Current Application Context:",
        f"- Position: {ctx.get('jobTitle') or 'Not specified'}",
        f"- Company: {ctx.get('companyName') or 'Not specified'}",
        f"- Location: {ctx.get('location') or 'Not specified'}",
        f"- Job Type: {ctx.get('jobType') or 'Not specified'}",
        f"- Status: {ctx.get('status') or 'Not specified'}",
    ]
    if ctx.get("matchScore"):
        lines.append(f"- Match Score: {ctx['matchScore']}%")
    return "\n".join(lines)


def _applications_section(apps: List[Mapping[str, Any]]) -> str:
    lines = [f"User's Job Applications ({len(apps)} total):"]
    for i, app in enumerate(apps[:MAX_LISTED_APPLICATIONS], 1):
        lines.append(f"{i}. {app.get('jobTitle', 'Unknown')} at {app.get('company', 'Unknown')}")
        lines.append(f"   - Status: {app.get('status') or 'active'}, Stage: {app.get('stage') or 'applied'}")
        lines.append(f"   - Location: {app.get('location') or 'N/A'}, Type: {app.get('jobType') or 'N/A'}")
        if app.get("matchScore"):
            lines.append(f"   - Match Score: {app['matchScore']}%")
        lines.append(f"   - Applied: {_date(app.get('appliedAt'))}")
    if len(apps) > MAX_LISTED_APPLICATIONS:
        lines.append(f"   ... and {len(apps) - MAX_LISTED_APPLICATIONS} more applications")
    return "\n".join(lines)


def _interviews_section(interviews: List[Mapping[str, Any]]) -> str:
    lines = ["Upcoming Interviews:"]
    for i, interview in enumerate(interviews, 1):
        dt = _parse_date(interview.get("date"))
        when = f"{dt.date().isoformat()} at {dt.strftime('%H:%M')}" if dt else str(interview.get("date") or "TBD")
        lines.append(f"{i}. {when}")
        lines.append(f"   - Type: {interview.get('type') or 'General'}")
        lines.append(f"   - Location: {interview.get('location') or 'TBD'}")
        if interview.get("notes"):
            lines.append(f"   - Notes: {interview['notes']}")
    return "\n".join(lines)


def _vouches_section(vouches: Mapping[str, Any]) -> str:
    types = vouches.get("types") or {}
    lines = [
        "User's Endorsements (Vouches):",
        f"- Total Vouches: {vouches.get('total', 0)}",
        "- Types: " + ", ".join(f"{k}: {v}" for k, v in types.items()),
    ]
    skills = vouches.get("skills") or []
    if skills:
        lines.append("- Skills mentioned: " + ", ".join(str(s) for s in skills))
    return "\n".join(lines)


def render_system_prompt(context: Optional[Mapping[str, Any]]) -> str:
    """Build the assistant's system prompt for one turn."""
    ctx: Mapping[str, Any] = context or {}
    sections: List[str] = [BASE_PROMPT]

    app_ctx = _application_section(ctx)
    if app_ctx:
        sections.append(app_ctx)
    if ctx.get("resumeSummary"):
        sections.append("User's Resume Summary:\n" + json.dumps(ctx["resumeSummary"], ensure_ascii=False, indent=2))
    if ctx.get("applications"):
        sections.append(_applications_section(list(ctx["applications"])))
    if ctx.get("upcomingInterviews"):
        sections.append(_interviews_section(list(ctx["upcomingInterviews"])))
    if isinstance(ctx.get("vouches"), Mapping):
        sections.append(_vouches_section(ctx["vouches"]))
    attachment = ctx.get("uploadedAttachment")
    if attachment:
        sections.append(
            "File the user just attached:\n" + json.dumps(attachment, ensure_ascii=False, indent=2)
        )

    sections.append(CAPABILITIES)
    return "\n\n".join(sections)


def context_counts(context: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Compact description of a context for logging."""
    ctx: Mapping[str, Any] = context or {}
    vouches = ctx.get("vouches")
    return {
        "has_resume": bool(ctx.get("resumeSummary")),
        "applications": len(ctx.get("applications") or []),
        "interviews": len(ctx.get("upcomingInterviews") or []),
        "vouches": vouches.get("total", 0) if isinstance(vouches, Mapping) else 0,
        "has_attachment": bool(ctx.get("uploadedAttachment")),
    }

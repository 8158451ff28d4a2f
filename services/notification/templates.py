"""
services/notification/templates.py
Template → (record type, subject, body, sms) mapping and renderers.
"""

import html
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config.settings import settings
from shared.models.models import NotificationTemplate, NotificationType

PLACEHOLDER = re.compile(r"\{(\w+)\}")

TEMPLATES = {
    NotificationTemplate.EVENT_REMINDER: {
        "type": NotificationType.REMINDER,
        "subject": "Reminder: {title} is tomorrow!",
        "body": "Hi {name}, this is a reminder that \"{title}\" is happening tomorrow, "
                "{when}, at {location}. We look forward to seeing you there!",
        "sms": "Reminder: \"{title}\" is tomorrow, {when} at {location}.",
    },
    NotificationTemplate.EVENT_UPDATED: {
        "type": NotificationType.UPDATE,
        "subject": "Event Updated: {title}",
        "body": "Hi {name}, there is an update for \"{title}\". {detail} "
                "The event is scheduled for {when} at {location}.",
        "sms": "Update for \"{title}\": {detail}",
    },
    NotificationTemplate.EVENT_CANCELLED: {
        "type": NotificationType.CANCELLATION,
        "subject": "Event Cancelled: {title}",
        "body": "Hi {name}, we're sorry to let you know that \"{title}\", scheduled for {when}, "
                "has been cancelled by the organizer. Your registration has been removed.",
        "sms": "\"{title}\" on {when} has been cancelled.",
    },
    NotificationTemplate.REGISTRATION_CONFIRMATION: {
        "type": NotificationType.UPDATE,
        "subject": "Registration Confirmed: {title}",
        "body": "Hi {name}, you're registered for \"{title}\" on {when} at {location}. {detail}",
        "sms": "You're registered for \"{title}\" on {when}.",
    },
    NotificationTemplate.REGISTRATION_CANCELLED: {
        "type": NotificationType.CANCELLATION,
        "subject": "Registration Cancelled: {title}",
        "body": "Hi {name}, your registration for \"{title}\" on {when} has been cancelled.",
        "sms": "Your registration for \"{title}\" has been cancelled.",
    },
    NotificationTemplate.EVENT_FLAGGED: {
        "type": NotificationType.UPDATE,
        "subject": "Event Flagged: {title}",
        "body": "Hi {name}, your event \"{title}\" has been flagged for review by a moderator. "
                "Reason: {detail}",
        "sms": "Your event \"{title}\" was flagged for review.",
    },
    NotificationTemplate.EVENT_UNFLAGGED: {
        "type": NotificationType.UPDATE,
        "subject": "Event Unflagged: {title}",
        "body": "Hi {name}, the moderation flag on your event \"{title}\" has been removed.",
        "sms": "The flag on your event \"{title}\" was removed.",
    },
    NotificationTemplate.ORGANIZER_VERIFIED: {
        "type": NotificationType.UPDATE,
        "subject": "Organizer Status Verified",
        "body": "Congratulations {name}! You have been verified as an organizer. "
                "Your events will now be approved automatically.",
        "sms": "You are now a verified organizer on Community Pulse.",
    },
    NotificationTemplate.ORGANIZER_UNVERIFIED: {
        "type": NotificationType.UPDATE,
        "subject": "Organizer Status Changed",
        "body": "Hi {name}, your verified organizer status has been removed. "
                "New events will require admin approval before they are published.",
        "sms": "Your verified organizer status was removed.",
    },
    NotificationTemplate.ACCOUNT_BANNED: {
        "type": NotificationType.UPDATE,
        "subject": "Account Suspended",
        "body": "Hi {name}, your account has been banned. Reason: {detail}",
        "sms": "Your Community Pulse account has been banned.",
    },
    NotificationTemplate.ACCOUNT_UNBANNED: {
        "type": NotificationType.UPDATE,
        "subject": "Account Restored",
        "body": "Hi {name}, your account has been restored. Welcome back!",
        "sms": "Your Community Pulse account has been restored.",
    },
}


@dataclass
class RenderedMessage:
    type: NotificationType
    subject: str
    body: str
    sms: str


def format_when(value: Optional[datetime]) -> str:
    """Human-readable start time in the deployment's reference timezone."""
    if value is None:
        return "a date to be announced"
    local = value.astimezone(ZoneInfo(settings.TIMEZONE))
    return local.strftime("%A, %B %d, %Y at %H:%M %Z")


def _render(template: str, **kwargs) -> str:
    """Single-pass placeholder substitution; unknown placeholders are left untouched."""
    def substitute(match: re.Match) -> str:
        key = match.group(1)
        if key not in kwargs:
            return match.group(0)
        value = kwargs[key]
        return "" if value is None else str(value)

    return PLACEHOLDER.sub(substitute, template)


def render(template: NotificationTemplate, **context) -> RenderedMessage:
    entry = TEMPLATES[template]
    subject = _render(entry["subject"], **context)
    body = " ".join(_render(entry["body"], **context).split())
    return RenderedMessage(
        type=entry["type"],
        subject=subject,
        body=body,
        sms=_render(entry["sms"], **context),
    )


def email_html(subject: str, body: str) -> str:
    return f"""
    <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
        <div style="background: #4F46E5; padding: 20px; border-radius: 8px 8px 0 0; text-align: center;">
            <h1 style="color: white; margin: 0;">{html.escape(settings.APP_NAME)}</h1>
        </div>
        <div style="background: white; padding: 24px; border: 1px solid #eee; border-radius: 0 0 8px 8px;">
            <h2 style="color: #333;">{html.escape(subject)}</h2>
            <p style="color: #666; line-height: 1.6;">{html.escape(body)}</p>
            <p style="color: #999; font-size: 12px; margin-top: 24px;">
                You received this email because you have an account on {html.escape(settings.APP_NAME)}.
            </p>
        </div>
    </div>
    """

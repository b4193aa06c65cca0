"""Meeting links for online and hybrid sessions.

Google Calendar events with a Meet conference are created with the stored
OAuth tokens of the therapist, or of the patient when the therapist has not
linked Google. Without tokens, or when Google fails, a placeholder link on
our own domain is returned so booking never fails on this step.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from sqlalchemy.orm import Session

from therapy_backend.core import config
from therapy_backend.models.user import OAuthAccount
from therapy_backend.services.scheduling import random_base36, to_base36

logger = logging.getLogger(__name__)

GOOGLE_PROVIDER = 'google'


class MeetingProviderError(RuntimeError):
    pass


@dataclass
class MeetingDetails:
    meeting_link: str
    event_id: str | None = None


def generate_fallback_meeting_link(reference: str) -> str:
    meeting_code = f'{to_base36(int(time.time() * 1000))}-{random_base36(5)}'
    return f'{config.APP_URL}/meeting/{meeting_code}?session={reference}'


def find_google_account(db: Session, user_id: int | None) -> OAuthAccount | None:
    if user_id is None:
        return None
    account = db.query(OAuthAccount).filter(
        OAuthAccount.user_id == user_id,
        OAuthAccount.provider == GOOGLE_PROVIDER,
    ).first()
    if account is None or not account.access_token or not account.refresh_token:
        return None
    return account


def create_google_meet_event(
    *,
    summary: str,
    description: str,
    start: datetime,
    end: datetime,
    attendee_emails: list[str],
    access_token: str,
    refresh_token: str,
) -> MeetingDetails:
    credentials = Credentials(
        token=access_token,
        refresh_token=refresh_token,
        token_uri=config.GOOGLE_TOKEN_URI,
        client_id=config.GOOGLE_CLIENT_ID or None,
        client_secret=config.GOOGLE_CLIENT_SECRET or None,
    )
    service = build('calendar', 'v3', credentials=credentials, cache_discovery=False)

    event = {
        'summary': summary,
        'description': description,
        'start': {'dateTime': start.isoformat() + 'Z', 'timeZone': config.MEETING_TIMEZONE},
        'end': {'dateTime': end.isoformat() + 'Z', 'timeZone': config.MEETING_TIMEZONE},
        'attendees': [{'email': email} for email in attendee_emails],
        'conferenceData': {
            'createRequest': {
                'requestId': f'{int(time.time() * 1000)}-{random_base36(6)}',
                'conferenceSolutionKey': {'type': 'hangoutsMeet'},
            },
        },
        'reminders': {
            'useDefault': False,
            'overrides': [
                {'method': 'email', 'minutes': 24 * 60},
                {'method': 'popup', 'minutes': 30},
            ],
        },
    }

    created = service.events().insert(
        calendarId='primary',
        body=event,
        conferenceDataVersion=1,
        sendUpdates='all',
    ).execute()

    if not created.get('id') or not created.get('hangoutLink'):
        raise MeetingProviderError('Failed to create meeting with conference data')

    return MeetingDetails(meeting_link=created['hangoutLink'], event_id=created['id'])


def create_session_meeting(
    db: Session,
    *,
    therapist_user_id: int,
    patient_user_id: int | None,
    summary: str,
    description: str,
    start: datetime,
    attendee_emails: list[str],
    reference: str,
) -> MeetingDetails:
    try:
        account = find_google_account(db, therapist_user_id) or find_google_account(db, patient_user_id)
        if account is None:
            logger.info('No Google account linked for session %s, using fallback meeting link', reference)
            return MeetingDetails(meeting_link=generate_fallback_meeting_link(reference))

        return create_google_meet_event(
            summary=summary,
            description=description,
            start=start,
            end=start + timedelta(minutes=config.SESSION_DURATION_MINUTES),
            attendee_emails=[email for email in attendee_emails if email],
            access_token=account.access_token,
            refresh_token=account.refresh_token,
        )
    except Exception:
        logger.exception('Google Meet creation failed for session %s, using fallback meeting link', reference)
        return MeetingDetails(meeting_link=generate_fallback_meeting_link(reference))


def delete_google_meet_event(*, event_id: str, access_token: str, refresh_token: str) -> None:
    credentials = Credentials(
        token=access_token,
        refresh_token=refresh_token,
        token_uri=config.GOOGLE_TOKEN_URI,
        client_id=config.GOOGLE_CLIENT_ID or None,
        client_secret=config.GOOGLE_CLIENT_SECRET or None,
    )
    service = build('calendar', 'v3', credentials=credentials, cache_discovery=False)
    service.events().delete(calendarId='primary', eventId=event_id, sendUpdates='all').execute()


def delete_session_meeting(
    db: Session,
    *,
    therapist_user_id: int,
    patient_user_id: int | None,
    event_id: str,
) -> None:
    """Remove a calendar event whose session was never stored."""
    try:
        account = find_google_account(db, therapist_user_id) or find_google_account(db, patient_user_id)
        if account is None:
            logger.warning('No Google account left to delete calendar event %s', event_id)
            return
        delete_google_meet_event(
            event_id=event_id,
            access_token=account.access_token,
            refresh_token=account.refresh_token,
        )
        logger.info('Deleted orphaned calendar event %s', event_id)
    except Exception:
        logger.exception('Could not delete orphaned calendar event %s', event_id)

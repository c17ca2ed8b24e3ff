"""
Message factory shared by the test modules.
"""
import itertools
from datetime import datetime, timedelta

from chat_inbox.models import Attachment, Message

ACCOUNT = "me@example.com"
BASE_TIME = datetime(2024, 1, 15, 9, 0, 0)

_uids = itertools.count(1)


def make_message(
    from_email: str,
    to_email: str = ACCOUNT,
    subject: str = "Hello",
    body: str = "Hi there",
    is_read: bool = False,
    is_sent: bool = False,
    group_id=None,
    uid=None,
    message_id: str = "auto",
    minutes: int = 0,
    attachments=(),
) -> Message:
    """Build a message; every call gets a fresh UID and Message-ID."""
    uid = uid if uid is not None else next(_uids)
    if message_id == "auto":
        message_id = f"<{uid}.{from_email}@mail.example.com>"
    return Message(
        uid=uid,
        message_id=message_id,
        group_id=group_id,
        from_email=from_email,
        from_name=from_email.split("@")[0].title(),
        to_email=to_email,
        subject=subject,
        body_text=body,
        received_at=BASE_TIME + timedelta(minutes=minutes if minutes else uid),
        is_read=is_read,
        is_sent=is_sent,
        attachments=[Attachment(filename=name, mime_type="application/pdf", size=1024) for name in attachments],
    )

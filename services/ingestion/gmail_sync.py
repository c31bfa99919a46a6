"""Gmail helpers for pulling invoice attachments out of connected mailboxes."""
import base64
import logging
from typing import Any, Dict, List

from googleapiclient.errors import HttpError

from shared.google_client import build_service
from shared.rate_limiter import gmail_limiter

logger = logging.getLogger(__name__)

RECENT_ATTACHMENTS_QUERY = "has:attachment newer_than:1d is:unread"


def build_gmail_service(access_token: str) -> Any:
    return build_service("gmail", "v1", access_token)


def search_messages(service: Any, query: str = RECENT_ATTACHMENTS_QUERY, max_results: int = 20) -> List[str]:
    """Search for Gmail messages matching query.

    Args:
        service: Gmail API service object
        query: Gmail search query string
        max_results: Maximum number of message IDs to return

    Returns:
        List of message IDs
    """
    try:
        message_ids = []
        page_token = None

        while len(message_ids) < max_results:
            gmail_limiter.wait_for_slot()
            response = service.users().messages().list(
                userId='me',
                q=query,
                maxResults=min(100, max_results - len(message_ids)),
                pageToken=page_token
            ).execute()

            messages = response.get('messages', [])
            message_ids.extend([msg['id'] for msg in messages])

            page_token = response.get('nextPageToken')
            if not page_token:
                break

        logger.info(f"Found {len(message_ids)} messages matching query: {query}")
        return message_ids[:max_results]

    except HttpError as e:
        logger.error(f"Error searching messages: {e}")
        raise


def find_attachments(part: Dict[str, Any]) -> List[Dict[str, str]]:
    """Walk a message payload and collect parts that carry an attachment.

    Returns:
        List of dicts with filename, mime_type and attachment_id.
    """
    found = []
    filename = part.get('filename')
    attachment_id = part.get('body', {}).get('attachmentId')
    if filename and attachment_id:
        found.append({
            "filename": filename,
            "mime_type": part.get('mimeType', ''),
            "attachment_id": attachment_id,
        })
    for child in part.get('parts', []) or []:
        found.extend(find_attachments(child))
    return found


def is_pdf(attachment: Dict[str, str]) -> bool:
    return attachment["mime_type"] == "application/pdf" or attachment["filename"].lower().endswith(".pdf")


def list_pdf_attachments(service: Any, message_id: str) -> List[Dict[str, str]]:
    gmail_limiter.wait_for_slot()
    try:
        message = service.users().messages().get(userId='me', id=message_id, format='full').execute()
    except HttpError as e:
        logger.error(f"Error fetching message {message_id}: {e}")
        raise
    return [att for att in find_attachments(message.get('payload', {})) if is_pdf(att)]


def download_attachment(service: Any, message_id: str, attachment_id: str) -> bytes:
    gmail_limiter.wait_for_slot()
    try:
        data = service.users().messages().attachments().get(
            userId='me',
            messageId=message_id,
            id=attachment_id
        ).execute()
    except HttpError as e:
        logger.error(f"Error downloading attachment of {message_id}: {e}")
        raise
    encoded = data['data']
    return base64.urlsafe_b64decode(encoded + '=' * (-len(encoded) % 4))


def mark_as_read(service: Any, message_id: str) -> None:
    gmail_limiter.wait_for_slot()
    try:
        service.users().messages().modify(
            userId='me',
            id=message_id,
            body={'removeLabelIds': ['UNREAD']}
        ).execute()
    except HttpError as e:
        logger.error(f"Error marking message {message_id} as read: {e}")
        raise

"""
Notification threads for backup runs.

A run started with create_thread=True opens a discussion thread through a
Discord-style webhook (forum channel) and posts the run summary into it.
Everything here is best effort: failures are logged and reported as
NotificationError, which the executor turns into an absent thread_id.
"""

import logging
from datetime import datetime
from typing import Optional

import requests

from nsbackup.backup.errors import NotificationError


logger = logging.getLogger(__name__)

MAX_THREAD_NAME_LENGTH = 100
MAX_CONTENT_LENGTH = 2000


class WebhookThreadCreator:
    """
    Creates notification threads through a webhook.
    """

    def __init__(self, webhook_url: str, timeout: int = 15, session: Optional[requests.Session] = None):
        """
        Initialize thread creator.

        Args:
            webhook_url: Webhook URL of a forum channel
            timeout: HTTP timeout in seconds
            session: Optional requests session
        """
        if not webhook_url:
            raise NotificationError("Notification webhook URL not configured")
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def create_thread(self, name: str, content: str) -> str:
        """
        Open a new thread with an initial message.

        Args:
            name: Thread title
            content: First message

        Returns:
            Thread (channel) id

        Raises:
            NotificationError: If the thread cannot be created
        """
        payload = {
            'thread_name': name[:MAX_THREAD_NAME_LENGTH],
            'content': content[:MAX_CONTENT_LENGTH]
        }
        data = self._post(payload, params={'wait': 'true'})

        thread_id = data.get('channel_id')
        if not thread_id:
            raise NotificationError("Webhook response did not include a thread id")

        logger.info(f"Created notification thread {thread_id}")
        return str(thread_id)

    def post_message(self, thread_id: str, content: str):
        """
        Post a message into an existing thread.

        Raises:
            NotificationError: If the message cannot be posted
        """
        self._post({'content': content[:MAX_CONTENT_LENGTH]}, params={'wait': 'true', 'thread_id': thread_id})

    def _post(self, payload: dict, params: dict) -> dict:
        try:
            response = self.session.post(self.webhook_url, json=payload, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise NotificationError(f"Webhook request failed: {e}")

        if response.status_code not in (200, 201, 204):
            raise NotificationError(f"Webhook rejected message: {response.status_code} - {response.text}")

        if response.status_code == 204 or not response.content:
            return {}

        try:
            return response.json()
        except ValueError:
            raise NotificationError("Webhook response is not valid JSON")


def format_thread_name(database_name: str, is_manual: bool, started_at: datetime) -> str:
    kind = 'Manual' if is_manual else 'Scheduled'
    return f"{kind} backup of {database_name} - {started_at.strftime('%Y-%m-%d %H:%M UTC')}"


def format_result_message(result) -> str:
    """
    Render a BackupResult as a plain-text summary.
    """
    if result.success:
        lines = ["✅ Backup completed successfully"]
    else:
        lines = [f"❌ Backup failed: {result.error}"]

    lines.append(f"Collections: {', '.join(result.collections_processed) or 'None'}")
    lines.append(f"Documents: {result.total_documents_processed}")

    if result.s3_url:
        lines.append(f"Download: {result.s3_url}")

    return '\n'.join(lines)

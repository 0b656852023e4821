import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import httpx

from models import Notification
from webhook import SIGNATURE_HEADER, sign_body


logger = logging.getLogger(__name__)

DEFAULT_CLAIM_TIMEOUT_SECONDS = 300


def drain_outbox(
    store,
    send: Callable[[Notification], None],
    limit: int = 100,
    now: Optional[datetime] = None,
    claim_timeout_seconds: int = DEFAULT_CLAIM_TIMEOUT_SECONDS,
) -> int:
    """
    hand pending notifications to `send`, oldest first.

    rows are claimed in one short transaction, delivered with no transaction
    open, then marked sent one by one. a failing send is logged and its claim
    released so the next drain retries it. a claim left behind by a crashed
    drainer expires after claim_timeout_seconds. returns how many were sent.
    """
    now = now or datetime.now(timezone.utc)

    with store.transaction() as tx:
        claimed = tx.claim_notifications(
            limit, now, stale_before=now - timedelta(seconds=claim_timeout_seconds)
        )

    sent = 0
    for notification in claimed:
        try:
            send(notification)
        except Exception:
            logger.exception(
                "delivery of notification %s (%s) failed, will retry",
                notification.id,
                notification.kind,
            )
            with store.transaction() as tx:
                tx.release_notification(notification.id)
            continue

        with store.transaction() as tx:
            tx.mark_notification_sent(notification.id, now)
        sent += 1

    if claimed:
        logger.info("outbox drained: %s of %s delivered", sent, len(claimed))
    return sent


def http_sender(url: str, secret: Optional[str] = None, timeout: float = 10.0) -> Callable[[Notification], None]:
    """
    sender that POSTs each notification as json to `url`.
    the body is signed the same way inbound payment webhooks are.
    non-2xx responses raise, which leaves the row pending.
    """

    def send(notification: Notification) -> None:
        body = json.dumps(
            {
                "id": notification.id,
                "kind": notification.kind,
                "payload": notification.payload,
                "createdAt": notification.created_at.isoformat(),
            }
        ).encode()
        headers = {"content-type": "application/json"}
        if secret:
            headers[SIGNATURE_HEADER] = sign_body(body, secret)

        response = httpx.post(url, content=body, headers=headers, timeout=timeout)
        response.raise_for_status()

    return send

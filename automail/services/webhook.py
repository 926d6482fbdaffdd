"""CALL_WEBHOOK: POST mit E-Mail- und Regel-Daten an eine User-URL"""

import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 10


class WebhookError(Exception):
    """Webhook nicht erreichbar oder Antwort mit Fehlerstatus"""


def build_payload(email, executed_rule) -> Dict[str, Any]:
    """
    Args:
        email: ParsedEmail
        executed_rule: ExecutedRule (id kann bei synchroner Ausführung noch None sein)
    """
    created_at: Optional[datetime] = getattr(executed_rule, "created_at", None)
    return {
        "email": {
            "threadId": email.thread_id,
            "messageId": email.message_id,
            "subject": email.subject,
            "from": email.sender,
            "cc": email.cc,
            "headerMessageId": email.headers.get("message-id", ""),
        },
        "executedRule": {
            "id": executed_rule.id,
            "ruleId": executed_rule.rule_id,
            "reason": executed_rule.reason,
            "automated": executed_rule.automated,
            "createdAt": created_at.isoformat() if created_at else None,
        },
    }


def call_webhook(url: str, payload: Dict[str, Any], secret: Optional[str] = None) -> int:
    """
    Returns:
        HTTP Status Code

    Raises:
        WebhookError
    """
    header = os.getenv("WEBHOOK_SECRET_HEADER", "X-Webhook-Secret")
    headers = {"Content-Type": "application/json"}
    if secret:
        headers[header] = secret

    try:
        response = requests.post(url, json=payload, headers=headers, timeout=WEBHOOK_TIMEOUT)
    except requests.exceptions.RequestException as exc:
        logger.error(f"❌ Webhook {url} nicht erreichbar: {type(exc).__name__}")
        raise WebhookError(f"Webhook nicht erreichbar: {type(exc).__name__}") from exc

    if response.status_code >= 400:
        logger.error(f"❌ Webhook {url} antwortet mit HTTP {response.status_code}")
        raise WebhookError(f"Webhook HTTP {response.status_code}")

    logger.info(f"🔗 Webhook {url} aufgerufen (HTTP {response.status_code})")
    return response.status_code

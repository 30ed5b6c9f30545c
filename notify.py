"""
Notification senders for repull: Discord webhook, ntfy.sh and generic
outgoing webhook.

Failures are always logged as warnings and never re-raised so that a broken
notification channel cannot interrupt the update cycle.
"""

import json
import logging
import string
from typing import Any, Dict, Optional

import requests

from digest import truncate_digest

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 10  # seconds

_NTFY_PRIORITIES = {'min', 'low', 'default', 'high', 'urgent'}

DISCORD_WEBHOOK_PREFIXES = (
    'https://discord.com/api/webhooks/',
    'https://discordapp.com/api/webhooks/',
)

# Daemon error strings can embed registry details; keep messages short
MAX_ERROR_LENGTH = 200

NOTIFY_CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "discord": {
            "type": "object",
            "properties": {"url": {"type": "string", "pattern": "^https://(discord|discordapp)\\.com/api/webhooks/"}},
            "required": ["url"],
        },
        "ntfy": {
            "type": "object",
            "properties": {
                "url": {"type": "string"},
                "priority": {"enum": sorted(_NTFY_PRIORITIES)},
                "headers": {"type": "object", "additionalProperties": {"type": "string"}},
            },
            "required": ["url"],
        },
        "webhook": {
            "type": "object",
            "properties": {
                "url": {"type": "string"},
                "method": {"enum": ["POST", "PUT", "post", "put"]},
                "headers": {"type": "object", "additionalProperties": {"type": "string"}},
                "body_template": {"type": "string"},
            },
            "required": ["url"],
        },
    },
    "additionalProperties": False,
}


def validate_discord_url(url: str) -> None:
    if not url.startswith(DISCORD_WEBHOOK_PREFIXES):
        raise ValueError(
            "invalid Discord webhook URL: must start with https://discord.com/api/webhooks/"
        )


def _build_payload(event: str, group: str, image: str = '', old_digest: str = '',
                   new_digest: str = '', message: str = '') -> Dict[str, Any]:
    """Return the standard dict passed to every sender."""
    return {
        'event': event,
        'group': group,
        'image': image,
        'old_digest': old_digest,
        'new_digest': new_digest,
        'message': message,
    }


def _summary(payload: Dict[str, Any]):
    """(title, body) text shared by the human-readable channels."""
    if payload['event'] == 'update':
        return (f"Updated {payload['group']}",
                f"Image: {payload['image']}\n"
                f"{truncate_digest(payload['old_digest'])} → {truncate_digest(payload['new_digest'])}")
    return f"Failed to update {payload['group']}", f"Error: {payload['message']}"


def send_discord(cfg: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    """POST a message to a Discord webhook.

    Config keys:
        url (required) Discord webhook URL
    """
    title, body = _summary(payload)
    icon = '✅' if payload['event'] == 'update' else '❌'
    try:
        response = requests.post(cfg['url'], json={'content': f"{icon} {title}\n{body}"},
                                 timeout=_REQUEST_TIMEOUT)
        response.raise_for_status()
        logger.info("discord: notification sent for %s", payload['group'])
        return True
    except requests.RequestException as e:
        logger.warning("discord: failed to send notification: %s", e)
        return False


def send_ntfy(cfg: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    """POST a notification to an ntfy topic URL.

    Config keys:
        url      (required) Full ntfy topic URL, e.g. https://ntfy.sh/my-topic
        priority (optional) min / low / default / high / urgent  (default: default)
        headers  (optional) Extra HTTP headers dict (e.g. {"Authorization": "Bearer token"})
    """
    url = (cfg.get('url') or '').strip()
    if not url:
        logger.warning("ntfy: no URL configured, skipping")
        return False

    title, message = _summary(payload)

    priority = cfg.get('priority', 'default')
    if priority not in _NTFY_PRIORITIES:
        priority = 'default'

    headers: Dict[str, str] = {
        'Title': f"repull: {title}",
        'Priority': priority,
        'Tags': 'package' if payload['event'] == 'update' else 'warning',
        'Content-Type': 'text/plain',
    }
    for k, v in (cfg.get('headers') or {}).items():
        headers[str(k)] = str(v)

    try:
        response = requests.post(url, data=message.encode('utf-8'),
                                 headers=headers, timeout=_REQUEST_TIMEOUT)
        response.raise_for_status()
        logger.info("ntfy: notification sent for %s", payload['group'])
        return True
    except requests.RequestException as e:
        logger.warning("ntfy: failed to send notification: %s", e)
        return False


def send_webhook(cfg: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    """POST (or PUT) a notification payload to a webhook URL.

    Config keys:
        url           (required) Webhook URL
        method        (optional) HTTP method, POST (default) or PUT
        headers       (optional) Dict of extra request headers
        body_template (optional) Python string.Template body.
                                 Available variables: $event, $group, $image,
                                 $old_digest, $new_digest, $message.
                                 If omitted, the raw payload JSON is sent.
    """
    url = (cfg.get('url') or '').strip()
    if not url:
        logger.warning("webhook: no URL configured, skipping")
        return False

    method = (cfg.get('method') or 'POST').upper()
    headers: Dict[str, str] = {'Content-Type': 'application/json'}
    headers.update({str(k): str(v) for k, v in (cfg.get('headers') or {}).items()})
    body_template: Optional[str] = cfg.get('body_template')

    if body_template:
        try:
            body_str = string.Template(body_template).safe_substitute(**payload)
        except (KeyError, ValueError) as e:
            logger.warning("webhook: body_template substitution failed: %s, sending raw payload", e)
            body_str = json.dumps(payload)
        data = body_str.encode('utf-8')
    else:
        data = json.dumps(payload).encode('utf-8')

    try:
        response = requests.request(method, url, data=data,
                                    headers=headers, timeout=_REQUEST_TIMEOUT)
        response.raise_for_status()
        logger.info("webhook: notification sent for %s", payload['group'])
        return True
    except requests.RequestException as e:
        logger.warning("webhook: failed to send notification: %s", e)
        return False


_SENDERS = (
    ('discord', send_discord),
    ('ntfy', send_ntfy),
    ('webhook', send_webhook),
)


class Notifier:
    """Dispatches update and error notifications to every configured channel.

    Callers pass strings that are already free of control characters.
    """

    def __init__(self, channels: Optional[Dict[str, Any]] = None,
                 discord_url: Optional[str] = None):
        self.channels: Dict[str, Any] = dict(channels or {})
        if discord_url:
            validate_discord_url(discord_url)
            self.channels['discord'] = {'url': discord_url}

    @property
    def enabled(self) -> bool:
        return any(cfg and cfg.get('url') for cfg in self.channels.values())

    def notify_update(self, group: str, image: str, old_digest: str, new_digest: str) -> None:
        self._dispatch(_build_payload('update', group, image=image,
                                      old_digest=old_digest, new_digest=new_digest))

    def notify_error(self, group: str, message: str) -> None:
        if len(message) > MAX_ERROR_LENGTH:
            message = message[:MAX_ERROR_LENGTH] + "..."
        self._dispatch(_build_payload('error', group, message=message))

    def _dispatch(self, payload: Dict[str, Any]) -> None:
        for channel, sender in _SENDERS:
            cfg = self.channels.get(channel)
            if not cfg or not cfg.get('url'):
                continue
            try:
                sender(cfg, payload)
            except Exception as e:
                logger.warning("%s: unexpected error: %s", channel, e)

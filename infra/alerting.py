"""Notification helpers: Telegram messages and optional webhook delivery."""

from __future__ import annotations

import hashlib
import html
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        if not value:
            return default or cls.INFO
        normalized = value.strip().lower()
        for member in cls:
            if member.name.lower() == normalized:
                return member
        return default or cls.INFO


@dataclass
class AlertConfig:
    enabled: bool
    telegram_token: Optional[str]
    telegram_chat_id: Optional[str]
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 60.0

    @property
    def has_destination(self) -> bool:
        return bool((self.telegram_token and self.telegram_chat_id) or self.webhook_url)


class AlertService:
    """
    Best-effort notification sink.

    Features:
    - Telegram sendMessage (HTML parse mode) and/or a JSON webhook
    - Deduplication: identical alerts within the dedupe window are suppressed
    - Delivery failures are logged and never raised
    """

    def __init__(self, config: AlertConfig) -> None:
        self._config = config
        self._enabled = bool(config.enabled and config.has_destination)
        if config.enabled and not config.has_destination:
            logger.warning("Alerting enabled but no Telegram chat or webhook configured; disabling alerts")
        self._last_sent: Dict[str, float] = {}

    @classmethod
    def from_config(cls, enabled: bool, raw_config: Optional[Dict[str, Any]],
                    env: Optional[Dict[str, str]] = None) -> "AlertService":
        raw_config = raw_config or {}
        env = os.environ if env is None else env

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
        if not webhook_url:
            webhook_url = env.get(raw_config.get("webhook_env", "ALERT_WEBHOOK_URL"), "")

        config = AlertConfig(
            enabled=enabled,
            telegram_token=env.get(raw_config.get("telegram_token_env", "TELEGRAM_BOT_TOKEN")) or None,
            telegram_chat_id=env.get(raw_config.get("telegram_chat_env", "TELEGRAM_CHAT_ID")) or None,
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(raw_config.get("min_severity", "info")),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 60.0)),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self._enabled:
            return
        if severity.value < self._config.min_severity.value:
            return

        fingerprint = self._fingerprint(severity, title, message)
        now = time.monotonic()
        last = self._last_sent.get(fingerprint)
        if last is not None and now - last <= self._config.dedupe_seconds:
            logger.debug(f"Alert deduped: {title} (fingerprint={fingerprint[:8]}...)")
            return
        self._last_sent[fingerprint] = now
        self._prune(now)

        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context or {})
            return

        if self._config.telegram_token and self._config.telegram_chat_id:
            self._post(
                f"{TELEGRAM_API}/bot{self._config.telegram_token}/sendMessage",
                {
                    "chat_id": self._config.telegram_chat_id,
                    "text": self._format_html(severity, title, message, context),
                    "parse_mode": "HTML",
                    "disable_web_page_preview": True,
                },
                title,
            )
        if self._config.webhook_url:
            self._post(self._config.webhook_url, self._build_payload(severity, title, message, context), title)

    @staticmethod
    def _fingerprint(severity: AlertSeverity, title: str, message: str) -> str:
        content = f"{severity.name}|{title}|{message}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def _prune(self, now: float) -> None:
        horizon = max(self._config.dedupe_seconds, 300.0)
        stale = [fp for fp, ts in self._last_sent.items() if now - ts > horizon]
        for fp in stale:
            del self._last_sent[fp]

    def _post(self, url: str, payload: Dict[str, Any], title: str) -> None:
        request = urllib.request.Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error("Alert '%s' rejected with HTTP %s", title, response.status)
        except (urllib.error.URLError, socket.timeout, ValueError) as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)

    @staticmethod
    def _format_html(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> str:
        icon = {AlertSeverity.INFO: "ℹ️", AlertSeverity.WARNING: "⚠️", AlertSeverity.CRITICAL: "🚨"}[severity]
        lines = [f"{icon} <b>{html.escape(title)}</b>", html.escape(message)]
        for key, value in (context or {}).items():
            lines.append(f"<code>{html.escape(str(key))}</code>: {html.escape(str(value))}")
        return "\n".join(line for line in lines if line)

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        line_items = [f"[{severity.name}] {title}", message]
        if context:
            try:
                context_json = json.dumps(context, sort_keys=True)
            except TypeError:
                context_json = str(context)
            line_items.append(f"context={context_json}")
        return {"text": " | ".join(filter(None, line_items))}


__all__ = ["AlertService", "AlertSeverity", "AlertConfig"]

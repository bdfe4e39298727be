"""
AlertManager: Multi-channel notification of environment workflow outcomes.

Supports:
- Slack notifications (incoming webhook)
- Generic JSON webhook for external reporting collaborators
- Log channel
- History of all alerts for the API and CLI
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import requests

from framework.models import Phase, WorkflowReport

logger = logging.getLogger("envops.alerting")


class AlertChannel(Enum):
    SLACK = "slack"
    WEBHOOK = "webhook"
    LOG = "log"


class AlertSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class Alert:
    """Alert record for tracking and audit."""
    alert_id: str
    severity: AlertSeverity
    title: str
    message: str
    source_agent: str
    environment_id: str = ""
    branch: str = ""
    phase: str = ""
    report: dict = field(default_factory=dict)
    channels_sent: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "alert_id": self.alert_id,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "source_agent": self.source_agent,
            "environment_id": self.environment_id,
            "branch": self.branch,
            "phase": self.phase,
            "report": self.report,
            "channels_sent": self.channels_sent,
            "timestamp": self.timestamp.isoformat(),
        }


SEVERITY_BY_PHASE = {
    Phase.READY: AlertSeverity.INFO,
    Phase.DELETED: AlertSeverity.INFO,
    Phase.FAILED: AlertSeverity.CRITICAL,
}


class AlertManager:
    """
    Multi-channel alert manager with routing based on severity.

    Routing rules:
    - INFO: Log only
    - WARNING: Slack + Log
    - CRITICAL: Slack + Webhook + Log
    """

    def __init__(self, mock_mode: bool = True, timeout_seconds: float = 10.0):
        self.mock_mode = mock_mode
        self.timeout_seconds = timeout_seconds
        self._alert_history: list[Alert] = []
        self._channel_configs: dict[str, dict] = {}

    def configure_channel(self, channel: AlertChannel, config: dict) -> None:
        """Configure a notification channel."""
        self._channel_configs[channel.value] = config
        logger.info(f"Configured alert channel: {channel.value}")

    def send_alert(self, alert: Alert) -> Alert:
        """Route and send an alert based on severity."""
        for channel in self._get_channels_for_severity(alert.severity):
            if self._send_to_channel(channel, alert):
                alert.channels_sent.append(channel.value)

        self._alert_history.append(alert)
        logger.info(
            f"[ALERT {alert.severity.value.upper()}] {alert.title} "
            f"-> {', '.join(alert.channels_sent) or 'none'}"
        )
        return alert

    def report_outcome(self, report: WorkflowReport, source_agent: str = "EnvironmentAgent") -> Alert:
        """Turn a terminal workflow report into an alert."""
        severity = SEVERITY_BY_PHASE.get(report.final_phase, AlertSeverity.WARNING)
        if report.final_phase == Phase.READY:
            message = f"Environment ready at {report.external_endpoint}"
        elif report.final_phase == Phase.DELETED:
            message = "Environment torn down"
        else:
            message = report.failure_reason or f"Workflow ended in {report.final_phase.value}"
        total = sum(report.duration_by_phase.values())
        return self.send_alert(Alert(
            alert_id=str(uuid.uuid4())[:8],
            severity=severity,
            title=f"{report.environment_id} {report.final_phase.value} ({total:.0f}s)",
            message=message,
            source_agent=source_agent,
            environment_id=report.environment_id,
            branch=report.branch,
            phase=report.final_phase.value,
            report=report.to_dict(),
        ))

    def _get_channels_for_severity(self, severity: AlertSeverity) -> list[AlertChannel]:
        """Determine which channels to use based on severity."""
        if severity == AlertSeverity.CRITICAL:
            return [AlertChannel.SLACK, AlertChannel.WEBHOOK, AlertChannel.LOG]
        elif severity == AlertSeverity.WARNING:
            return [AlertChannel.SLACK, AlertChannel.LOG]
        else:
            return [AlertChannel.LOG]

    def _send_to_channel(self, channel: AlertChannel, alert: Alert) -> bool:
        """Send alert to a specific channel. Returns False when the channel is skipped or failed."""
        if channel == AlertChannel.LOG:
            log = logger.error if alert.severity == AlertSeverity.CRITICAL else logger.info
            log(f"{alert.title}: {alert.message}")
            return True

        if self.mock_mode:
            logger.info(f"  [MOCK {channel.value}] {alert.title}: {alert.message}")
            return True

        config = self._channel_configs.get(channel.value, {})
        if not config.get("webhook_url"):
            return False
        try:
            if channel == AlertChannel.SLACK:
                self._send_slack(alert, config["webhook_url"])
            elif channel == AlertChannel.WEBHOOK:
                self._send_webhook(alert, config["webhook_url"])
        except requests.RequestException as e:
            # notification delivery never changes the workflow outcome
            logger.warning(f"{channel.value} delivery failed for {alert.alert_id}: {e}")
            return False
        return True

    def _send_slack(self, alert: Alert, webhook_url: str) -> None:
        """Send Slack notification."""
        message = {
            "text": f"*[{alert.severity.value.upper()}]* {alert.title}\n{alert.message}",
            "blocks": [
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": f"*{alert.title}*\n{alert.message}"},
                },
                {
                    "type": "context",
                    "elements": [
                        {"type": "mrkdwn", "text": f"Environment: `{alert.environment_id}` | Branch: `{alert.branch}` | Phase: `{alert.phase}`"}
                    ],
                },
            ],
        }
        resp = requests.post(webhook_url, json=message, timeout=self.timeout_seconds)
        resp.raise_for_status()
        logger.info(f"Slack alert sent: {alert.title}")

    def _send_webhook(self, alert: Alert, webhook_url: str) -> None:
        """POST the alert and its report as JSON."""
        resp = requests.post(webhook_url, json=alert.to_dict(), timeout=self.timeout_seconds)
        resp.raise_for_status()
        logger.info(f"Webhook alert sent: {alert.title}")

    def get_alert_history(self, severity: Optional[AlertSeverity] = None) -> list[Alert]:
        """Get alert history, optionally filtered by severity."""
        if severity:
            return [a for a in self._alert_history if a.severity == severity]
        return self._alert_history

    def get_alert_summary(self) -> dict:
        """Get summary of all alerts."""
        total = len(self._alert_history)
        by_severity = {}
        for sev in AlertSeverity:
            by_severity[sev.value] = sum(1 for a in self._alert_history if a.severity == sev)
        return {
            "total_alerts": total,
            "by_severity": by_severity,
        }

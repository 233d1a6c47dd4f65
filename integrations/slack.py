from typing import Any, Dict, List, Optional
from loguru import logger
from slack_sdk.web import WebClient

from integrations.config import settings

class SlackNotifier:
    """Slack integration for case pipeline notifications to the delivery team."""

    def __init__(self, token: Optional[str] = None, channel: Optional[str] = None, alert_channel: Optional[str] = None):
        self.token = token if token is not None else settings.slack_bot_token
        self.default_channel = channel or settings.slack_default_channel
        self.alert_channel = alert_channel or settings.slack_alert_channel

        if not self.token:
            logger.warning("No Slack token provided, using mock mode")

    @property
    def mock_mode(self) -> bool:
        return not self.token

    def send_deal_won(self, deal: Dict[str, Any], project: Dict[str, Any], channel: Optional[str] = None) -> Optional[str]:
        """
        Announce a won deal and its newly opened delivery project.

        Args:
            deal: Deal payload
            project: Project payload
            channel: Slack channel (optional, uses default if not specified)

        Returns:
            Slack message timestamp or None if failed
        """
        if not self.token:
            logger.info("Mock mode: would send deal won notification")
            return "mock_timestamp_123"

        return self._post(channel or self.default_channel, self._build_won_message(deal, project))

    def send_provisioning_alert(self, deal: Dict[str, Any], error: str, channel: Optional[str] = None) -> Optional[str]:
        """
        Alert the team that a won deal has no delivery project.

        Args:
            deal: Deal payload
            error: Failure message from project creation
            channel: Slack channel (optional)

        Returns:
            Slack message timestamp or None if failed
        """
        if not self.token:
            logger.info("Mock mode: would send provisioning alert")
            return "mock_alert_timestamp_456"

        return self._post(channel or self.alert_channel, self._build_alert_message(deal, error))

    def send_document_reminder(self, project_id: str, documents: List[str], channel: Optional[str] = None) -> Optional[str]:
        """Post the list of outstanding required documents for a project."""
        if not self.token:
            logger.info("Mock mode: would send document reminder")
            return "mock_reminder_timestamp_789"

        text = f"📄 Reminder sent for project {project_id}: {len(documents)} required document(s) outstanding"
        blocks = [
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*{text}*"}
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": "\n".join(f"• {name}" for name in documents)}
            }
        ]
        return self._post(channel or self.default_channel, {"text": text, "blocks": blocks})

    def _post(self, channel: str, message: Dict[str, Any]) -> Optional[str]:
        try:
            client = WebClient(token=self.token)
            response = client.chat_postMessage(
                channel=channel,
                text=message["text"],
                blocks=message["blocks"]
            )

            message_ts = response["ts"]
            logger.info(f"Slack notification sent to {channel}: {message_ts}")

            return message_ts

        except Exception as e:
            logger.error(f"Slack notification failed: {e}")
            return None

    def _build_won_message(self, deal: Dict[str, Any], project: Dict[str, Any]) -> Dict[str, Any]:
        """Build Slack message for a won deal."""
        client_name = f"{deal.get('first_name', '')} {deal.get('last_name', '')}".strip() or "Unknown"
        quote = deal.get("quote_amount") or 0

        text = f"🎉 Deal won: {client_name} ({deal.get('case_type') or 'Unknown case type'})"

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": "🎉 Deal Won"
                }
            },
            {
                "type": "section",
                "fields": [
                    {
                        "type": "mrkdwn",
                        "text": f"*Client:*\n{client_name}"
                    },
                    {
                        "type": "mrkdwn",
                        "text": f"*Case Type:*\n{deal.get('case_type') or 'Unknown'}"
                    },
                    {
                        "type": "mrkdwn",
                        "text": f"*Quote:*\nR {quote:,.2f}"
                    },
                    {
                        "type": "mrkdwn",
                        "text": f"*Project:*\n{project.get('name') or project.get('id')}"
                    }
                ]
            },
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*Folder:* {project.get('folder') or 'n/a'}"
                }
            }
        ]

        return {"text": text, "blocks": blocks}

    def _build_alert_message(self, deal: Dict[str, Any], error: str) -> Dict[str, Any]:
        """Build high-priority Slack message for a won deal without a project."""
        client_name = f"{deal.get('first_name', '')} {deal.get('last_name', '')}".strip() or "Unknown"

        text = f"🚨 Won deal {deal.get('id')} ({client_name}) has no delivery project: {error}"

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": "🚨 PROJECT PROVISIONING FAILED"
                }
            },
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*<here>* Deal {deal.get('id')} for {client_name} is marked won but no project was created."
                }
            },
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*Error:* {error}\n*Next Action:* run reconciliation or create the project manually"
                }
            }
        ]

        return {"text": text, "blocks": blocks}

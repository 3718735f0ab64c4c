"""
Email SMTP notifier.
"""

import html
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from eventwatch.database.models import Channel, Impact
from eventwatch.rules.types import Notification, format_lead_time
from .base import ChannelDeliveryFailure, DeliveryOutcome, Notifier


def _utc(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


IMPACT_COLORS = {
    Impact.HIGH: "#dc3545",
    Impact.MEDIUM: "#ffc107",
    Impact.LOW: "#28a745",
}


class EmailNotifier(Notifier):
    """Sends notifications via email SMTP."""

    channel = Channel.EMAIL

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        from_address: str,
        timeout: float = 10,
        enabled: bool = True,
    ):
        """
        Initialize email notifier.

        Args:
            smtp_host: SMTP server hostname
            smtp_port: SMTP server port
            smtp_user: SMTP username
            smtp_password: SMTP password
            from_address: Sender email address
            timeout: Socket timeout in seconds
            enabled: Whether the channel is switched on for this deployment
        """
        super().__init__(enabled=enabled)
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_address = from_address
        self.timeout = timeout

    def send(self, notification: Notification) -> DeliveryOutcome:
        """Send notification via email."""
        try:
            recipient = notification.subscriber.contact.email
            if not recipient:
                raise ChannelDeliveryFailure("No email address on file")

            message = self._create_message(notification, recipient)

            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls()
                if self.smtp_user:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)

            return DeliveryOutcome.delivered(self.channel)

        except ChannelDeliveryFailure as e:
            return DeliveryOutcome.failed(self.channel, str(e))
        except smtplib.SMTPAuthenticationError as e:
            return DeliveryOutcome.failed(self.channel, f"Authentication failed: {str(e)}")
        except Exception as e:
            return DeliveryOutcome.failed(self.channel, f"SMTP error: {str(e)}")

    def _create_message(self, notification: Notification, recipient: str) -> MIMEMultipart:
        """Create email message."""
        message = MIMEMultipart("alternative")
        message["Subject"] = self._create_subject(notification)
        message["From"] = self.from_address
        message["To"] = recipient

        # Plain text version
        message.attach(MIMEText(self._create_text_body(notification), "plain"))

        # HTML version
        message.attach(MIMEText(self._create_body(notification), "html"))

        return message

    def _create_subject(self, notification: Notification) -> str:
        """Create email subject."""
        event = notification.event
        prefix = f"[{event.impact.value.title()} Impact]"
        when = format_lead_time(notification.lead_window_days)
        return f"{prefix} {event.title} {when}"

    def _create_text_body(self, notification: Notification) -> str:
        """Create plain text email body."""
        event = notification.event
        return f"""
Upcoming Market Event

Event: {event.title}
Category: {event.category.value.title()}
Impact: {event.impact.value.title()}
When: {_utc(event.occurs_at)}
Source: {event.source}

{notification.message}
"""

    def _create_body(self, notification: Notification) -> str:
        """Create HTML email body."""
        event = notification.event
        color = IMPACT_COLORS.get(event.impact, "#3498DB")
        title = html.escape(event.title)
        message = html.escape(notification.message)
        source = html.escape(event.source)

        return f"""
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 0; padding: 20px; }}
        .event-box {{
            border-left: 4px solid {color};
            padding: 15px;
            background-color: #f9f9f9;
            margin-bottom: 20px;
        }}
        .title {{ font-size: 22px; font-weight: bold; color: {color}; }}
        .when {{ font-size: 16px; color: #333; }}
        .message {{ margin: 15px 0; color: #555; }}
        .meta {{ color: #888; font-size: 12px; }}
    </style>
</head>
<body>
    <div class="event-box">
        <div class="title">{title}</div>
        <div class="when">{_utc(event.occurs_at)}</div>
        <div class="message">{message}</div>
        <div class="meta">
            Impact: {event.impact.value.title()}<br>
            Category: {event.category.value.title()}<br>
            Source: {source}
        </div>
    </div>
</body>
</html>
"""

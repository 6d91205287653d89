"""
Email notification utilities for Project Room Sync.

This module sends operator alerts for persistent drift (ticks that keep
failing) and for startup failures. All mail goes through :func:`send_email`,
which reads the ``notifications`` config section and never raises.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, Any, Iterable, List, Optional, Tuple
from datetime import datetime

logger = logging.getLogger(__name__)

# Cap on error lines in one alert
MAX_LISTED_ERRORS = 10

SUBJECT_PREFIX = "Project Room Sync"
FOOTER = "This is an automated message from Project Room Sync."


def _recipients(config: Dict[str, Any]) -> List[str]:
    email_to = config.get('email_to') or []
    if isinstance(email_to, str):
        return [email_to]
    return list(email_to)


def _open_smtp(config: Dict[str, Any]) -> smtplib.SMTP:
    """Connect and log in to the configured relay; port 465 means implicit TLS."""
    host = config['smtp_server']
    port = config.get('smtp_port', 587)

    if port == 465:
        server = smtplib.SMTP_SSL(host, port)
    else:
        server = smtplib.SMTP(host, port)

    try:
        if port != 465 and config.get('smtp_tls', True):
            server.starttls()

        username = config.get('smtp_username')
        password = config.get('smtp_password')
        if username and password:
            server.login(username, password)
    except (smtplib.SMTPException, OSError):
        server.close()
        raise
    return server


def _report(heading: str, sections: Iterable[Tuple[Optional[str], List[str]]]) -> str:
    """Plain-text body: heading, timestamp, then titled blocks of lines."""
    lines = [heading, f"Timestamp: {datetime.now():%Y-%m-%d %H:%M:%S}"]
    for title, block in sections:
        lines.append("")
        if title:
            lines.append(title)
        lines.extend(block)
    lines.extend(["", FOOTER])
    return '\n'.join(lines)


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send a plain-text email to every configured recipient.

    Args:
        subject: Email subject line
        body: Email body content
        config: ``notifications`` configuration section

    Returns:
        True if the relay accepted the message
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    recipients = _recipients(config)
    if not config.get('smtp_server'):
        logger.error("Cannot send email: smtp_server is not set")
        return False
    if not recipients:
        logger.error("Cannot send email: email_to is empty")
        return False

    sender = config.get('email_from') or config.get('smtp_username')

    message = MIMEMultipart()
    message['From'] = sender
    message['To'] = ', '.join(recipients)
    message['Subject'] = subject
    message.attach(MIMEText(body, 'plain'))

    logger.debug(f"Mailing '{subject}' to {len(recipients)} recipient(s) via {config['smtp_server']}")
    try:
        server = _open_smtp(config)
        try:
            server.sendmail(sender, recipients, message.as_string())
            server.quit()
        finally:
            server.close()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Email '{subject}' was not sent: {e}")
        return False

    logger.info(f"Email sent: {subject}")
    return True


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """Report a failure unless ``email_on_failure`` is off."""
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    sections = [(None, [f"Failure Type: {title}", f"Error Message: {error_message}"])]
    if additional_info:
        sections.append(("Additional Information:",
                         [f"  {key}: {value}" for key, value in additional_info.items()]))
    sections.append((None, ["See the application log for details."]))

    body = _report("Project Room Sync Failure Report", sections)
    return send_email(f"{SUBJECT_PREFIX} Alert: {title}", body, config)


def send_drift_alert(summary, consecutive_failures: int, config: Dict[str, Any]) -> bool:
    """
    Alert operators that reconciliation keeps failing.

    Args:
        summary: TickSummary of the latest failed tick
        consecutive_failures: Number of failed ticks in a row
        config: ``notifications`` configuration section

    Returns:
        True if the alert was sent
    """
    if not config.get('email_on_drift', True):
        logger.debug("Drift email notifications disabled")
        return False

    counters = [
        f"  Started: {summary.started_at.isoformat()}",
        f"  People upserted: {summary.users_upserted}",
        f"  Privilege changes: {summary.privilege_changes}",
        f"  Rooms provisioned: {summary.rooms_provisioned}",
        f"  Members invited: {summary.members_invited}",
        f"  Members removed: {summary.members_removed}",
        f"  Projects synced: {summary.projects_synced}",
        f"  Projects failed: {summary.projects_failed}",
        f"  Total errors: {len(summary.errors)}",
    ]

    listed = [
        f"  {number}. {error.kind} [{error.entity}]: {error.message}"
        for number, error in enumerate(summary.errors[:MAX_LISTED_ERRORS], 1)
    ]
    hidden = len(summary.errors) - MAX_LISTED_ERRORS
    if hidden > 0:
        listed.append(f"  ... and {hidden} more errors")

    body = _report("Project Room Sync Drift Report", [
        (None, [
            f"The last {consecutive_failures} reconciliation ticks did not complete cleanly.",
            "Local state and project rooms may no longer match the directory.",
        ]),
        ("Latest tick:", counters),
        ("Error Details:", listed),
    ])
    return send_email(f"{SUBJECT_PREFIX} Alert: {consecutive_failures} failed ticks in a row", body, config)


def send_startup_failure(component: str, error_message: str, config: Dict[str, Any]) -> bool:
    """Report that the service could not start because ``component`` failed."""
    return send_failure_notification(
        f"{component} Failed",
        error_message,
        config,
        {
            'Component': component,
            'Impact': 'Service did not start - no reconciliation is running'
        }
    )


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Send a test message with the current settings.

    Returns:
        True if the message was sent
    """
    body = _report("Project Room Sync: email settings test", [
        (None, ["Receiving this message means email notifications are set up correctly."]),
        ("Settings used:", [
            f"  SMTP Server: {config.get('smtp_server', 'not configured')}",
            f"  SMTP Port: {config.get('smtp_port', 'not configured')}",
            f"  From Address: {config.get('email_from', 'not configured')}",
            f"  Recipients: {', '.join(_recipients(config))}",
        ]),
    ])

    sent = send_email(f"{SUBJECT_PREFIX}: Configuration Test", body, config)
    if sent:
        logger.info("Test email sent")
    else:
        logger.error("Test email could not be sent, check the notifications settings")
    return sent

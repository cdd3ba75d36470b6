"""
Operator notification for jobs that exhausted their retries.
Sends a plain-text e-mail when SMTP is configured, otherwise logs.
"""

import logging
import smtplib
from email.message import EmailMessage

from optiflow.core.constants import APP_NAME
from optiflow.core.error_codes import ExhaustedRetriesError
from optiflow.core.models_sqlite import Job

logger = logging.getLogger(__name__)


def format_failure_message(job: Job, error: ExhaustedRetriesError,
                           subject_title: str | None = None) -> tuple[str, str]:
    """Return (subject line, body) for a failed job."""
    title = subject_title or f"subject {job.subject_id}"
    subject_line = f"[{APP_NAME}] Optimization Job Failed"
    body = (
        f"An optimization job has failed after {error.attempts} attempts.\n\n"
        f"Subject: {title} (ID: {job.subject_id})\n"
        f"Job ID: {job.id}\n"
        f"Error: {error.last_error}\n\n"
        f"Please check the job queue with `optiflow status`."
    )
    return subject_line, body


class OperatorNotifier:

    def __init__(self, recipient: str = "", smtp_host: str = "", smtp_port: int = 25,
                 sender: str = "optiflow@localhost", subject_lookup=None):
        self.recipient = recipient
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.sender = sender
        # subject_id -> title, for a friendlier message
        self.subject_lookup = subject_lookup

    def job_failed(self, job: Job, error: ExhaustedRetriesError) -> bool:
        """Notify the operator. Returns True if an e-mail was handed to SMTP."""
        title = None
        if self.subject_lookup:
            subject = self.subject_lookup(job.subject_id)
            title = getattr(subject, 'title', None)
        subject_line, body = format_failure_message(job, error, title)

        if not (self.recipient and self.smtp_host):
            logger.warning("%s\n%s", subject_line, body)
            return False

        msg = EmailMessage()
        msg['Subject'] = subject_line
        msg['From'] = self.sender
        msg['To'] = self.recipient
        msg.set_content(body)
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as smtp:
                smtp.send_message(msg)
        except (OSError, smtplib.SMTPException) as e:
            logger.error("Failed to e-mail operator about job %s: %s", job.id, e)
            return False
        logger.info("Operator notified about failed job %s", job.id)
        return True

# -*- coding: utf-8 -*-
"""
Avisos al administrador (fire-and-forget)
"""

import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

_logger = logging.getLogger(__name__)

SUBJECT_PREFIX = '[Verial Sync]'


class Notifier:
    def notify(self, subject: str, message: str):
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Deja el aviso en el log (opción por defecto)"""

    def notify(self, subject, message):
        _logger.warning(f"{SUBJECT_PREFIX} {subject}: {message}")


class EmailNotifier(Notifier):
    """
    Envía el aviso por correo

    Un fallo de envío se registra y no interrumpe la sincronización.
    """

    def __init__(self, to_address: str, from_address: Optional[str] = None,
                 host: str = 'localhost', port: int = 25, timeout: float = 10):
        self.to_address = to_address
        self.from_address = from_address or to_address
        self.host = host
        self.port = port
        self.timeout = timeout

    def notify(self, subject, message):
        email = EmailMessage()
        email['Subject'] = f"{SUBJECT_PREFIX} {subject}"
        email['From'] = self.from_address
        email['To'] = self.to_address
        email.set_content(message)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.send_message(email)
            _logger.info(f"Alert sent to {self.to_address}: {subject}")
        except (OSError, smtplib.SMTPException) as e:
            _logger.error(f"Could not send alert to {self.to_address}: {e}")

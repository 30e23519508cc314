# -*- coding: utf-8 -*-
"""
Transporte HTTP basado en requests
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import requests

from .errors import TransportException

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransportResponse:
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ''


class Transport:
    """Contrato: (method, url, headers, body, timeout) -> TransportResponse"""

    def send(self, method: str, url: str, headers: Dict[str, str],
             body: Optional[str], timeout: float) -> TransportResponse:
        raise NotImplementedError

    def close(self):
        pass


class RequestsTransport(Transport):
    """
    Transporte sobre requests.Session

    No reintenta: los reintentos son cosa del ejecutor. Los fallos de red
    se traducen a TransportException.
    """

    def __init__(self, verify_ssl: bool = True, session: Optional[requests.Session] = None):
        self.verify_ssl = verify_ssl
        self.session = session or requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
        })

    def send(self, method, url, headers, body, timeout):
        _logger.debug(f"{method} {url} (timeout={timeout}s)")
        try:
            response = self.session.request(
                method=method,
                url=url,
                headers=headers,
                data=body.encode('utf-8') if body is not None else None,
                timeout=timeout,
                verify=self.verify_ssl,
            )
        except requests.exceptions.Timeout as e:
            raise TransportException(f"Request timeout: {e}", timeout=True) from e
        except requests.exceptions.ConnectionError as e:
            raise TransportException(f"Connection error: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransportException(f"Request exception: {e}") from e

        _logger.debug(
            f"Response: {response.status_code} "
            f"(time: {response.elapsed.total_seconds():.2f}s)"
        )
        return TransportResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=response.text,
        )

    def close(self):
        self.session.close()
        _logger.info("HTTP session closed")

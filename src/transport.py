"""Authenticated HTTP transport for the cloud REST API.

All calls return (status, body) tuples. A 404, or a 400 whose body says the
resource "could not be found", is a clean "no such resource" signal and comes
back with a None body. Every other non-2xx status raises ApiError; I/O
failures raise TransientFailure.
"""

import base64
import datetime
import hashlib
import hmac
import io
import json
import logging
from typing import Any, BinaryIO, Optional
from urllib.parse import quote

import requests

from config import DriverConfig
from errors import ApiError, MalformedResponse, TransientFailure

logger = logging.getLogger(__name__)

OK_STATUSES = (200, 201, 202, 204)
NOT_FOUND = 404
BAD_REQUEST = 400
NOT_FOUND_MARKER = 'could not be found'


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


def _hmac_sha256(data: str, key: str) -> bytes:
    return hmac.new(key.encode('utf-8'), data.encode('utf-8'), hashlib.sha256).digest()


def sign_request(access_key: str, secret_key: str, region: str, timestamp: Optional[str] = None) -> str:
    """Build the Keypair authorization token.

    Args:
        access_key: Public API key
        secret_key: Private API key
        region: Location sent in the signed body
        timestamp: ISO-8601 UTC timestamp (default: now)

    Returns:
        Token for the 'Authorization: Keypair <token>' header
    """
    if timestamp is None:
        timestamp = datetime.datetime.now(datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')

    hashed_secret = _b64(_hmac_sha256(secret_key, secret_key))
    body = (
        f"Location={region}&PublicKey={access_key}"
        f"&UTCTimeStamp={quote(timestamp, safe='')}&Version=1.0"
    )
    clear = access_key + timestamp + body + hashed_secret
    # signature is base64 encoded twice
    signature = _b64(_b64(_hmac_sha256(clear, secret_key)).encode('utf-8'))
    token = f"{_b64(access_key.encode('utf-8'))}:{signature}:{_b64(clear.encode('utf-8'))}"
    return _b64(token.encode('utf-8'))


def parse_error(body: str) -> Optional[str]:
    """Extract ResponseStatus.Message from an error body, if present."""
    if not body or not body.lstrip().startswith('{'):
        return None
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return None
    status = data.get('ResponseStatus') or {}
    message = status.get('Message') if isinstance(status, dict) else None
    return message or None


class Transport:
    """HTTP client for the REST API."""

    def __init__(self, config: DriverConfig, session: Optional[requests.Session] = None):
        """Initialize transport.

        Args:
            config: Driver configuration (endpoint, keys, timeouts)
            session: requests session to reuse (created if not provided)
        """
        self.config = config
        self.session = session or requests.Session()

    def url_for(self, resource: str) -> str:
        """Join the configured endpoint and a resource path."""
        endpoint = self.config.endpoint
        if resource.startswith('/'):
            target = endpoint.rstrip('/') + resource
        elif endpoint.endswith('/'):
            target = endpoint + resource
        else:
            target = endpoint + '/' + resource
        return target.replace(' ', '%20')

    def _headers(self) -> dict:
        token = sign_request(self.config.access_key, self.config.get_secret_key(), self.config.region)
        return {
            'Content-Type': 'application/json; charset=utf-8',
            'Accept': 'application/json',
            'Authorization': f'Keypair {token}',
        }

    def _send(self, method: str, resource: str, body: Optional[str] = None,
              stream: bool = False) -> requests.Response:
        url = self.url_for(resource)
        logger.debug(f">>> {method} {url}")
        try:
            resp = self.session.request(
                method,
                url,
                data=body.encode('utf-8') if body is not None else None,
                headers=self._headers(),
                timeout=self.config.request_timeout,
                verify=self.config.verify_tls,
                stream=stream,
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            logger.error(f"{method} {url} failed due to an I/O error: {e}")
            raise TransientFailure(f"{method} {resource}: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"{method} {url} failed: {e}")
            raise TransientFailure(f"{method} {resource}: {e}") from e
        logger.debug(f"<<< {method} {url} -> HTTP {resp.status_code}")
        return resp

    def _check(self, method: str, resp: requests.Response) -> Optional[str]:
        """Map the response status. Returns body text, or None for not-found."""
        status = resp.status_code
        if status == NOT_FOUND:
            return None
        if status in OK_STATUSES:
            return resp.text or ''

        body = resp.text or ''
        if status == BAD_REQUEST and NOT_FOUND_MARKER in body:
            return None
        logger.error(f"Expected OK for {method} request, got {status}")
        reason = resp.reason or ''
        if not body:
            raise ApiError(status, reason, reason)
        raise ApiError(status, reason, parse_error(body) or body)

    def get(self, resource: str) -> tuple[int, Optional[str]]:
        resp = self._send('GET', resource)
        return resp.status_code, self._check('GET', resp)

    def post(self, resource: str, body: str = '') -> tuple[int, Optional[str]]:
        resp = self._send('POST', resource, body)
        return resp.status_code, self._check('POST', resp)

    def delete(self, resource: str) -> tuple[int, Optional[str]]:
        resp = self._send('DELETE', resource)
        return resp.status_code, self._check('DELETE', resp)

    def get_stream(self, resource: str) -> tuple[int, Optional[BinaryIO]]:
        """GET binary content. Returns (status, stream) with None for not-found."""
        resp = self._send('GET', resource, stream=True)
        try:
            status = resp.status_code
            if status not in OK_STATUSES and self._check('GET', resp) is None:
                return status, None
            return status, io.BytesIO(resp.content)
        except requests.exceptions.RequestException as e:
            raise TransientFailure(f"GET {resource}: {e}") from e
        finally:
            resp.close()

    def get_json(self, resource: str) -> Any:
        """GET and decode JSON. Returns None for not-found or empty bodies."""
        status, body = self.get(resource)
        return self._decode(status, body)

    def post_json(self, resource: str, payload: Any = None) -> Any:
        """POST a JSON payload and decode the JSON response.

        A str payload is sent as a JSON string literal (used for endpoints
        that take a bare id). Returns None for not-found or empty bodies.
        """
        body = '' if payload is None else json.dumps(payload)
        status, text = self.post(resource, body)
        return self._decode(status, text)

    @staticmethod
    def _decode(status: int, body: Optional[str]) -> Any:
        if body is None or not body.strip():
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise MalformedResponse(status, 'Invalid JSON', f"{e}: {body[:200]}") from e

"""
JMAP client for mailbox backup.

Provides session discovery, the Email/changes feed, an initial enumeration
of every message, raw message (blob) download with its Email metadata, and
the Mailbox listing.
"""

from __future__ import annotations

import base64
import json
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import quote, urlparse

import requests
from django.conf import settings

if TYPE_CHECKING:
    from mailvault.models import Account

from mailvault import secrets
from mailvault.models import AuthMode
from mailvault.providers.base import (
    CannotCalculateChangesError,
    ChangeKind,
    ChangePage,
    ChangeRecord,
    ObjectNotFoundError,
    RemoteError,
    RemoteMailbox,
    RemoteObject,
    TransportError,
)

logger = logging.getLogger(__name__)

JMAP_CORE = "urn:ietf:params:jmap:core"
JMAP_MAIL = "urn:ietf:params:jmap:mail"
USING = [JMAP_CORE, JMAP_MAIL]

# Upper bound for ids per request, whatever the server advertises
MAX_OBJECTS_PER_REQUEST = 50

# Prefix of the cursors handed out while enumerating an empty state
INITIAL_CURSOR_PREFIX = "mailvault-initial:"

# Method-level errors that mean the given state can't be resumed
UNRESUMABLE_ERRORS = {"cannotCalculateChanges", "anchorNotFound"}
RETRYABLE_ERRORS = {"serverUnavailable", "serverFail"}

# Email properties kept beside the archived message
METADATA_PROPERTIES = ["mailboxIds", "keywords", "receivedAt", "messageId", "threadId", "size"]


class JmapError(RemoteError):
    """Base exception for JMAP operations."""

    pass


class JmapAuthError(JmapError):
    """Raised when the server rejects the configured credentials."""

    pass


class JmapTransportError(JmapError, TransportError):
    """Raised on connection failures, rate limits and 5xx responses."""

    pass


class JmapStateError(JmapError, CannotCalculateChangesError):
    """Raised when the server cannot calculate changes from a state."""

    pass


@dataclass
class JmapSession:
    """The parts of a JMAP session resource the client needs."""

    api_url: str
    download_url: str
    account_id: str
    max_objects_in_get: int
    username: str = ""

    @classmethod
    def from_api_response(cls, data: dict) -> "JmapSession":
        """Create JmapSession from the session resource."""
        try:
            account_id = data["primaryAccounts"][JMAP_MAIL]
        except KeyError as e:
            raise JmapError("Server does not offer a primary mail account") from e

        core = data.get("capabilities", {}).get(JMAP_CORE, {})
        return cls(
            api_url=data["apiUrl"],
            download_url=data["downloadUrl"],
            account_id=account_id,
            max_objects_in_get=int(core.get("maxObjectsInGet", MAX_OBJECTS_PER_REQUEST)),
            username=data.get("username", ""),
        )


def encode_initial_cursor(state: str, anchor: str) -> str:
    """Pack the pre-enumeration state and the last seen id into a token."""
    payload = json.dumps({"state": state, "anchor": anchor}).encode()
    return INITIAL_CURSOR_PREFIX + base64.urlsafe_b64encode(payload).decode()


def decode_initial_cursor(token: str) -> tuple[str, str]:
    """
    Unpack an enumeration cursor.

    Raises:
        JmapStateError: If the cursor is malformed
    """
    try:
        payload = base64.urlsafe_b64decode(token[len(INITIAL_CURSOR_PREFIX):])
        data = json.loads(payload)
        return data["state"], data["anchor"]
    except (ValueError, KeyError, TypeError) as e:
        raise JmapStateError(f"Malformed enumeration cursor: {e}") from e


def session_url_for(host: str) -> str:
    """Return the session resource URL for a configured host."""
    parsed = urlparse(host)
    if parsed.path and parsed.path != "/":
        return host
    return host.rstrip("/") + "/.well-known/jmap"


class JmapClient(RemoteMailbox):
    """
    Client for a JMAP mail server.

    Handles authentication, session discovery, change feeds and message
    downloads for one account.
    """

    def __init__(
        self,
        account: "Account",
        secret: str | None = None,
        http: requests.Session | None = None,
        timeout: float | None = None,
    ):
        """
        Initialize the client with an account.

        Args:
            account: Account model instance
            secret: Password or token (default: read from the secrets file)
            http: Optional preconfigured requests session
            timeout: HTTP timeout in seconds
        """
        self.account = account
        self._secret = secret
        self._http = http
        self._session: JmapSession | None = None
        # Archive writes call in from several threads
        self._lock = threading.Lock()
        self.timeout = timeout or getattr(settings, "MAILVAULT_HTTP_TIMEOUT", 30)

    def _get_http(self) -> requests.Session:
        """Get or create the authenticated HTTP session."""
        with self._lock:
            if self._http is None:
                secret = self._secret or secrets.require_secret(self.account)
                http = requests.Session()
                if self.account.auth_mode == AuthMode.BASIC:
                    http.auth = (self.account.username, secret)
                else:
                    http.headers["Authorization"] = f"Bearer {secret}"
                self._http = http
            return self._http

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = self._get_http().request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise JmapTransportError(f"{method} {url} failed: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise JmapTransportError(f"{method} {url} returned HTTP {status}")
        if status in (401, 403):
            raise JmapAuthError(f"Authentication rejected for account {self.account.name}")
        return response

    def get_session(self) -> JmapSession:
        """Fetch and cache the JMAP session resource."""
        if self._session is None:
            url = session_url_for(self.account.host)
            response = self._request("GET", url)
            if response.status_code >= 400:
                raise JmapError(f"Session request returned HTTP {response.status_code}")
            try:
                self._session = JmapSession.from_api_response(response.json())
            except ValueError as e:
                raise JmapError(f"Invalid session response: {e}") from e
            logger.debug(f"JMAP session for {self.account.name}: {self._session.api_url}")
        return self._session

    def call(self, method_calls: list) -> dict[str, tuple[str, dict]]:
        """
        Send a JMAP request.

        Args:
            method_calls: List of [name, arguments, call_id] triples

        Returns:
            Mapping of call id to (response name, arguments)

        Raises:
            JmapStateError: For unresumable state errors
            JmapTransportError: For transport and retryable server errors
            JmapError: For any other method error
        """
        session = self.get_session()
        response = self._request(
            "POST",
            session.api_url,
            json={"using": USING, "methodCalls": method_calls},
        )
        if response.status_code >= 400:
            raise JmapError(f"API request returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise JmapTransportError(f"Invalid API response: {e}") from e

        results = {}
        for name, arguments, call_id in body.get("methodResponses", []):
            if name == "error":
                error_type = arguments.get("type", "unknown")
                message = f"{error_type}: {arguments.get('description', '')}".rstrip(": ")
                if error_type in UNRESUMABLE_ERRORS:
                    raise JmapStateError(message)
                if error_type in RETRYABLE_ERRORS:
                    raise JmapTransportError(message)
                raise JmapError(message)
            results[call_id] = (name, arguments)
        return results

    def page_size(self, requested: int) -> int:
        """Clamp a requested page size to server and client limits."""
        limit = min(self.get_session().max_objects_in_get, MAX_OBJECTS_PER_REQUEST)
        return max(1, min(requested, limit))

    def get_changes(self, state_token: str, max_page_size: int) -> ChangePage:
        """
        List changes since a state token.

        An empty token (or an enumeration cursor) walks every message on the
        server, oldest first. The final page of an enumeration returns the
        state captured before it started, so changes made meanwhile are
        picked up by the next Email/changes call.
        """
        limit = self.page_size(max_page_size)
        if not state_token or state_token.startswith(INITIAL_CURSOR_PREFIX):
            return self._enumerate(state_token, limit)
        return self._email_changes(state_token, limit)

    def _email_changes(self, state_token: str, limit: int) -> ChangePage:
        account_id = self.get_session().account_id
        results = self.call([
            [
                "Email/changes",
                {"accountId": account_id, "sinceState": state_token, "maxChanges": limit},
                "changes",
            ]
        ])
        _, data = results["changes"]

        records = (
            [ChangeRecord(i, ChangeKind.CREATED) for i in data.get("created", [])]
            + [ChangeRecord(i, ChangeKind.UPDATED) for i in data.get("updated", [])]
            + [ChangeRecord(i, ChangeKind.DESTROYED) for i in data.get("destroyed", [])]
        )
        return ChangePage(
            records=records,
            next_token=data["newState"],
            has_more=bool(data.get("hasMoreChanges", False)),
        )

    def _enumerate(self, cursor: str, limit: int) -> ChangePage:
        account_id = self.get_session().account_id
        query = {
            "accountId": account_id,
            "sort": [{"property": "receivedAt", "isAscending": True}],
            "limit": limit,
        }

        if cursor:
            state, anchor = decode_initial_cursor(cursor)
            query.update({"anchor": anchor, "anchorOffset": 1})
            results = self.call([["Email/query", query, "query"]])
        else:
            query["position"] = 0
            results = self.call([
                ["Email/get", {"accountId": account_id, "ids": [], "properties": ["id"]}, "state"],
                ["Email/query", query, "query"],
            ])
            state = results["state"][1]["state"]

        ids = results["query"][1].get("ids", [])
        records = [ChangeRecord(i, ChangeKind.CREATED) for i in ids]

        if len(ids) < limit:
            return ChangePage(records=records, next_token=state, has_more=False)
        return ChangePage(
            records=records,
            next_token=encode_initial_cursor(state, ids[-1]),
            has_more=True,
        )

    def fetch_message(self, remote_id: str) -> RemoteObject:
        """
        Download the raw RFC 5322 bytes of a message and its metadata.

        Mailbox membership, keywords and dates come from the same Email/get
        call that resolves the blob, so they describe the message as it was
        when downloaded.

        Raises:
            ObjectNotFoundError: If the message or its blob is gone
        """
        session = self.get_session()
        results = self.call([
            [
                "Email/get",
                {"accountId": session.account_id, "ids": [remote_id],
                    "properties": ["id", "blobId"] + METADATA_PROPERTIES,
                },
                "email",
            ]
        ])
        emails = results["email"][1].get("list", [])
        if not emails or not emails[0].get("blobId"):
            raise ObjectNotFoundError(f"Email {remote_id} not found")

        email = emails[0]
        blob_id = email["blobId"]
        url = (
            session.download_url
            .replace("{accountId}", quote(session.account_id, safe=""))
            .replace("{blobId}", quote(blob_id, safe=""))
            .replace("{name}", quote(f"{remote_id}.eml", safe=""))
            .replace("{type}", quote("message/rfc822", safe=""))
        )
        response = self._request("GET", url)
        if response.status_code == 404:
            raise ObjectNotFoundError(f"Blob {blob_id} for email {remote_id} not found")
        if response.status_code >= 400:
            raise JmapError(f"Download of {blob_id} returned HTTP {response.status_code}")

        metadata = {"id": remote_id, "blobId": blob_id}
        metadata.update({name: email[name] for name in METADATA_PROPERTIES if name in email})
        return RemoteObject(data=response.content, metadata=metadata)

    def get_mailboxes(self) -> list[dict]:
        """Fetch every Mailbox object of the account."""
        account_id = self.get_session().account_id
        results = self.call([["Mailbox/get", {"accountId": account_id, "ids": None}, "mailboxes"]])
        return results["mailboxes"][1].get("list", [])

    def get_user_info(self) -> dict:
        """
        Get basic session info for connection testing.

        Returns:
            Dict with username, account_id and api_url
        """
        session = self.get_session()
        return {
            "username": session.username,
            "account_id": session.account_id,
            "api_url": session.api_url,
        }

"""
CardDAV client for address book synchronization.

Provides the network side of contact sync for one address book:
- Listing every member with its ETag and vCard (REPORT addressbook-query)
- Fetching a single member (GET)
- Creating members (PUT with If-None-Match)
- Conditional updates (PUT with If-Match) that surface stale ETags

HTTP status codes are mapped onto a small exception hierarchy so that the
reconcilers never see raw transport errors. There is no retry logic here;
retry policy belongs to whoever schedules the sync.
"""

import logging
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin, urlparse

import requests

logger = logging.getLogger(__name__)

NS = {"d": "DAV:", "c": "urn:ietf:params:xml:ns:carddav"}

ADDRESSBOOK_QUERY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<C:addressbook-query xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:carddav">'
    "<D:prop><D:getetag/><C:address-data/></D:prop>"
    "</C:addressbook-query>"
)

VCARD_CONTENT_TYPE = "text/vcard; charset=utf-8"

DEFAULT_TIMEOUT = 30.0  # seconds


class CardDAVError(Exception):
    """Base class for CardDAV client failures."""

    pass


class TransportError(CardDAVError):
    """Raised when the remote service cannot be reached or misbehaves."""

    pass


class NotAuthenticated(CardDAVError):
    """Raised when the server rejects the connection's credentials."""

    pass


class PreconditionFailed(CardDAVError):
    """Raised when a conditional write is rejected because the ETag is stale."""

    pass


class MemberNotFound(TransportError):
    """Raised when a member no longer exists on the server."""

    pass


@dataclass(frozen=True)
class RemoteMember:
    """One vCard resource in a remote address book."""

    href: str
    etag: Optional[str]
    raw: bytes


def _strip_etag(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip()
    if value.startswith("W/"):
        value = value[2:]
    return value.strip('"') or None


class CardDAVClient:
    """
    Client for a single CardDAV address book collection.

    Attributes:
        addressbook_url: Absolute URL of the address book collection
        session: requests session carrying the credentials

    Usage:
        client = CardDAVClient(
            "https://dav.example.com/addressbooks/jane/contacts/",
            username="jane",
            password="secret",
        )

        for member in client.list_members():
            print(member.href, member.etag)

        href, etag = client.create_member(raw_vcard)
        new_etag = client.update_member(href, raw_vcard, expected_etag=etag)
    """

    def __init__(
        self,
        addressbook_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        if not addressbook_url:
            raise ValueError("addressbook_url is required")
        self.addressbook_url = (
            addressbook_url if addressbook_url.endswith("/") else addressbook_url + "/"
        )
        self.timeout = timeout
        self.session = session or requests.Session()
        if username is not None:
            self.session.auth = (username, password or "")

    # =========================================================================
    # Operations
    # =========================================================================

    def list_members(self) -> list[RemoteMember]:
        """
        Fetch every member of the address book.

        Returns:
            One RemoteMember per vCard resource (the collection itself excluded)

        Raises:
            NotAuthenticated: If the credentials are rejected
            TransportError: If the listing cannot be fetched or parsed
        """
        response = self._request(
            "REPORT",
            self.addressbook_url,
            data=ADDRESSBOOK_QUERY.encode("utf-8"),
            headers={"Depth": "1", "Content-Type": "application/xml; charset=utf-8"},
        )
        if response.status_code != 207:
            raise TransportError(
                f"Listing {self.addressbook_url} returned HTTP {response.status_code}"
            )

        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as e:
            raise TransportError(f"Invalid multistatus response: {e}") from e

        collection_path = urlparse(self.addressbook_url).path
        members = []
        for node in root.findall("d:response", NS):
            href_node = node.find("d:href", NS)
            if href_node is None or not href_node.text:
                continue
            href = href_node.text.strip()
            if href.endswith("/") or href == collection_path:
                continue

            etag_node = node.find(".//d:prop/d:getetag", NS)
            data_node = node.find(".//d:prop/c:address-data", NS)
            if data_node is None or not (data_node.text or "").strip():
                logger.debug(f"Skipping {href}: no address data")
                continue

            members.append(
                RemoteMember(
                    href=href,
                    etag=_strip_etag(etag_node.text if etag_node is not None else None),
                    raw=data_node.text.strip().encode("utf-8"),
                )
            )

        logger.debug(f"Listed {len(members)} members from {self.addressbook_url}")
        return members

    def get_member(self, href: str) -> RemoteMember:
        """
        Fetch one member by href.

        Raises:
            MemberNotFound: If the member no longer exists
            NotAuthenticated: If the credentials are rejected
            TransportError: For any other failure
        """
        response = self._request("GET", self._url(href))
        if response.status_code == 404:
            raise MemberNotFound(f"Member not found: {href}")
        if response.status_code != 200:
            raise TransportError(f"GET {href} returned HTTP {response.status_code}")
        return RemoteMember(
            href=href,
            etag=_strip_etag(response.headers.get("ETag")),
            raw=response.content,
        )

    def create_member(self, raw: bytes) -> tuple[str, Optional[str]]:
        """
        Create a new member from a vCard.

        Returns:
            Tuple of (href, etag). The etag is None if the server did not
            return one.

        Raises:
            PreconditionFailed: If a resource already exists at the new href
            NotAuthenticated: If the credentials are rejected
            TransportError: For any other failure
        """
        href = urlparse(urljoin(self.addressbook_url, f"{uuid.uuid4()}.vcf")).path
        response = self._request(
            "PUT",
            self._url(href),
            data=raw,
            headers={"Content-Type": VCARD_CONTENT_TYPE, "If-None-Match": "*"},
        )
        self._check_write(response, href)
        return href, _strip_etag(response.headers.get("ETag"))

    def update_member(
        self, href: str, raw: bytes, expected_etag: Optional[str]
    ) -> Optional[str]:
        """
        Overwrite a member, provided it still has the expected ETag.

        Args:
            href: Member href
            raw: New vCard bytes
            expected_etag: ETag last seen for the member

        Returns:
            The member's new ETag, or None if the server did not return one

        Raises:
            PreconditionFailed: If the member changed since expected_etag
            NotAuthenticated: If the credentials are rejected
            TransportError: For any other failure
        """
        headers = {"Content-Type": VCARD_CONTENT_TYPE}
        if expected_etag:
            headers["If-Match"] = f'"{expected_etag}"'
        response = self._request("PUT", self._url(href), data=raw, headers=headers)
        self._check_write(response, href)
        return _strip_etag(response.headers.get("ETag"))

    # =========================================================================
    # Helpers
    # =========================================================================

    def _url(self, href: str) -> str:
        return urljoin(self.addressbook_url, href)

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

        if response.status_code in (401, 403):
            raise NotAuthenticated(
                f"{method} {url} rejected credentials (HTTP {response.status_code})"
            )
        return response

    @staticmethod
    def _check_write(response: requests.Response, href: str) -> None:
        if response.status_code == 412:
            raise PreconditionFailed(f"Member {href} changed on the server")
        if response.status_code not in (200, 201, 204):
            raise TransportError(f"PUT {href} returned HTTP {response.status_code}")

    def __repr__(self) -> str:
        return f"CardDAVClient(addressbook_url={self.addressbook_url!r})"

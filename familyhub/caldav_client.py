from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urljoin

import requests
from caldav.elements import cdav, dav
from lxml import etree

from familyhub.errors import DiscoveryError, TransportError
from familyhub.ics import object_filename
from familyhub.models import CalDAVConfig, CalendarCollection, ConnectionTestResult


logger = logging.getLogger(__name__)

PUT_OK_STATUSES = {200, 201, 204}
DELETE_OK_STATUSES = {200, 204, 404}
PROPFIND_OK_STATUSES = {200, 207}
REDIRECT_STATUSES = {301, 302, 303, 307, 308}
MAX_REDIRECTS = 5
BODY_PREVIEW_CHARS = 200


def _propfind_body(*props: Any) -> bytes:
    root = dav.Propfind() + [dav.Prop() + list(props)]
    return etree.tostring(root.xmlelement(), encoding="utf-8", xml_declaration=True)


def _parse_multistatus(content: bytes, url: str) -> Any:
    try:
        return etree.fromstring(content)
    except etree.XMLSyntaxError as exc:
        raise DiscoveryError(f"Unparseable PROPFIND response from {url}") from exc


def _first_href(tree: Any, property_tag: str) -> str:
    node = tree.find(f".//{property_tag}/{dav.Href.tag}")
    if node is None or not (node.text or "").strip():
        return ""
    return node.text.strip()


def _supported_components(response_node: Any) -> set[str]:
    names: set[str] = set()
    for comp_set in response_node.iter(cdav.SupportedCalendarComponentSet.tag):
        for comp in comp_set.iter(cdav.Comp.tag):
            name = str(comp.get("name", "")).strip().upper()
            if name:
                names.add(name)
    return names


def select_event_collection(
    candidates: list[CalendarCollection], preferred_name: str
) -> CalendarCollection | None:
    """Pick the preferred calendar by display name, else the first candidate."""
    for candidate in candidates:
        if candidate.name == preferred_name:
            return candidate
    return candidates[0] if candidates else None


def object_url(collection_url: str, uid: str) -> str:
    return f"{collection_url.rstrip('/')}/{object_filename(uid)}"


class CalDAVTransport:
    """Stateless CalDAV operations against one account's Basic credentials."""

    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config

    def _request(
        self,
        method: str,
        url: str,
        email: str,
        secret: str,
        *,
        data: bytes | str | None = None,
        headers: dict[str, str] | None = None,
    ) -> tuple[requests.Response, str]:
        current_url = url
        for _ in range(MAX_REDIRECTS + 1):
            try:
                response = requests.request(
                    method,
                    current_url,
                    auth=(email, secret),
                    data=data,
                    headers=headers or {},
                    timeout=self.config.timeout_seconds,
                    allow_redirects=False,
                )
            except requests.RequestException as exc:
                raise TransportError(f"CalDAV {method} {current_url} failed: {exc}") from exc
            location = response.headers.get("Location")
            if response.status_code in REDIRECT_STATUSES and location:
                # requests would downgrade PROPFIND to GET on 302/303.
                current_url = urljoin(current_url, location)
                continue
            return response, current_url
        raise TransportError(f"CalDAV {method} {url} exceeded {MAX_REDIRECTS} redirects")

    def _propfind(self, url: str, email: str, secret: str, body: bytes, depth: int) -> tuple[Any, str]:
        response, resolved = self._request(
            "PROPFIND",
            url,
            email,
            secret,
            data=body,
            headers={"Depth": str(depth), "Content-Type": "application/xml; charset=utf-8"},
        )
        if response.status_code not in PROPFIND_OK_STATUSES:
            raise TransportError(
                f"CalDAV PROPFIND failed ({response.status_code})",
                status=response.status_code,
                body=response.text[:BODY_PREVIEW_CHARS],
            )
        return _parse_multistatus(response.content, url), resolved

    def discover_calendar_collection(self, email: str, secret: str) -> CalendarCollection:
        base_url = self.config.server_url.rstrip("/")

        tree, resolved = self._propfind(
            f"{base_url}/.well-known/caldav",
            email,
            secret,
            _propfind_body(dav.CurrentUserPrincipal()),
            depth=0,
        )
        principal_href = _first_href(tree, dav.CurrentUserPrincipal.tag)
        if not principal_href:
            raise DiscoveryError("Could not discover CalDAV principal")
        principal_url = urljoin(resolved, principal_href)

        tree, resolved = self._propfind(
            principal_url,
            email,
            secret,
            _propfind_body(cdav.CalendarHomeSet()),
            depth=0,
        )
        home_href = _first_href(tree, cdav.CalendarHomeSet.tag)
        if not home_href:
            raise DiscoveryError("Could not discover calendar home set")
        home_url = urljoin(resolved, home_href)

        tree, resolved = self._propfind(
            home_url,
            email,
            secret,
            _propfind_body(dav.DisplayName(), cdav.SupportedCalendarComponentSet(), dav.ResourceType()),
            depth=1,
        )
        preferred_name = self.config.preferred_calendar_name
        candidates: list[CalendarCollection] = []
        for response_node in tree.iter(dav.Response.tag):
            if "VEVENT" not in _supported_components(response_node):
                continue
            href = (response_node.findtext(dav.Href.tag) or "").strip()
            if not href:
                continue
            # A collection without a displayname counts as the preferred one.
            name = (response_node.findtext(f".//{dav.DisplayName.tag}") or "").strip() or preferred_name
            candidates.append(CalendarCollection(url=urljoin(resolved, href), name=name))

        selected = select_event_collection(candidates, preferred_name)
        if selected is None:
            raise DiscoveryError("No VEVENT calendar found on account")
        logger.info("Discovered calendar %r for %s", selected.name, email)
        return selected

    def put_event(self, collection_url: str, email: str, secret: str, uid: str, ics_data: str) -> None:
        url = object_url(collection_url, uid)
        response, _ = self._request(
            "PUT",
            url,
            email,
            secret,
            data=ics_data.encode("utf-8"),
            headers={"Content-Type": "text/calendar; charset=utf-8"},
        )
        if response.status_code not in PUT_OK_STATUSES:
            raise TransportError(
                f"CalDAV PUT failed ({response.status_code})",
                status=response.status_code,
                body=response.text[:BODY_PREVIEW_CHARS],
            )

    def delete_event(self, collection_url: str, email: str, secret: str, uid: str) -> None:
        url = object_url(collection_url, uid)
        response, _ = self._request("DELETE", url, email, secret)
        if response.status_code == 404:
            logger.debug("Remote object %s already absent", url)
            return
        if response.status_code not in DELETE_OK_STATUSES:
            raise TransportError(
                f"CalDAV DELETE failed ({response.status_code})",
                status=response.status_code,
                body=response.text[:BODY_PREVIEW_CHARS],
            )

    def test_connection(self, email: str, secret: str) -> ConnectionTestResult:
        try:
            collection = self.discover_calendar_collection(email, secret)
        except (DiscoveryError, TransportError) as exc:
            return ConnectionTestResult(connected=False, error=str(exc))
        return ConnectionTestResult(
            connected=True,
            calendar_name=collection.name,
            calendar_url=collection.url,
        )

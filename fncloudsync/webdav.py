"""A small WebDAV client: probing, listing, transfers and namespace operations."""

from __future__ import annotations

import posixpath
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import IO
from urllib.parse import unquote

import requests

from fncloudsync.domain import Connection, ConnectionCapabilities, RemoteEntry

_PROBE_BODY = (
    '<?xml version="1.0" encoding="utf-8"?><d:propfind xmlns:d="DAV:"><d:prop>'
    "<d:getetag/><d:getlastmodified/><d:getcontentlength/></d:prop></d:propfind>"
)
_PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?><d:propfind xmlns:d="DAV:"><d:prop>'
    "<d:resourcetype/><d:getetag/><d:getlastmodified/><d:getcontentlength/>"
    "<d:getcontenttype/></d:prop></d:propfind>"
)

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_RFC1123 = re.compile(
    r"(?:Mon|Tue|Wed|Thu|Fri|Sat|Sun), (\d{2}) ("
    + "|".join(_MONTHS)
    + r") (\d{4}) (\d{2}):(\d{2}):(\d{2}) [A-Z]{3,5}"
)
_INT64 = re.compile(r"[+-]?\d+")
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


@dataclass
class _PropResponse:
    href: str = ""
    is_collection: bool = False
    etag: str = ""
    last_modified: str = ""
    content_length: str = ""
    content_type: str = ""


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _chardata(element: ET.Element) -> str:
    return (element.text or "") + "".join(child.tail or "" for child in element)


def _parse_multistatus(body: bytes) -> list[_PropResponse]:
    try:
        root = ET.fromstring(body)
    except ET.ParseError as exc:
        raise ValueError(f"invalid multistatus document: {exc}") from exc

    responses = []
    for node in root:
        if _local_name(node.tag) != "response":
            continue
        item = _PropResponse()
        for child in node:
            name = _local_name(child.tag)
            if name == "href":
                item.href = _chardata(child)
            elif name == "propstat":
                for prop in (p for p in child if _local_name(p.tag) == "prop"):
                    _merge_prop(item, prop)
        responses.append(item)
    return responses


def _merge_prop(item: _PropResponse, prop: ET.Element) -> None:
    for element in prop:
        name = _local_name(element.tag)
        if name == "resourcetype":
            if any(_local_name(c.tag) == "collection" for c in element):
                item.is_collection = True
        elif name == "getetag":
            item.etag = _chardata(element)
        elif name == "getlastmodified":
            item.last_modified = _chardata(element)
        elif name == "getcontentlength":
            item.content_length = _chardata(element)
        elif name == "getcontenttype":
            item.content_type = _chardata(element)


def _parse_http_date(value: str) -> datetime:
    match = _RFC1123.fullmatch(value)
    if match is None:
        raise ValueError(f"cannot parse {value!r} as an RFC 1123 time")
    day, month, year, hour, minute, second = match.groups()
    return datetime(
        int(year),
        _MONTHS.index(month) + 1,
        int(day),
        int(hour),
        int(minute),
        int(second),
        tzinfo=timezone.utc,
    )


def _parse_size(value: str) -> int:
    if not _INT64.fullmatch(value):
        raise ValueError(f"invalid content length {value!r}")
    size = int(value)
    if not -(2**63) <= size < 2**63:
        raise ValueError(f"content length {value!r} out of range")
    return size


def _path_unescape(value: str) -> str:
    if _BAD_ESCAPE.search(value):
        raise ValueError(f"invalid URL escape in {value!r}")
    return unquote(value)


def _join(*parts: str) -> str:
    joined = "/".join(part for part in parts if part)
    if not joined:
        return ""
    cleaned = posixpath.normpath(joined)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def _ensure_leading_slash(value: str) -> str:
    if not value:
        return "/"
    return value if value.startswith("/") else "/" + value


def _to_remote_entry(root_path: str, response: _PropResponse) -> RemoteEntry:
    decoded = _path_unescape(response.href)
    relative = decoded.removeprefix(root_path) if root_path else decoded
    size = _parse_size(response.content_length) if response.content_length else 0
    mtime = _parse_http_date(response.last_modified) if response.last_modified else None
    return RemoteEntry(
        path=_ensure_leading_slash(relative or "/"),
        is_dir=response.is_collection,
        size=size,
        mtime=mtime,
        etag=response.etag,
        content_type=response.content_type,
        exists=True,
    )


class WebDAVClient:
    """Talks to a WebDAV server on behalf of a configured connection."""

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session = session if session is not None else requests.Session()

    def _base(self, connection: Connection) -> str:
        return connection.endpoint.rstrip("/")

    def _url(self, connection: Connection, target_path: str) -> str:
        return self._base(connection) + _join(connection.root_path, target_path)

    def _request(
        self,
        method: str,
        url: str,
        connection: Connection,
        password: str,
        *,
        headers: dict[str, str] | None = None,
        data: bytes | str | IO[bytes] | None = None,
    ) -> requests.Response:
        auth = (connection.username, password) if connection.username else None
        return self._session.request(method, url, headers=headers, data=data, auth=auth)

    def probe(self, connection: Connection, password: str) -> ConnectionCapabilities:
        """Detect what the server supports at the connection's root."""
        url = self._base(connection) + connection.root_path
        with self._request("OPTIONS", url, connection, password) as options:
            allow = options.headers.get("Allow", "")
            server = options.headers.get("Server", "")
        headers = {"Depth": "0", "Content-Type": "application/xml"}
        with self._request(
            "PROPFIND", url, connection, password, headers=headers, data=_PROBE_BODY
        ) as propfind:
            responses = _parse_multistatus(propfind.content)

        first = responses[0] if responses else _PropResponse()
        return ConnectionCapabilities(
            supports_etag=bool(first.etag),
            supports_last_modified=bool(first.last_modified),
            supports_content_length=bool(first.content_length),
            supports_recursive_propfind=True,
            supports_move="MOVE" in allow.upper(),
            path_encoding_mode="plain",
            mtime_precision="second",
            server_fingerprint=f"{connection.endpoint}|{server}",
            probe_warnings=[],
        )

    def _propfind(
        self, connection: Connection, password: str, target_path: str, depth: str
    ) -> list[_PropResponse]:
        headers = {"Depth": depth, "Content-Type": "application/xml"}
        with self._request(
            "PROPFIND",
            self._url(connection, target_path),
            connection,
            password,
            headers=headers,
            data=_PROPFIND_BODY,
        ) as response:
            return _parse_multistatus(response.content)

    def stat(self, connection: Connection, password: str, target_path: str) -> RemoteEntry:
        """Return the metadata of one remote entry."""
        responses = self._propfind(connection, password, target_path, "0")
        if not responses:
            raise ValueError("empty propfind response")
        return _to_remote_entry(connection.root_path, responses[0])

    def list(self, connection: Connection, password: str, target_path: str) -> list[RemoteEntry]:
        """Return the direct children of a remote collection."""
        responses = self._propfind(connection, password, target_path, "1")
        return [_to_remote_entry(connection.root_path, item) for item in responses[1:]]

    def mkdir_all(self, connection: Connection, password: str, target_path: str) -> None:
        """Create every collection along target_path, one segment at a time."""
        current = ""
        for segment in target_path.strip("/").split("/"):
            if not segment:
                continue
            current += "/" + segment
            with self._request("MKCOL", self._url(connection, current), connection, password):
                pass

    def delete(
        self, connection: Connection, password: str, target_path: str, recursive: bool = False
    ) -> None:
        """Delete a remote entry; collections are removed with their contents."""
        with self._request("DELETE", self._url(connection, target_path), connection, password):
            pass

    def move(self, connection: Connection, password: str, src_path: str, dst_path: str) -> None:
        """Rename a remote entry."""
        headers = {"Destination": self._url(connection, dst_path)}
        with self._request(
            "MOVE", self._url(connection, src_path), connection, password, headers=headers
        ):
            pass

    def upload(
        self,
        connection: Connection,
        password: str,
        target_path: str,
        data: bytes | str | IO[bytes],
        content_type: str = "",
    ) -> None:
        """Store data at target_path."""
        headers = {"Content-Type": content_type} if content_type else None
        with self._request(
            "PUT",
            self._url(connection, target_path),
            connection,
            password,
            headers=headers,
            data=data,
        ):
            pass

    def download(
        self, connection: Connection, password: str, target_path: str
    ) -> tuple[bytes, RemoteEntry]:
        """Fetch the content at target_path with its ETag and modification time."""
        with self._request("GET", self._url(connection, target_path), connection, password) as response:
            content = response.content
            etag = response.headers.get("ETag", "")
            last_modified = response.headers.get("Last-Modified", "")

        mtime = None
        if last_modified:
            try:
                mtime = _parse_http_date(last_modified)
            except ValueError:
                mtime = None
        entry = RemoteEntry(
            path=_ensure_leading_slash(target_path),
            etag=etag,
            mtime=mtime,
            exists=True,
        )
        return content, entry

    def health_check(self, connection: Connection, password: str) -> None:
        """Send OPTIONS to the connection root; raise if the server is unreachable."""
        url = self._base(connection) + connection.root_path
        with self._request("OPTIONS", url, connection, password):
            pass
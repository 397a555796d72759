"""Pushing gathered metrics to a Pushgateway.

A :class:`Pusher` is configured with chained calls and finally sent with
:meth:`Pusher.push`, :meth:`Pusher.add` or :meth:`Pusher.delete`::

    Pusher("pushgateway:9091", "db_backup").collector(c).grouping("db", "x").push()
"""

from __future__ import annotations

import base64
import re
import urllib.error
import urllib.parse
import urllib.request
from typing import Protocol

from promclient.exposition import families_to_text
from promclient.model import MetricFamily, MetricPoint, quote
from promclient.registry import Gatherers, Registry

CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
BASE64_SUFFIX = "@base64"

_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class _Opener(Protocol):
    def open(self, request: urllib.request.Request): ...


class JobEmptyError(ValueError):
    """The job name given to a pusher is empty."""

    def __init__(self) -> None:
        super().__init__("job name is empty")


class PushError(Exception):
    """The Pushgateway answered with an unexpected status code."""

    def __init__(self, message: str, status: int, body: str) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


def encode_component(value: str) -> tuple[str, bool]:
    """Encode a URL path component; the flag tells whether base64 was used.

    Empty values become ``=``, values containing ``/`` are encoded with
    unpadded URL-safe base64, everything else is query-escaped.
    """
    if value == "":
        return "=", True
    if "/" in value:
        encoded = base64.urlsafe_b64encode(value.encode("utf-8")).decode("ascii")
        return encoded.rstrip("="), True
    return urllib.parse.quote_plus(value), False


def _render_labels(point: MetricPoint) -> str:
    return ",".join(f"{p.name}={quote(p.value or '')}" for p in point.labels)


class Pusher:
    """Collects metrics and sends them to a Pushgateway under a grouping key."""

    def __init__(self, url: str, job: str) -> None:
        registry = Registry()
        self._error: BaseException | None = JobEmptyError() if job == "" else None
        if "://" not in url:
            url = "http://" + url
        if url.endswith("/"):
            url = url[:-1]
        self._url = url
        self._job = job
        self._grouping: dict[str, str] = {}
        self._gatherers = Gatherers([registry])
        self._registry = registry
        self._client: _Opener = urllib.request.build_opener()
        self._auth: tuple[str, str] | None = None

    def gatherer(self, gatherer) -> Pusher:
        """Add a gatherer whose metrics are pushed too."""
        self._gatherers.append(gatherer)
        return self

    def collector(self, collector) -> Pusher:
        """Register a collector whose metrics are pushed too."""
        if self._error is None:
            try:
                self._registry.register(collector)
            except Exception as exc:
                self._error = exc
        return self

    def grouping(self, name: str, value: str) -> Pusher:
        """Add or replace a label pair of the grouping key."""
        if self._error is None:
            if not _LABEL_NAME_RE.match(name):
                self._error = ValueError(f"grouping label has invalid name: {name}")
                return self
            self._grouping[name] = value
        return self

    def client(self, client: _Opener) -> Pusher:
        """Use an object with an ``open(request)`` method to send requests."""
        self._client = client
        return self

    def basic_auth(self, username: str, password: str) -> Pusher:
        """Send requests with HTTP basic authentication."""
        self._auth = (username, password)
        return self

    def push(self) -> None:
        """Replace all metrics under the grouping key (HTTP PUT)."""
        self._send_metrics("PUT")

    def add(self) -> None:
        """Replace only metrics with the same names under the grouping key (HTTP POST)."""
        self._send_metrics("POST")

    def delete(self) -> None:
        """Delete all metrics under the grouping key (HTTP DELETE)."""
        if self._error is not None:
            raise self._error
        url = self.full_url()
        status, body = self._send("DELETE", url, None)
        if status != 202:
            raise PushError(
                f"unexpected status code {status} while deleting {url}: {body}",
                status,
                body,
            )

    def full_url(self) -> str:
        """Return the URL for the job and grouping key."""
        components: list[str] = []
        for name, value in [("job", self._job), *self._grouping.items()]:
            encoded, is_base64 = encode_component(value)
            components.append(name + BASE64_SUFFIX if is_base64 else name)
            components.append(encoded)
        return f"{self._url}/metrics/{'/'.join(components)}"

    def _check_labels(self, families: list[MetricFamily]) -> None:
        for family in families:
            for point in family.metrics:
                for pair in point.labels:
                    if pair.name == "job":
                        raise ValueError(
                            f"pushed metric {family.name} ({_render_labels(point)}) "
                            "already contains a job label"
                        )
                    if pair.name in self._grouping:
                        raise ValueError(
                            f"pushed metric {family.name} ({_render_labels(point)}) "
                            f"already contains grouping label {pair.name}"
                        )

    def _send_metrics(self, method: str) -> None:
        if self._error is not None:
            raise self._error
        families = self._gatherers.gather()
        self._check_labels(families)
        payload = families_to_text(families).encode("utf-8")
        url = self.full_url()
        status, body = self._send(method, url, payload)
        if status not in (200, 202):
            raise PushError(
                f"unexpected status code {status} while pushing to {url}: {body}",
                status,
                body,
            )

    def _send(self, method: str, url: str, payload: bytes | None) -> tuple[int, str]:
        request = urllib.request.Request(url, data=payload, method=method)
        if payload is not None:
            request.add_header("Content-Type", CONTENT_TYPE)
        if self._auth is not None:
            raw = f"{self._auth[0]}:{self._auth[1]}".encode("utf-8")
            request.add_header("Authorization", "Basic " + base64.b64encode(raw).decode("ascii"))
        try:
            with self._client.open(request) as response:
                return response.status, response.read().decode("utf-8", "replace")
        except urllib.error.HTTPError as exc:
            with exc:
                return exc.code, exc.read().decode("utf-8", "replace")
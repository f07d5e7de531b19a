"""
Publication Approvals — Content Inspection

The moderation services the workflow calls once a publication has been
approved: text sentiment for the description and moderation labels for
each image. Both are opaque external services; this module only
defines the call shape.

  - StaticContentInspector: fixed answers, for development and tests
  - HttpContentInspector:   JSON over HTTP to an external moderation API
"""

from __future__ import annotations

import abc
from typing import Any

import httpx


class ContentInspector(abc.ABC):

    @abc.abstractmethod
    def detect_sentiment(self, text: str) -> str:
        """POSITIVE, NEGATIVE, NEUTRAL or MIXED."""
        ...

    @abc.abstractmethod
    def moderate_image(self, image_ref: str) -> list[str]:
        """Moderation labels found on the image; empty when clean."""
        ...


def evaluate_content(sentiment: str, image_labels: dict[str, list[str]]) -> str:
    """PASS only for positive text and images without moderation labels."""
    if sentiment != "POSITIVE":
        return "FAIL"
    if any(labels for labels in image_labels.values()):
        return "FAIL"
    return "PASS"


class StaticContentInspector(ContentInspector):
    """
    Answers from fixed tables. Unknown images are clean; text is
    POSITIVE unless it contains one of ``negative_markers``.
    """

    def __init__(
        self,
        sentiment: str = "POSITIVE",
        image_labels: dict[str, list[str]] | None = None,
        negative_markers: tuple[str, ...] = (),
    ):
        self.sentiment = sentiment
        self.image_labels = image_labels or {}
        self.negative_markers = negative_markers
        self.calls: list[tuple[str, str]] = []

    def detect_sentiment(self, text: str) -> str:
        self.calls.append(("sentiment", text))
        lowered = text.lower()
        if any(m.lower() in lowered for m in self.negative_markers):
            return "NEGATIVE"
        return self.sentiment

    def moderate_image(self, image_ref: str) -> list[str]:
        self.calls.append(("image", image_ref))
        return list(self.image_labels.get(image_ref, []))


class HttpContentInspector(ContentInspector):
    """
    Calls an external moderation API:
        POST {base_url}/v1/sentiment   {"text": ...}  → {"sentiment": ...}
        POST {base_url}/v1/moderation  {"image": ...} → {"labels": [...]}
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        timeout_ms: int = 5000,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout_ms = timeout_ms
        self.transport = transport

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        with httpx.Client(timeout=self.timeout_ms / 1000, transport=self.transport) as client:
            resp = client.post(f"{self.base_url}{path}", headers=headers, json=body)
        resp.raise_for_status()
        return resp.json()

    def detect_sentiment(self, text: str) -> str:
        return str(self._post("/v1/sentiment", {"text": text}).get("sentiment", "NEUTRAL")).upper()

    def moderate_image(self, image_ref: str) -> list[str]:
        return [str(label) for label in self._post("/v1/moderation", {"image": image_ref}).get("labels", [])]

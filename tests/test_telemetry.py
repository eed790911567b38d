from __future__ import annotations

from telemetry import normalize_route, start_span


def test_normalize_route_masks_numeric_segments() -> None:
    assert normalize_route("/sharedfiles/filedetails/123") == "/sharedfiles/filedetails/{id}"
    assert normalize_route("") == "/"


def test_start_span_accepts_attributes() -> None:
    with start_span("test.span", {"steam.item_id": "1", "skipped": None}) as span:
        span.set_attribute("done", True)

"""Apply guest/topic enrichment results to an episode and the guest directory."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from db.episode_store import align_guest_arrays
from db.models import Guest
from engine.json_utils import log_event

logger = logging.getLogger(__name__)

CONFIDENCE_LEVELS = ("high", "medium", "low")


@dataclass(frozen=True)
class EnrichmentResult:
    guests: list = field(default_factory=list)
    guest_descriptions: list = field(default_factory=list)
    guest_image_urls: list = field(default_factory=list)
    topics: list = field(default_factory=list)
    # One of "high" / "medium" / "low" per guest, index-aligned with ``guests``.
    confidences: list = field(default_factory=list)
    extracted_description: str | None = None
    guest_language: str | None = None


class Enricher(Protocol):
    def enrich(self, podcast_title: str, episode_title: str, description: str) -> EnrichmentResult: ...


def build_enrichment_metadata(result: EnrichmentResult, guest_descriptions, guest_image_urls, *, now=None) -> dict:
    breakdown = {level: 0 for level in CONFIDENCE_LEVELS}
    for confidence in result.confidences or []:
        level = str(confidence or "").lower()
        if level in breakdown:
            breakdown[level] += 1
    image_count = sum(1 for url in guest_image_urls if url)
    successful = sum(
        1
        for description, image in zip(guest_descriptions, guest_image_urls)
        if image or (description and description != "No description available")
    )
    metadata = {
        "guestEnrichmentMetadata": {
            "extractionDate": (now or datetime.now(timezone.utc)).isoformat(),
            "totalGuests": len(guest_descriptions),
            "successfulEnrichments": successful,
            "confidenceBreakdown": breakdown,
            "topicsExtracted": len(result.topics or []),
            "hasGuestImages": image_count > 0,
            "guestImageCount": image_count,
        }
    }
    if result.extracted_description:
        metadata["extractedDescription"] = result.extracted_description
    return metadata


def record_new_guests(store, names, descriptions, image_urls, *, language=None):
    inserted = []
    for name, description, image in zip(names, descriptions, image_urls):
        if not name:
            continue
        if store.get_guest_by_name(name) is not None:
            continue
        store.insert_guest(
            Guest(
                guest_name=name,
                guest_description=description,
                guest_image=image or None,
                guest_language=language,
            )
        )
        inserted.append(name)
    return inserted


def apply_enrichment(store, enricher, episode, *, podcast_title):
    """Run the enrichment collaborator for ``episode`` and persist what it found."""
    result = enricher.enrich(podcast_title, episode.episode_title, episode.episode_description or "")
    names, descriptions, images = align_guest_arrays(
        result.guests, result.guest_descriptions, result.guest_image_urls
    )
    inserted = record_new_guests(
        store, names, descriptions, images, language=result.guest_language or episode.language_code
    )
    metadata = build_enrichment_metadata(result, descriptions, images)
    updated = store.update_episode_with_enrichment(
        episode.episode_id, names, descriptions, images, result.topics, metadata
    )
    log_event(
        logging.INFO,
        "episode_enriched",
        episode_id=episode.episode_id,
        guests=len(names),
        new_guests=len(inserted),
        topics=len(result.topics or []),
    )
    return updated

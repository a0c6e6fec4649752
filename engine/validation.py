"""Independent post-processing checks against the store and object storage."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from db.models import CONTENT_TYPE_VIDEO
from engine.governor import RESOURCE_OBJECT_STORAGE, RetryPolicy
from engine.json_utils import log_event

logger = logging.getLogger(__name__)


@dataclass
class ValidationReport:
    ok: bool
    errors: list = field(default_factory=list)
    details: dict = field(default_factory=dict)


class PostProcessValidator:
    def __init__(self, store, governor, object_store=None, *, policy=None):
        self.store = store
        self.governor = governor
        self.object_store = object_store
        self.policy = policy or RetryPolicy()

    def _object_exists(self, location):
        return self.governor.call(
            RESOURCE_OBJECT_STORAGE,
            lambda: self.object_store.object_exists(location),
            policy=self.policy,
            label="check object",
        )

    def validate(
        self,
        episode_id,
        *,
        expect_additional_data=(),
        locations=(),
        require_processing_done=False,
        require_video_content=False,
    ) -> ValidationReport:
        errors = []
        details = {}

        episode = self.store.get_episode(episode_id)
        if episode is None:
            errors.append(f"episode not found: {episode_id}")
        else:
            details["episode"] = {"id": episode.episode_id, "title": episode.episode_title}
            data = episode.additional_data or {}
            for key in expect_additional_data:
                value = data.get(key)
                if value is None or str(value).strip() == "":
                    errors.append(f"missing/empty additionalData.{key}")
            if require_processing_done and episode.processing_done is not True:
                errors.append("processingDone not true")
            if require_video_content and (episode.content_type or "").lower() != CONTENT_TYPE_VIDEO:
                errors.append(f"contentType not video (got {episode.content_type!r})")
            details["additionalData"] = sorted(data)

        if locations and self.object_store is None:
            logger.warning("Object storage unavailable; skipping existence checks")
        elif locations:
            for location in locations:
                if not location:
                    continue
                try:
                    exists = self._object_exists(location)
                except Exception as exc:
                    errors.append(f"error checking {location}: {exc}")
                    continue
                if not exists:
                    errors.append(f"object missing {location}")

        report = ValidationReport(ok=not errors, errors=errors, details=details)
        log_event(
            logging.INFO if report.ok else logging.ERROR,
            "post_process_validation",
            episode_id=episode_id,
            ok=report.ok,
            errors=errors,
        )
        return report

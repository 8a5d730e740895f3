"""Image garbage collection for the local engine.

Prunes cached images by age while keeping enough recent versions around for a
fast rollback. An image survives if any of these hold:
- it is among the ``keep_count`` most recently pulled images
- an existing container (running, stopped or backup) was created from it
- the caller listed it as protected
- it is younger than ``age_threshold``

Recency uses the engine's last-tag time (set on pull), falling back to the
image build time.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field

from hotswap.logging import get_logger
from hotswap.pipeline.container import ContainerRuntime, ImageRecord


class PruneReport(BaseModel):
    """Result of a garbage collection pass.

    Attributes:
        success: False if the pass could not run at all
        removed: IDs of removed images
        kept: IDs of retained images
        errors: Image ID -> error for images the engine refused to remove
        error: Reason the pass failed
        duration_seconds: Time taken for the pass
    """

    success: bool = Field(description="Pass completed")
    removed: list[str] = Field(default_factory=list, description="Removed image IDs")
    kept: list[str] = Field(default_factory=list, description="Retained image IDs")
    errors: dict[str, str] = Field(default_factory=dict, description="Per-image errors")
    error: str | None = Field(default=None, description="Error message")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Pass duration")


def normalize_ref(ref: str) -> str:
    """Add the implicit ``latest`` tag to untagged references."""
    if "@" in ref:
        return ref
    last_segment = ref.rsplit("/", 1)[-1]
    return ref if ":" in last_segment else f"{ref}:latest"


class ImageGarbageCollector:
    """Age/count based image pruning that never touches images in use."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.runtime = runtime
        self.logger = get_logger(__name__)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def prune(
        self,
        age_threshold: timedelta,
        keep_count: int,
        protected: Iterable[str] = (),
    ) -> PruneReport:
        """Remove old, unreferenced images.

        Args:
            age_threshold: Minimum age for an image to be removable
            keep_count: Number of most recent images always kept
            protected: Image IDs or references that must be kept

        Returns:
            PruneReport listing removed and kept images
        """
        start_time = time.monotonic()
        self.logger.info(
            "image_prune_started",
            age_threshold_hours=round(age_threshold.total_seconds() / 3600, 2),
            keep_count=keep_count,
        )

        try:
            images = await self.runtime.list_images()
            containers = await self.runtime.list_instances("")
        except Exception as e:
            self.logger.warning(
                "image_prune_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return PruneReport(
                success=False,
                error=f"Failed to list images or containers: {e}",
                duration_seconds=time.monotonic() - start_time,
            )

        protected_ids = {p for p in protected if p.startswith("sha256:")}
        protected_refs = {normalize_ref(p) for p in protected if not p.startswith("sha256:")}
        in_use_ids = {c.image_id for c in containers if c.image_id} | protected_ids
        in_use_refs = {normalize_ref(c.image) for c in containers} | protected_refs

        now = self._clock()
        ordered = sorted(images, key=lambda image: image.freshness, reverse=True)
        report = PruneReport(success=True)

        for index, image in enumerate(ordered):
            reason = self._keep_reason(image, index, keep_count, in_use_ids, in_use_refs, now, age_threshold)
            if reason is not None:
                self.logger.debug("image_kept", image_id=image.image_id[:19], tags=image.tags, reason=reason)
                report.kept.append(image.image_id)
                continue

            action = await self.runtime.remove_image(image.image_id)
            if action.success:
                report.removed.append(image.image_id)
            else:
                report.errors[image.image_id] = action.error or "unknown error"

        report.duration_seconds = time.monotonic() - start_time
        self.logger.info(
            "image_prune_completed",
            removed=len(report.removed),
            kept=len(report.kept),
            errors=len(report.errors),
            duration_seconds=round(report.duration_seconds, 2),
        )
        return report

    @staticmethod
    def _keep_reason(
        image: ImageRecord,
        index: int,
        keep_count: int,
        in_use_ids: set[str],
        in_use_refs: set[str],
        now: datetime,
        age_threshold: timedelta,
    ) -> str | None:
        if index < keep_count:
            return "recent"
        if image.image_id in in_use_ids or any(normalize_ref(tag) in in_use_refs for tag in image.tags):
            return "in_use"
        if now - image.freshness < age_threshold:
            return "young"
        return None

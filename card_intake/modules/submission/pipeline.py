"""Card submission pipeline.

One submission runs strictly forward through:

    Authenticating → Authorizing → Preprocessing → Extracting → Validating
        → CheckingDuplicate → Committing → Succeeded

A duplicate hit ends in Duplicated. Any error jumps straight to Failed and is
re-raised to the caller; nothing loops back or retries. The pipeline object
itself only holds immutable config and collaborators, so one instance may
serve any number of concurrent submissions.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum

import structlog

from card_intake.core.config import Settings
from card_intake.core.errors import InputInvalid, StorageUnavailable, SubmissionError
from card_intake.core.security import CallerIdentity, verify_launch_payload
from card_intake.modules.agents.schemas import Center
from card_intake.modules.agents.service import AgentRegistry, authorize
from card_intake.modules.cards.models import CardRecord
from card_intake.modules.cards.service import (
    CardStore,
    DuplicateIdentifierError,
    commit_card,
    find_existing,
)
from card_intake.modules.extraction.client import ExtractionClient
from card_intake.modules.extraction.image import ImageNormalizer
from card_intake.modules.extraction.normalizer import normalize_fields

logger = structlog.get_logger()


class PipelineState(str, Enum):
    authenticating = "Authenticating"
    authorizing = "Authorizing"
    preprocessing = "Preprocessing"
    extracting = "Extracting"
    validating = "Validating"
    checking_duplicate = "CheckingDuplicate"
    committing = "Committing"
    succeeded = "Succeeded"
    duplicated = "Duplicated"
    failed = "Failed"


@dataclass(frozen=True)
class PipelineConfig:
    signing_secret: str
    extraction_timeout_ms: int
    centers: frozenset[str]
    max_image_bytes: int
    duplicate_shows_current_submitter: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> PipelineConfig:
        return cls(
            signing_secret=settings.telegram_bot_token,
            extraction_timeout_ms=settings.extraction_timeout_ms,
            # Center() rejects anything outside the fixed enumeration at startup
            centers=frozenset(Center(name).value for name in settings.centers),
            max_image_bytes=settings.upload_max_bytes,
            duplicate_shows_current_submitter=settings.duplicate_shows_current_submitter,
        )


@dataclass
class SubmissionOutcome:
    state: PipelineState
    card: CardRecord
    submitter: CallerIdentity
    # Name to show for the card's submitter; differs from the stored one only
    # on duplicates whose agent has since been renamed.
    card_submitter_name: str
    trail: list[PipelineState] = field(default_factory=list)

    @property
    def is_duplicate(self) -> bool:
        return self.state is PipelineState.duplicated


class _Run:
    """State trail and bound logger for a single submission."""

    def __init__(self) -> None:
        self.trail: list[PipelineState] = []
        self.log = logger.bind(submission_id=uuid.uuid4().hex[:12])

    @property
    def state(self) -> PipelineState | None:
        return self.trail[-1] if self.trail else None

    def advance(self, state: PipelineState) -> None:
        self.trail.append(state)
        self.log.debug("Submission state", state=state.value)

    def fail(self, exc: SubmissionError) -> None:
        failed_in = self.state
        self.trail.append(PipelineState.failed)
        self.log.warning(
            "Card submission failed",
            kind=exc.label,
            failed_in=failed_in.value if failed_in else None,
            status_code=exc.status_code,
        )


class SubmissionPipeline:
    def __init__(
        self,
        config: PipelineConfig,
        registry: AgentRegistry,
        store: CardStore,
        extraction_client: ExtractionClient,
        image_normalizer: ImageNormalizer,
    ) -> None:
        self.config = config
        self.registry = registry
        self.store = store
        self.extraction_client = extraction_client
        self.image_normalizer = image_normalizer

    async def submit(
        self,
        raw_payload: str,
        image_bytes: bytes | None,
        content_type: str | None,
    ) -> SubmissionOutcome:
        """Process one card photo end to end.

        Returns a Succeeded or Duplicated outcome; raises the SubmissionError
        that ended the run otherwise.
        """
        run = _Run()
        try:
            return await self._run(run, raw_payload, image_bytes, content_type)
        except SubmissionError as exc:
            run.fail(exc)
            raise

    async def _run(
        self,
        run: _Run,
        raw_payload: str,
        image_bytes: bytes | None,
        content_type: str | None,
    ) -> SubmissionOutcome:
        run.advance(PipelineState.authenticating)
        identity = verify_launch_payload(raw_payload, self.config.signing_secret)
        run.log = run.log.bind(external_id=identity.external_id)
        image_bytes = self._check_image(image_bytes, content_type)

        run.advance(PipelineState.authorizing)
        agent = await authorize(self.registry, identity, self.config.centers)
        center = agent.center

        run.advance(PipelineState.preprocessing)
        # Pillow work is CPU-bound; keep it off the event loop
        prepared = await asyncio.to_thread(self.image_normalizer.normalize, image_bytes)
        if prepared is image_bytes:
            mime_type = content_type or "image/jpeg"
        else:
            mime_type = self.image_normalizer.output_mime_type

        run.advance(PipelineState.extracting)
        fields = await self.extraction_client.extract(
            prepared, self.config.extraction_timeout_ms, mime_type
        )

        run.advance(PipelineState.validating)
        card = normalize_fields(fields)

        run.advance(PipelineState.checking_duplicate)
        existing = await find_existing(self.store, card.national_id)
        if existing is not None:
            return await self._duplicate(run, existing, identity)

        run.advance(PipelineState.committing)
        try:
            record = await commit_card(
                self.store,
                full_name=card.full_name,
                national_id=card.national_id,
                submitter=identity,
                center=center,
            )
        except DuplicateIdentifierError:
            # Lost the race against a concurrent submission of the same card
            run.log.info("Concurrent duplicate detected at commit", national_id=card.national_id)
            existing = await find_existing(self.store, card.national_id)
            if existing is None:
                raise StorageUnavailable()
            return await self._duplicate(run, existing, identity)

        run.advance(PipelineState.succeeded)
        run.log.info("Card added", national_id=record.national_id, center=center)
        return SubmissionOutcome(
            state=PipelineState.succeeded,
            card=record,
            submitter=identity,
            card_submitter_name=record.submitter_display_name,
            trail=run.trail,
        )

    def _check_image(self, image_bytes: bytes | None, content_type: str | None) -> bytes:
        if image_bytes is None:
            raise InputInvalid("No image was uploaded.")
        if not content_type or not content_type.startswith("image/"):
            raise InputInvalid("The uploaded file must be an image.")
        if not image_bytes:
            raise InputInvalid("The uploaded image is empty.")
        if len(image_bytes) > self.config.max_image_bytes:
            max_mb = self.config.max_image_bytes / (1024 * 1024)
            raise InputInvalid(f"Image too large (max {max_mb:.0f} MB).")
        return image_bytes

    async def _duplicate(
        self, run: _Run, existing: CardRecord, identity: CallerIdentity
    ) -> SubmissionOutcome:
        name = existing.submitter_display_name
        if self.config.duplicate_shows_current_submitter:
            try:
                original = await self.registry.lookup(existing.submitter_external_id)
            except StorageUnavailable:
                run.log.warning("Could not refresh duplicate submitter name", exc_info=True)
                original = None
            if original is not None:
                name = original.display_name

        run.advance(PipelineState.duplicated)
        run.log.info(
            "Duplicate card detected",
            national_id=existing.national_id,
            original_submitter=existing.submitter_external_id,
        )
        return SubmissionOutcome(
            state=PipelineState.duplicated,
            card=existing,
            submitter=identity,
            card_submitter_name=name,
            trail=run.trail,
        )

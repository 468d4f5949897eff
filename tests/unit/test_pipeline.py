"""Unit tests for the submission pipeline over in-memory collaborators."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone

import pytest

from card_intake.core.config import Settings
from card_intake.core.errors import (
    AuthenticationFailed,
    AuthorizationDenied,
    ExtractionTimeout,
    IdentifierIncomplete,
    InputInvalid,
    StorageUnavailable,
)
from card_intake.modules.cards.models import CardRecord
from card_intake.modules.extraction.client import ExtractionClient
from card_intake.modules.extraction.image import ImageNormalizer
from card_intake.modules.submission.pipeline import (
    PipelineConfig,
    PipelineState,
    SubmissionPipeline,
)
from tests.factories import (
    BOT_TOKEN,
    TAHTA,
    TAMA,
    FakeBackend,
    FlakyAgentRegistry,
    InMemoryAgentRegistry,
    InMemoryCardStore,
    RacingCardStore,
    SlowImageNormalizer,
    UnavailableCardStore,
    VanishingCardStore,
    agent_init_data,
    extraction_json,
    make_agent,
    make_config,
    make_image,
    sign_init_data,
)

JPEG = "image/jpeg"


async def test_new_card_is_committed(
    pipeline: SubmissionPipeline, store: InMemoryCardStore
) -> None:
    outcome = await pipeline.submit(agent_init_data(), make_image(), JPEG)

    assert outcome.state is PipelineState.succeeded
    assert not outcome.is_duplicate
    assert outcome.card.full_name == "Ali Hassan Mahmoud Saeed"
    assert outcome.card.national_id == "29501011234567"
    assert outcome.card.submitter_external_id == "1001"
    assert outcome.card.submitter_display_name == "ahmed_rep"
    assert outcome.card.center == TAMA
    assert outcome.card.inserted_at.tzinfo is not None
    assert store.inserts == 1
    assert outcome.trail == [
        PipelineState.authenticating,
        PipelineState.authorizing,
        PipelineState.preprocessing,
        PipelineState.extracting,
        PipelineState.validating,
        PipelineState.checking_duplicate,
        PipelineState.committing,
        PipelineState.succeeded,
    ]


async def test_resubmission_reports_existing_card(
    pipeline: SubmissionPipeline,
    store: InMemoryCardStore,
    registry: InMemoryAgentRegistry,
) -> None:
    first = await pipeline.submit(agent_init_data(), make_image(), JPEG)

    registry.agents["2002"] = make_agent("2002", "mona", center=TAHTA)
    second = await pipeline.submit(agent_init_data("2002", "mona"), make_image(), JPEG)

    assert second.is_duplicate
    assert second.card is first.card
    assert second.submitter.external_id == "2002"
    assert second.card_submitter_name == "ahmed_rep"
    assert second.trail[-2:] == [PipelineState.checking_duplicate, PipelineState.duplicated]
    assert store.inserts == 1


async def test_duplicate_shows_submitter_current_name(
    pipeline: SubmissionPipeline, registry: InMemoryAgentRegistry
) -> None:
    await pipeline.submit(agent_init_data(), make_image(), JPEG)
    registry.agents["1001"].display_name = "ahmed_senior"

    outcome = await pipeline.submit(agent_init_data(), make_image(), JPEG)

    assert outcome.is_duplicate
    assert outcome.card_submitter_name == "ahmed_senior"
    assert outcome.card.submitter_display_name == "ahmed_rep"


async def test_duplicate_keeps_stored_name_when_refresh_disabled(
    backend: FakeBackend, registry: InMemoryAgentRegistry, store: InMemoryCardStore
) -> None:
    pipeline = SubmissionPipeline(
        config=make_config(duplicate_shows_current_submitter=False),
        registry=registry,
        store=store,
        extraction_client=ExtractionClient(backend),
        image_normalizer=ImageNormalizer(),
    )
    await pipeline.submit(agent_init_data(), make_image(), JPEG)
    registry.agents["1001"].display_name = "renamed"

    outcome = await pipeline.submit(agent_init_data(), make_image(), JPEG)
    assert outcome.card_submitter_name == "ahmed_rep"


async def test_center_is_snapshotted_at_insertion(
    pipeline: SubmissionPipeline, registry: InMemoryAgentRegistry
) -> None:
    outcome = await pipeline.submit(agent_init_data(), make_image(), JPEG)
    registry.agents["1001"].center = TAHTA

    assert outcome.card.center == TAMA


async def test_incomplete_identifier_fails_without_insert(
    pipeline: SubmissionPipeline, backend: FakeBackend, store: InMemoryCardStore
) -> None:
    backend.response = extraction_json(["Ali", "Hassan"], "2950101123456")

    with pytest.raises(IdentifierIncomplete) as exc_info:
        await pipeline.submit(agent_init_data(), make_image(), JPEG)

    assert exc_info.value.label == "IdentifierIncomplete(13)"
    assert exc_info.value.status_code == 500
    assert store.inserts == 0


async def test_bad_signature_stops_before_registry_and_model(
    pipeline: SubmissionPipeline,
    backend: FakeBackend,
    registry: InMemoryAgentRegistry,
) -> None:
    payload = sign_init_data({"id": 1001}, bot_token="999:someone-else")

    with pytest.raises(AuthenticationFailed):
        await pipeline.submit(payload, make_image(), JPEG)

    assert registry.lookups == []
    assert backend.calls == []


async def test_unknown_agent_is_denied(
    pipeline: SubmissionPipeline, backend: FakeBackend
) -> None:
    with pytest.raises(AuthorizationDenied):
        await pipeline.submit(agent_init_data("5555"), make_image(), JPEG)
    assert backend.calls == []


async def test_deactivation_applies_to_next_submission(
    pipeline: SubmissionPipeline, registry: InMemoryAgentRegistry, backend: FakeBackend
) -> None:
    await pipeline.submit(agent_init_data(), make_image(), JPEG)
    registry.agents["1001"].status = "inactive"

    with pytest.raises(AuthorizationDenied):
        await pipeline.submit(agent_init_data(), make_image(), JPEG)
    assert len(backend.calls) == 1


async def test_agent_outside_configured_centers_is_denied(
    pipeline: SubmissionPipeline, registry: InMemoryAgentRegistry
) -> None:
    registry.agents["1001"].center = "القاهرة"
    with pytest.raises(AuthorizationDenied):
        await pipeline.submit(agent_init_data(), make_image(), JPEG)


@pytest.mark.parametrize(
    ("image_bytes", "content_type"),
    [
        (None, None),
        (b"", JPEG),
        (b"hello", "text/plain"),
        (b"hello", None),
    ],
)
async def test_invalid_upload_is_rejected(
    pipeline: SubmissionPipeline,
    backend: FakeBackend,
    image_bytes: bytes | None,
    content_type: str | None,
) -> None:
    with pytest.raises(InputInvalid) as exc_info:
        await pipeline.submit(agent_init_data(), image_bytes, content_type)
    assert exc_info.value.status_code == 400
    assert backend.calls == []


async def test_oversized_upload_is_rejected(
    backend: FakeBackend, registry: InMemoryAgentRegistry, store: InMemoryCardStore
) -> None:
    pipeline = SubmissionPipeline(
        config=make_config(max_image_bytes=1024),
        registry=registry,
        store=store,
        extraction_client=ExtractionClient(backend),
        image_normalizer=ImageNormalizer(),
    )
    with pytest.raises(InputInvalid):
        await pipeline.submit(agent_init_data(), b"\xff" * 2048, JPEG)


async def test_unreadable_image_is_sent_unchanged(
    pipeline: SubmissionPipeline, backend: FakeBackend
) -> None:
    raw = b"\x89PNG not really"
    outcome = await pipeline.submit(agent_init_data(), raw, "image/png")

    assert outcome.state is PipelineState.succeeded
    assert backend.calls[0]["size"] == len(raw)
    assert backend.calls[0]["mime_type"] == "image/png"


async def test_normalized_image_is_sent_as_jpeg(
    pipeline: SubmissionPipeline, backend: FakeBackend
) -> None:
    await pipeline.submit(agent_init_data(), make_image(fmt="PNG"), "image/png")
    assert backend.calls[0]["mime_type"] == "image/jpeg"


async def test_extraction_timeout_propagates(
    pipeline: SubmissionPipeline, backend: FakeBackend, store: InMemoryCardStore
) -> None:
    backend.delay = 0.5
    pipeline.config = make_config(extraction_timeout_ms=50)

    with pytest.raises(ExtractionTimeout):
        await pipeline.submit(agent_init_data(), make_image(), JPEG)
    assert store.inserts == 0


async def test_losing_commit_race_reports_winner(
    backend: FakeBackend, registry: InMemoryAgentRegistry
) -> None:
    winner = CardRecord(
        national_id="29501011234567",
        full_name="Ali Hassan Mahmoud Saeed",
        submitter_external_id="2002",
        submitter_display_name="mona",
        center=TAHTA,
        inserted_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    store = RacingCardStore(winner)
    pipeline = SubmissionPipeline(
        config=make_config(),
        registry=registry,
        store=store,
        extraction_client=ExtractionClient(backend),
        image_normalizer=ImageNormalizer(),
    )

    outcome = await pipeline.submit(agent_init_data(), make_image(), JPEG)

    assert outcome.is_duplicate
    assert outcome.card is winner
    assert outcome.card_submitter_name == "mona"
    assert store.inserts == 0
    assert PipelineState.committing in outcome.trail


def test_config_rejects_unknown_center() -> None:
    settings = Settings(telegram_bot_token=BOT_TOKEN, centers=[TAMA, "القاهرة"])
    with pytest.raises(ValueError):
        PipelineConfig.from_settings(settings)


def test_config_from_settings() -> None:
    settings = Settings(telegram_bot_token=BOT_TOKEN, upload_max_file_size_mb=2)
    config = PipelineConfig.from_settings(settings)

    assert config.signing_secret == BOT_TOKEN
    assert config.max_image_bytes == 2 * 1024 * 1024
    assert TAMA in config.centers


def _pipeline_with(
    backend: FakeBackend,
    registry: InMemoryAgentRegistry | None = None,
    store: InMemoryCardStore | None = None,
    image_normalizer: ImageNormalizer | None = None,
) -> SubmissionPipeline:
    return SubmissionPipeline(
        config=make_config(),
        registry=registry or InMemoryAgentRegistry(make_agent()),
        store=store or InMemoryCardStore(),
        extraction_client=ExtractionClient(backend),
        image_normalizer=image_normalizer or ImageNormalizer(),
    )


def _stored_card(national_id: str = "29501011234567") -> CardRecord:
    return CardRecord(
        national_id=national_id,
        full_name="Ali Hassan Mahmoud Saeed",
        submitter_external_id="2002",
        submitter_display_name="mona",
        center=TAHTA,
        inserted_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


# ---------------------------------------------------------------------------
# Event loop stays responsive
# ---------------------------------------------------------------------------


async def test_image_conditioning_does_not_block_event_loop(backend: FakeBackend) -> None:
    pipeline = _pipeline_with(backend, image_normalizer=SlowImageNormalizer(0.5))
    gaps: list[float] = []
    done = asyncio.Event()

    async def ticker() -> None:
        last = time.monotonic()
        while not done.is_set():
            await asyncio.sleep(0.01)
            now = time.monotonic()
            gaps.append(now - last)
            last = now

    task = asyncio.create_task(ticker())
    try:
        outcome = await pipeline.submit(agent_init_data(), make_image(), JPEG)
    finally:
        done.set()
        await task

    assert outcome.state is PipelineState.succeeded
    assert len(gaps) > 10
    assert max(gaps) < 0.2


# ---------------------------------------------------------------------------
# Storage outages
# ---------------------------------------------------------------------------


async def test_registry_outage_fails_before_extraction(backend: FakeBackend) -> None:
    pipeline = _pipeline_with(backend, registry=FlakyAgentRegistry(make_agent()))

    with pytest.raises(StorageUnavailable) as exc_info:
        await pipeline.submit(agent_init_data(), make_image(), JPEG)

    assert exc_info.value.status_code == 500
    assert backend.calls == []


async def test_store_outage_at_duplicate_check_commits_nothing(backend: FakeBackend) -> None:
    store = UnavailableCardStore()
    pipeline = _pipeline_with(backend, store=store)

    with pytest.raises(StorageUnavailable):
        await pipeline.submit(agent_init_data(), make_image(), JPEG)
    assert store.inserts == 0
    assert store.records == {}


async def test_conflicting_row_missing_after_refused_insert(backend: FakeBackend) -> None:
    pipeline = _pipeline_with(backend, store=VanishingCardStore())

    with pytest.raises(StorageUnavailable):
        await pipeline.submit(agent_init_data(), make_image(), JPEG)


async def test_duplicate_keeps_stored_name_when_refresh_fails(backend: FakeBackend) -> None:
    store = InMemoryCardStore()
    store.records["29501011234567"] = _stored_card()
    registry = FlakyAgentRegistry(make_agent(), healthy_lookups=1)
    pipeline = _pipeline_with(backend, registry=registry, store=store)

    outcome = await pipeline.submit(agent_init_data(), make_image(), JPEG)

    assert outcome.is_duplicate
    assert outcome.card_submitter_name == "mona"
    assert registry.lookups == ["1001", "2002"]

"""FastAPI providers for the submission pipeline.

Stateless collaborators are built once per process; the registry and store
wrap the request's DB session.
"""

from __future__ import annotations

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from card_intake.core.config import settings
from card_intake.core.database import get_db
from card_intake.modules.agents.service import SqlAgentRegistry
from card_intake.modules.cards.service import SqlCardStore
from card_intake.modules.extraction.client import ExtractionClient, GeminiBackend
from card_intake.modules.extraction.image import ImageNormalizer
from card_intake.modules.submission.pipeline import PipelineConfig, SubmissionPipeline


@lru_cache
def get_pipeline_config() -> PipelineConfig:
    return PipelineConfig.from_settings(settings)


@lru_cache
def get_extraction_client() -> ExtractionClient:
    return ExtractionClient(GeminiBackend())


@lru_cache
def get_image_normalizer() -> ImageNormalizer:
    return ImageNormalizer(
        max_dimension=settings.image_max_dimension,
        jpeg_quality=settings.image_jpeg_quality,
        sharpen_percent=settings.image_sharpen_percent,
        contrast_factor=settings.image_contrast_factor,
        brightness_factor=settings.image_brightness_factor,
    )


def get_pipeline(
    db: AsyncSession = Depends(get_db),
    config: PipelineConfig = Depends(get_pipeline_config),
    extraction_client: ExtractionClient = Depends(get_extraction_client),
    image_normalizer: ImageNormalizer = Depends(get_image_normalizer),
) -> SubmissionPipeline:
    return SubmissionPipeline(
        config=config,
        registry=SqlAgentRegistry(db),
        store=SqlCardStore(db),
        extraction_client=extraction_client,
        image_normalizer=image_normalizer,
    )

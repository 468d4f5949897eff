"""Card submission API: the endpoint behind the Telegram mini-app's capture button.

  - POST /process-card: multipart ``image`` + ``initData``; verifies the
    caller, extracts name + national ID, and registers the card once.
"""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from card_intake.core.errors import InputInvalid, SubmissionError
from card_intake.modules.cards.schemas import CardRecordOut
from card_intake.modules.submission.dependencies import get_pipeline
from card_intake.modules.submission.pipeline import SubmissionOutcome, SubmissionPipeline
from card_intake.modules.submission.schemas import (
    CardSubmissionDuplicate,
    CardSubmissionError,
    CardSubmissionSuccess,
)

logger = structlog.get_logger()

router = APIRouter(tags=["cards"])

PROCESS_CARD_PATH = "/process-card"


def _json(
    status_code: int,
    body: CardSubmissionSuccess | CardSubmissionDuplicate | CardSubmissionError,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(by_alias=True, mode="json"),
    )


async def upload_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Answer malformed card uploads (e.g. ``image`` sent as a plain field) with 400.

    Other routes keep FastAPI's default 422 response.
    """
    if not request.url.path.endswith(PROCESS_CARD_PATH):
        return await request_validation_exception_handler(request, exc)

    logger.warning(
        "Card upload rejected: malformed form",
        fields=[".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()],
    )
    error = InputInvalid("The uploaded file must be an image.")
    return _json(
        error.status_code, CardSubmissionError(error=error.label, message=error.message)
    )


def _outcome_response(outcome: SubmissionOutcome) -> JSONResponse:
    if outcome.is_duplicate:
        return _json(
            200,
            CardSubmissionDuplicate(
                existing_card=CardRecordOut.from_record(outcome.card, outcome.card_submitter_name),
            ),
        )
    return _json(
        200,
        CardSubmissionSuccess(name=outcome.card.full_name, national_id=outcome.card.national_id),
    )


@router.post(PROCESS_CARD_PATH)
async def process_card(
    image: UploadFile | None = File(None, description="Photo of the national ID card"),
    init_data: str = Form("", alias="initData", description="Telegram WebApp initData"),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
) -> JSONResponse:
    """Submit one card photo.

    Pipeline: verify initData → authorize agent → condition image → Gemini
    extraction → normalize name/ID → duplicate check → commit.
    """
    start = time.monotonic()

    image_bytes = await image.read() if image is not None else None
    content_type = image.content_type if image is not None else None

    try:
        outcome = await pipeline.submit(init_data, image_bytes, content_type)
    except SubmissionError as exc:
        return _json(exc.status_code, CardSubmissionError(error=exc.label, message=exc.message))
    except Exception as exc:
        logger.error("Card processing failed", error=str(exc), exc_info=True)
        return _json(
            500,
            CardSubmissionError(
                error="InternalError",
                message="Card processing failed. Please try again.",
            ),
        )

    logger.info(
        "Card request processed",
        state=outcome.state.value,
        national_id=outcome.card.national_id,
        processing_time_ms=int((time.monotonic() - start) * 1000),
    )
    return _outcome_response(outcome)

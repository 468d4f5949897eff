"""Submission error taxonomy.

Every failure a card submission can end in is one of these. Each carries the
HTTP status it maps to, a stable ``label`` for clients and a human-readable
``message``. None of them is retried server-side; the mini-app resubmits.
"""

from __future__ import annotations


class SubmissionError(Exception):
    """Base class for all pipeline failures surfaced to the caller."""

    status_code: int = 500
    default_message: str = "Card processing failed. Please try again."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def label(self) -> str:
        return type(self).__name__


class AuthenticationFailed(SubmissionError):
    status_code = 403
    default_message = "Invalid Telegram WebApp signature."


class AuthorizationDenied(SubmissionError):
    status_code = 403
    default_message = "You are not authorized to use this system."


class InputInvalid(SubmissionError):
    status_code = 400
    default_message = "No image was uploaded."


class ExtractionTimeout(SubmissionError):
    default_message = "Reading the card took too long. Try again with a clearer photo."


class ExtractionMalformed(SubmissionError):
    default_message = "Could not read the card. Take a clearer photo and try again."


class ExtractionFailed(SubmissionError):
    default_message = (
        "Could not extract the card data. Make sure the photo is clear "
        "and shows the whole card."
    )


class NameNotFound(SubmissionError):
    default_message = "No name could be read from the card."


class IdentifierNotFound(SubmissionError):
    default_message = "No national ID number could be read from the card."


class IdentifierIncomplete(SubmissionError):
    def __init__(self, actual_length: int) -> None:
        self.actual_length = actual_length
        super().__init__(
            f"National ID is incomplete ({actual_length} digits). "
            "Take a clearer photo of the ID number."
        )

    @property
    def label(self) -> str:
        return f"IdentifierIncomplete({self.actual_length})"


class StorageUnavailable(SubmissionError):
    default_message = "Could not reach the card registry. Please try again."

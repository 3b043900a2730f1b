"""Document retrieval API status codes."""

import enum


class AdrStatus(int, enum.Enum):
    INSERTED = 1
    INSERTED_WITH_PRIORITY = 2
    INVALID_CREDENTIAL_ID = 3
    CANNOT_CONNECT_TO_VCM = 4
    CANNOT_INSERT_INTO_QUEUE = 5
    SENT_TO_AI = 6
    CANNOT_CONNECT_TO_AI = 7
    CANNOT_SAVE_RESULT = 8
    NEEDS_HUMAN_REVIEW = 9
    RECEIVED_FROM_AI = 10
    COMPLETE = 11
    LOGIN_ATTEMPT_SUCCEEDED = 12
    NO_DOCUMENTS_FOUND = 13
    FAILED_TO_PROCESS_ALL_DOCUMENTS = 14
    NO_DOCUMENTS_PROCESSED = 15

    @property
    def is_error(self) -> bool:
        return self in ERROR_STATUSES

    @property
    def is_final(self) -> bool:
        return self in FINAL_STATUSES

    @property
    def description(self) -> str:
        return self.name.replace("_", " ").title()


ERROR_STATUSES = frozenset(
    {
        AdrStatus.INVALID_CREDENTIAL_ID,
        AdrStatus.CANNOT_CONNECT_TO_VCM,
        AdrStatus.CANNOT_INSERT_INTO_QUEUE,
        AdrStatus.CANNOT_CONNECT_TO_AI,
        AdrStatus.CANNOT_SAVE_RESULT,
        AdrStatus.NEEDS_HUMAN_REVIEW,
        AdrStatus.FAILED_TO_PROCESS_ALL_DOCUMENTS,
    }
)

# NoDocumentsFound (13) is not final: the request is repeated while the window is open
FINAL_STATUSES = frozenset(
    {
        AdrStatus.NEEDS_HUMAN_REVIEW,
        AdrStatus.COMPLETE,
        AdrStatus.FAILED_TO_PROCESS_ALL_DOCUMENTS,
    }
)

REVIEW_STATUSES = frozenset(
    {AdrStatus.NEEDS_HUMAN_REVIEW, AdrStatus.FAILED_TO_PROCESS_ALL_DOCUMENTS}
)


def parse_status(status_id: int | None) -> AdrStatus | None:
    """Known status for an id, None for missing or unrecognized ids."""
    if status_id is None:
        return None
    try:
        return AdrStatus(status_id)
    except ValueError:
        return None

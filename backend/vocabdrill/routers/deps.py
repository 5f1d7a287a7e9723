from fastapi import Header, HTTPException

from vocabdrill.errors import (
    GenerationFailure,
    NotFoundError,
    ReviewError,
    SessionConflictError,
    ValidationError,
)


async def get_owner_id(x_user_id: str = Header(min_length=1)) -> str:
    """Caller identity. Authentication happens in front of this service."""
    return x_user_id


def http_error(exc: ReviewError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(
            status_code=404, detail={"message": str(exc), "missing": exc.missing_ids}
        )
    if isinstance(exc, SessionConflictError):
        return HTTPException(
            status_code=409, detail={"message": str(exc), "conflicts": exc.conflicting_ids}
        )
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail={"message": str(exc)})
    if isinstance(exc, GenerationFailure):
        return HTTPException(
            status_code=503, detail={"message": str(exc), "code": "generation_failure"}
        )
    return HTTPException(
        status_code=503, detail={"message": str(exc), "code": "persistence_failure"}
    )

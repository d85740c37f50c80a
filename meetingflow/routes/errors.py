"""
Translate scheduling errors into HTTP responses.
"""
from fastapi import HTTPException, status

from meetingflow.errors import DraftConflict, InvalidRequest, InvalidTransition, NotFound, SchedulerError


def http_error(exc: SchedulerError) -> HTTPException:
    """
    Map a SchedulerError to an HTTPException.

    Usage:
        try:
            ...
        except SchedulerError as e:
            raise http_error(e)
    """
    if isinstance(exc, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidTransition):
        detail = {"message": str(exc), "current_status": exc.current_status}
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(exc, DraftConflict):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, InvalidRequest):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

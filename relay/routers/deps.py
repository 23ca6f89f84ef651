from fastapi import HTTPException, Request

from relay.errors import RelayError
from relay.pipeline import Pipeline


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def http_error(exc: RelayError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())

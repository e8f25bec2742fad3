from dataclasses import asdict
from fastapi import status
from fastapi.responses import JSONResponse

from scrapkart.common.utils import build_error, build_success, json_error, json_ok
from scrapkart.reconciliation.outcomes import Conflict, TransitionResult, Unchanged


def transition_response(result: TransitionResult) -> JSONResponse:
    if isinstance(result, Conflict):
        details = {"message": result.reason}
        if result.order is not None:
            details["order"] = asdict(result.order)
        return json_error(build_error(code="CONFLICT", details=details), status_code=status.HTTP_409_CONFLICT)
    data = {"order": asdict(result.order), "changed": not isinstance(result, Unchanged)}
    return json_ok(build_success(data))

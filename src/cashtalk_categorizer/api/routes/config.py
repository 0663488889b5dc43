from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from cashtalk_categorizer.core import configuration

router = APIRouter()


@router.get("/config")
async def get_config() -> dict[str, object]:
    return configuration.build_config_context()


@router.post("/config")
async def save_config(request: Request, payload: dict[str, str | float | int | None]) -> JSONResponse:
    values = {key: "" if value is None else str(value) for key, value in payload.items()}
    errors, updates = configuration.apply_config_updates(values)
    if errors:
        context = configuration.build_config_context(field_errors=errors)
        return JSONResponse(status_code=400, content={"status": "error", "errors": errors, **context})

    configuration.apply_runtime_updates(request.app, updates)
    return JSONResponse(content={"status": "success", "updated": sorted(updates)})

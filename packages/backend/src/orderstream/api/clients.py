"""Connected-client count — the REST twin of the client_count frame."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/clients")
async def connected_clients(request: Request):
    return {"count": request.app.state.registry.count()}

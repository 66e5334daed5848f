from fastapi import APIRouter, Request

from ..schemas import ModeStatusResponse

router = APIRouter(tags=["core"])


@router.get("/health")
def health(request: Request):
    return {
        "status": "ok",
        "db": "up" if request.app.state.store.ping() else "down",
    }


# Read-only: lets the frontend pick its ceremony path. Nothing can set it.
@router.get("/test-mode", response_model=ModeStatusResponse)
def test_mode(request: Request):
    return ModeStatusResponse(test_mode=request.app.state.ceremonies.test_mode)

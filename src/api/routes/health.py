from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
def health(request: Request):
    motor = getattr(request.app.state, "motor", None)
    return {"ok": True, "scheduler": bool(motor and motor.scheduler.running)}

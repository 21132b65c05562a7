import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.core.logs import configurar_logging
from src.core.servico import MotorDownload
from src.jobs.scheduler import registrar_jobs
from src.settings import settings
from src.store.db import init_db
from .routes import health, downloads, nsu


@asynccontextmanager
async def lifespan(app: FastAPI):
    configurar_logging()
    os.makedirs(settings.STORAGE_BASE_PATH, exist_ok=True)
    motor = getattr(app.state, "motor", None)
    if motor is None:
        init_db()
        motor = MotorDownload()
        app.state.motor = motor
    registrar_jobs(motor.scheduler, motor)
    motor.iniciar()
    try:
        yield
    finally:
        motor.desligar()


app = FastAPI(title="DF-e Download (NFSe / CT-e)", version="0.2.0", lifespan=lifespan)

# CORS: permitir UI local (ajuste se necessário)
app.add_middleware(
	CORSMiddleware,
	allow_origins=[
		"http://localhost:8010",
		"http://127.0.0.1:8010",
		"http://localhost:8001",
		"http://127.0.0.1:8001",
	],
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)
app.include_router(health.router)
app.include_router(downloads.router, prefix="/api", tags=["Downloads"])
app.include_router(nsu.router, prefix="/api", tags=["NSU"])
